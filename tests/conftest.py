"""Test configuration shared by every test module."""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("NOTIFICATION_CLEANUP_ENABLED", "false")
os.environ.setdefault("NOTIFICATION_TIMEZONE", "UTC")
