from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.settings import get_settings

DEFAULT_NOTIFICATION_TIMEZONE = "UTC"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ts(ts_utc: datetime | None) -> datetime:
    """Return ``ts_utc`` as an aware UTC datetime.

    Naive values (what SQLite hands back) are taken to already be UTC, and
    ``None`` means "now".
    """
    if ts_utc is None:
        return utcnow()

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def notification_timezone(name: str | None = None) -> ZoneInfo:
    raw_name = name if name is not None else get_settings().notification_timezone
    resolved_name = (raw_name or "").strip() or DEFAULT_NOTIFICATION_TIMEZONE
    try:
        return ZoneInfo(resolved_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_NOTIFICATION_TIMEZONE)
