from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.clock import utcnow
from app.models import PREFERENCE_FLAG_FIELDS, NotificationPreferences

logger = logging.getLogger("app.notifications")

OPTIONAL_PREFERENCE_FIELDS: tuple[str, ...] = (
    "sound_enabled",
    "dnd_enabled",
    "dnd_start_time",
    "dnd_end_time",
    "dnd_days",
)


def get_preferences(db: Session, user_id: int) -> NotificationPreferences | None:
    return db.scalar(select(NotificationPreferences).where(NotificationPreferences.user_id == user_id))


def get_or_create_preferences(db: Session, user_id: int) -> NotificationPreferences:
    """Return the user's preference row, creating the all-true default on first use.

    A concurrent request may insert the same row between our read and our
    insert; the unique ``user_id`` constraint rejects the second insert and we
    re-read the winner.
    """
    existing = get_preferences(db, user_id)
    if existing is not None:
        return existing

    prefs = NotificationPreferences(user_id=user_id, dnd_days=[])
    db.add(prefs)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_preferences(db, user_id)
        if existing is None:
            raise
        return existing

    db.refresh(prefs)
    logger.info("notification_preferences_created", extra={"user_id": user_id})
    return prefs


def upsert_preferences(db: Session, user_id: int, values: Mapping[str, Any]) -> NotificationPreferences:
    """Replace all category flags; optional DND/sound fields change only when given."""
    prefs = get_or_create_preferences(db, user_id)

    for field_name in PREFERENCE_FLAG_FIELDS:
        setattr(prefs, field_name, bool(values.get(field_name, True)))
    for field_name in OPTIONAL_PREFERENCE_FIELDS:
        value = values.get(field_name)
        if value is not None:
            setattr(prefs, field_name, list(value) if field_name == "dnd_days" else value)
    prefs.updated_at = utcnow()

    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("notification_preferences_update_failed", extra={"user_id": user_id})
        raise

    db.refresh(prefs)
    logger.info(
        "notification_preferences_updated",
        extra={
            "user_id": user_id,
            "disabled_flags": [name for name in PREFERENCE_FLAG_FIELDS if not getattr(prefs, name)],
        },
    )
    return prefs
