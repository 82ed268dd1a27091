from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, select
from sqlalchemy.orm import Session

from app.clock import normalize_ts
from app.db import SessionLocal
from app.models import Notification
from app.settings import get_retention_days

logger = logging.getLogger("app.notifications")


def _retention_cutoff(reference_utc: datetime, retention_days: int) -> datetime:
    return reference_utc - timedelta(days=max(0, retention_days))


def _expired_read_condition(cutoff_utc: datetime):  # type: ignore[no-untyped-def]
    return and_(
        Notification.is_read.is_(True),
        Notification.created_at < cutoff_utc,
    )


def _count(session: Session, *conditions) -> int:  # type: ignore[no-untyped-def]
    statement = select(func.count(Notification.id))
    if conditions:
        statement = statement.where(*conditions)
    return int(session.scalar(statement) or 0)


def cleanup_old_notifications(
    *,
    retention_days: int | None = None,
    now_utc: datetime | None = None,
    db: Session | None = None,
) -> dict[str, Any]:
    """Delete read notifications created strictly before ``now - retention_days``.

    Unread rows are never touched, batched or not. Errors are logged and
    re-raised; the scheduler decides what to do with them.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return cleanup_old_notifications(retention_days=retention_days, now_utc=now_utc, db=managed_db)

    session = db
    resolved_retention_days = get_retention_days() if retention_days is None else max(0, int(retention_days))
    reference_utc = normalize_ts(now_utc)
    cutoff_utc = _retention_cutoff(reference_utc, resolved_retention_days)
    condition = _expired_read_condition(cutoff_utc)

    try:
        eligible_count = _count(session, condition)
        logger.info(
            "notification_cleanup_started",
            extra={
                "retention_days": resolved_retention_days,
                "cutoff_utc": cutoff_utc.isoformat(),
                "eligible_count": eligible_count,
            },
        )

        result = session.execute(delete(Notification).where(condition).execution_options(synchronize_session=False))
        session.commit()
        deleted_count = int(result.rowcount or 0)
        remaining_count = _count(session)
    except Exception:
        session.rollback()
        logger.exception(
            "notification_cleanup_failed",
            extra={"retention_days": resolved_retention_days, "cutoff_utc": cutoff_utc.isoformat()},
        )
        raise

    logger.info(
        "notification_cleanup_completed",
        extra={
            "deleted_count": deleted_count,
            "remaining_count": remaining_count,
            "retention_days": resolved_retention_days,
            "cutoff_utc": cutoff_utc.isoformat(),
        },
    )
    return {
        "success": True,
        "deleted_count": deleted_count,
        "retention_days": resolved_retention_days,
        "cutoff_utc": cutoff_utc,
    }


def process_snoozed_notifications(
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
) -> dict[str, Any]:
    """Bring back notifications whose snooze has elapsed, always as unread.

    Each row is committed on its own. A row that fails is rolled back and left
    for the next tick, which will pick it up again because its
    ``snoozed_until`` is still in the past.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return process_snoozed_notifications(now_utc=now_utc, db=managed_db)

    session = db
    reference_utc = normalize_ts(now_utc)
    due_ids = list(
        session.scalars(
            select(Notification.id)
            .where(
                Notification.snoozed_until.is_not(None),
                Notification.snoozed_until < reference_utc,
            )
            .order_by(Notification.id)
        ).all()
    )
    if not due_ids:
        logger.debug("notification_snooze_nothing_due", extra={"now_utc": reference_utc.isoformat()})
        return {"success": True, "processed_count": 0, "failed_ids": []}

    processed_count = 0
    failed_ids: list[int] = []
    for notification_id in due_ids:
        try:
            notification = session.get(Notification, notification_id)
            if notification is None:
                continue
            notification.snoozed_until = None
            notification.is_read = False
            notification.read_at = None
            session.commit()
        except Exception:
            session.rollback()
            failed_ids.append(notification_id)
            logger.exception(
                "notification_snooze_reactivation_failed",
                extra={"notification_id": notification_id},
            )
            continue
        processed_count += 1

    logger.info(
        "notification_snooze_processed",
        extra={"processed_count": processed_count, "failed_ids": failed_ids},
    )
    return {
        "success": not failed_ids,
        "processed_count": processed_count,
        "failed_ids": failed_ids,
    }


def get_cleanup_stats(
    *,
    retention_days: int | None = None,
    now_utc: datetime | None = None,
    db: Session | None = None,
) -> dict[str, Any]:
    if db is None:
        with SessionLocal() as managed_db:
            return get_cleanup_stats(retention_days=retention_days, now_utc=now_utc, db=managed_db)

    resolved_retention_days = get_retention_days() if retention_days is None else max(0, int(retention_days))
    cutoff_utc = _retention_cutoff(normalize_ts(now_utc), resolved_retention_days)
    return {
        "total": _count(db),
        "read": _count(db, Notification.is_read.is_(True)),
        "snoozed": _count(db, Notification.snoozed_until.is_not(None)),
        "eligible_for_cleanup": _count(db, _expired_read_condition(cutoff_utc)),
        "retention_days": resolved_retention_days,
        "cutoff_utc": cutoff_utc,
    }
