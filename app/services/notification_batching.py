"""Groups related unread notifications into batches.

A batching pass looks at one user's recent unread notifications that are not
yet part of a batch, clusters them greedily with :func:`should_batch` and
stamps every cluster of two or more rows with a shared ``batch_id``. Batch
titles and preview messages are derived from the member rows on demand, so
nothing but the ``batch_id`` is persisted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal, Sequence
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.clock import normalize_ts
from app.db import SessionLocal
from app.models import Notification, NotificationType

logger = logging.getLogger("app.notification_batching")

Language = Literal["English", "Arabic"]

DEFAULT_BATCH_WINDOW_MINUTES = 5
PREVIEW_LIMIT = 3
MIN_BATCH_SIZE = 2

TICKET_ID_PATTERN = re.compile(r"ticket\s+(\S+)", re.IGNORECASE)
ASSET_NAME_PATTERN = re.compile(r'asset\s+"([^"]+)"', re.IGNORECASE)

BATCH_TITLE_TEMPLATES: dict[str, dict[str, str]] = {
    "English": {
        "ticket_assignments": "{count} Tickets Assigned to You",
        "asset_assignments": "{count} Assets Assigned to You",
        "ticket_status": "{count} Ticket Status Updates",
        "maintenance": "{count} Maintenance Alerts",
        "system": "{count} System Announcements",
        "default": "{count} New Notifications",
    },
    "Arabic": {
        "ticket_assignments": "تم تعيين {count} تذاكر لك",
        "asset_assignments": "تم تعيين {count} أصول لك",
        "ticket_status": "{count} تحديثات حالة التذكرة",
        "maintenance": "{count} تنبيهات صيانة",
        "system": "{count} إعلانات النظام",
        "default": "{count} إشعارات جديدة",
    },
}

PREVIEW_SEPARATORS: dict[str, str] = {"English": ", ", "Arabic": "، "}
REMAINING_SUFFIXES: dict[str, str] = {"English": " and {remaining} more", "Arabic": " و {remaining} آخرين"}


@dataclass(slots=True)
class BatchedNotification:
    batch_id: str
    count: int
    type: str
    category: str
    title: str
    message: str
    latest_timestamp: datetime
    notification_ids: list[int]
    user_id: int | None = None
    priority: str | None = None
    is_read: bool = False
    notifications: list[Notification] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"batch_{self.batch_id}"

    @property
    def created_at(self) -> datetime:
        return self.latest_timestamp


def _type_value(notification: Notification) -> str:
    value = notification.type
    if isinstance(value, NotificationType):
        return value.value
    return str(value)


def _resolve_language(language: str | None) -> Language:
    return "Arabic" if language == "Arabic" else "English"


def should_batch(
    first: Notification,
    second: Notification,
    time_window_minutes: float = DEFAULT_BATCH_WINDOW_MINUTES,
) -> bool:
    if first.user_id != second.user_id:
        return False

    if _type_value(first) != _type_value(second) or first.category != second.category:
        return False

    gap = normalize_ts(first.created_at) - normalize_ts(second.created_at)
    if abs(gap.total_seconds()) / 60 > time_window_minutes:
        return False

    notification_type = _type_value(first)
    if notification_type == NotificationType.TICKET.value:
        return "assigned" in first.message and "assigned" in second.message
    if notification_type == NotificationType.ASSET.value:
        both_assigned = "assigned" in first.message and "assigned" in second.message
        both_maintenance = "maintenance" in first.message and "maintenance" in second.message
        return both_assigned or both_maintenance
    if notification_type == NotificationType.SYSTEM.value:
        return first.category == second.category
    return False


def _title_template_key(notification_type: str, category: str) -> str:
    if notification_type == NotificationType.TICKET.value and category == "assignments":
        return "ticket_assignments"
    if notification_type == NotificationType.ASSET.value and category == "assignments":
        return "asset_assignments"
    if notification_type == NotificationType.TICKET.value and category == "status_changes":
        return "ticket_status"
    if category == "maintenance":
        return "maintenance"
    if notification_type == NotificationType.SYSTEM.value:
        return "system"
    return "default"


def generate_batch_title(group: Sequence[Notification], language: str = "English") -> str:
    templates = BATCH_TITLE_TEMPLATES[_resolve_language(language)]
    key = _title_template_key(_type_value(group[0]), group[0].category)
    return templates[key].format(count=len(group))


def _preview_label(notification: Notification) -> str:
    ticket_match = TICKET_ID_PATTERN.search(notification.message)
    if ticket_match:
        return ticket_match.group(1)
    asset_match = ASSET_NAME_PATTERN.search(notification.message)
    if asset_match:
        return asset_match.group(1)
    return notification.title


def generate_batch_message(group: Sequence[Notification], language: str = "English") -> str:
    resolved = _resolve_language(language)
    preview = [_preview_label(notification) for notification in group[:PREVIEW_LIMIT]]
    remaining = len(group) - len(preview)

    items = PREVIEW_SEPARATORS[resolved].join(preview)
    if remaining > 0:
        return items + REMAINING_SUFFIXES[resolved].format(remaining=remaining)
    return items


def build_batch_summary(
    batch_id: str,
    group: Sequence[Notification],
    *,
    language: str = "English",
) -> BatchedNotification:
    first = group[0]
    return BatchedNotification(
        batch_id=batch_id,
        count=len(group),
        type=_type_value(first),
        category=first.category,
        title=generate_batch_title(group, language),
        message=generate_batch_message(group, language),
        latest_timestamp=max(normalize_ts(item.created_at) for item in group),
        notification_ids=[item.id for item in group],
        user_id=first.user_id,
        priority=first.priority,
        is_read=all(item.is_read for item in group),
        notifications=list(group),
    )


def _cluster(
    notifications: Sequence[Notification],
    time_window_minutes: float,
) -> list[list[Notification]]:
    clusters: dict[str, list[Notification]] = {}
    for notification in notifications:
        target_key: str | None = None
        for key, members in clusters.items():
            if should_batch(notification, members[0], time_window_minutes):
                target_key = key
                break

        if target_key is None:
            target_key = f"{_type_value(notification)}_{notification.category}_{len(clusters)}"
            clusters[target_key] = []
        clusters[target_key].append(notification)

    return list(clusters.values())


def batch_notifications_for_user(
    user_id: int,
    time_window_minutes: float = DEFAULT_BATCH_WINDOW_MINUTES,
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
    language: str = "English",
) -> list[BatchedNotification]:
    if db is None:
        with SessionLocal() as managed_db:
            return batch_notifications_for_user(
                user_id,
                time_window_minutes,
                now_utc=now_utc,
                db=managed_db,
                language=language,
            )

    session = db
    reference_utc = normalize_ts(now_utc)
    cutoff_utc = reference_utc - timedelta(minutes=time_window_minutes)

    try:
        candidates = list(
            session.scalars(
                select(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                    Notification.batch_id.is_(None),
                    Notification.created_at >= cutoff_utc,
                )
                .order_by(Notification.created_at.asc(), Notification.id.asc())
            ).all()
        )
        if len(candidates) < MIN_BATCH_SIZE:
            return []

        results: list[BatchedNotification] = []
        for group in _cluster(candidates, time_window_minutes):
            if len(group) < MIN_BATCH_SIZE:
                continue

            batch_id = str(uuid4())
            member_ids = [item.id for item in group]
            session.execute(
                update(Notification).where(Notification.id.in_(member_ids)).values(batch_id=batch_id)
            )
            session.commit()
            results.append(build_batch_summary(batch_id, group, language=language))
    except Exception:
        session.rollback()
        logger.exception(
            "notification_batching_failed",
            extra={"user_id": user_id, "time_window_minutes": time_window_minutes},
        )
        raise

    if results:
        logger.info(
            "notifications_batched",
            extra={
                "user_id": user_id,
                "batch_count": len(results),
                "batched_notifications": sum(item.count for item in results),
            },
        )
    return results


def get_batched_notifications(
    user_id: int,
    *,
    db: Session | None = None,
    language: str = "English",
) -> list[Notification | BatchedNotification]:
    """Return the user's notifications with each batch collapsed into one item, newest first."""
    if db is None:
        with SessionLocal() as managed_db:
            return get_batched_notifications(user_id, db=managed_db, language=language)

    rows = list(
        db.scalars(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.asc(), Notification.id.asc())
        ).all()
    )

    groups: dict[str, list[Notification]] = {}
    individual: list[Notification] = []
    for notification in rows:
        if notification.batch_id:
            groups.setdefault(notification.batch_id, []).append(notification)
        else:
            individual.append(notification)

    batched = [build_batch_summary(batch_id, group, language=language) for batch_id, group in groups.items()]

    combined: list[Notification | BatchedNotification] = [*individual, *batched]

    def _sort_key(item: Notification | BatchedNotification) -> datetime:
        if isinstance(item, BatchedNotification):
            return item.latest_timestamp
        return normalize_ts(item.created_at)

    combined.sort(key=_sort_key, reverse=True)
    logger.debug(
        "batched_notifications_loaded",
        extra={"user_id": user_id, "rows": len(rows), "batches": len(batched)},
    )
    return combined


def list_users_with_unbatched_notifications(db: Session) -> list[int]:
    return [
        user_id
        for user_id in db.scalars(
            select(Notification.user_id)
            .where(
                Notification.is_read.is_(False),
                Notification.batch_id.is_(None),
            )
            .group_by(Notification.user_id)
        ).all()
        if user_id
    ]


def auto_batch_notifications(
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
    time_window_minutes: float = DEFAULT_BATCH_WINDOW_MINUTES,
) -> dict[str, object]:
    """Run one batching pass for every user with unread, unbatched notifications.

    A failure for one user is logged and the sweep moves on to the next user.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return auto_batch_notifications(
                now_utc=now_utc,
                db=managed_db,
                time_window_minutes=time_window_minutes,
            )

    reference_utc = normalize_ts(now_utc)
    user_ids = list_users_with_unbatched_notifications(db)
    batch_count = 0
    failed_users: list[int] = []

    for user_id in user_ids:
        try:
            batches = batch_notifications_for_user(
                user_id,
                time_window_minutes,
                now_utc=reference_utc,
                db=db,
            )
        except Exception:
            failed_users.append(user_id)
            continue
        batch_count += len(batches)

    if failed_users:
        logger.warning(
            "notification_auto_batch_partial_failure",
            extra={"failed_users": failed_users, "users": len(user_ids)},
        )
    return {
        "users": len(user_ids),
        "batches": batch_count,
        "failed_users": failed_users,
    }
