from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from app.clock import normalize_ts, utcnow
from app.db import get_db
from app.errors import not_found
from app.models import Notification, NotificationType
from app.schemas import (
    BatchedNotificationRead,
    BroadcastRequest,
    BroadcastResponse,
    CleanupRunResponse,
    CleanupStatsRead,
    MarkReadRequest,
    MessageResponse,
    NotificationCreateRequest,
    NotificationRead,
    PreferencesRead,
    PreferencesUpdate,
    SnoozeRequest,
    SnoozeResponse,
)
from app.security import ROLE_ADMIN, AuthUser, require_role, require_user
from app.services.notification_batching import BatchedNotification, get_batched_notifications
from app.services.notification_cleanup import (
    cleanup_old_notifications,
    get_cleanup_stats,
    process_snoozed_notifications,
)
from app.services.notification_preferences import get_or_create_preferences, upsert_preferences
from app.services.notifications import list_all_user_ids, notify_by_role, notify_system

router = APIRouter(prefix="/api/notifications", tags=["notifications"])
logger = logging.getLogger("app.notifications")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def _query_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _page_size(raw: str | None) -> int:
    limit = _query_int(raw, DEFAULT_PAGE_SIZE)
    if limit < 1:
        return DEFAULT_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE)


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    limit: str | None = Query(default=None),
    offset: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> list[Notification]:
    stmt = select(Notification).where(Notification.user_id == user.id)
    if since is not None:
        stmt = stmt.where(Notification.created_at > normalize_ts(since))
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = (
        stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(_page_size(limit))
        .offset(max(0, _query_int(offset, 0)))
    )
    return list(db.scalars(stmt).all())


@router.get("/batched", response_model=list[NotificationRead | BatchedNotificationRead])
def list_batched_notifications(
    language: Literal["English", "Arabic"] = Query(default="English"),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> list[NotificationRead | BatchedNotificationRead]:
    items = get_batched_notifications(user.id, db=db, language=language)
    return [
        BatchedNotificationRead.model_validate(item)
        if isinstance(item, BatchedNotification)
        else NotificationRead.model_validate(item)
        for item in items
    ]


@router.post("/mark-read", response_model=MessageResponse)
def mark_notifications_read(
    payload: MarkReadRequest,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> MessageResponse:
    if payload.notification_ids:
        result = db.execute(
            update(Notification)
            .where(
                Notification.user_id == user.id,
                Notification.id.in_(payload.notification_ids),
            )
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info(
            "notifications_marked_read",
            extra={"user_id": user.id, "requested": len(payload.notification_ids), "updated": result.rowcount},
        )
    return MessageResponse(message="Notifications marked as read")


@router.delete("/clear-all", response_model=MessageResponse)
def clear_all_notifications(
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> MessageResponse:
    result = db.execute(
        delete(Notification)
        .where(Notification.user_id == user.id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("notifications_cleared", extra={"user_id": user.id, "deleted": result.rowcount})
    return MessageResponse(message="All notifications cleared")


@router.get("/preferences", response_model=PreferencesRead)
def read_preferences(
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> PreferencesRead:
    return PreferencesRead.model_validate(get_or_create_preferences(db, user.id))


@router.put("/preferences", response_model=PreferencesRead)
def update_preferences(
    payload: PreferencesUpdate,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> PreferencesRead:
    prefs = upsert_preferences(db, user.id, payload.model_dump())
    return PreferencesRead.model_validate(prefs)


@router.get("/cleanup/stats", response_model=CleanupStatsRead)
def read_cleanup_stats(
    _admin: AuthUser = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
) -> CleanupStatsRead:
    return CleanupStatsRead.model_validate(get_cleanup_stats(db=db))


@router.post("/cleanup/run", response_model=CleanupRunResponse)
def run_cleanup_now(
    request: Request,
    admin: AuthUser = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
) -> CleanupRunResponse:
    cleanup_result = cleanup_old_notifications(db=db)
    snooze_result = process_snoozed_notifications(db=db)
    logger.info(
        "notification_cleanup_manual_run",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "admin_user_id": admin.id,
            "deleted_count": cleanup_result["deleted_count"],
            "processed_count": snooze_result["processed_count"],
        },
    )
    return CleanupRunResponse(cleanup=cleanup_result, snooze=snooze_result)


@router.post("/broadcast", response_model=BroadcastResponse, response_model_exclude_none=True)
def broadcast_notification(
    payload: BroadcastRequest,
    _admin: AuthUser = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
) -> BroadcastResponse:
    target_role = (payload.target_role or "").strip()
    if target_role and target_role != "all":
        notify_by_role(
            db,
            role=target_role,
            title=payload.title,
            message=payload.message,
            type=payload.notification_type,
        )
        return BroadcastResponse(
            message=f"Notification sent to all users with role: {target_role}",
            target_role=target_role,
            title=payload.title,
        )

    user_ids = list_all_user_ids(db)
    notify_system(db, user_ids=user_ids, title=payload.title, message=payload.message)
    return BroadcastResponse(
        message=f"Notification sent to all {len(user_ids)} users",
        user_count=len(user_ids),
        title=payload.title,
    )


@router.post("", response_model=NotificationRead)
def create_notification_directly(
    payload: NotificationCreateRequest,
    _admin: AuthUser = Depends(require_role(ROLE_ADMIN)),
    db: Session = Depends(get_db),
) -> Notification:
    notification = Notification(
        user_id=payload.user_id,
        title=payload.title,
        message=payload.message,
        type=NotificationType(payload.type),
        entity_id=payload.entity_id,
        priority=payload.priority.value,
        category=payload.category,
        is_read=False,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    logger.info(
        "notification_created",
        extra={"notification_id": notification.id, "user_id": notification.user_id, "source": "admin"},
    )
    return notification


@router.post("/{notification_id}/snooze", response_model=SnoozeResponse)
def snooze_notification(
    notification_id: int,
    payload: SnoozeRequest,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> SnoozeResponse:
    if payload.snooze_until is not None:
        snoozed_until = normalize_ts(payload.snooze_until)
    else:
        snoozed_until = utcnow() + timedelta(minutes=payload.minutes or 0)

    result = db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user.id)
        .values(snoozed_until=snoozed_until)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if not result.rowcount:
        raise not_found("Notification not found.")

    logger.info(
        "notification_snoozed",
        extra={"notification_id": notification_id, "user_id": user.id, "snoozed_until": snoozed_until.isoformat()},
    )
    return SnoozeResponse(message="Notification snoozed", snoozed_until=snoozed_until)


@router.delete("/{notification_id}", response_model=MessageResponse)
def dismiss_notification(
    notification_id: int,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> MessageResponse:
    db.execute(
        delete(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user.id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return MessageResponse(message="Notification dismissed")
