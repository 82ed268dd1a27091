from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.clock import normalize_ts, notification_timezone
from app.models import (
    CATEGORY_ALERTS,
    CATEGORY_ANNOUNCEMENTS,
    CATEGORY_APPROVALS,
    CATEGORY_ASSIGNMENTS,
    CATEGORY_MAINTENANCE,
    CATEGORY_REMINDERS,
    CATEGORY_STATUS_CHANGES,
    Notification,
    NotificationPreferences,
    NotificationPriority,
    NotificationType,
    User,
)

logger = logging.getLogger("app.notifications")

URGENT_TICKET_PRIORITIES = frozenset({"Critical", "High", "Urgent"})
TRANSACTION_CHECK_OUT = "Check-Out"
TRANSACTION_CHECK_IN = "Check-In"


def _coerce_type(value: NotificationType | str) -> NotificationType:
    if isinstance(value, NotificationType):
        return value
    return NotificationType(str(value))


def _coerce_priority(value: NotificationPriority | str | None) -> str:
    if value is None:
        return NotificationPriority.MEDIUM.value
    if isinstance(value, NotificationPriority):
        return value.value
    return NotificationPriority(str(value)).value


def _format_day(value: date | datetime) -> str:
    return value.strftime("%Y-%m-%d")


def _weekday_sunday_first(value: date) -> int:
    # Stored DND days use 0=Sunday .. 6=Saturday.
    return (value.weekday() + 1) % 7


def is_in_dnd_window(prefs: NotificationPreferences, *, now_utc: datetime | None = None) -> bool:
    if not prefs.dnd_enabled or not prefs.dnd_start_time or not prefs.dnd_end_time:
        return False

    local_now = normalize_ts(now_utc).astimezone(notification_timezone())
    dnd_days = [day for day in (prefs.dnd_days or []) if isinstance(day, int)]
    if dnd_days and _weekday_sunday_first(local_now.date()) not in dnd_days:
        return False

    current = local_now.strftime("%H:%M")
    start = prefs.dnd_start_time
    end = prefs.dnd_end_time
    if start <= end:
        return start <= current <= end
    # Overnight window, e.g. 22:00-08:00.
    return current >= start or current <= end


def resolve_preference_flag(
    notification_type: NotificationType,
    *,
    title: str,
    message: str,
) -> str | None:
    lowered_message = message.lower()
    lowered_title = title.lower()

    if notification_type == NotificationType.TICKET and ("assigned" in lowered_message or "assigned" in lowered_title):
        return "ticket_assignments"
    if notification_type == NotificationType.TICKET and ("status" in lowered_message or "status" in lowered_title):
        return "ticket_status_changes"
    if notification_type == NotificationType.ASSET and (
        "assigned" in lowered_message or "checked" in lowered_message or "assigned" in lowered_title
    ):
        return "asset_assignments"
    if notification_type == NotificationType.ASSET and (
        "maintenance" in lowered_message or "maintenance" in lowered_title
    ):
        return "maintenance_alerts"
    if "upgrade" in lowered_message or "upgrade" in lowered_title:
        return "upgrade_requests"
    if notification_type == NotificationType.SYSTEM:
        return "system_announcements"
    if notification_type == NotificationType.EMPLOYEE:
        return "employee_changes"
    return None


def _suppression_reason(
    prefs: NotificationPreferences | None,
    *,
    notification_type: NotificationType,
    title: str,
    message: str,
    priority: str,
    now_utc: datetime | None,
) -> str | None:
    if prefs is None:
        return None
    if priority != NotificationPriority.CRITICAL.value and is_in_dnd_window(prefs, now_utc=now_utc):
        return "do_not_disturb"
    flag = resolve_preference_flag(notification_type, title=title, message=message)
    if flag is not None and not bool(getattr(prefs, flag)):
        return f"preference_disabled:{flag}"
    return None


def create_notification(
    db: Session,
    *,
    user_id: int,
    title: str,
    message: str,
    type: NotificationType | str,
    entity_id: int | None = None,
    priority: NotificationPriority | str | None = None,
    category: str | None = None,
    now_utc: datetime | None = None,
) -> Notification | None:
    """Persist one notification for ``user_id`` unless the user opted out.

    Returns ``None`` when the user's preferences or Do-Not-Disturb window
    suppress it. Critical notifications ignore Do-Not-Disturb but still honour
    the per-category flags.
    """
    notification_type = _coerce_type(type)
    resolved_priority = _coerce_priority(priority)
    resolved_category = (category or "").strip() or CATEGORY_ALERTS

    try:
        prefs = db.scalar(select(NotificationPreferences).where(NotificationPreferences.user_id == user_id))
        reason = _suppression_reason(
            prefs,
            notification_type=notification_type,
            title=title,
            message=message,
            priority=resolved_priority,
            now_utc=now_utc,
        )
        if reason is not None:
            logger.debug(
                "notification_suppressed",
                extra={
                    "user_id": user_id,
                    "type": notification_type.value,
                    "title": title,
                    "reason": reason,
                },
            )
            return None

        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=notification_type,
            entity_id=entity_id,
            priority=resolved_priority,
            category=resolved_category,
            is_read=False,
        )
        if now_utc is not None:
            notification.created_at = normalize_ts(now_utc)
        db.add(notification)
        db.commit()
        db.refresh(notification)
    except Exception:
        db.rollback()
        logger.exception(
            "notification_create_failed",
            extra={"user_id": user_id, "type": notification_type.value, "title": title},
        )
        raise

    logger.info(
        "notification_created",
        extra={
            "notification_id": notification.id,
            "user_id": user_id,
            "type": notification_type.value,
            "category": resolved_category,
            "entity_id": entity_id,
        },
    )
    return notification


def notify_ticket_assignment(
    db: Session,
    *,
    ticket_id: str | int,
    assigned_to_user_id: int,
    ticket_title: str,
    assigned_by_username: str | None = None,
    entity_id: int | None = None,
) -> Notification | None:
    if assigned_by_username:
        message = f"{assigned_by_username} assigned you ticket {ticket_id}: {ticket_title}"
    else:
        message = f"You have been assigned ticket {ticket_id}: {ticket_title}"

    return create_notification(
        db,
        user_id=assigned_to_user_id,
        title=f"Ticket {ticket_id} Assigned to You",
        message=message,
        type=NotificationType.TICKET,
        entity_id=entity_id if entity_id is not None else (ticket_id if isinstance(ticket_id, int) else None),
        priority=NotificationPriority.MEDIUM,
        category=CATEGORY_ASSIGNMENTS,
    )


def notify_urgent_ticket(
    db: Session,
    *,
    ticket_id: str | int,
    assigned_to_user_id: int,
    ticket_title: str,
    priority: str,
    entity_id: int | None = None,
) -> Notification | None:
    return create_notification(
        db,
        user_id=assigned_to_user_id,
        title=f"Urgent: Ticket {ticket_id} Assigned",
        message=f"HIGH PRIORITY ({priority}): {ticket_title} - Please address immediately",
        type=NotificationType.TICKET,
        entity_id=entity_id if entity_id is not None else (ticket_id if isinstance(ticket_id, int) else None),
        priority=NotificationPriority.HIGH,
        category=CATEGORY_ASSIGNMENTS,
    )


def notify_ticket_status_change(
    db: Session,
    *,
    ticket_id: str | int,
    user_id: int,
    old_status: str,
    new_status: str,
    ticket_title: str,
    entity_id: int | None = None,
) -> Notification | None:
    return create_notification(
        db,
        user_id=user_id,
        title=f"Ticket #{ticket_id} Status Updated",
        message=f'Ticket "{ticket_title}" status changed from {old_status} to {new_status}',
        type=NotificationType.TICKET,
        entity_id=entity_id if entity_id is not None else (ticket_id if isinstance(ticket_id, int) else None),
        priority=NotificationPriority.LOW,
        category=CATEGORY_STATUS_CHANGES,
    )


def notify_asset_assignment(
    db: Session,
    *,
    asset_id: int,
    user_id: int,
    asset_name: str,
    asset_tag: str | None = None,
    employee_id: int | None = None,
) -> Notification | None:
    display_name = f"{asset_name} ({asset_tag})" if asset_tag else asset_name
    return create_notification(
        db,
        user_id=user_id,
        title="New Asset Assigned to You",
        message=f'Asset "{display_name}" has been assigned to you',
        type=NotificationType.ASSET,
        entity_id=asset_id,
        priority=NotificationPriority.MEDIUM,
        category=CATEGORY_ASSIGNMENTS,
    )


def notify_asset_transaction(
    db: Session,
    *,
    asset_id: int,
    user_id: int,
    asset_name: str,
    transaction_type: str,
) -> Notification | None:
    if transaction_type not in {TRANSACTION_CHECK_OUT, TRANSACTION_CHECK_IN}:
        raise ValueError(f"Unknown asset transaction type: {transaction_type}")
    action = "checked out to you" if transaction_type == TRANSACTION_CHECK_OUT else "returned"
    return create_notification(
        db,
        user_id=user_id,
        title=f"Asset {transaction_type}",
        message=f'Asset "{asset_name}" has been {action}',
        type=NotificationType.ASSET,
        entity_id=asset_id,
        priority=NotificationPriority.MEDIUM,
        category=CATEGORY_ASSIGNMENTS,
    )


def notify_maintenance_scheduled(
    db: Session,
    *,
    asset_id: int,
    user_id: int,
    asset_name: str,
    maintenance_date: date | datetime,
    maintenance_type: str,
) -> Notification | None:
    return create_notification(
        db,
        user_id=user_id,
        title="Maintenance Scheduled on Your Asset",
        message=(
            f'{maintenance_type} maintenance scheduled for "{asset_name}" on {_format_day(maintenance_date)}'
        ),
        type=NotificationType.ASSET,
        entity_id=asset_id,
        priority=NotificationPriority.MEDIUM,
        category=CATEGORY_MAINTENANCE,
    )


def notify_maintenance_completed(
    db: Session,
    *,
    asset_id: int,
    user_id: int,
    asset_name: str,
    maintenance_type: str,
) -> Notification | None:
    return create_notification(
        db,
        user_id=user_id,
        title="Maintenance Completed",
        message=f'{maintenance_type} maintenance completed for your asset "{asset_name}"',
        type=NotificationType.ASSET,
        entity_id=asset_id,
        priority=NotificationPriority.LOW,
        category=CATEGORY_MAINTENANCE,
    )


def notify_upgrade_request(
    db: Session,
    *,
    upgrade_id: int,
    manager_id: int,
    asset_name: str,
    requested_by: str,
    upgrade_cost: float | None = None,
) -> Notification | None:
    cost_suffix = f" (Est. Cost: ${upgrade_cost:.2f})" if upgrade_cost else ""
    return create_notification(
        db,
        user_id=manager_id,
        title="Asset Upgrade Request Pending Approval",
        message=f'{requested_by} requested an upgrade for "{asset_name}"{cost_suffix}',
        type=NotificationType.ASSET,
        entity_id=upgrade_id,
        priority=NotificationPriority.MEDIUM,
        category=CATEGORY_APPROVALS,
    )


def notify_upgrade_decision(
    db: Session,
    *,
    upgrade_id: int,
    requester_id: int,
    asset_name: str,
    approved: bool,
    approved_by: str,
) -> Notification | None:
    decision = "approved" if approved else "rejected"
    return create_notification(
        db,
        user_id=requester_id,
        title=f"Upgrade Request {decision.capitalize()}",
        message=f'Your upgrade request for "{asset_name}" was {decision} by {approved_by}',
        type=NotificationType.ASSET,
        entity_id=upgrade_id,
        priority=NotificationPriority.MEDIUM,
        category=CATEGORY_APPROVALS,
    )


def notify_employee_onboarding(
    db: Session,
    *,
    employee_id: int,
    user_id: int,
    employee_name: str,
    department: str,
    start_date: date | datetime,
) -> Notification | None:
    return create_notification(
        db,
        user_id=user_id,
        title="New Employee Onboarding",
        message=(
            f"{employee_name} joining {department} on {_format_day(start_date)}. "
            "Please prepare onboarding checklist."
        ),
        type=NotificationType.EMPLOYEE,
        entity_id=employee_id,
        priority=NotificationPriority.MEDIUM,
        category=CATEGORY_REMINDERS,
    )


def notify_employee_offboarding(
    db: Session,
    *,
    employee_id: int,
    user_id: int,
    employee_name: str,
    last_day: date | datetime,
) -> Notification | None:
    return create_notification(
        db,
        user_id=user_id,
        title="Employee Offboarding Required",
        message=(
            f"{employee_name} leaving on {_format_day(last_day)}. "
            "Please initiate asset recovery and offboarding process."
        ),
        type=NotificationType.EMPLOYEE,
        entity_id=employee_id,
        priority=NotificationPriority.HIGH,
        category=CATEGORY_REMINDERS,
    )


def notify_system(
    db: Session,
    *,
    user_ids: list[int],
    title: str,
    message: str,
) -> list[Notification | None]:
    return [
        create_notification(
            db,
            user_id=user_id,
            title=title,
            message=message,
            type=NotificationType.SYSTEM,
            priority=NotificationPriority.INFO,
            category=CATEGORY_ANNOUNCEMENTS,
        )
        for user_id in user_ids
    ]


def list_user_ids_by_role(db: Session, role: str) -> list[int]:
    return list(db.scalars(select(User.id).where(User.role == role).order_by(User.id)).all())


def list_all_user_ids(db: Session) -> list[int]:
    return list(db.scalars(select(User.id).order_by(User.id)).all())


def notify_by_role(
    db: Session,
    *,
    role: str,
    title: str,
    message: str,
    type: NotificationType | str = NotificationType.SYSTEM,
    entity_id: int | None = None,
) -> list[Notification | None]:
    notification_type = _coerce_type(type)
    category = CATEGORY_ANNOUNCEMENTS if notification_type == NotificationType.SYSTEM else CATEGORY_ALERTS
    user_ids = list_user_ids_by_role(db, role)
    if not user_ids:
        logger.info("notification_role_broadcast_empty", extra={"role": role, "title": title})
        return []

    return [
        create_notification(
            db,
            user_id=user_id,
            title=title,
            message=message,
            type=notification_type,
            entity_id=entity_id,
            category=category,
        )
        for user_id in user_ids
    ]


@dataclass(frozen=True, slots=True)
class TicketSnapshot:
    id: int
    ticket_code: str | None
    title: str | None
    status: str | None
    priority: str | None = None
    assigned_to_user_id: int | None = None
    submitted_by_user_id: int | None = None

    @property
    def display_id(self) -> str:
        return self.ticket_code or f"#{self.id}"


def handle_ticket_notifications(
    db: Session,
    *,
    operation: str,
    ticket: TicketSnapshot,
    previous: TicketSnapshot | None = None,
    performed_by: str | None = None,
) -> list[Notification]:
    """Emit the notifications implied by a ticket create/update.

    Failures are logged and swallowed so ticket writes never fail because of
    notification delivery.
    """
    created: list[Notification] = []
    ticket_title = ticket.title or "Support Ticket"
    priority = ticket.priority or "Medium"
    new_assignee = ticket.assigned_to_user_id
    old_assignee = previous.assigned_to_user_id if previous is not None else None

    try:
        if new_assignee and new_assignee != old_assignee:
            if priority in URGENT_TICKET_PRIORITIES:
                row = notify_urgent_ticket(
                    db,
                    ticket_id=ticket.display_id,
                    assigned_to_user_id=new_assignee,
                    ticket_title=ticket_title,
                    priority=priority,
                    entity_id=ticket.id,
                )
            else:
                row = notify_ticket_assignment(
                    db,
                    ticket_id=ticket.display_id,
                    assigned_to_user_id=new_assignee,
                    ticket_title=ticket_title,
                    assigned_by_username=performed_by,
                    entity_id=ticket.id,
                )
            if row is not None:
                created.append(row)

        old_status = previous.status if previous is not None else None
        if operation == "update" and old_status and ticket.status and ticket.status != old_status:
            recipients: list[int] = []
            if ticket.submitted_by_user_id:
                recipients.append(ticket.submitted_by_user_id)
            if new_assignee and new_assignee != ticket.submitted_by_user_id:
                recipients.append(new_assignee)
            for recipient in recipients:
                row = notify_ticket_status_change(
                    db,
                    ticket_id=ticket.display_id,
                    user_id=recipient,
                    old_status=old_status,
                    new_status=ticket.status,
                    ticket_title=ticket_title,
                    entity_id=ticket.id,
                )
                if row is not None:
                    created.append(row)
    except Exception:
        logger.exception(
            "ticket_notification_failed",
            extra={"ticket_id": ticket.id, "operation": operation},
        )

    return created
