from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models import NotificationPriority, NotificationType


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NotificationRead(CamelModel):
    id: int
    user_id: int
    type: NotificationType
    category: str
    title: str
    message: str
    entity_id: int | None = None
    priority: str
    is_read: bool
    read_at: datetime | None = None
    batch_id: str | None = None
    snoozed_until: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class BatchedNotificationRead(CamelModel):
    id: str
    batch_id: str
    is_batch: Literal[True] = True
    count: int
    type: str
    category: str
    title: str
    message: str
    user_id: int | None = None
    priority: str | None = None
    is_read: bool
    latest_timestamp: datetime
    created_at: datetime
    notification_ids: list[int]
    notifications: list[NotificationRead]

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class MarkReadRequest(CamelModel):
    notification_ids: list[int]


class SnoozeRequest(CamelModel):
    snooze_until: datetime | None = None
    minutes: int | None = Field(default=None, ge=1, le=60 * 24 * 30)

    @model_validator(mode="after")
    def _require_target(self) -> "SnoozeRequest":
        if self.snooze_until is None and not self.minutes:
            raise ValueError("snoozeUntil or minutes is required")
        return self


class SnoozeResponse(CamelModel):
    message: str
    snoozed_until: datetime


class NotificationCreateRequest(CamelModel):
    user_id: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    type: NotificationType
    entity_id: int | None = None
    priority: NotificationPriority = NotificationPriority.MEDIUM
    category: str = Field(default="alerts", min_length=1, max_length=50)


class BroadcastRequest(CamelModel):
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    target_role: str | None = None
    notification_type: NotificationType = NotificationType.SYSTEM


class BroadcastResponse(CamelModel):
    message: str
    title: str
    user_count: int | None = None
    target_role: str | None = None


class MessageResponse(BaseModel):
    message: str


class PreferencesRead(CamelModel):
    id: int
    user_id: int
    ticket_assignments: bool
    ticket_status_changes: bool
    asset_assignments: bool
    maintenance_alerts: bool
    upgrade_requests: bool
    system_announcements: bool
    employee_changes: bool
    sound_enabled: bool
    dnd_enabled: bool
    dnd_start_time: str | None = None
    dnd_end_time: str | None = None
    dnd_days: list[int] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class PreferencesUpdate(CamelModel):
    ticket_assignments: bool = True
    ticket_status_changes: bool = True
    asset_assignments: bool = True
    maintenance_alerts: bool = True
    upgrade_requests: bool = True
    system_announcements: bool = True
    employee_changes: bool = True
    sound_enabled: bool | None = None
    dnd_enabled: bool | None = None
    dnd_start_time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    dnd_end_time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    dnd_days: list[int] | None = None

    @field_validator("dnd_days")
    @classmethod
    def _valid_days(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return None
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("dndDays must contain values between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))


class CleanupStatsRead(CamelModel):
    total: int
    read: int
    snoozed: int
    eligible_for_cleanup: int
    retention_days: int
    cutoff_utc: datetime


class CleanupRunResponse(CamelModel):
    cleanup: dict[str, Any]
    snooze: dict[str, Any]
