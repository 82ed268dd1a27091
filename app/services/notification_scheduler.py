from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import date, datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

from app.clock import normalize_ts, notification_timezone, utcnow
from app.services.notification_batching import auto_batch_notifications
from app.services.notification_cleanup import (
    cleanup_old_notifications,
    process_snoozed_notifications,
)
from app.settings import Settings, get_settings

logger = logging.getLogger("app.notification_scheduler")

MIN_INTERVAL_SECONDS = 1


class NotificationScheduler:
    """Runs the daily retention cleanup and the snooze/auto-batch sweep.

    Both jobs run as asyncio tasks on the application loop and push the
    database work to a worker thread. Each job has its own lock so a slow run
    is never overlapped by the next tick of the same job.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._clock = clock
        self._stop_event: asyncio.Event | None = None
        self._daily_task: asyncio.Task[None] | None = None
        self._snooze_task: asyncio.Task[None] | None = None
        self._cleanup_lock = asyncio.Lock()
        self._snooze_lock = asyncio.Lock()
        self.last_cleanup_date: date | None = None

    @property
    def cleanup_hour(self) -> int:
        return min(23, max(0, int(self.settings.notification_cleanup_hour)))

    @property
    def retention_days(self) -> int:
        return max(0, int(self.settings.notification_retention_days))

    def local_timezone(self) -> ZoneInfo:
        return notification_timezone(self.settings.notification_timezone)

    @property
    def is_running(self) -> bool:
        return self._daily_task is not None or self._snooze_task is not None

    def start(self) -> bool:
        if not self.settings.notification_cleanup_enabled:
            logger.info("notification_scheduler_disabled")
            return False
        if self.is_running:
            return False

        self._stop_event = asyncio.Event()
        self._daily_task = asyncio.create_task(self._daily_loop(self._stop_event))
        self._snooze_task = asyncio.create_task(self._snooze_loop(self._stop_event))
        logger.info(
            "notification_scheduler_started",
            extra={
                "retention_days": self.retention_days,
                "cleanup_hour": self.cleanup_hour,
                "timezone": str(self.local_timezone()),
                "cleanup_check_interval_seconds": self._interval(
                    self.settings.notification_cleanup_check_interval_seconds
                ),
                "snooze_interval_seconds": self._interval(self.settings.notification_snooze_interval_seconds),
            },
        )
        return True

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        for task in (self._daily_task, self._snooze_task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        was_running = self.is_running
        self._stop_event = None
        self._daily_task = None
        self._snooze_task = None
        if was_running:
            logger.info("notification_scheduler_stopped")

    def is_cleanup_due(self, now_utc: datetime | None = None) -> bool:
        local_now = normalize_ts(now_utc or self._clock()).astimezone(self.local_timezone())
        if local_now.hour != self.cleanup_hour:
            return False
        return self.last_cleanup_date != local_now.date()

    async def run_cleanup_tick(self, now_utc: datetime | None = None) -> dict[str, Any] | None:
        reference_utc = normalize_ts(now_utc or self._clock())
        if not self.is_cleanup_due(reference_utc):
            return None
        if self._cleanup_lock.locked():
            logger.warning("notification_job_skipped_overlap", extra={"job": "cleanup"})
            return None

        async with self._cleanup_lock:
            try:
                result = await asyncio.to_thread(
                    cleanup_old_notifications,
                    retention_days=self.retention_days,
                    now_utc=reference_utc,
                )
            except Exception:
                logger.exception("notification_scheduler_tick_failed", extra={"job": "cleanup"})
                return None

            self.last_cleanup_date = reference_utc.astimezone(self.local_timezone()).date()
            return result

    async def run_snooze_tick(self, now_utc: datetime | None = None) -> dict[str, Any] | None:
        if self._snooze_lock.locked():
            logger.warning("notification_job_skipped_overlap", extra={"job": "snooze"})
            return None

        reference_utc = normalize_ts(now_utc or self._clock())
        outcome: dict[str, Any] = {"snooze": None, "batching": None}
        async with self._snooze_lock:
            try:
                outcome["snooze"] = await asyncio.to_thread(process_snoozed_notifications, now_utc=reference_utc)
            except Exception:
                logger.exception("notification_scheduler_tick_failed", extra={"job": "snooze"})

            try:
                outcome["batching"] = await asyncio.to_thread(
                    auto_batch_notifications,
                    now_utc=reference_utc,
                    time_window_minutes=self.settings.notification_batch_window_minutes,
                )
            except Exception:
                logger.exception("notification_scheduler_tick_failed", extra={"job": "auto_batch"})

        snooze_result = outcome["snooze"] or {}
        batching_result = outcome["batching"] or {}
        if snooze_result.get("processed_count") or batching_result.get("batches"):
            logger.info(
                "notification_scheduler_tick",
                extra={
                    "job": "snooze",
                    "processed_count": snooze_result.get("processed_count", 0),
                    "batches": batching_result.get("batches", 0),
                },
            )
        return outcome

    @staticmethod
    def _interval(raw_value: int) -> int:
        return max(MIN_INTERVAL_SECONDS, int(raw_value))

    async def _wait(self, stop_event: asyncio.Event, interval_seconds: int) -> bool:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _daily_loop(self, stop_event: asyncio.Event) -> None:
        interval_seconds = self._interval(self.settings.notification_cleanup_check_interval_seconds)
        while not stop_event.is_set():
            await self.run_cleanup_tick()
            if await self._wait(stop_event, interval_seconds):
                break

    async def _snooze_loop(self, stop_event: asyncio.Event) -> None:
        interval_seconds = self._interval(self.settings.notification_snooze_interval_seconds)
        while not stop_event.is_set():
            await self.run_snooze_tick()
            if await self._wait(stop_event, interval_seconds):
                break
