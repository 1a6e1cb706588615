"""Deadline reminders and automatic closing, driven by an APScheduler interval job."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from schedbot.apps.bot.metrics import (
    record_reminder_sent,
    record_reminder_skipped,
    record_schedule_closed,
    record_sweep_error,
)
from schedbot.apps.bot.notifications import NotificationDispatcher
from schedbot.domain.entities import SYSTEM_EDITOR, ScheduleSnapshot
from schedbot.domain.errors import AlreadyClosedError, InvalidTimingFormat, StaleWriteError
from schedbot.domain.repositories import ScheduleStorage, SweepCursor, cursor_for
from schedbot.domain.schedule_service import ScheduleService
from schedbot.domain.timing import is_due, is_stale

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    checked: int = 0
    reminded: int = 0
    closed: int = 0
    skipped: int = 0
    errors: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReminderSweep:
    """One pass over open schedules whose deadline is near or already past.

    Expired schedules go through the regular close transition. For the others,
    every due offset missing from the reminders-sent ledger is appended with a
    single version-checked write; only the sweep that wins that write sends the
    reminders, so overlapping passes never send the same reminder twice.
    """

    def __init__(
        self,
        storage: ScheduleStorage,
        schedules: ScheduleService,
        dispatcher: NotificationDispatcher,
        *,
        batch_size: int = 20,
        lookback_seconds: int = 7 * 86400,
        lookahead_seconds: int = 30 * 86400,
        skip_stale: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._schedules = schedules
        self._dispatcher = dispatcher
        self._batch_size = max(1, batch_size)
        self._lookback = timedelta(seconds=max(0, lookback_seconds))
        self._lookahead = timedelta(seconds=max(0, lookahead_seconds))
        self._skip_stale = skip_stale
        self._clock = clock

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport()
        cursor: Optional[SweepCursor] = None

        while True:
            try:
                batch = await self._storage.list_open_with_deadline_between(
                    now - self._lookback,
                    now + self._lookahead,
                    limit=self._batch_size,
                    after=cursor,
                )
            except Exception:
                logger.exception("reminder.sweep.list_failed")
                report.errors += 1
                await record_sweep_error()
                break

            for schedule in batch:
                report.checked += 1
                try:
                    await self._process(schedule, now, report)
                except Exception:
                    report.errors += 1
                    await record_sweep_error()
                    logger.exception(
                        "reminder.sweep.schedule_failed",
                        extra={"schedule_id": schedule.id, "guild_id": schedule.guild_id},
                    )

            if len(batch) < self._batch_size:
                break
            cursor = cursor_for(batch[-1])

        logger.info("reminder.sweep.done", extra={"now": now.isoformat(), **asdict(report)})
        return report

    async def _process(self, schedule: ScheduleSnapshot, now: datetime, report: SweepReport) -> None:
        if schedule.deadline is None:
            return
        if now >= schedule.deadline:
            await self._close_expired(schedule, report)
            return
        await self._send_due_reminders(schedule, now, report)

    async def _close_expired(self, schedule: ScheduleSnapshot, report: SweepReport) -> None:
        result = await self._schedules.close(schedule.id, schedule.guild_id, SYSTEM_EDITOR, system=True)
        if result.is_success():
            report.closed += 1
            await record_schedule_closed()
            return
        error = result.error
        report.skipped += 1
        if isinstance(error, AlreadyClosedError):
            logger.info("reminder.sweep.already_closed", extra={"schedule_id": schedule.id})
            return
        logger.warning(
            "reminder.sweep.close_failed",
            extra={"schedule_id": schedule.id, "error": str(error)},
        )

    def _due_timings(self, schedule: ScheduleSnapshot, now: datetime) -> List[str]:
        assert schedule.deadline is not None
        due: List[str] = []
        for token in schedule.reminder_timings:
            if token in schedule.reminders_sent or token in due:
                continue
            try:
                if not is_due(schedule.deadline, token, now):
                    continue
            except InvalidTimingFormat:
                logger.warning(
                    "reminder.sweep.bad_timing",
                    extra={"schedule_id": schedule.id, "timing": token},
                )
                continue
            due.append(token)
        return due

    async def _send_due_reminders(
        self, schedule: ScheduleSnapshot, now: datetime, report: SweepReport
    ) -> None:
        due = self._due_timings(schedule, now)
        if not due:
            return

        try:
            claimed = await self._storage.save_schedule(
                replace(schedule, reminders_sent=schedule.reminders_sent + tuple(due))
            )
        except StaleWriteError:
            # another writer got there first; the next pass re-reads the ledger
            report.skipped += len(due)
            logger.info(
                "reminder.sweep.lost_race",
                extra={"schedule_id": schedule.id, "timings": due},
            )
            return

        assert claimed.deadline is not None
        for token in due:
            if self._skip_stale and is_stale(claimed.deadline, token, now):
                report.skipped += 1
                await record_reminder_skipped("stale")
                logger.info(
                    "reminder.sweep.stale",
                    extra={"schedule_id": claimed.id, "timing": token},
                )
                continue
            result = await self._dispatcher.send_reminder(claimed, token)
            if result.status == "sent":
                report.reminded += 1
                await record_reminder_sent()
            else:
                # recorded in the ledger all the same; no redelivery
                report.skipped += 1
                await record_reminder_skipped(result.status)
            logger.info(
                "reminder.sweep.dispatched",
                extra={"schedule_id": claimed.id, "timing": token, "delivery": result.status},
            )


class ReminderSweepService:
    """Runs :class:`ReminderSweep` on a fixed interval."""

    def __init__(
        self,
        sweep: ReminderSweep,
        *,
        scheduler: AsyncIOScheduler,
        interval_seconds: float = 60.0,
    ) -> None:
        self._sweep = sweep
        self._scheduler = scheduler
        self._interval = max(1.0, interval_seconds)
        self._job_id = "reminders:deadline_sweep"
        self._lock = asyncio.Lock()

    def start(self) -> None:
        self._scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self._interval,
            id=self._job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=max(int(self._interval), 1),
            next_run_time=datetime.now(timezone.utc),
        )
        if not self._scheduler.running:
            self._scheduler.start()

    async def shutdown(self) -> None:
        try:
            self._scheduler.remove_job(self._job_id)
        except JobLookupError:
            pass
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    async def run_once(self) -> Optional[SweepReport]:
        if self._lock.locked():
            logger.info("reminder.sweep.skip", extra={"reason": "inflight"})
            return None
        async with self._lock:
            return await self._sweep.run()


_reminder_sweep: Optional[ReminderSweepService] = None


def configure_reminder_sweep(service: ReminderSweepService) -> None:
    global _reminder_sweep
    _reminder_sweep = service
    service.start()


def get_reminder_sweep() -> ReminderSweepService:
    if _reminder_sweep is None:
        raise RuntimeError("Reminder sweep is not configured")
    return _reminder_sweep


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(jobstores={"default": MemoryJobStore()}, timezone="UTC")


__all__ = [
    "ReminderSweep",
    "ReminderSweepService",
    "SweepReport",
    "configure_reminder_sweep",
    "get_reminder_sweep",
    "create_scheduler",
]
