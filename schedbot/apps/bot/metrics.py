"""Simple in-memory metrics for scheduling flows."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Dict


@dataclass
class SchedulingMetricsSnapshot:
    """Immutable view over scheduling counters."""

    reminders_sent_total: int
    reminders_skipped_total: Dict[str, int]
    schedules_closed_total: int
    sweep_errors_total: int
    vote_conflicts_total: int
    message_edits_total: int
    message_edits_coalesced_total: int
    message_edit_failures_total: Dict[str, int]
    notifications_failed_total: Dict[str, int]


class _SchedulingMetrics:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counters: Counter[str] = Counter()
        self._skipped: Counter[str] = Counter()
        self._edit_failures: Counter[str] = Counter()
        self._notification_failures: Counter[str] = Counter()

    async def incr(self, name: str, amount: int = 1) -> None:
        async with self._lock:
            self._counters[name] += amount

    async def record_reminder_skipped(self, reason: str) -> None:
        async with self._lock:
            self._skipped[reason] += 1

    async def record_edit_failure(self, reason: str) -> None:
        async with self._lock:
            self._edit_failures[reason] += 1

    async def record_notification_failure(self, kind: str) -> None:
        async with self._lock:
            self._notification_failures[kind] += 1

    async def snapshot(self) -> SchedulingMetricsSnapshot:
        async with self._lock:
            return SchedulingMetricsSnapshot(
                reminders_sent_total=self._counters["reminders_sent"],
                reminders_skipped_total=dict(self._skipped),
                schedules_closed_total=self._counters["schedules_closed"],
                sweep_errors_total=self._counters["sweep_errors"],
                vote_conflicts_total=self._counters["vote_conflicts"],
                message_edits_total=self._counters["message_edits"],
                message_edits_coalesced_total=self._counters["message_edits_coalesced"],
                message_edit_failures_total=dict(self._edit_failures),
                notifications_failed_total=dict(self._notification_failures),
            )

    async def reset(self) -> None:
        async with self._lock:
            self._counters.clear()
            self._skipped.clear()
            self._edit_failures.clear()
            self._notification_failures.clear()


_metrics = _SchedulingMetrics()


async def record_reminder_sent() -> None:
    await _metrics.incr("reminders_sent")


async def record_reminder_skipped(reason: str) -> None:
    await _metrics.record_reminder_skipped(reason)


async def record_schedule_closed() -> None:
    await _metrics.incr("schedules_closed")


async def record_sweep_error() -> None:
    await _metrics.incr("sweep_errors")


async def record_vote_conflict() -> None:
    await _metrics.incr("vote_conflicts")


async def record_message_edit() -> None:
    await _metrics.incr("message_edits")


async def record_message_edit_coalesced() -> None:
    await _metrics.incr("message_edits_coalesced")


async def record_message_edit_failure(reason: str) -> None:
    await _metrics.record_edit_failure(reason)


async def record_notification_failure(kind: str) -> None:
    await _metrics.record_notification_failure(kind)


async def get_scheduling_metrics_snapshot() -> SchedulingMetricsSnapshot:
    return await _metrics.snapshot()


async def reset_scheduling_metrics() -> None:
    await _metrics.reset()


__all__ = [
    "SchedulingMetricsSnapshot",
    "record_reminder_sent",
    "record_reminder_skipped",
    "record_schedule_closed",
    "record_sweep_error",
    "record_vote_conflict",
    "record_message_edit",
    "record_message_edit_coalesced",
    "record_message_edit_failure",
    "record_notification_failure",
    "get_scheduling_metrics_snapshot",
    "reset_scheduling_metrics",
]
