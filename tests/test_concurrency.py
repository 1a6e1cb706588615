import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from schedbot.apps.bot.metrics import get_scheduling_metrics_snapshot
from schedbot.apps.bot.notifications import NotificationDispatcher
from schedbot.apps.bot.reminders import ReminderSweep
from schedbot.apps.bot.votes import VoteCoordinator
from schedbot.core.db import create_engine_for, init_models, make_session_factory
from schedbot.core.result import ConflictError
from schedbot.domain.entities import ResponseSnapshot
from schedbot.domain.repositories import SqlScheduleStorage
from schedbot.domain.schedule_service import ScheduleService


@pytest_asyncio.fixture
async def storage(tmp_path):
    # a file database gives every session its own connection and transaction
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'schedbot.db'}")
    await init_models(engine)
    yield SqlScheduleStorage(make_session_factory(engine))
    await engine.dispose()


class Rendezvous:
    """Holds callers until ``parties`` of them have arrived."""

    def __init__(self, parties: int = 2) -> None:
        self._parties = parties
        self._arrived = 0
        self._ready = asyncio.Event()

    async def wait(self) -> None:
        self._arrived += 1
        if self._arrived >= self._parties:
            self._ready.set()
        await asyncio.wait_for(self._ready.wait(), timeout=5)


class PausingStorage:
    """Real storage that stops after selected reads until every caller has read."""

    def __init__(self, inner, rendezvous):
        self._inner = inner
        self._rendezvous = rendezvous

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def list_open_with_deadline_between(self, start, end, *, limit, after=None):
        batch = await self._inner.list_open_with_deadline_between(start, end, limit=limit, after=after)
        if after is None:
            await self._rendezvous.wait()
        return batch

    async def get_response(self, schedule_id, guild_id, user_id):
        current = await self._inner.get_response(schedule_id, guild_id, user_id)
        await self._rendezvous.wait()
        return current


def _build_sweep(backend, chat, clock, updates):
    dispatcher = NotificationDispatcher(chat, clock=clock)
    schedules = ScheduleService(backend, updates=updates, notifier=dispatcher, messages=chat, clock=clock)
    return ReminderSweep(backend, schedules, dispatcher, clock=clock)


def _vote(schedule, user_id, **statuses):
    return {
        "schedule_id": schedule.id,
        "guild_id": schedule.guild_id,
        "user_id": user_id,
        "display_name": user_id.title(),
        "statuses": statuses,
    }


@pytest.mark.asyncio
async def test_overlapping_sweeps_send_a_reminder_once(storage, make_schedule, chat, clock, updates):
    schedule = await make_schedule(reminder_timings=("1d",))
    clock.now = schedule.deadline - timedelta(days=1)
    rendezvous = Rendezvous()

    reports = await asyncio.gather(
        _build_sweep(PausingStorage(storage, rendezvous), chat, clock, updates).run(),
        _build_sweep(PausingStorage(storage, rendezvous), chat, clock, updates).run(),
    )

    assert sum(report.checked for report in reports) == 2
    assert sum(report.reminded for report in reports) == 1
    assert sum(report.skipped for report in reports) == 1
    assert len(chat.sent) == 1
    stored = await storage.get_schedule(schedule.id, "g1")
    assert stored.reminders_sent == ("1d",)
    snapshot = await get_scheduling_metrics_snapshot()
    assert snapshot.reminders_sent_total == 1


@pytest.mark.asyncio
async def test_concurrent_votes_from_one_user_conflict(storage, make_schedule, updates):
    schedule = await make_schedule()
    await storage.save_response(
        ResponseSnapshot(schedule_id=schedule.id, guild_id="g1", user_id="alice", display_name="Alice")
    )
    rendezvous = Rendezvous()
    first = VoteCoordinator(PausingStorage(storage, rendezvous), updates=updates, conflict_retries=0)
    second = VoteCoordinator(PausingStorage(storage, rendezvous), updates=updates, conflict_retries=0)

    results = await asyncio.gather(
        first.submit(_vote(schedule, "alice", s1="ok")),
        second.submit(_vote(schedule, "alice", s2="ng")),
    )

    succeeded = [result for result in results if result.is_success()]
    failed = [result for result in results if not result.is_success()]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert isinstance(failed[0].error, ConflictError)
    stored = await storage.get_response(schedule.id, "g1", "alice")
    assert stored.version == 2
    assert stored.statuses == succeeded[0].unwrap().statuses
    snapshot = await get_scheduling_metrics_snapshot()
    assert snapshot.vote_conflicts_total == 1


@pytest.mark.asyncio
async def test_concurrent_votes_from_one_user_retry_on_fresh_data(storage, make_schedule, updates):
    schedule = await make_schedule()
    await storage.save_response(
        ResponseSnapshot(schedule_id=schedule.id, guild_id="g1", user_id="alice", display_name="Alice")
    )
    rendezvous = Rendezvous()
    first = VoteCoordinator(PausingStorage(storage, rendezvous), updates=updates, conflict_retries=1)
    second = VoteCoordinator(PausingStorage(storage, rendezvous), updates=updates, conflict_retries=1)

    results = await asyncio.gather(
        first.submit(_vote(schedule, "alice", s1="ok")),
        second.submit(_vote(schedule, "alice", s2="ng")),
    )

    assert all(result.is_success() for result in results)
    stored = await storage.get_response(schedule.id, "g1", "alice")
    assert stored.version == 3
    assert set(stored.statuses) == {"s1", "s2"}


@pytest.mark.asyncio
async def test_concurrent_votes_from_different_users_both_count(storage, make_schedule, updates):
    schedule = await make_schedule()
    rendezvous = Rendezvous()
    first = VoteCoordinator(PausingStorage(storage, rendezvous), updates=updates, conflict_retries=0)
    second = VoteCoordinator(PausingStorage(storage, rendezvous), updates=updates, conflict_retries=0)

    results = await asyncio.gather(
        first.submit(_vote(schedule, "alice", s1="ok")),
        second.submit(_vote(schedule, "bob", s1="maybe")),
    )

    assert all(result.is_success() for result in results)
    stored = await storage.get_schedule(schedule.id, "g1")
    assert stored.total_responses == 2
    assert len(await storage.list_responses(schedule.id, "g1")) == 2
