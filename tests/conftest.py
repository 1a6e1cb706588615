import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

try:
    from fakeredis import aioredis as fakeredis_aioredis
except Exception:  # pragma: no cover - optional dependency
    fakeredis_aioredis = None

TEST_ENV = {
    "ENVIRONMENT": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "DATA_DIR": tempfile.mkdtemp(prefix="schedbot-tests-"),
    "REDIS_URL": "",
    "UPDATE_BROKER": "memory",
    "CHAT_API_BASE": "",
    "CHAT_BOT_TOKEN": "",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value

from schedbot.apps.bot.chat_client import ChatTransportError
from schedbot.core.db import create_engine_for, init_models, make_session_factory
from schedbot.domain.entities import ScheduleSnapshot, SlotCandidate, UpdateUrgency
from schedbot.domain.repositories import SqlScheduleStorage


@pytest.fixture(scope="session", autouse=True)
def _set_test_env():
    """Force deterministic env for tests and reset cached settings."""

    for key, value in TEST_ENV.items():
        os.environ[key] = value

    from schedbot.core import settings as settings_module

    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _fresh_metrics(monkeypatch):
    from schedbot.apps.bot import metrics

    monkeypatch.setattr(metrics, "_metrics", metrics._SchedulingMetrics())


class FrozenClock:
    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChatClient:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Optional[str]]] = []
        self.edits: List[Tuple[str, str, str]] = []
        self.deleted: List[Tuple[str, str]] = []
        self.mentions: Dict[str, Optional[str]] = {"@everyone": "@everyone", "@here": "@here"}
        self.send_errors: List[Exception] = []
        self.edit_errors: List[Exception] = []
        self.delete_error: Optional[Exception] = None
        self._next_id = 1000

    async def send_message(self, channel_id: str, content: str, *, reply_to: Optional[str] = None) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self._next_id += 1
        self.sent.append({"channel_id": channel_id, "content": content, "reply_to": reply_to})
        return str(self._next_id)

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> None:
        if self.edit_errors:
            raise self.edit_errors.pop(0)
        self.edits.append((channel_id, message_id, content))

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append((channel_id, message_id))

    async def resolve_mention(self, token: str, guild_id: str) -> Optional[str]:
        if token in self.mentions:
            return self.mentions[token]
        kind, _, target = token.lstrip("@").partition(":")
        if kind == "user" and target.isdigit():
            return f"<@{target}>"
        return None


class RecordingUpdates:
    def __init__(self) -> None:
        self.requests: List[Tuple[str, UpdateUrgency]] = []
        self.fail = False

    async def request_for(self, schedule: ScheduleSnapshot, urgency: UpdateUrgency) -> str:
        if self.fail:
            raise ChatTransportError("queue unavailable")
        self.requests.append((schedule.id, urgency))
        return "scheduled"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def updates() -> RecordingUpdates:
    return RecordingUpdates()


@pytest_asyncio.fixture
async def engine():
    engine = create_engine_for("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def storage(engine) -> SqlScheduleStorage:
    return SqlScheduleStorage(make_session_factory(engine))


@pytest.fixture
def make_schedule(storage, clock):
    async def _make(**overrides) -> ScheduleSnapshot:
        schedule_id = str(uuid.uuid4())
        values = dict(
            id=schedule_id,
            guild_id="g1",
            channel_id="c1",
            title="Team dinner",
            slots=(
                SlotCandidate("s1", "Mon 19:00"),
                SlotCandidate("s2", "Tue 19:00"),
                SlotCandidate("s3", "Wed 19:00"),
            ),
            author_id="author",
            author_name="Author",
            message_id=f"msg-{schedule_id[:8]}",
            deadline=clock.now + timedelta(days=5),
            reminder_timings=("3d", "1d", "8h"),
        )
        values.update(overrides)
        return await storage.create_schedule(ScheduleSnapshot(**values))

    return _make


@pytest_asyncio.fixture
async def fake_redis():
    if fakeredis_aioredis is None:
        pytest.skip("fakeredis is not available")
    client = fakeredis_aioredis.FakeRedis()
    yield client
    await client.flushall()
