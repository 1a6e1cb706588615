"""Debounced display-message edits.

A request for a (schedule, message) key is turned into a queued task. While a
normal task for a key is pending, further normal requests for the same key are
absorbed by it. An immediate request replaces the pending marker so the older
normal task is dropped when it comes due, and the immediate one runs right away.
A marker that merely expired drops nothing. Every executed task renders the
summary as it is stored at execution time.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import SchedulerAlreadyRunningError
from apscheduler.jobstores.base import JobLookupError
from redis.asyncio import Redis
from redis.exceptions import WatchError

from schedbot.apps.bot.broker import BrokerMessage, UpdateBrokerProtocol
from schedbot.apps.bot.chat_client import ChatClient, ChatTransportError
from schedbot.apps.bot.messages import display_message_for
from schedbot.apps.bot.metrics import (
    record_message_edit,
    record_message_edit_coalesced,
    record_message_edit_failure,
)
from schedbot.domain.entities import ScheduleSnapshot, UpdateUrgency
from schedbot.domain.repositories import ScheduleStorage
from schedbot.domain.summary import summarize

logger = logging.getLogger(__name__)

RequestOutcome = Literal["scheduled", "coalesced", "skipped", "failed"]


@dataclass(frozen=True)
class UpdateKey:
    schedule_id: str
    guild_id: str
    channel_id: str
    message_id: str

    @property
    def value(self) -> str:
        return f"{self.schedule_id}:{self.message_id}"

    @classmethod
    def for_schedule(cls, schedule: ScheduleSnapshot) -> Optional["UpdateKey"]:
        if not schedule.message_id:
            return None
        return cls(
            schedule_id=schedule.id,
            guild_id=schedule.guild_id,
            channel_id=schedule.channel_id,
            message_id=schedule.message_id,
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["UpdateKey"]:
        try:
            return cls(
                schedule_id=str(payload["schedule_id"]),
                guild_id=str(payload["guild_id"]),
                channel_id=str(payload["channel_id"]),
                message_id=str(payload["message_id"]),
            )
        except KeyError:
            return None


class PendingUpdateStore(Protocol):
    async def claim(self, key: str, token: str, ttl: float) -> bool: ...

    async def replace(self, key: str, token: str, ttl: float) -> None: ...

    async def current(self, key: str) -> Optional[str]: ...

    async def superseded(self, key: str, token: str) -> bool: ...

    async def release(self, key: str, token: str) -> bool: ...

    async def note_edit(self, key: str, at: float, window: float) -> None: ...

    async def edits_since(self, key: str, since: float) -> List[float]: ...


class InMemoryPendingUpdateStore:
    def __init__(self) -> None:
        self._markers: Dict[str, Tuple[str, float]] = {}
        self._replaced: Dict[Tuple[str, str], float] = {}
        self._edits: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        marker = self._markers.get(key)
        if marker is None:
            return None
        token, expires_at = marker
        if expires_at <= time.monotonic():
            self._markers.pop(key, None)
            return None
        return token

    async def claim(self, key: str, token: str, ttl: float) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._markers[key] = (token, time.monotonic() + ttl)
            return True

    async def replace(self, key: str, token: str, ttl: float) -> None:
        async with self._lock:
            now = time.monotonic()
            previous = self._live(key)
            if previous is not None and previous != token:
                self._replaced[(key, previous)] = now + ttl
            self._replaced = {item: until for item, until in self._replaced.items() if until > now}
            self._markers[key] = (token, now + ttl)

    async def current(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def superseded(self, key: str, token: str) -> bool:
        async with self._lock:
            return self._replaced.get((key, token), 0.0) > time.monotonic()

    async def release(self, key: str, token: str) -> bool:
        async with self._lock:
            if self._live(key) != token:
                return False
            self._markers.pop(key, None)
            return True

    async def note_edit(self, key: str, at: float, window: float) -> None:
        async with self._lock:
            history = [ts for ts in self._edits.get(key, []) if ts > at - window]
            history.append(at)
            self._edits[key] = history

    async def edits_since(self, key: str, since: float) -> List[float]:
        async with self._lock:
            return [ts for ts in self._edits.get(key, []) if ts > since]


class RedisPendingUpdateStore:
    """Markers as ``SET NX PX`` keys, edit history as a sorted set per key."""

    def __init__(self, redis: Redis, *, prefix: str = "schedbot:updates") -> None:
        self._redis = redis
        self._prefix = prefix

    def _marker(self, key: str) -> str:
        return f"{self._prefix}:pending:{key}"

    def _history(self, key: str) -> str:
        return f"{self._prefix}:edits:{key}"

    async def claim(self, key: str, token: str, ttl: float) -> bool:
        created = await self._redis.set(self._marker(key), token, nx=True, px=max(1, int(ttl * 1000)))
        return bool(created)

    def _replaced(self, key: str, token: str) -> str:
        return f"{self._prefix}:replaced:{key}:{token}"

    async def replace(self, key: str, token: str, ttl: float) -> None:
        px = max(1, int(ttl * 1000))
        previous = await self._redis.set(self._marker(key), token, px=px, get=True)
        if previous is None:
            return
        previous = previous.decode() if isinstance(previous, (bytes, bytearray)) else str(previous)
        if previous != token:
            await self._redis.set(self._replaced(key, previous), "1", px=px)

    async def current(self, key: str) -> Optional[str]:
        value = await self._redis.get(self._marker(key))
        if value is None:
            return None
        return value.decode() if isinstance(value, (bytes, bytearray)) else str(value)

    async def superseded(self, key: str, token: str) -> bool:
        return bool(await self._redis.exists(self._replaced(key, token)))

    async def release(self, key: str, token: str) -> bool:
        name = self._marker(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(name)
                value = await pipe.get(name)
                if value is None:
                    return False
                stored = value.decode() if isinstance(value, (bytes, bytearray)) else str(value)
                if stored != token:
                    return False
                pipe.multi()
                pipe.delete(name)
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def note_edit(self, key: str, at: float, window: float) -> None:
        name = self._history(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(name, {f"{at:.6f}": at})
            pipe.zremrangebyscore(name, "-inf", at - window)
            pipe.expire(name, max(1, int(window) + 1))
            await pipe.execute()

    async def edits_since(self, key: str, since: float) -> List[float]:
        entries = await self._redis.zrangebyscore(self._history(key), f"({since}", "+inf", withscores=True)
        return [float(score) for _member, score in entries]


class MessageUpdateCoalescer:
    """Accepts display-refresh requests and queues at most one pending edit per key."""

    def __init__(
        self,
        broker: UpdateBrokerProtocol,
        store: PendingUpdateStore,
        *,
        debounce_seconds: float = 2.0,
        max_attempts: int = 3,
        marker_ttl: Optional[float] = None,
    ) -> None:
        self._broker = broker
        self._store = store
        self._debounce = max(0.0, debounce_seconds)
        self._max_attempts = max(1, max_attempts)
        self._marker_ttl = marker_ttl or max(60.0, self._debounce * 10)

    async def request_update(
        self, key: UpdateKey, urgency: UpdateUrgency = UpdateUrgency.NORMAL
    ) -> RequestOutcome:
        token = uuid.uuid4().hex
        if urgency is UpdateUrgency.IMMEDIATE:
            await self._store.replace(key.value, token, self._marker_ttl)
            delay = 0.0
        else:
            if not await self._store.claim(key.value, token, self._marker_ttl):
                await record_message_edit_coalesced()
                logger.debug("update.request.coalesced", extra={"key": key.value})
                return "coalesced"
            delay = self._debounce

        payload = {
            "schedule_id": key.schedule_id,
            "guild_id": key.guild_id,
            "channel_id": key.channel_id,
            "message_id": key.message_id,
            "urgency": urgency.value,
            "token": token,
            "attempt": 0,
            "max_attempts": self._max_attempts,
            "requested_at": time.time(),
        }
        try:
            await self._broker.publish(payload, delay_seconds=delay)
        except Exception:
            await self._store.release(key.value, token)
            logger.exception(
                "update.request.enqueue_failed",
                extra={"key": key.value, "urgency": urgency.value},
            )
            return "failed"

        logger.info(
            "update.request.scheduled",
            extra={"key": key.value, "urgency": urgency.value, "delay": delay},
        )
        return "scheduled"

    async def request_for(
        self, schedule: ScheduleSnapshot, urgency: UpdateUrgency = UpdateUrgency.NORMAL
    ) -> RequestOutcome:
        key = UpdateKey.for_schedule(schedule)
        if key is None:
            return "skipped"
        return await self.request_update(key, urgency)


class MessageUpdateWorker:
    """Consumes queued update tasks and edits the display message."""

    def __init__(
        self,
        broker: UpdateBrokerProtocol,
        store: PendingUpdateStore,
        storage: ScheduleStorage,
        chat: ChatClient,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        poll_interval: float = 1.0,
        claim_idle_seconds: float = 60.0,
        batch_size: int = 50,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        min_interval: float = 1.0,
        window_seconds: float = 10.0,
        window_limit: int = 3,
    ) -> None:
        self._broker = broker
        self._store = store
        self._storage = storage
        self._chat = chat
        self._scheduler = scheduler
        self._poll_interval = max(poll_interval, 0.1)
        self._claim_idle_ms = int(max(0.0, claim_idle_seconds) * 1000)
        self._batch_size = max(1, batch_size)
        self._retry_base = max(0.0, retry_base_delay)
        self._retry_max = max(self._retry_base, retry_max_delay)
        self._min_interval = max(0.0, min_interval)
        self._window = max(0.0, window_seconds)
        self._window_limit = max(1, window_limit)
        self._job_id = "updates:message_worker"
        self._lock = asyncio.Lock()

    def start(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self.drain,
            "interval",
            seconds=self._poll_interval,
            id=self._job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=max(int(self._poll_interval * 2), 1),
            next_run_time=datetime.now(timezone.utc),
        )
        if not self._scheduler.running:
            try:
                self._scheduler.start()
            except SchedulerAlreadyRunningError:
                pass

    async def shutdown(self) -> None:
        if self._scheduler is not None:
            try:
                self._scheduler.remove_job(self._job_id)
            except JobLookupError:
                pass
        await self._broker.close()

    async def drain(self) -> int:
        """Process the tasks that are due right now; returns how many were handled.

        Tasks that are not due yet, or are throttled, go back to the queue with
        their remaining delay and do not count. A pass that only put tasks back
        ends the drain, since the Redis stream hands delayed entries out again
        straight away. An empty read reclaims entries another consumer took but
        never acknowledged.
        """

        processed = 0
        async with self._lock:
            messages = await self._broker.read(count=self._batch_size, block_ms=0)
            if not messages:
                messages = await self._broker.claim_stale(
                    min_idle_ms=self._claim_idle_ms, count=self._batch_size
                )
                if messages:
                    logger.info("update.worker.reclaimed", extra={"count": len(messages)})
            while messages:
                handled = 0
                for message in messages:
                    try:
                        if await self._process(message):
                            handled += 1
                    except Exception:
                        logger.exception("update.worker.process_failed", extra={"message_id": message.id})
                        await self._broker.ack(message.id)
                        handled += 1
                processed += handled
                if not handled:
                    break
                messages = await self._broker.read(count=self._batch_size, block_ms=0)
        return processed

    async def _process(self, message: BrokerMessage) -> bool:
        """Handle one task; ``False`` when it was put back to wait."""

        now = time.time()
        not_before = message.not_before()
        if not_before is not None and not_before > now:
            await self._broker.requeue(message, delay_seconds=not_before - now)
            return False

        key = UpdateKey.from_payload(message.payload)
        if key is None:
            logger.warning("update.worker.bad_payload", extra={"message_id": message.id})
            await self._broker.ack(message.id)
            return True

        token = str(message.payload.get("token", ""))
        urgency = message.payload.get("urgency", UpdateUrgency.NORMAL.value)
        attempt = message.attempts()

        if attempt == 0 and urgency == UpdateUrgency.NORMAL.value:
            if await self._is_superseded(key.value, token):
                await record_message_edit_coalesced()
                logger.info("update.worker.superseded", extra={"key": key.value})
                await self._broker.ack(message.id)
                return True

        wait = await self._throttle_delay(key.value, now)
        if wait > 0:
            logger.info("update.worker.throttled", extra={"key": key.value, "wait": round(wait, 3)})
            await self._broker.requeue(message, delay_seconds=wait)
            return False

        if attempt == 0:
            # later requests for this key now schedule a fresh edit
            await self._store.release(key.value, token)

        try:
            edited = await self._edit(key)
        except Exception as exc:
            await self._handle_failure(message, key, exc)
            return True

        await self._broker.ack(message.id)
        if edited:
            await self._store.note_edit(key.value, time.time(), self._window)
            await record_message_edit()
            logger.info(
                "update.worker.edited",
                extra={"key": key.value, "urgency": urgency, "attempt": attempt + 1},
            )
        return True

    async def _is_superseded(self, key: str, token: str) -> bool:
        # an expired marker does not supersede anything
        current = await self._store.current(key)
        if current is not None and current != token:
            return True
        return await self._store.superseded(key, token)

    async def _edit(self, key: UpdateKey) -> bool:
        schedule = await self._storage.get_schedule(key.schedule_id, key.guild_id)
        if schedule is None:
            logger.info("update.worker.schedule_missing", extra={"key": key.value})
            return False
        responses = await self._storage.list_responses(schedule.id, schedule.guild_id)
        content = display_message_for(summarize(schedule, responses)).render()
        await self._chat.edit_message(key.channel_id, key.message_id, content)
        return True

    async def _handle_failure(self, message: BrokerMessage, key: UpdateKey, exc: Exception) -> None:
        attempt = message.attempts() + 1
        max_attempts = message.max_attempts() or 1
        retryable = not isinstance(exc, ChatTransportError) or exc.retryable
        reason = exc.__class__.__name__
        await record_message_edit_failure(reason)

        if attempt >= max_attempts or not retryable:
            logger.error(
                "update.worker.gave_up",
                extra={"key": key.value, "attempts": attempt, "error": str(exc) or reason},
            )
            await self._broker.to_dlq(message, reason=str(exc) or reason)
            return

        retry_after = getattr(exc, "retry_after", None)
        delay = self._apply_jitter(self._compute_retry_delay(attempt))
        if retry_after:
            delay = max(delay, float(retry_after))
        logger.warning(
            "update.worker.retry",
            extra={"key": key.value, "attempt": attempt, "delay": round(delay, 3), "error": reason},
        )
        retried = BrokerMessage(id=message.id, payload={**message.payload, "attempt": attempt})
        await self._broker.requeue(retried, delay_seconds=delay)

    async def _throttle_delay(self, key: str, now: float) -> float:
        if self._min_interval <= 0 and self._window <= 0:
            return 0.0
        history = sorted(await self._store.edits_since(key, now - max(self._window, self._min_interval)))
        if not history:
            return 0.0
        wait = 0.0
        since_last = now - history[-1]
        if since_last < self._min_interval:
            wait = self._min_interval - since_last
        in_window = [ts for ts in history if ts > now - self._window]
        if self._window > 0 and len(in_window) >= self._window_limit:
            oldest = in_window[-self._window_limit]
            wait = max(wait, oldest + self._window - now)
        return max(0.0, wait)

    def _compute_retry_delay(self, attempt: int) -> float:
        base = self._retry_base * (2 ** max(0, attempt - 1))
        return float(min(self._retry_max, base))

    def _apply_jitter(self, delay: float) -> float:
        return max(0.0, delay * random.uniform(0.85, 1.15))


__all__ = [
    "UpdateKey",
    "PendingUpdateStore",
    "InMemoryPendingUpdateStore",
    "RedisPendingUpdateStore",
    "MessageUpdateCoalescer",
    "MessageUpdateWorker",
]
