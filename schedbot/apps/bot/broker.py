"""Display-update task queue backed by Redis streams or an in-memory heap."""

from __future__ import annotations

import asyncio
import heapq
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError


__all__ = [
    "BrokerMessage",
    "UpdateBrokerProtocol",
    "RedisUpdateBroker",
    "InMemoryUpdateBroker",
]

_INT_FIELDS = {"attempt", "max_attempts"}
_FLOAT_FIELDS = {"not_before", "created_at", "requested_at"}


@dataclass
class BrokerMessage:
    """Envelope around one queued display-update task."""

    id: str
    payload: Dict[str, Any]

    def attempts(self) -> int:
        return int(self.payload.get("attempt", 0))

    def max_attempts(self) -> int:
        return int(self.payload.get("max_attempts", 0) or 0)

    def not_before(self) -> Optional[float]:
        value = self.payload.get("not_before")
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None


class UpdateBrokerProtocol:
    """Minimal queue interface required by the update worker."""

    async def start(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def publish(self, payload: Dict[str, Any], *, delay_seconds: float = 0.0) -> str:  # pragma: no cover
        raise NotImplementedError

    async def read(self, *, count: int, block_ms: int) -> List[BrokerMessage]:  # pragma: no cover
        raise NotImplementedError

    async def ack(self, message_id: str) -> None:  # pragma: no cover
        raise NotImplementedError

    async def requeue(self, message: BrokerMessage, *, delay_seconds: float) -> str:  # pragma: no cover
        raise NotImplementedError

    async def to_dlq(self, message: BrokerMessage, *, reason: str) -> None:  # pragma: no cover
        raise NotImplementedError

    async def claim_stale(self, *, min_idle_ms: int, count: int) -> List[BrokerMessage]:  # pragma: no cover
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover
        raise NotImplementedError


def _stamp(payload: Dict[str, Any], delay_seconds: float) -> Dict[str, Any]:
    event = dict(payload)
    now = time.time()
    event.setdefault("attempt", 0)
    event.setdefault("max_attempts", 3)
    event.setdefault("created_at", now)
    event["not_before"] = now + max(0.0, float(delay_seconds))
    return event


class RedisUpdateBroker(UpdateBrokerProtocol):
    """Redis streams broker with a consumer group; at-least-once delivery."""

    def __init__(
        self,
        redis: Redis,
        *,
        stream_key: str = "schedbot:updates",
        dlq_key: str = "schedbot:updates:dlq",
        group: str = "schedbot_update_workers",
        consumer_name: Optional[str] = None,
    ) -> None:
        self._redis = redis
        self._stream_key = stream_key
        self._dlq_key = dlq_key
        self._group = group
        self._consumer = consumer_name or f"consumer-{uuid.uuid4().hex}"
        self._closed = False

    async def start(self) -> None:
        try:
            await self._redis.xgroup_create(
                name=self._stream_key,
                groupname=self._group,
                id="0",
                mkstream=True,
            )
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def publish(self, payload: Dict[str, Any], *, delay_seconds: float = 0.0) -> str:
        event = _stamp(payload, delay_seconds)
        message_id = await self._redis.xadd(self._stream_key, self._encode(event))
        return self._decode_value(message_id)

    async def read(self, *, count: int, block_ms: int) -> List[BrokerMessage]:
        if self._closed:
            return []
        response = await self._redis.xreadgroup(
            groupname=self._group,
            consumername=self._consumer,
            streams={self._stream_key: ">"},
            count=count,
            block=block_ms or None,
        )
        if not response:
            return []
        messages: List[BrokerMessage] = []
        for _stream, entries in response:
            for message_id, fields in entries:
                messages.append(
                    BrokerMessage(id=self._decode_value(message_id), payload=self._decode(fields))
                )
        return messages

    async def ack(self, message_id: str) -> None:
        if not message_id:
            return
        await self._redis.xack(self._stream_key, self._group, message_id)
        await self._redis.xdel(self._stream_key, message_id)

    async def requeue(self, message: BrokerMessage, *, delay_seconds: float) -> str:
        message_id = await self.publish(message.payload, delay_seconds=delay_seconds)
        await self.ack(message.id)
        return message_id

    async def to_dlq(self, message: BrokerMessage, *, reason: str) -> None:
        payload = dict(message.payload)
        payload["dlq_reason"] = reason
        payload["failed_at"] = time.time()
        await self._redis.xadd(self._dlq_key, self._encode(payload))
        await self.ack(message.id)

    async def claim_stale(self, *, min_idle_ms: int, count: int) -> List[BrokerMessage]:
        """Take over entries another consumer read but never acknowledged."""

        if self._closed:
            return []
        try:
            next_id = "0-0"
            reclaimed: List[BrokerMessage] = []
            while len(reclaimed) < count:
                # redis-py returns [next_id, entries] or [next_id, entries, deleted_ids]
                result = await self._redis.xautoclaim(
                    self._stream_key,
                    self._group,
                    self._consumer,
                    min_idle_time=min_idle_ms,
                    start_id=next_id,
                    count=count - len(reclaimed),
                )
                next_id, entries = self._decode_value(result[0]), result[1]
                for message_id, fields in entries:
                    if not fields:
                        continue
                    reclaimed.append(
                        BrokerMessage(id=self._decode_value(message_id), payload=self._decode(fields))
                    )
                if not entries or next_id == "0-0":
                    break
            return reclaimed
        except ResponseError:
            return []

    async def close(self) -> None:
        self._closed = True
        try:
            await self._redis.aclose()
        except RedisError:
            pass

    def _encode(self, payload: Dict[str, Any]) -> Dict[str, str]:
        encoded: Dict[str, str] = {}
        for key, value in payload.items():
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                encoded[key] = json.dumps(value)
            elif isinstance(value, float):
                encoded[key] = f"{value:.6f}"
            else:
                encoded[key] = str(value)
        return encoded

    def _decode(self, fields: Dict[bytes, bytes]) -> Dict[str, Any]:
        decoded: Dict[str, Any] = {}
        for key_b, value_b in fields.items():
            key = self._decode_value(key_b)
            value_raw = self._decode_value(value_b)
            if key in _INT_FIELDS:
                try:
                    decoded[key] = int(value_raw)
                except (TypeError, ValueError):
                    decoded[key] = 0
            elif key in _FLOAT_FIELDS:
                try:
                    decoded[key] = float(value_raw)
                except (TypeError, ValueError):
                    decoded[key] = None
            else:
                decoded[key] = value_raw
        return decoded

    @staticmethod
    def _decode_value(value: Any) -> str:
        if isinstance(value, (bytes, bytearray)):
            return value.decode()
        return str(value)


class InMemoryUpdateBroker(UpdateBrokerProtocol):
    """Single-process broker for development and tests."""

    def __init__(self) -> None:
        self._queue: List[Tuple[float, int, BrokerMessage]] = []
        self._pending: Dict[str, Tuple[BrokerMessage, float]] = {}
        self._dlq: List[BrokerMessage] = []
        self._cond = asyncio.Condition()
        self._counter = 0
        self._closed = False

    async def start(self) -> None:
        return None

    async def publish(self, payload: Dict[str, Any], *, delay_seconds: float = 0.0) -> str:
        if self._closed:
            raise RuntimeError("Broker is closed")
        message = BrokerMessage(id=f"inmem-{uuid.uuid4().hex}", payload=_stamp(payload, delay_seconds))
        async with self._cond:
            self._counter += 1
            heapq.heappush(self._queue, (message.payload["not_before"], self._counter, message))
            self._cond.notify_all()
        return message.id

    async def read(self, *, count: int, block_ms: int) -> List[BrokerMessage]:
        """Return due messages, waiting up to ``block_ms`` for one to become due."""

        deadline = time.time() + block_ms / 1000.0
        messages: List[BrokerMessage] = []
        async with self._cond:
            while not self._closed:
                now = time.time()
                while self._queue and self._queue[0][0] <= now and len(messages) < count:
                    _, _, message = heapq.heappop(self._queue)
                    self._pending[message.id] = (message, now)
                    messages.append(message)
                if messages or now >= deadline:
                    break
                wait_for = deadline - now
                if self._queue:
                    wait_for = min(wait_for, max(0.0, self._queue[0][0] - now))
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait_for)
                except asyncio.TimeoutError:
                    pass
        return messages

    async def ack(self, message_id: str) -> None:
        async with self._cond:
            self._pending.pop(message_id, None)

    async def requeue(self, message: BrokerMessage, *, delay_seconds: float) -> str:
        async with self._cond:
            self._pending.pop(message.id, None)
        return await self.publish(message.payload, delay_seconds=delay_seconds)

    async def to_dlq(self, message: BrokerMessage, *, reason: str) -> None:
        async with self._cond:
            self._pending.pop(message.id, None)
            payload = dict(message.payload)
            payload["dlq_reason"] = reason
            payload["failed_at"] = time.time()
            self._dlq.append(BrokerMessage(id=message.id, payload=payload))

    async def claim_stale(self, *, min_idle_ms: int, count: int) -> List[BrokerMessage]:
        cutoff = time.time() - min_idle_ms / 1000.0
        async with self._cond:
            reclaimed: List[BrokerMessage] = []
            for message_id, (message, delivered_at) in list(self._pending.items()):
                if len(reclaimed) >= count:
                    break
                if delivered_at <= cutoff:
                    self._pending[message_id] = (message, time.time())
                    reclaimed.append(message)
        return reclaimed

    async def close(self) -> None:
        self._closed = True
        async with self._cond:
            self._queue.clear()
            self._pending.clear()
            self._cond.notify_all()

    def pending(self) -> int:
        return len(self._pending)

    def queued(self) -> int:
        return len(self._queue)

    def dlq_messages(self) -> Iterable[BrokerMessage]:
        return list(self._dlq)
