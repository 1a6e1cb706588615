"""Tenant-scoped schedule storage with version-checked writes."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schedbot.domain.entities import (
    ResponseSnapshot,
    ResponseStatus,
    ScheduleSnapshot,
    ScheduleStatus,
    SlotCandidate,
)
from schedbot.domain.errors import StaleWriteError
from schedbot.domain.models import Schedule, ScheduleResponse

logger = logging.getLogger(__name__)

SweepCursor = Tuple[datetime, str]


class ScheduleStorage(Protocol):
    """Storage capability consumed by the lifecycle, vote and sweep services."""

    async def get_schedule(self, schedule_id: str, guild_id: str) -> Optional[ScheduleSnapshot]: ...

    async def find_by_message(self, guild_id: str, message_id: str) -> Optional[ScheduleSnapshot]: ...

    async def list_by_channel(
        self, guild_id: str, channel_id: str, *, include_closed: bool = False, limit: int = 25
    ) -> List[ScheduleSnapshot]: ...

    async def create_schedule(self, schedule: ScheduleSnapshot) -> ScheduleSnapshot: ...

    async def save_schedule(self, schedule: ScheduleSnapshot) -> ScheduleSnapshot: ...

    async def delete_schedule(self, schedule_id: str, guild_id: str) -> bool: ...

    async def get_response(
        self, schedule_id: str, guild_id: str, user_id: str
    ) -> Optional[ResponseSnapshot]: ...

    async def save_response(self, response: ResponseSnapshot) -> ResponseSnapshot: ...

    async def list_responses(self, schedule_id: str, guild_id: str) -> List[ResponseSnapshot]: ...

    async def delete_responses(self, schedule_id: str, guild_id: str) -> int: ...

    async def prune_slot(self, schedule_id: str, guild_id: str, slot_id: str) -> int: ...

    async def increment_response_count(self, schedule_id: str, guild_id: str) -> None: ...

    async def list_open_with_deadline_between(
        self,
        start: datetime,
        end: datetime,
        *,
        limit: int,
        after: Optional[SweepCursor] = None,
    ) -> List[ScheduleSnapshot]: ...


def _ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_schedule(row: Schedule) -> ScheduleSnapshot:
    return ScheduleSnapshot(
        id=row.id,
        guild_id=row.guild_id,
        channel_id=row.channel_id,
        message_id=row.message_id,
        title=row.title,
        description=row.description,
        slots=tuple(SlotCandidate(id=item["id"], label=item["label"]) for item in row.slots or []),
        deadline=_ensure_aware(row.deadline),
        status=ScheduleStatus(row.status),
        reminder_timings=tuple(row.reminder_timings or ()),
        reminder_mentions=tuple(row.reminder_mentions or ()),
        reminders_sent=tuple(row.reminders_sent or ()),
        author_id=row.author_id,
        author_name=row.author_name,
        total_responses=row.total_responses,
        version=row.version,
        created_at=_ensure_aware(row.created_at),
        updated_at=_ensure_aware(row.updated_at),
    )


def _to_response(row: ScheduleResponse) -> ResponseSnapshot:
    statuses: Dict[str, ResponseStatus] = {}
    for slot_id, value in (row.statuses or {}).items():
        try:
            statuses[slot_id] = ResponseStatus(value)
        except ValueError:
            logger.warning(
                "storage.response.unknown_status",
                extra={"schedule_id": row.schedule_id, "user_id": row.user_id, "status": value},
            )
    return ResponseSnapshot(
        schedule_id=row.schedule_id,
        guild_id=row.guild_id,
        user_id=row.user_id,
        display_name=row.display_name,
        statuses=statuses,
        comment=row.comment,
        updated_at=_ensure_aware(row.updated_at),
        version=row.version,
    )


def _schedule_values(schedule: ScheduleSnapshot) -> Dict[str, object]:
    return {
        "channel_id": schedule.channel_id,
        "message_id": schedule.message_id,
        "title": schedule.title,
        "description": schedule.description,
        "slots": [{"id": slot.id, "label": slot.label} for slot in schedule.slots],
        "deadline": _ensure_aware(schedule.deadline),
        "status": schedule.status.value,
        "reminder_timings": list(schedule.reminder_timings),
        "reminder_mentions": list(schedule.reminder_mentions),
        "reminders_sent": list(schedule.reminders_sent),
        "author_id": schedule.author_id,
        "author_name": schedule.author_name,
    }


def _statuses_payload(response: ResponseSnapshot) -> Dict[str, str]:
    return {slot_id: ResponseStatus(status).value for slot_id, status in response.statuses.items()}


class SqlScheduleStorage:
    """SQLAlchemy implementation of :class:`ScheduleStorage`.

    Every write runs in its own transaction. ``save_schedule`` and
    ``save_response`` only succeed when the stored version still equals the
    version of the snapshot being written; otherwise :class:`StaleWriteError`
    is raised and nothing changes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    async def get_schedule(self, schedule_id: str, guild_id: str) -> Optional[ScheduleSnapshot]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(Schedule).where(Schedule.id == schedule_id, Schedule.guild_id == guild_id)
            )
            return _to_schedule(row) if row is not None else None

    async def find_by_message(self, guild_id: str, message_id: str) -> Optional[ScheduleSnapshot]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(Schedule).where(Schedule.guild_id == guild_id, Schedule.message_id == message_id)
            )
            return _to_schedule(row) if row is not None else None

    async def list_by_channel(
        self, guild_id: str, channel_id: str, *, include_closed: bool = False, limit: int = 25
    ) -> List[ScheduleSnapshot]:
        stmt = select(Schedule).where(Schedule.guild_id == guild_id, Schedule.channel_id == channel_id)
        if not include_closed:
            stmt = stmt.where(Schedule.status == ScheduleStatus.OPEN.value)
        stmt = stmt.order_by(Schedule.created_at.desc(), Schedule.id).limit(max(1, limit))
        async with self._session_factory() as session:
            rows = await session.scalars(stmt)
            return [_to_schedule(row) for row in rows]

    async def create_schedule(self, schedule: ScheduleSnapshot) -> ScheduleSnapshot:
        now = datetime.now(timezone.utc)
        async with self._transaction() as session:
            row = Schedule(
                id=schedule.id,
                guild_id=schedule.guild_id,
                total_responses=0,
                version=1,
                created_at=now,
                updated_at=now,
                **_schedule_values(schedule),
            )
            session.add(row)
            await session.flush()
            return _to_schedule(row)

    async def save_schedule(self, schedule: ScheduleSnapshot) -> ScheduleSnapshot:
        now = datetime.now(timezone.utc)
        async with self._transaction() as session:
            result = await session.execute(
                update(Schedule)
                .where(
                    Schedule.id == schedule.id,
                    Schedule.guild_id == schedule.guild_id,
                    Schedule.version == schedule.version,
                )
                .values(
                    version=Schedule.version + 1,
                    updated_at=now,
                    **_schedule_values(schedule),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleWriteError("Schedule", schedule.id)
            row = await session.scalar(select(Schedule).where(Schedule.id == schedule.id))
            return _to_schedule(row)

    async def delete_schedule(self, schedule_id: str, guild_id: str) -> bool:
        async with self._transaction() as session:
            await session.execute(
                delete(ScheduleResponse).where(
                    ScheduleResponse.schedule_id == schedule_id,
                    ScheduleResponse.guild_id == guild_id,
                )
            )
            result = await session.execute(
                delete(Schedule).where(Schedule.id == schedule_id, Schedule.guild_id == guild_id)
            )
            return result.rowcount > 0

    async def get_response(
        self, schedule_id: str, guild_id: str, user_id: str
    ) -> Optional[ResponseSnapshot]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(ScheduleResponse).where(
                    ScheduleResponse.schedule_id == schedule_id,
                    ScheduleResponse.guild_id == guild_id,
                    ScheduleResponse.user_id == user_id,
                )
            )
            return _to_response(row) if row is not None else None

    async def save_response(self, response: ResponseSnapshot) -> ResponseSnapshot:
        now = datetime.now(timezone.utc)
        if response.is_new:
            try:
                async with self._transaction() as session:
                    row = ScheduleResponse(
                        schedule_id=response.schedule_id,
                        guild_id=response.guild_id,
                        user_id=response.user_id,
                        display_name=response.display_name,
                        statuses=_statuses_payload(response),
                        comment=response.comment,
                        version=1,
                        updated_at=now,
                    )
                    session.add(row)
                    await session.flush()
                    return _to_response(row)
            except IntegrityError as exc:
                raise StaleWriteError("Response", f"{response.schedule_id}:{response.user_id}") from exc

        async with self._transaction() as session:
            result = await session.execute(
                update(ScheduleResponse)
                .where(
                    ScheduleResponse.schedule_id == response.schedule_id,
                    ScheduleResponse.guild_id == response.guild_id,
                    ScheduleResponse.user_id == response.user_id,
                    ScheduleResponse.version == response.version,
                )
                .values(
                    display_name=response.display_name,
                    statuses=_statuses_payload(response),
                    comment=response.comment,
                    version=ScheduleResponse.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleWriteError("Response", f"{response.schedule_id}:{response.user_id}")
            row = await session.scalar(
                select(ScheduleResponse).where(
                    ScheduleResponse.schedule_id == response.schedule_id,
                    ScheduleResponse.user_id == response.user_id,
                )
            )
            return _to_response(row)

    async def list_responses(self, schedule_id: str, guild_id: str) -> List[ResponseSnapshot]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(ScheduleResponse)
                .where(
                    ScheduleResponse.schedule_id == schedule_id,
                    ScheduleResponse.guild_id == guild_id,
                )
                .order_by(ScheduleResponse.id)
            )
            return [_to_response(row) for row in rows]

    async def delete_responses(self, schedule_id: str, guild_id: str) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                delete(ScheduleResponse).where(
                    ScheduleResponse.schedule_id == schedule_id,
                    ScheduleResponse.guild_id == guild_id,
                )
            )
            await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id, Schedule.guild_id == guild_id)
                .values(total_responses=0)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def prune_slot(self, schedule_id: str, guild_id: str, slot_id: str) -> int:
        pruned = 0
        async with self._transaction() as session:
            rows = await session.scalars(
                select(ScheduleResponse)
                .where(
                    ScheduleResponse.schedule_id == schedule_id,
                    ScheduleResponse.guild_id == guild_id,
                )
                .with_for_update()
            )
            for row in rows:
                statuses = dict(row.statuses or {})
                if slot_id not in statuses:
                    continue
                statuses.pop(slot_id)
                row.statuses = statuses
                row.version = row.version + 1
                row.updated_at = datetime.now(timezone.utc)
                pruned += 1
        return pruned

    async def increment_response_count(self, schedule_id: str, guild_id: str) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id, Schedule.guild_id == guild_id)
                .values(total_responses=Schedule.total_responses + 1)
                .execution_options(synchronize_session=False)
            )

    async def list_open_with_deadline_between(
        self,
        start: datetime,
        end: datetime,
        *,
        limit: int,
        after: Optional[SweepCursor] = None,
    ) -> List[ScheduleSnapshot]:
        stmt = select(Schedule).where(
            Schedule.status == ScheduleStatus.OPEN.value,
            Schedule.deadline.is_not(None),
            Schedule.deadline >= _ensure_aware(start),
            Schedule.deadline <= _ensure_aware(end),
        )
        if after is not None:
            after_deadline, after_id = after
            after_deadline = _ensure_aware(after_deadline)
            stmt = stmt.where(
                or_(
                    Schedule.deadline > after_deadline,
                    and_(Schedule.deadline == after_deadline, Schedule.id > after_id),
                )
            )
        stmt = stmt.order_by(Schedule.deadline, Schedule.id).limit(limit)
        async with self._session_factory() as session:
            rows = await session.scalars(stmt)
            return [_to_schedule(row) for row in rows]


def cursor_for(schedule: ScheduleSnapshot) -> SweepCursor:
    assert schedule.deadline is not None
    return schedule.deadline, schedule.id


__all__ = [
    "ScheduleStorage",
    "SqlScheduleStorage",
    "SweepCursor",
    "cursor_for",
]
