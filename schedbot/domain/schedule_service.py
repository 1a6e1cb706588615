"""Schedule lifecycle: create, edit, close, reopen, delete and slot removal."""

from __future__ import annotations

import functools
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Protocol, Sequence, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from schedbot.core.result import (
    ConflictError,
    DatabaseError,
    NotFoundError,
    Result,
    ValidationError,
    failure,
    success,
)
from schedbot.domain.entities import (
    MAX_SLOTS,
    ResponseSnapshot,
    ScheduleSnapshot,
    ScheduleStatus,
    SlotCandidate,
    UpdateUrgency,
)
from schedbot.domain.errors import (
    AlreadyClosedError,
    InvalidTimingFormat,
    NotClosedError,
    PermissionDeniedError,
    ScheduleClosedError,
    StaleWriteError,
)
from schedbot.domain.repositories import ScheduleStorage
from schedbot.domain.schemas import ScheduleDraft, ScheduleEdit, SlotInput, to_validation_error
from schedbot.domain.summary import ScheduleSummary, summarize
from schedbot.domain.timing import trigger_instant

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class DisplayUpdateSink(Protocol):
    async def request_for(self, schedule: ScheduleSnapshot, urgency: UpdateUrgency) -> None: ...


class ClosureNotifier(Protocol):
    async def send_closure_summary(self, schedule: ScheduleSnapshot, summary: ScheduleSummary) -> Any: ...


class MessageRemover(Protocol):
    async def delete_message(self, channel_id: str, message_id: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _database_guard(operation: str) -> Callable[[F], F]:
    """Turn storage exceptions escaping ``operation`` into ``DatabaseError`` failures."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except SQLAlchemyError as exc:
                logger.exception("schedule.storage_failed", extra={"operation": operation})
                return failure(DatabaseError(operation=operation, message=str(exc), original_exception=exc))

        return wrapper  # type: ignore[return-value]

    return decorator


def _new_slot_id() -> str:
    return f"slot-{uuid.uuid4().hex[:10]}"


def _build_slots(inputs: Sequence[SlotInput], existing: Sequence[SlotCandidate] = ()) -> tuple:
    used = {slot.id for slot in existing}
    slots = list(existing)
    for item in inputs:
        slot_id = item.id or _new_slot_id()
        while slot_id in used:
            slot_id = _new_slot_id()
        used.add(slot_id)
        slots.append(SlotCandidate(id=slot_id, label=item.label))
    return tuple(slots)


class ScheduleService:
    def __init__(
        self,
        storage: ScheduleStorage,
        *,
        updates: Optional[DisplayUpdateSink] = None,
        notifier: Optional[ClosureNotifier] = None,
        messages: Optional[MessageRemover] = None,
        default_timings: Sequence[str] = ("3d", "1d", "8h"),
        clock: Clock = _utcnow,
    ) -> None:
        self._storage = storage
        self._updates = updates
        self._notifier = notifier
        self._messages = messages
        self._default_timings = tuple(default_timings)
        self._clock = clock

    @_database_guard("create_schedule")
    async def create(
        self, draft: Union[ScheduleDraft, Mapping[str, Any]]
    ) -> Result[ScheduleSnapshot, ValidationError]:
        if not isinstance(draft, ScheduleDraft):
            try:
                draft = ScheduleDraft.model_validate(draft)
            except PydanticValidationError as exc:
                return failure(to_validation_error(exc))

        if draft.deadline is not None and draft.deadline <= self._clock():
            return failure(
                ValidationError(field="deadline", message="deadline must be in the future")
            )

        timings = draft.reminder_timings
        if timings is None:
            timings = list(self._default_timings) if draft.deadline is not None else []
        else:
            error = self._check_offsets(timings, draft.deadline)
            if error is not None:
                return failure(error)

        schedule = ScheduleSnapshot(
            id=str(uuid.uuid4()),
            guild_id=draft.guild_id,
            channel_id=draft.channel_id,
            title=draft.title,
            description=draft.description,
            slots=_build_slots(draft.slots),
            author_id=draft.author_id,
            author_name=draft.author_name,
            deadline=draft.deadline,
            reminder_timings=tuple(timings),
            reminder_mentions=tuple(draft.reminder_mentions),
        )
        created = await self._storage.create_schedule(schedule)
        logger.info(
            "schedule.created",
            extra={
                "schedule_id": created.id,
                "guild_id": created.guild_id,
                "slots": len(created.slots),
                "deadline": created.deadline.isoformat() if created.deadline else None,
            },
        )
        return success(created)

    @_database_guard("edit_schedule")
    async def edit(
        self,
        schedule_id: str,
        guild_id: str,
        editor_id: str,
        changes: Union[ScheduleEdit, Mapping[str, Any]],
    ) -> Result[ScheduleSnapshot, Any]:
        if not isinstance(changes, ScheduleEdit):
            try:
                changes = ScheduleEdit.model_validate(changes)
            except PydanticValidationError as exc:
                return failure(to_validation_error(exc))

        schedule = await self._storage.get_schedule(schedule_id, guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", schedule_id))
        if not schedule.can_be_edited_by(editor_id):
            return failure(PermissionDeniedError(schedule_id, editor_id, "edit"))
        if schedule.is_closed:
            return failure(ScheduleClosedError(schedule_id))

        provided = changes.model_fields_set
        updated = schedule
        if "title" in provided and changes.title is not None:
            updated = replace(updated, title=changes.title.strip())
        if "description" in provided:
            updated = replace(updated, description=changes.description)
        if "deadline" in provided:
            if changes.deadline is not None and changes.deadline <= self._clock():
                return failure(
                    ValidationError(field="deadline", message="deadline must be in the future")
                )
            updated = replace(updated, deadline=changes.deadline)
        if "reminder_timings" in provided and changes.reminder_timings is not None:
            updated = replace(updated, reminder_timings=tuple(changes.reminder_timings))
        if "reminder_mentions" in provided and changes.reminder_mentions is not None:
            updated = replace(updated, reminder_mentions=tuple(changes.reminder_mentions))
        if changes.add_slots:
            labels = {slot.label for slot in updated.slots}
            duplicate = next((item.label for item in changes.add_slots if item.label in labels), None)
            if duplicate is not None:
                return failure(
                    ValidationError(field="add_slots", message="slot label already exists", value=duplicate)
                )
            if len(updated.slots) + len(changes.add_slots) > MAX_SLOTS:
                return failure(
                    ValidationError(field="add_slots", message=f"at most {MAX_SLOTS} slots are allowed")
                )
            updated = replace(updated, slots=_build_slots(changes.add_slots, updated.slots))

        if "reminder_timings" in provided and changes.reminder_timings:
            error = self._check_offsets(changes.reminder_timings, updated.deadline)
            if error is not None:
                return failure(error)

        # mentions do not move trigger instants, so they keep the ledger
        if (
            updated.deadline != schedule.deadline
            or updated.reminder_timings != schedule.reminder_timings
        ):
            updated = replace(updated, reminders_sent=())

        if updated == schedule:
            return success(schedule)

        try:
            saved = await self._storage.save_schedule(updated)
        except StaleWriteError:
            return failure(ConflictError("Schedule", "schedule was modified concurrently, try again"))

        logger.info(
            "schedule.edited",
            extra={
                "schedule_id": schedule_id,
                "fields": sorted(provided),
                "ledger_reset": bool(schedule.reminders_sent) and not saved.reminders_sent,
            },
        )
        await self._request_update(saved, UpdateUrgency.IMMEDIATE)
        return success(saved)

    @_database_guard("close_schedule")
    async def close(
        self, schedule_id: str, guild_id: str, editor_id: str, *, system: bool = False
    ) -> Result[ScheduleSnapshot, Any]:
        """Close an open schedule and announce it.

        ``system`` marks a close issued by the deadline sweep rather than a user;
        it bypasses the author check. Closing a closed schedule fails with
        ``AlreadyClosedError``; a concurrent close that wins the version race is
        reported the same way.
        """

        schedule = await self._storage.get_schedule(schedule_id, guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", schedule_id))
        if not schedule.can_be_edited_by(editor_id, system=system):
            return failure(PermissionDeniedError(schedule_id, editor_id, "close"))
        if schedule.is_closed:
            return failure(AlreadyClosedError(schedule_id))

        try:
            closed = await self._storage.save_schedule(replace(schedule, status=ScheduleStatus.CLOSED))
        except StaleWriteError:
            fresh = await self._storage.get_schedule(schedule_id, guild_id)
            if fresh is None:
                return failure(NotFoundError("Schedule", schedule_id))
            if fresh.is_closed:
                return failure(AlreadyClosedError(schedule_id))
            return failure(ConflictError("Schedule", "schedule was modified concurrently, try again"))

        logger.info(
            "schedule.closed",
            extra={"schedule_id": schedule_id, "guild_id": guild_id, "editor_id": editor_id},
        )
        await self._announce_closure(closed)
        return success(closed)

    @_database_guard("reopen_schedule")
    async def reopen(
        self,
        schedule_id: str,
        guild_id: str,
        editor_id: str,
        *,
        deadline: Optional[datetime] = None,
    ) -> Result[ScheduleSnapshot, Any]:
        schedule = await self._storage.get_schedule(schedule_id, guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", schedule_id))
        if not schedule.can_be_edited_by(editor_id):
            return failure(PermissionDeniedError(schedule_id, editor_id, "reopen"))
        if schedule.is_open:
            return failure(NotClosedError(schedule_id))

        now = self._clock()
        new_deadline = schedule.deadline
        if deadline is not None:
            if deadline.tzinfo is None:
                deadline = deadline.replace(tzinfo=timezone.utc)
            if deadline <= now:
                return failure(
                    ValidationError(field="deadline", message="deadline must be in the future")
                )
            new_deadline = deadline
        elif new_deadline is not None and new_deadline <= now:
            # an expired deadline would close it again on the next sweep
            new_deadline = None

        reopened = replace(schedule, status=ScheduleStatus.OPEN, deadline=new_deadline)
        if new_deadline != schedule.deadline:
            reopened = replace(reopened, reminders_sent=())

        try:
            saved = await self._storage.save_schedule(reopened)
        except StaleWriteError:
            return failure(ConflictError("Schedule", "schedule was modified concurrently, try again"))

        logger.info(
            "schedule.reopened",
            extra={"schedule_id": schedule_id, "deadline_cleared": new_deadline is None and schedule.deadline is not None},
        )
        await self._request_update(saved, UpdateUrgency.IMMEDIATE)
        return success(saved)

    @_database_guard("delete_schedule")
    async def delete(self, schedule_id: str, guild_id: str, editor_id: str) -> Result[ScheduleSnapshot, Any]:
        schedule = await self._storage.get_schedule(schedule_id, guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", schedule_id))
        if not schedule.can_be_edited_by(editor_id):
            return failure(PermissionDeniedError(schedule_id, editor_id, "delete"))

        await self._storage.delete_schedule(schedule_id, guild_id)
        logger.info("schedule.deleted", extra={"schedule_id": schedule_id, "guild_id": guild_id})

        ref = schedule.message_ref
        if ref is not None and self._messages is not None:
            try:
                await self._messages.delete_message(ref.channel_id, ref.message_id)
            except Exception:
                logger.exception(
                    "schedule.delete.message_failed",
                    extra={"schedule_id": schedule_id, "message_id": ref.message_id},
                )
        return success(schedule)

    @_database_guard("remove_slot")
    async def remove_slot(
        self, schedule_id: str, guild_id: str, editor_id: str, slot_id: str
    ) -> Result[ScheduleSnapshot, Any]:
        schedule = await self._storage.get_schedule(schedule_id, guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", schedule_id))
        if not schedule.can_be_edited_by(editor_id):
            return failure(PermissionDeniedError(schedule_id, editor_id, "edit"))
        if schedule.is_closed:
            return failure(ScheduleClosedError(schedule_id))
        if schedule.slot(slot_id) is None:
            return failure(NotFoundError("Slot", slot_id))
        if len(schedule.slots) == 1:
            return failure(ValidationError(field="slots", message="a schedule needs at least one slot"))

        remaining = tuple(slot for slot in schedule.slots if slot.id != slot_id)
        try:
            saved = await self._storage.save_schedule(replace(schedule, slots=remaining))
        except StaleWriteError:
            return failure(ConflictError("Schedule", "schedule was modified concurrently, try again"))
        pruned = await self._storage.prune_slot(schedule_id, guild_id, slot_id)
        logger.info(
            "schedule.slot_removed",
            extra={"schedule_id": schedule_id, "slot_id": slot_id, "responses_pruned": pruned},
        )
        await self._request_update(saved, UpdateUrgency.IMMEDIATE)
        return success(saved)

    @_database_guard("attach_message")
    async def attach_message(
        self, schedule_id: str, guild_id: str, message_id: str
    ) -> Result[ScheduleSnapshot, Any]:
        for _attempt in range(2):
            schedule = await self._storage.get_schedule(schedule_id, guild_id)
            if schedule is None:
                return failure(NotFoundError("Schedule", schedule_id))
            if schedule.message_id == message_id:
                return success(schedule)
            try:
                return success(await self._storage.save_schedule(replace(schedule, message_id=message_id)))
            except StaleWriteError:
                continue
        return failure(ConflictError("Schedule", "schedule was modified concurrently, try again"))

    @_database_guard("get_summary")
    async def get_summary(self, schedule_id: str, guild_id: str) -> Result[ScheduleSummary, Any]:
        schedule = await self._storage.get_schedule(schedule_id, guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", schedule_id))
        responses = await self._storage.list_responses(schedule_id, guild_id)
        return success(summarize(schedule, responses))

    @_database_guard("find_by_message")
    async def find_by_message(self, guild_id: str, message_id: str) -> Result[ScheduleSnapshot, NotFoundError]:
        schedule = await self._storage.find_by_message(guild_id, message_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", message_id))
        return success(schedule)

    @_database_guard("list_by_channel")
    async def list_by_channel(
        self, guild_id: str, channel_id: str, *, include_closed: bool = False, limit: int = 25
    ) -> Result[List[ScheduleSnapshot], Any]:
        schedules = await self._storage.list_by_channel(
            guild_id, channel_id, include_closed=include_closed, limit=limit
        )
        return success(schedules)

    @_database_guard("get_response")
    async def get_response(
        self, schedule_id: str, guild_id: str, user_id: str
    ) -> Result[ResponseSnapshot, NotFoundError]:
        """Return ``user_id``'s current answer on the schedule."""

        schedule = await self._storage.get_schedule(schedule_id, guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", schedule_id))
        response = await self._storage.get_response(schedule_id, guild_id, user_id)
        if response is None:
            return failure(NotFoundError("Response", f"{schedule_id}:{user_id}"))
        return success(response)

    def _check_offsets(
        self, timings: Sequence[str], deadline: Optional[datetime]
    ) -> Optional[ValidationError]:
        if deadline is None:
            return None
        now = self._clock()
        for token in timings:
            try:
                fires_at = trigger_instant(deadline, token)
            except InvalidTimingFormat:
                return ValidationError(field="reminder_timings", message="invalid reminder timing", value=token)
            if fires_at < now:
                return ValidationError(
                    field="reminder_timings",
                    message="reminder timing is longer than the time left before the deadline",
                    value=token,
                )
        return None

    async def _announce_closure(self, schedule: ScheduleSnapshot) -> None:
        await self._request_update(schedule, UpdateUrgency.IMMEDIATE)
        if self._notifier is None:
            return
        try:
            responses = await self._storage.list_responses(schedule.id, schedule.guild_id)
            await self._notifier.send_closure_summary(schedule, summarize(schedule, responses))
        except Exception:
            logger.exception("schedule.close.announce_failed", extra={"schedule_id": schedule.id})

    async def _request_update(self, schedule: ScheduleSnapshot, urgency: UpdateUrgency) -> None:
        if self._updates is None:
            return
        try:
            await self._updates.request_for(schedule, urgency)
        except Exception:
            logger.exception(
                "schedule.update_request_failed",
                extra={"schedule_id": schedule.id, "urgency": urgency.value},
            )


__all__ = [
    "ScheduleService",
    "DisplayUpdateSink",
    "ClosureNotifier",
    "MessageRemover",
]
