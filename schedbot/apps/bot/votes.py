"""Vote submission with optimistic-concurrency protection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from schedbot.apps.bot.metrics import record_vote_conflict
from schedbot.core.result import (
    ConflictError,
    DatabaseError,
    NotFoundError,
    Result,
    ValidationError,
    failure,
    success,
)
from schedbot.domain.entities import ResponseSnapshot, ScheduleSnapshot, UpdateUrgency
from schedbot.domain.errors import ScheduleClosedError, StaleWriteError
from schedbot.domain.repositories import ScheduleStorage
from schedbot.domain.schedule_service import DisplayUpdateSink
from schedbot.domain.schemas import VoteRequest, to_validation_error

logger = logging.getLogger(__name__)

VoteInput = Union[VoteRequest, Mapping[str, Any]]


@dataclass
class BatchVoteOutcome:
    saved: List[ResponseSnapshot] = field(default_factory=list)
    errors: List[Tuple[int, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class VoteCoordinator:
    """Persists one participant's vote per call.

    Closed schedules accept votes only from their author. A write that loses
    the version race is retried once against freshly read data; a second loss
    is returned as ``ConflictError``. The display update is requested after
    the vote is stored and its outcome never affects the returned result.
    """

    def __init__(
        self,
        storage: ScheduleStorage,
        *,
        updates: Optional[DisplayUpdateSink] = None,
        conflict_retries: int = 1,
    ) -> None:
        self._storage = storage
        self._updates = updates
        self._conflict_retries = max(0, conflict_retries)

    async def submit(self, vote: VoteInput) -> Result[ResponseSnapshot, Any]:
        if not isinstance(vote, VoteRequest):
            try:
                vote = VoteRequest.model_validate(vote)
            except PydanticValidationError as exc:
                return failure(to_validation_error(exc))

        try:
            return await self._submit(vote)
        except SQLAlchemyError as exc:
            logger.exception(
                "vote.storage_failed",
                extra={"schedule_id": vote.schedule_id, "user_id": vote.user_id},
            )
            return failure(DatabaseError(operation="submit_vote", message=str(exc), original_exception=exc))

    async def _submit(self, vote: VoteRequest) -> Result[ResponseSnapshot, Any]:
        schedule = await self._storage.get_schedule(vote.schedule_id, vote.guild_id)
        if schedule is None:
            return failure(NotFoundError("Schedule", vote.schedule_id))
        if schedule.is_closed and vote.user_id != schedule.author_id:
            return failure(ScheduleClosedError(schedule.id))

        unknown = sorted(set(vote.statuses) - set(schedule.slot_ids))
        if unknown:
            return failure(
                ValidationError(field="statuses", message="unknown slot", value=", ".join(unknown))
            )

        saved: Optional[ResponseSnapshot] = None
        for attempt in range(self._conflict_retries + 1):
            current = await self._storage.get_response(schedule.id, schedule.guild_id, vote.user_id)
            if current is None:
                current = ResponseSnapshot(
                    schedule_id=schedule.id,
                    guild_id=schedule.guild_id,
                    user_id=vote.user_id,
                    display_name=vote.display_name or vote.user_id,
                )
            candidate = current.merged(
                vote.statuses,
                display_name=vote.display_name or None,
                comment=vote.comment,
            )
            try:
                saved = await self._storage.save_response(candidate)
            except StaleWriteError:
                await record_vote_conflict()
                logger.info(
                    "vote.conflict",
                    extra={"schedule_id": schedule.id, "user_id": vote.user_id, "attempt": attempt + 1},
                )
                continue
            if current.is_new:
                await self._storage.increment_response_count(schedule.id, schedule.guild_id)
            break

        if saved is None:
            return failure(
                ConflictError("Response", "your vote changed concurrently, please try again", "user_id")
            )

        logger.info(
            "vote.saved",
            extra={
                "schedule_id": schedule.id,
                "user_id": vote.user_id,
                "slots": len(vote.statuses),
                "version": saved.version,
            },
        )
        await self._request_update(schedule)
        return success(saved)

    async def submit_batch(self, votes: Sequence[VoteInput]) -> BatchVoteOutcome:
        """Attempt every vote independently; failures do not undo earlier ones."""

        outcome = BatchVoteOutcome()
        for index, vote in enumerate(votes):
            result = await self.submit(vote)
            if result.is_success():
                outcome.saved.append(result.unwrap())
            else:
                outcome.errors.append((index, result.error))
        if outcome.errors:
            logger.info(
                "vote.batch.partial",
                extra={"saved": len(outcome.saved), "failed": len(outcome.errors)},
            )
        return outcome

    async def _request_update(self, schedule: ScheduleSnapshot) -> None:
        if self._updates is None:
            return
        try:
            await self._updates.request_for(schedule, UpdateUrgency.NORMAL)
        except Exception:
            logger.exception("vote.update_request_failed", extra={"schedule_id": schedule.id})


__all__ = ["VoteCoordinator", "BatchVoteOutcome"]
