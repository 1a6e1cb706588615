"""Fold the responses of a schedule into per-slot tallies and a recommendation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from schedbot.domain.entities import (
    ResponseSnapshot,
    ResponseStatus,
    ScheduleSnapshot,
    SlotCandidate,
)

OK_WEIGHT = 1000
NG_WEIGHT = -100
MAYBE_WEIGHT = 10


def score(ok: int, maybe: int, ng: int) -> int:
    return OK_WEIGHT * ok + NG_WEIGHT * ng + MAYBE_WEIGHT * maybe


@dataclass(frozen=True)
class SlotTally:
    slot: SlotCandidate
    ok: int = 0
    maybe: int = 0
    ng: int = 0

    @property
    def total(self) -> int:
        return self.ok + self.maybe + self.ng

    @property
    def score(self) -> int:
        return score(self.ok, self.maybe, self.ng)


@dataclass(frozen=True)
class ScheduleSummary:
    schedule: ScheduleSnapshot
    tallies: Tuple[SlotTally, ...]
    responses: Tuple[ResponseSnapshot, ...]
    participant_count: int
    best_slot_id: Optional[str]

    @property
    def best_slot(self) -> Optional[SlotCandidate]:
        if self.best_slot_id is None:
            return None
        return self.schedule.slot(self.best_slot_id)

    def tally(self, slot_id: str) -> Optional[SlotTally]:
        for item in self.tallies:
            if item.slot.id == slot_id:
                return item
        return None


def summarize(
    schedule: ScheduleSnapshot, responses: Iterable[ResponseSnapshot]
) -> ScheduleSummary:
    """Compute the summary without touching storage.

    Unanswered slots count toward participants but toward no status bucket.
    The best slot has the strictly greatest score; on ties the earliest listed
    slot is kept. No best slot is reported when nobody has responded.
    """

    collected = tuple(responses)
    counts: Dict[str, Dict[ResponseStatus, int]] = {
        slot.id: {status: 0 for status in ResponseStatus} for slot in schedule.slots
    }
    for response in collected:
        for slot_id, status in response.statuses.items():
            bucket = counts.get(slot_id)
            if bucket is None:
                continue
            bucket[ResponseStatus(status)] += 1

    tallies = tuple(
        SlotTally(
            slot=slot,
            ok=counts[slot.id][ResponseStatus.OK],
            maybe=counts[slot.id][ResponseStatus.MAYBE],
            ng=counts[slot.id][ResponseStatus.NG],
        )
        for slot in schedule.slots
    )

    best_slot_id: Optional[str] = None
    if collected:
        best_score: Optional[int] = None
        for item in tallies:
            if best_score is None or item.score > best_score:
                best_score = item.score
                best_slot_id = item.slot.id

    return ScheduleSummary(
        schedule=schedule,
        tallies=tallies,
        responses=collected,
        participant_count=len(collected),
        best_slot_id=best_slot_id,
    )


__all__ = ["SlotTally", "ScheduleSummary", "score", "summarize"]
