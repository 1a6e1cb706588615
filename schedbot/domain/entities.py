"""Immutable snapshots of schedules and responses used by the domain services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

SYSTEM_EDITOR = "system"
MAX_SLOTS = 25


class ScheduleStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ResponseStatus(str, Enum):
    OK = "ok"
    MAYBE = "maybe"
    NG = "ng"


class UpdateUrgency(str, Enum):
    NORMAL = "normal"
    IMMEDIATE = "immediate"


@dataclass(frozen=True)
class SlotCandidate:
    id: str
    label: str


@dataclass(frozen=True)
class MessageRef:
    channel_id: str
    message_id: str

    @property
    def key(self) -> str:
        return f"{self.channel_id}:{self.message_id}"


@dataclass(frozen=True)
class ScheduleSnapshot:
    id: str
    guild_id: str
    channel_id: str
    title: str
    slots: Tuple[SlotCandidate, ...]
    author_id: str
    author_name: str = ""
    description: Optional[str] = None
    message_id: Optional[str] = None
    deadline: Optional[datetime] = None
    status: ScheduleStatus = ScheduleStatus.OPEN
    reminder_timings: Tuple[str, ...] = ()
    reminder_mentions: Tuple[str, ...] = ()
    reminders_sent: Tuple[str, ...] = ()
    total_responses: int = 0
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status is ScheduleStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status is ScheduleStatus.CLOSED

    @property
    def slot_ids(self) -> Tuple[str, ...]:
        return tuple(slot.id for slot in self.slots)

    @property
    def message_ref(self) -> Optional[MessageRef]:
        if not self.message_id:
            return None
        return MessageRef(channel_id=self.channel_id, message_id=self.message_id)

    def slot(self, slot_id: str) -> Optional[SlotCandidate]:
        for slot in self.slots:
            if slot.id == slot_id:
                return slot
        return None

    def can_be_edited_by(self, user_id: str, *, system: bool = False) -> bool:
        return system or user_id == self.author_id


@dataclass(frozen=True)
class ResponseSnapshot:
    schedule_id: str
    guild_id: str
    user_id: str
    display_name: str
    statuses: Mapping[str, ResponseStatus] = field(default_factory=dict)
    comment: Optional[str] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_new(self) -> bool:
        return self.version == 0

    def merged(
        self,
        updates: Mapping[str, ResponseStatus],
        *,
        display_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> "ResponseSnapshot":
        statuses: Dict[str, ResponseStatus] = dict(self.statuses)
        statuses.update(updates)
        return ResponseSnapshot(
            schedule_id=self.schedule_id,
            guild_id=self.guild_id,
            user_id=self.user_id,
            display_name=display_name or self.display_name,
            statuses=statuses,
            comment=self.comment if comment is None else comment,
            updated_at=self.updated_at,
            version=self.version,
        )


__all__ = [
    "SYSTEM_EDITOR",
    "MAX_SLOTS",
    "ScheduleStatus",
    "ResponseStatus",
    "UpdateUrgency",
    "SlotCandidate",
    "MessageRef",
    "ScheduleSnapshot",
    "ResponseSnapshot",
]
