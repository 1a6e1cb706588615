"""Outbound message payloads, one fixed shape per message kind."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Tuple, Union

from schedbot.domain.entities import ScheduleSnapshot
from schedbot.domain.summary import ScheduleSummary, SlotTally
from schedbot.domain.timing import humanize

_STATUS_ICONS = {"ok": "O", "maybe": "?", "ng": "X"}


class MessageKind(str, Enum):
    VOTE_UPDATE = "vote_update"
    CLOSE_UPDATE = "close_update"
    REMINDER = "reminder"
    CLOSURE_SUMMARY = "closure_summary"


@dataclass(frozen=True)
class OutgoingMessage:
    channel_id: str
    content: str
    reply_to: Optional[str] = None


def format_deadline(deadline: Optional[datetime]) -> str:
    if deadline is None:
        return "no deadline"
    return deadline.strftime("%Y-%m-%d %H:%M UTC")


def format_remaining(delta: timedelta) -> str:
    seconds = max(0, int(delta.total_seconds()))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    parts: List[str] = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes and not days:
        parts.append(f"{minutes}m")
    return " ".join(parts) or "less than a minute"


def _tally_line(item: SlotTally, best_slot_id: Optional[str]) -> str:
    marker = "* " if item.slot.id == best_slot_id else "  "
    return (
        f"{marker}{item.slot.label}: "
        f"{_STATUS_ICONS['ok']} {item.ok} / {_STATUS_ICONS['maybe']} {item.maybe} / "
        f"{_STATUS_ICONS['ng']} {item.ng}"
    )


def render_board(summary: ScheduleSummary) -> str:
    schedule = summary.schedule
    state = "CLOSED" if schedule.is_closed else "open"
    lines = [f"**{schedule.title}** ({state})"]
    if schedule.description:
        lines.append(schedule.description)
    lines.append(f"Deadline: {format_deadline(schedule.deadline)}")
    lines.append(f"Responses: {summary.participant_count}")
    lines.extend(_tally_line(item, summary.best_slot_id) for item in summary.tallies)
    return "\n".join(lines)


@dataclass(frozen=True)
class VoteUpdateMessage:
    summary: ScheduleSummary
    kind: MessageKind = field(default=MessageKind.VOTE_UPDATE, init=False)

    def render(self) -> str:
        return render_board(self.summary)


@dataclass(frozen=True)
class CloseUpdateMessage:
    summary: ScheduleSummary
    kind: MessageKind = field(default=MessageKind.CLOSE_UPDATE, init=False)

    def render(self) -> str:
        board = render_board(self.summary)
        return f"{board}\nVoting has ended."


@dataclass(frozen=True)
class ReminderMessage:
    schedule: ScheduleSnapshot
    timing: str
    now: datetime
    mentions: Tuple[str, ...] = ()
    kind: MessageKind = field(default=MessageKind.REMINDER, init=False)

    def render(self) -> OutgoingMessage:
        schedule = self.schedule
        remaining = (schedule.deadline - self.now) if schedule.deadline else timedelta(0)
        lines = []
        if self.mentions:
            lines.append(" ".join(self.mentions))
        lines.append(
            f"Reminder ({humanize(self.timing)} before deadline): "
            f"**{schedule.title}** closes in {format_remaining(remaining)}."
        )
        lines.append(f"Deadline: {format_deadline(schedule.deadline)}")
        lines.append(f"Responses so far: {schedule.total_responses}")
        return OutgoingMessage(
            channel_id=schedule.channel_id,
            content="\n".join(lines),
            reply_to=schedule.message_id,
        )


@dataclass(frozen=True)
class ClosureSummaryMessage:
    summary: ScheduleSummary
    mentions: Tuple[str, ...] = ()
    kind: MessageKind = field(default=MessageKind.CLOSURE_SUMMARY, init=False)

    def render(self) -> OutgoingMessage:
        summary = self.summary
        schedule = summary.schedule
        lines = []
        if self.mentions:
            lines.append(" ".join(self.mentions))
        lines.append(f"**{schedule.title}** is closed.")
        best = summary.best_slot
        if best is not None:
            lines.append(f"Recommended: {best.label}")
        else:
            lines.append("Nobody responded.")
        lines.append(f"Participants: {summary.participant_count}")
        lines.extend(_tally_line(item, summary.best_slot_id) for item in summary.tallies)
        return OutgoingMessage(
            channel_id=schedule.channel_id,
            content="\n".join(lines),
            reply_to=schedule.message_id,
        )


DisplayMessage = Union[VoteUpdateMessage, CloseUpdateMessage]
NotificationMessage = Union[ReminderMessage, ClosureSummaryMessage]


def display_message_for(summary: ScheduleSummary) -> DisplayMessage:
    if summary.schedule.is_closed:
        return CloseUpdateMessage(summary)
    return VoteUpdateMessage(summary)


__all__ = [
    "MessageKind",
    "OutgoingMessage",
    "VoteUpdateMessage",
    "CloseUpdateMessage",
    "ReminderMessage",
    "ClosureSummaryMessage",
    "DisplayMessage",
    "NotificationMessage",
    "display_message_for",
    "render_board",
    "format_deadline",
    "format_remaining",
]
