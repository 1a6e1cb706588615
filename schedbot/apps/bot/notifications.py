"""Reminder and closure notifications for schedules."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Literal, Optional

from schedbot.apps.bot.chat_client import ChatClient
from schedbot.apps.bot.messages import (
    ClosureSummaryMessage,
    NotificationMessage,
    ReminderMessage,
)
from schedbot.apps.bot.metrics import record_notification_failure
from schedbot.domain.entities import ScheduleSnapshot
from schedbot.domain.errors import InvalidMentionFormat
from schedbot.domain.summary import ScheduleSummary
from schedbot.domain.timing import validate_mention

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    status: Literal["sent", "failed", "skipped"]
    reason: Optional[str] = None
    message_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    """Formats and sends reminder and closure messages.

    Delivery failures are logged and reported through ``NotificationResult``;
    they never raise, so the lifecycle change that triggered a notification
    is never undone by a transport problem.
    """

    def __init__(self, chat: ChatClient, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._chat = chat
        self._clock = clock

    async def resolve_mentions(self, tokens: Iterable[str], guild_id: str) -> List[str]:
        resolved: List[str] = []
        for token in tokens:
            try:
                validate_mention(token)
            except InvalidMentionFormat:
                logger.warning(
                    "notification.mention.invalid", extra={"guild_id": guild_id, "token": token}
                )
                continue
            try:
                mention = await self._chat.resolve_mention(token, guild_id)
            except Exception:
                logger.exception(
                    "notification.mention.lookup_failed", extra={"guild_id": guild_id, "token": token}
                )
                continue
            if mention is None:
                logger.info(
                    "notification.mention.unresolved", extra={"guild_id": guild_id, "token": token}
                )
                continue
            if mention not in resolved:
                resolved.append(mention)
        return resolved

    async def send_reminder(self, schedule: ScheduleSnapshot, timing: str) -> NotificationResult:
        if schedule.deadline is None:
            return NotificationResult(status="skipped", reason="no_deadline")
        mentions = await self.resolve_mentions(schedule.reminder_mentions, schedule.guild_id)
        message = ReminderMessage(
            schedule=schedule,
            timing=timing,
            now=self._clock(),
            mentions=tuple(mentions),
        )
        return await self._deliver(message, schedule)

    async def send_closure_summary(
        self, schedule: ScheduleSnapshot, summary: ScheduleSummary
    ) -> NotificationResult:
        mentions = await self.resolve_mentions(schedule.reminder_mentions, schedule.guild_id)
        message = ClosureSummaryMessage(summary=summary, mentions=tuple(mentions))
        return await self._deliver(message, schedule)

    async def _deliver(
        self, message: NotificationMessage, schedule: ScheduleSnapshot
    ) -> NotificationResult:
        outgoing = message.render()
        try:
            message_id = await self._chat.send_message(
                outgoing.channel_id, outgoing.content, reply_to=outgoing.reply_to
            )
        except Exception as exc:
            logger.exception(
                "notification.send.failed",
                extra={
                    "schedule_id": schedule.id,
                    "kind": message.kind.value,
                    "error": exc.__class__.__name__,
                },
            )
            await record_notification_failure(message.kind.value)
            return NotificationResult(status="failed", reason=str(exc) or exc.__class__.__name__)

        logger.info(
            "notification.send.ok",
            extra={"schedule_id": schedule.id, "kind": message.kind.value, "message_id": message_id},
        )
        return NotificationResult(status="sent", message_id=message_id)


__all__ = ["NotificationDispatcher", "NotificationResult"]
