from datetime import timedelta

import pytest

from schedbot.apps.bot.chat_client import ChatTransportError
from schedbot.apps.bot.metrics import get_scheduling_metrics_snapshot
from schedbot.apps.bot.notifications import NotificationDispatcher
from schedbot.domain.entities import ResponseSnapshot, ResponseStatus, ScheduleSnapshot, SlotCandidate
from schedbot.domain.summary import summarize


def _schedule(clock, **overrides):
    values = dict(
        id="sched-1",
        guild_id="g1",
        channel_id="c1",
        title="Board game night",
        slots=(SlotCandidate("s1", "Fri"), SlotCandidate("s2", "Sat")),
        author_id="author",
        message_id="m-100",
        deadline=clock.now + timedelta(days=1),
        reminder_mentions=("@here", "@role:players", "@user:42"),
    )
    values.update(overrides)
    return ScheduleSnapshot(**values)


class ExplodingLookupChat:
    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def resolve_mention(self, token, guild_id):
        if token == "@role:players":
            raise ChatTransportError("roles unavailable", status=503)
        return await self._inner.resolve_mention(token, guild_id)


@pytest.mark.asyncio
async def test_resolve_mentions_drops_unknown_and_invalid(chat, clock):
    dispatcher = NotificationDispatcher(chat, clock=clock)

    resolved = await dispatcher.resolve_mentions(
        ["@here", "@role:ghosts", "@user:42", "not-a-mention", "@here"], "g1"
    )

    assert resolved == ["@here", "<@42>"]


@pytest.mark.asyncio
async def test_resolve_mentions_skips_failed_lookups(chat, clock):
    chat.mentions["@role:players"] = "<@&7>"
    dispatcher = NotificationDispatcher(ExplodingLookupChat(chat), clock=clock)

    resolved = await dispatcher.resolve_mentions(["@role:players", "@everyone"], "g1")

    assert resolved == ["@everyone"]


@pytest.mark.asyncio
async def test_send_reminder_formats_and_replies(chat, clock):
    chat.mentions["@role:players"] = "<@&7>"
    dispatcher = NotificationDispatcher(chat, clock=clock)

    result = await dispatcher.send_reminder(_schedule(clock), "1d")

    assert result.status == "sent"
    assert result.message_id is not None
    sent = chat.sent[0]
    assert sent["channel_id"] == "c1"
    assert sent["reply_to"] == "m-100"
    first_line, second_line = sent["content"].splitlines()[:2]
    assert first_line == "@here <@&7> <@42>"
    assert "1 day before deadline" in second_line
    assert "Board game night" in second_line


@pytest.mark.asyncio
async def test_send_reminder_without_deadline_is_skipped(chat, clock):
    dispatcher = NotificationDispatcher(chat, clock=clock)

    result = await dispatcher.send_reminder(_schedule(clock, deadline=None), "1d")

    assert result.status == "skipped"
    assert chat.sent == []


@pytest.mark.asyncio
async def test_transport_failure_is_reported_not_raised(chat, clock):
    chat.send_errors.append(ChatTransportError("rate limited", status=429, retry_after=2))
    dispatcher = NotificationDispatcher(chat, clock=clock)

    result = await dispatcher.send_reminder(_schedule(clock), "8h")

    assert result.status == "failed"
    assert "rate limited" in result.reason
    snapshot = await get_scheduling_metrics_snapshot()
    assert snapshot.notifications_failed_total == {"reminder": 1}


@pytest.mark.asyncio
async def test_closure_summary_names_recommended_slot(chat, clock):
    schedule = _schedule(clock, reminder_mentions=())
    responses = [
        ResponseSnapshot(
            schedule_id="sched-1",
            guild_id="g1",
            user_id="u1",
            display_name="U1",
            statuses={"s1": ResponseStatus.MAYBE, "s2": ResponseStatus.OK},
            version=1,
        )
    ]
    dispatcher = NotificationDispatcher(chat, clock=clock)

    result = await dispatcher.send_closure_summary(schedule, summarize(schedule, responses))

    assert result.status == "sent"
    content = chat.sent[0]["content"]
    assert "Recommended: Sat" in content
    assert "Participants: 1" in content


@pytest.mark.asyncio
async def test_closure_summary_without_responses(chat, clock):
    schedule = _schedule(clock, reminder_mentions=())
    dispatcher = NotificationDispatcher(chat, clock=clock)

    await dispatcher.send_closure_summary(schedule, summarize(schedule, []))

    assert "Nobody responded." in chat.sent[0]["content"]
