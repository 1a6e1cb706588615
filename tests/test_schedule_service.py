from dataclasses import replace
from datetime import timedelta

import pytest

from schedbot.apps.bot.chat_client import ChatTransportError
from schedbot.apps.bot.notifications import NotificationDispatcher
from schedbot.core.result import ConflictError, NotFoundError, ValidationError
from schedbot.domain.entities import (
    SYSTEM_EDITOR,
    ResponseSnapshot,
    ResponseStatus,
    ScheduleStatus,
    SlotCandidate,
    UpdateUrgency,
)
from schedbot.domain.errors import (
    AlreadyClosedError,
    NotClosedError,
    PermissionDeniedError,
    ScheduleClosedError,
    StaleWriteError,
)
from schedbot.domain.schedule_service import ScheduleService


@pytest.fixture
def service(storage, updates, chat, clock):
    return ScheduleService(
        storage,
        updates=updates,
        notifier=NotificationDispatcher(chat, clock=clock),
        messages=chat,
        clock=clock,
    )


def _draft(clock, **overrides):
    draft = {
        "guild_id": "g1",
        "channel_id": "c1",
        "author_id": "author",
        "author_name": "Author",
        "title": "Quarterly planning",
        "slots": ["Mon 10:00", "Tue 10:00"],
        "deadline": clock.now + timedelta(days=5),
    }
    draft.update(overrides)
    return draft


@pytest.mark.asyncio
async def test_create_applies_default_timings(service, clock, storage):
    result = await service.create(_draft(clock))

    assert result.is_success()
    schedule = result.unwrap()
    assert schedule.reminder_timings == ("3d", "1d", "8h")
    assert [slot.label for slot in schedule.slots] == ["Mon 10:00", "Tue 10:00"]
    assert len(set(schedule.slot_ids)) == 2
    assert await storage.get_schedule(schedule.id, "g1") == schedule


@pytest.mark.asyncio
async def test_create_without_deadline_has_no_timings(service, clock):
    result = await service.create(_draft(clock, deadline=None))

    assert result.unwrap().reminder_timings == ()


@pytest.mark.asyncio
async def test_create_normalizes_explicit_timings(service, clock):
    result = await service.create(_draft(clock, reminder_timings=["1h", "1d", "1h"]))

    assert result.unwrap().reminder_timings == ("1d", "1h")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"title": "   "}, "title"),
        ({"title": "x" * 101}, "title"),
        ({"slots": []}, "slots"),
        ({"slots": [f"slot {n}" for n in range(26)]}, "slots"),
        ({"slots": ["Mon", "Mon"]}, "slots"),
        ({"reminder_timings": ["tomorrow"]}, "reminder_timings"),
        ({"reminder_timings": ["1000000000d"]}, "reminder_timings"),
        ({"reminder_timings": ["11y"]}, "reminder_timings"),
        ({"reminder_timings": ["1w"]}, "reminder_timings"),
        ({"reminder_mentions": ["@all"]}, "reminder_mentions"),
        ({"description": "d" * 2001}, "description"),
    ],
)
async def test_create_rejects_invalid_input(service, clock, overrides, field):
    result = await service.create(_draft(clock, **overrides))

    assert result.is_failure()
    assert isinstance(result.error, ValidationError)
    assert result.error.field.startswith(field)


@pytest.mark.asyncio
async def test_create_rejects_past_deadline(service, clock):
    result = await service.create(_draft(clock, deadline=clock.now - timedelta(minutes=1)))

    assert isinstance(result.error, ValidationError)
    assert result.error.field == "deadline"


@pytest.mark.asyncio
async def test_close_announces_once(service, make_schedule, updates, chat):
    schedule = await make_schedule()

    first = await service.close(schedule.id, "g1", "author")
    second = await service.close(schedule.id, "g1", "author")

    assert first.unwrap().status is ScheduleStatus.CLOSED
    assert isinstance(second.error, AlreadyClosedError)
    assert updates.requests == [(schedule.id, UpdateUrgency.IMMEDIATE)]
    assert len(chat.sent) == 1
    assert "is closed" in chat.sent[0]["content"]
    assert chat.sent[0]["reply_to"] == schedule.message_id


@pytest.mark.asyncio
async def test_close_requires_author_or_system(service, make_schedule):
    schedule = await make_schedule()

    denied = await service.close(schedule.id, "g1", "someone-else")
    allowed = await service.close(schedule.id, "g1", SYSTEM_EDITOR, system=True)

    assert isinstance(denied.error, PermissionDeniedError)
    assert allowed.is_success()


@pytest.mark.asyncio
async def test_system_user_id_has_no_author_rights(service, make_schedule):
    schedule = await make_schedule()

    closed = await service.close(schedule.id, "g1", SYSTEM_EDITOR)
    edited = await service.edit(schedule.id, "g1", SYSTEM_EDITOR, {"title": "Hijacked"})
    deleted = await service.delete(schedule.id, "g1", SYSTEM_EDITOR)

    assert isinstance(closed.error, PermissionDeniedError)
    assert isinstance(edited.error, PermissionDeniedError)
    assert isinstance(deleted.error, PermissionDeniedError)


@pytest.mark.asyncio
async def test_close_succeeds_when_summary_delivery_fails(service, make_schedule, chat, storage):
    schedule = await make_schedule()
    chat.send_errors.append(ChatTransportError("gateway down", status=502))

    result = await service.close(schedule.id, "g1", "author")

    assert result.is_success()
    assert (await storage.get_schedule(schedule.id, "g1")).is_closed


@pytest.mark.asyncio
async def test_close_missing_schedule(service):
    result = await service.close("missing", "g1", "author")

    assert isinstance(result.error, NotFoundError)


@pytest.mark.asyncio
async def test_reopen_requires_closed(service, make_schedule):
    schedule = await make_schedule()

    result = await service.reopen(schedule.id, "g1", "author")

    assert isinstance(result.error, NotClosedError)


@pytest.mark.asyncio
async def test_reopen_keeps_future_deadline(service, make_schedule):
    schedule = await make_schedule()
    await service.close(schedule.id, "g1", "author")

    reopened = (await service.reopen(schedule.id, "g1", "author")).unwrap()

    assert reopened.is_open
    assert reopened.deadline == schedule.deadline


@pytest.mark.asyncio
async def test_reopen_clears_expired_deadline_and_ledger(service, make_schedule, storage, clock):
    schedule = await make_schedule(deadline=clock.now + timedelta(hours=1))
    schedule = await storage.save_schedule(replace(schedule, reminders_sent=("8h",)))
    await service.close(schedule.id, "g1", "author")
    clock.advance(hours=2)

    reopened = (await service.reopen(schedule.id, "g1", "author")).unwrap()

    assert reopened.is_open
    assert reopened.deadline is None
    assert reopened.reminders_sent == ()


@pytest.mark.asyncio
async def test_reopen_with_new_deadline(service, make_schedule, clock):
    schedule = await make_schedule(deadline=clock.now + timedelta(hours=1))
    await service.close(schedule.id, "g1", "author")
    new_deadline = clock.now + timedelta(days=2)

    reopened = (await service.reopen(schedule.id, "g1", "author", deadline=new_deadline)).unwrap()

    assert reopened.deadline == new_deadline


@pytest.mark.asyncio
async def test_edit_deadline_resets_ledger(service, make_schedule, storage, clock, updates):
    schedule = await make_schedule()
    schedule = await storage.save_schedule(replace(schedule, reminders_sent=("3d",)))

    result = await service.edit(
        schedule.id, "g1", "author", {"deadline": clock.now + timedelta(days=10)}
    )

    edited = result.unwrap()
    assert edited.reminders_sent == ()
    assert edited.deadline == clock.now + timedelta(days=10)
    assert updates.requests[-1] == (schedule.id, UpdateUrgency.IMMEDIATE)


@pytest.mark.asyncio
async def test_edit_title_keeps_ledger(service, make_schedule, storage):
    schedule = await make_schedule()
    schedule = await storage.save_schedule(replace(schedule, reminders_sent=("3d",)))

    edited = (await service.edit(schedule.id, "g1", "author", {"title": "New title"})).unwrap()

    assert edited.title == "New title"
    assert edited.reminders_sent == ("3d",)


@pytest.mark.asyncio
async def test_edit_mentions_keeps_ledger(service, make_schedule, storage):
    schedule = await make_schedule()
    schedule = await storage.save_schedule(replace(schedule, reminders_sent=("3d",)))

    edited = (
        await service.edit(schedule.id, "g1", "author", {"reminder_mentions": ["@here", "@role:42"]})
    ).unwrap()

    assert edited.reminder_mentions == ("@here", "@role:42")
    assert edited.reminders_sent == ("3d",)


@pytest.mark.asyncio
async def test_edit_timings_resets_ledger(service, make_schedule, storage):
    schedule = await make_schedule()
    schedule = await storage.save_schedule(replace(schedule, reminders_sent=("3d",)))

    edited = (await service.edit(schedule.id, "g1", "author", {"reminder_timings": ["2d"]})).unwrap()

    assert edited.reminder_timings == ("2d",)
    assert edited.reminders_sent == ()


@pytest.mark.asyncio
@pytest.mark.parametrize("token", ["1000000000d", "999999999999y", "6d"])
async def test_edit_rejects_unusable_timings(service, make_schedule, storage, token):
    schedule = await make_schedule()
    schedule = await storage.save_schedule(replace(schedule, reminders_sent=("3d",)))

    result = await service.edit(schedule.id, "g1", "author", {"reminder_timings": [token]})

    assert isinstance(result.error, ValidationError)
    assert result.error.field.startswith("reminder_timings")
    stored = await storage.get_schedule(schedule.id, "g1")
    assert stored.reminder_timings == ("3d", "1d", "8h")
    assert stored.reminders_sent == ("3d",)


@pytest.mark.asyncio
async def test_edit_adds_slots(service, make_schedule):
    schedule = await make_schedule()

    edited = (await service.edit(schedule.id, "g1", "author", {"add_slots": ["Thu 19:00"]})).unwrap()
    duplicate = await service.edit(schedule.id, "g1", "author", {"add_slots": ["Mon 19:00"]})

    assert [slot.label for slot in edited.slots][-1] == "Thu 19:00"
    assert len(edited.slots) == 4
    assert isinstance(duplicate.error, ValidationError)


@pytest.mark.asyncio
async def test_edit_rejected_for_closed_schedule_and_other_users(service, make_schedule):
    schedule = await make_schedule()

    denied = await service.edit(schedule.id, "g1", "intruder", {"title": "Hijacked"})
    await service.close(schedule.id, "g1", "author")
    closed = await service.edit(schedule.id, "g1", "author", {"title": "Too late"})

    assert isinstance(denied.error, PermissionDeniedError)
    assert isinstance(closed.error, ScheduleClosedError)


@pytest.mark.asyncio
async def test_remove_slot_prunes_responses(service, make_schedule, storage):
    schedule = await make_schedule()
    await storage.save_response(
        ResponseSnapshot(
            schedule_id=schedule.id,
            guild_id="g1",
            user_id="alice",
            display_name="Alice",
            statuses={"s1": ResponseStatus.OK, "s2": ResponseStatus.NG},
        )
    )

    updated = (await service.remove_slot(schedule.id, "g1", "author", "s2")).unwrap()

    assert updated.slot_ids == ("s1", "s3")
    response = await storage.get_response(schedule.id, "g1", "alice")
    assert response.statuses == {"s1": ResponseStatus.OK}


@pytest.mark.asyncio
async def test_remove_slot_guards(service, make_schedule):
    single = await make_schedule(slots=(SlotCandidate("s1", "Only option"),))

    last = await service.remove_slot(single.id, "g1", "author", "s1")
    unknown = await service.remove_slot(single.id, "g1", "author", "nope")

    assert isinstance(last.error, ValidationError)
    assert isinstance(unknown.error, NotFoundError)


@pytest.mark.asyncio
async def test_delete_removes_schedule_and_message(service, make_schedule, storage, chat):
    schedule = await make_schedule()
    await storage.save_response(
        ResponseSnapshot(schedule_id=schedule.id, guild_id="g1", user_id="alice", display_name="Alice")
    )

    result = await service.delete(schedule.id, "g1", "author")

    assert result.is_success()
    assert await storage.get_schedule(schedule.id, "g1") is None
    assert await storage.list_responses(schedule.id, "g1") == []
    assert chat.deleted == [("c1", schedule.message_id)]


@pytest.mark.asyncio
async def test_delete_succeeds_when_message_removal_fails(service, make_schedule, chat, storage):
    schedule = await make_schedule()
    chat.delete_error = ChatTransportError("missing", status=404)

    result = await service.delete(schedule.id, "g1", "author")

    assert result.is_success()
    assert await storage.get_schedule(schedule.id, "g1") is None


@pytest.mark.asyncio
async def test_close_reports_conflict_after_lost_race(make_schedule, storage, clock):
    schedule = await make_schedule()

    class RacingStorage:
        def __init__(self, inner):
            self._inner = inner
            self.raced = False

        def __getattr__(self, name):
            return getattr(self._inner, name)

        async def save_schedule(self, snapshot):
            if not self.raced:
                self.raced = True
                await self._inner.save_schedule(replace(snapshot, status=ScheduleStatus.OPEN, title="Edited"))
                raise StaleWriteError("Schedule", snapshot.id)
            return await self._inner.save_schedule(snapshot)

    service = ScheduleService(RacingStorage(storage), clock=clock)

    result = await service.close(schedule.id, "g1", "author")

    assert isinstance(result.error, ConflictError)


@pytest.mark.asyncio
async def test_attach_message_and_summary(service, make_schedule, storage):
    schedule = await make_schedule(message_id=None)

    attached = (await service.attach_message(schedule.id, "g1", "msg-42")).unwrap()
    summary = (await service.get_summary(schedule.id, "g1")).unwrap()

    assert attached.message_id == "msg-42"
    assert summary.participant_count == 0
    assert summary.best_slot_id is None


@pytest.mark.asyncio
async def test_find_by_message(service, make_schedule):
    schedule = await make_schedule(message_id="msg-display")
    await make_schedule(guild_id="g2", message_id="msg-display")

    found = await service.find_by_message("g1", "msg-display")
    missing = await service.find_by_message("g1", "msg-unknown")

    assert found.unwrap().id == schedule.id
    assert isinstance(missing.error, NotFoundError)


@pytest.mark.asyncio
async def test_list_by_channel_hides_closed_unless_asked(service, make_schedule):
    open_one = await make_schedule(title="Open")
    closed_one = await make_schedule(title="Closed")
    await make_schedule(channel_id="c2", title="Elsewhere")
    await service.close(closed_one.id, "g1", "author")

    visible = (await service.list_by_channel("g1", "c1")).unwrap()
    everything = (await service.list_by_channel("g1", "c1", include_closed=True)).unwrap()

    assert [item.id for item in visible] == [open_one.id]
    assert {item.id for item in everything} == {open_one.id, closed_one.id}


@pytest.mark.asyncio
async def test_get_response(service, make_schedule, storage):
    schedule = await make_schedule()
    await storage.save_response(
        ResponseSnapshot(
            schedule_id=schedule.id,
            guild_id="g1",
            user_id="alice",
            display_name="Alice",
            statuses={"s1": ResponseStatus.OK},
        )
    )

    found = await service.get_response(schedule.id, "g1", "alice")
    no_answer = await service.get_response(schedule.id, "g1", "bob")
    no_schedule = await service.get_response("missing", "g1", "alice")

    assert found.unwrap().statuses == {"s1": ResponseStatus.OK}
    assert isinstance(no_answer.error, NotFoundError)
    assert isinstance(no_schedule.error, NotFoundError)
    assert no_schedule.error.entity_type == "Schedule"
