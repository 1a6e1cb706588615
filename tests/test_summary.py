from schedbot.domain.entities import ResponseSnapshot, ResponseStatus, ScheduleSnapshot, SlotCandidate
from schedbot.domain.summary import score, summarize

OK = ResponseStatus.OK
MAYBE = ResponseStatus.MAYBE
NG = ResponseStatus.NG


def _schedule(*labels):
    slots = tuple(SlotCandidate(f"s{index}", label) for index, label in enumerate(labels, start=1))
    return ScheduleSnapshot(
        id="sched-1",
        guild_id="g1",
        channel_id="c1",
        title="Offsite",
        slots=slots,
        author_id="author",
    )


def _response(user_id, **statuses):
    return ResponseSnapshot(
        schedule_id="sched-1",
        guild_id="g1",
        user_id=user_id,
        display_name=user_id,
        statuses=statuses,
        version=1,
    )


def test_score_weights():
    assert score(ok=1, maybe=0, ng=0) == 1000
    assert score(ok=0, maybe=1, ng=0) == 10
    assert score(ok=0, maybe=0, ng=1) == -100
    assert score(ok=2, maybe=1, ng=1) == 1910


def test_best_slot_prefers_higher_score():
    schedule = _schedule("A", "B", "C")
    responses = [
        _response("u1", s1=OK, s2=OK, s3=MAYBE),
        _response("u2", s1=OK, s2=OK, s3=MAYBE),
        _response("u3", s1=NG, s2=MAYBE, s3=MAYBE),
    ]

    summary = summarize(schedule, responses)

    assert [item.score for item in summary.tallies] == [1900, 2010, 30]
    assert summary.best_slot_id == "s2"
    assert summary.best_slot.label == "B"
    assert summary.participant_count == 3


def test_tie_keeps_first_listed_slot():
    schedule = _schedule("A", "B")
    responses = [_response("u1", s1=OK, s2=OK)]

    assert summarize(schedule, responses).best_slot_id == "s1"


def test_no_best_slot_without_responses():
    summary = summarize(_schedule("A", "B"), [])

    assert summary.best_slot_id is None
    assert summary.best_slot is None
    assert summary.participant_count == 0
    assert all(item.total == 0 for item in summary.tallies)


def test_unanswered_slots_count_participants_only():
    schedule = _schedule("A", "B")
    responses = [_response("u1", s1=OK), _response("u2")]

    summary = summarize(schedule, responses)

    assert summary.participant_count == 2
    assert summary.tally("s1").ok == 1
    assert summary.tally("s2").total == 0
    assert summary.best_slot_id == "s1"


def test_all_negative_still_picks_least_bad():
    schedule = _schedule("A", "B")
    responses = [_response("u1", s1=NG, s2=NG), _response("u2", s1=NG, s2=MAYBE)]

    summary = summarize(schedule, responses)

    assert summary.tally("s1").score == -200
    assert summary.tally("s2").score == -90
    assert summary.best_slot_id == "s2"


def test_statuses_for_removed_slots_are_ignored():
    schedule = _schedule("A")
    responses = [_response("u1", s1=MAYBE, s9=OK)]

    summary = summarize(schedule, responses)

    assert len(summary.tallies) == 1
    assert summary.tally("s1").maybe == 1
    assert summary.tally("s9") is None
