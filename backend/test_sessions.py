import datetime

import pytest

from conftest import CANDIDATE_ID, MISSING_ID, RECRUITER_ID, SESSION_ID, STRANGER_ID, make_interview, run
from sessions import (
    COMPLETED,
    IN_PROGRESS,
    SCHEDULED,
    InMemorySessionRepository,
    InvalidTransition,
    SessionForbidden,
    SessionNotFound,
    SessionStateMachine,
)


def machine(interview, analyzer=None):
    return SessionStateMachine(InMemorySessionRepository([interview]), analyzer)


def test_start_scheduled_session():
    interview = make_interview(status=SCHEDULED)
    started = run(machine(interview).start(SESSION_ID, CANDIDATE_ID))
    assert started.status == IN_PROGRESS
    assert started.started_at is not None


def test_start_before_scheduled_time_fails():
    future = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)
    interview = make_interview(status=SCHEDULED, scheduled_at=future)
    with pytest.raises(InvalidTransition):
        run(machine(interview).start(SESSION_ID, CANDIDATE_ID))
    assert interview.status == SCHEDULED


def test_start_accepts_naive_scheduled_at():
    past = datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None) - datetime.timedelta(minutes=1)
    interview = make_interview(status=SCHEDULED, scheduled_at=past)
    assert run(machine(interview).start(SESSION_ID, CANDIDATE_ID)).status == IN_PROGRESS


@pytest.mark.parametrize("status", [IN_PROGRESS, COMPLETED])
def test_start_from_wrong_state_names_current_state(status):
    interview = make_interview(status=status)
    with pytest.raises(InvalidTransition) as exc:
        run(machine(interview).start(SESSION_ID, CANDIDATE_ID))
    assert status in exc.value.message


def test_end_succeeds_once():
    interview = make_interview(status=IN_PROGRESS)
    sm = machine(interview)
    ended = run(sm.end(SESSION_ID, CANDIDATE_ID))
    assert ended.status == COMPLETED
    assert ended.ended_at is not None

    with pytest.raises(InvalidTransition) as exc:
        run(sm.end(SESSION_ID, CANDIDATE_ID))
    assert "completed" in exc.value.message


def test_end_from_scheduled_rejected():
    with pytest.raises(InvalidTransition):
        run(machine(make_interview(status=SCHEDULED)).end(SESSION_ID, CANDIDATE_ID))


def test_administrative_end_runs_analysis_on_responses():
    seen = []

    async def analyzer(responses):
        seen.append(responses)
        return {"overall_score": 80, "summary": "Solid."}

    interview = make_interview(responses=[{"question": "Q?", "answer": "A.", "score": 80}])
    ended = run(machine(interview, analyzer).end(SESSION_ID, RECRUITER_ID))
    assert ended.ai_analysis == {"overall_score": 80, "summary": "Solid."}
    assert len(seen) == 1


def test_administrative_end_skips_analysis_without_responses():
    async def analyzer(responses):
        raise AssertionError("should not be called")

    ended = run(machine(make_interview(), analyzer).end(SESSION_ID, CANDIDATE_ID))
    assert ended.ai_analysis is None


def test_end_by_intent_marks_wrap_without_analysis():
    async def analyzer(responses):
        raise AssertionError("should not be called")

    interview = make_interview(stage_flow={"stage": "core", "turn": 3}, responses=[{"question": "Q", "answer": "A"}])
    ended = run(machine(interview, analyzer).end_by_intent(interview))
    assert ended.status == COMPLETED
    assert ended.stage_flow == {"stage": "wrap", "turn": 3}


def test_ownership_checks():
    interview = make_interview(status=SCHEDULED)
    sm = machine(interview)
    with pytest.raises(SessionForbidden):
        run(sm.start(SESSION_ID, STRANGER_ID))
    assert interview.status == SCHEDULED
    with pytest.raises(SessionNotFound):
        run(sm.start(MISSING_ID, CANDIDATE_ID))


def test_recruiter_access_is_optional():
    interview = make_interview()
    sm = machine(interview)
    assert run(sm.load(SESSION_ID, RECRUITER_ID)) is interview
    with pytest.raises(SessionForbidden):
        run(sm.load(SESSION_ID, RECRUITER_ID, allow_recruiter=False))
