import asyncio
import datetime

import pytest

from dialogue import DialogueEngine, TurnReply
from memory import ConversationMemory, InMemoryMessageStore
from models import Interview
from sessions import IN_PROGRESS, InMemorySessionRepository

CANDIDATE_ID = "64b7f0c2e4a1b2c3d4e5f601"
RECRUITER_ID = "64b7f0c2e4a1b2c3d4e5f602"
STRANGER_ID = "64b7f0c2e4a1b2c3d4e5f6ff"
SESSION_ID = "64b7f0c2e4a1b2c3d4e5f610"
MISSING_ID = "64b7f0c2e4a1b2c3d4e5f699"


def make_interview(status=IN_PROGRESS, scheduled_at=None, **kwargs) -> Interview:
    now = datetime.datetime.now(datetime.timezone.utc)
    fields = {
        "id": SESSION_ID,
        "candidate_id": CANDIDATE_ID,
        "recruiter_id": RECRUITER_ID,
        "title": "Backend practice",
        "status": status,
        "scheduled_at": scheduled_at or now - datetime.timedelta(minutes=5),
        "stage_flow": {},
        "responses": [],
    }
    fields.update(kwargs)
    return Interview(**fields)


class FakeEngine(DialogueEngine):
    def __init__(self, reply=None, error=None):
        self.reply = reply or TurnReply(ack="Got it.", question="Tell me about Redis.", stage="warmup", turn=1)
        self.error = error
        self.calls = []

    async def handle_turn(self, session_id, utterance):
        self.calls.append((session_id, utterance))
        if self.error is not None:
            raise self.error
        return self.reply

    async def start_session(self, session_id):
        self.calls.append((session_id, None))
        return TurnReply(ack="Welcome.", question="Could you introduce yourself?", stage="intro", turn=0)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def interview():
    return make_interview()


@pytest.fixture
def repository(interview):
    return InMemorySessionRepository([interview])


@pytest.fixture
def memory():
    return ConversationMemory(InMemoryMessageStore())


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def api(repository, memory, engine, monkeypatch):
    from fastapi.testclient import TestClient
    import main

    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    main.app.dependency_overrides[main.get_session_repository] = lambda: repository
    main.app.dependency_overrides[main.get_memory] = lambda: memory
    main.app.dependency_overrides[main.get_dialogue_engine] = lambda: engine
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(user_id=CANDIDATE_ID) -> dict:
    return {"X-User-Id": user_id}
