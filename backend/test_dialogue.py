import contextlib

import pytest

import dialogue
from analysis import analyze_interview
from conftest import CANDIDATE_ID, SESSION_ID, MISSING_ID, make_interview, run
from dialogue import (
    DEFAULT_ACK,
    DEFAULT_QUESTION,
    FALLBACK_SCORE,
    GeminiDialogueEngine,
    next_stage,
    parse_turn_reply,
    score_answer,
)
from memory import ConversationMemory, InMemoryMessageStore
from sessions import InMemorySessionRepository, SessionNotFound, SessionStateMachine


@pytest.mark.parametrize(
    "current, turn, expected",
    [
        ("intro", 1, "warmup"),
        ("warmup", 1, "warmup"),
        ("warmup", 2, "core"),
        ("core", 5, "core"),
        ("core", 6, "followup"),
        ("followup", 8, "wrap"),
        ("wrap", 12, "wrap"),
    ],
)
def test_next_stage(current, turn, expected):
    assert next_stage(current, turn) == expected


def test_parse_turn_reply_json_and_fences():
    reply = '```json\n{"ack": "Thanks", "question": "Why Redis?", "topic_tag": "caching"}\n```'
    assert parse_turn_reply(reply) == {"ack": "Thanks", "question": "Why Redis?", "topic_tag": "caching"}
    assert parse_turn_reply('Sure! {"ack": "Ok", "question": "Next?"}')["question"] == "Next?"


def test_parse_turn_reply_question_fallback():
    parsed = parse_turn_reply("QUESTION: How do you test\n async code?\nRUBRIC: mentions fixtures")
    assert parsed == {
        "ack": DEFAULT_ACK,
        "question": "How do you test async code?",
        "rubric": "mentions fixtures",
        "topic_tag": "misc",
    }


@pytest.fixture
def offline(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    interview = make_interview(stage_flow={})
    repository = InMemorySessionRepository([interview])
    memory = ConversationMemory(InMemoryMessageStore())

    @contextlib.asynccontextmanager
    async def scope():
        yield memory, repository

    return GeminiDialogueEngine(scope=scope), interview, memory


def test_engine_requires_storage():
    with pytest.raises(ValueError):
        GeminiDialogueEngine()


def test_offline_engine_walks_the_flow(offline):
    engine, interview, memory = offline

    async def scenario():
        opening = await engine.start_session(SESSION_ID)
        first = await engine.handle_turn(SESSION_ID, "I build APIs in Python")
        second = await engine.handle_turn(SESSION_ID, "Mostly FastAPI")
        return opening, first, second, await memory.get_context(SESSION_ID)

    opening, first, second, context = run(scenario())

    assert (opening.stage, opening.turn, opening.question) == ("intro", 0, DEFAULT_QUESTION)
    assert (first.stage, first.turn) == ("warmup", 1)
    assert (second.stage, second.turn) == ("core", 2)

    assert [r["answer"] for r in interview.responses] == ["I build APIs in Python", "Mostly FastAPI"]
    assert interview.responses[0]["question"] == DEFAULT_QUESTION
    assert interview.responses[0]["turn"] == 0
    assert interview.stage_flow["topics_asked"] == ["general"]

    assert [m["role"] for m in context] == ["assistant", "user", "assistant", "user", "assistant"]
    assert context[1]["content"] == "I build APIs in Python"
    assert context[-1]["content"] == f"{DEFAULT_ACK} {DEFAULT_QUESTION}"


def test_first_turn_without_opening_records_no_response(offline):
    engine, interview, _ = offline
    reply = run(engine.handle_turn(SESSION_ID, "hello"))
    assert reply.turn == 1
    assert interview.responses == []


def test_unknown_session(offline):
    engine, _, _ = offline
    with pytest.raises(SessionNotFound):
        run(engine.handle_turn(MISSING_ID, "hello"))


def test_answers_are_scored_and_feed_the_aggregate(offline):
    engine, interview, _ = offline

    async def scenario():
        await engine.start_session(SESSION_ID)
        await engine.handle_turn(SESSION_ID, "I built a cache layer")
        await engine.handle_turn(SESSION_ID, "We used Redis with a short TTL")
        machine = SessionStateMachine(InMemorySessionRepository([interview]), analyze_interview)
        return await machine.end(SESSION_ID, CANDIDATE_ID)

    ended = run(scenario())
    assert [r["score"] for r in interview.responses] == [FALLBACK_SCORE, FALLBACK_SCORE]
    assert all(r["reasoning"] for r in interview.responses)
    assert ended.ai_analysis["overall_score"] == FALLBACK_SCORE


def test_answer_is_judged_against_current_rubric(offline, monkeypatch):
    engine, interview, _ = offline
    interview.stage_flow = {"stage": "core", "turn": 3, "current_question": "How do you expire keys?", "current_rubric": "mentions TTL"}
    judged = []

    async def fake_score(answer, rubric, model=None):
        judged.append((answer, rubric))
        return 5, "Clear and specific."

    monkeypatch.setattr(dialogue, "score_answer", fake_score)
    run(engine.handle_turn(SESSION_ID, "Each key gets a TTL"))

    assert judged == [("Each key gets a TTL", "mentions TTL")]
    assert interview.responses[-1]["score"] == 5
    assert interview.responses[-1]["turn"] == 3
    assert interview.stage_flow["current_rubric"] == ""


@pytest.mark.parametrize(
    "reply, expected",
    [
        ('{"score": 4, "reason": "Good depth."}', (4, "Good depth.")),
        ('{"score": 9, "reason": "Too generous."}', (5, "Too generous.")),
        ('{"score": 0}', (1, dialogue.FALLBACK_REASON)),
        ('{"score": "n/a", "reason": "?"}', (FALLBACK_SCORE, "?")),
        ("not json at all", (FALLBACK_SCORE, dialogue.FALLBACK_REASON)),
    ],
)
def test_score_answer_clamps_and_falls_back(monkeypatch, reply, expected):
    monkeypatch.setenv("GEMINI_API_KEY", "key")

    async def fake_generate(prompt, model):
        return reply

    monkeypatch.setattr(dialogue, "generate_text", fake_generate)
    assert run(score_answer("answer", "rubric")) == expected


def test_score_answer_survives_model_errors(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "key")

    async def broken(prompt, model):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr(dialogue, "generate_text", broken)
    assert run(score_answer("answer", "")) == (FALLBACK_SCORE, dialogue.FALLBACK_REASON)
