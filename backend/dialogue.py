"""Dialogue engine: picks the interviewer's next acknowledgment and question.

The orchestrator only depends on :class:`DialogueEngine`. The Gemini-backed
implementation keeps per-interview progress in ``Interview.stage_flow`` and the
running conversation in :class:`memory.ConversationMemory`.
"""
import contextlib
import datetime
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Optional

from llm import gemini_api_key, generate_text, parse_json_reply
from memory import ConversationMemory, SqlMessageStore
from models import Interview
from sessions import SessionNotFound, SessionRepository, SqlSessionRepository

logger = logging.getLogger(__name__)

INTERVIEWER_NAME = os.getenv("INTERVIEWER_NAME", "Ava")

DEFAULT_ACK = "Okay."
DEFAULT_QUESTION = "Let's begin. Could you briefly introduce your background?"

FALLBACK_SCORE = 3
FALLBACK_REASON = "Reasonable answer."

_QUESTION_RE = re.compile(r"QUESTION:\s*([\s\S]*?)(?:\nRUBRIC:|$)", re.IGNORECASE)
_RUBRIC_RE = re.compile(r"RUBRIC:\s*([\s\S]*)$", re.IGNORECASE)


@dataclass
class TurnReply:
    ack: str
    question: str
    stage: str
    turn: int


class DialogueEngine(ABC):
    @abstractmethod
    async def handle_turn(self, session_id: str, utterance: str) -> TurnReply: ...

    @abstractmethod
    async def start_session(self, session_id: str) -> TurnReply: ...


def next_stage(current: str, turn: int) -> str:
    if current == "intro":
        return "warmup"
    if current == "warmup" and turn >= 2:
        return "core"
    if current == "core" and turn >= 6:
        return "followup"
    if current == "followup" and turn >= 8:
        return "wrap"
    return current


def new_flow() -> dict:
    return {"stage": "intro", "turn": 0, "current_question": "", "current_rubric": "", "topics_asked": []}


def parse_turn_reply(text: str) -> dict:
    try:
        return parse_json_reply(text)
    except (ValueError, json.JSONDecodeError):
        pass
    match = _QUESTION_RE.search(text)
    question = re.sub(r"\s+", " ", match.group(1)).strip() if match else ""
    rubric_match = _RUBRIC_RE.search(text)
    rubric = re.sub(r"\s+", " ", rubric_match.group(1)).strip() if rubric_match else ""
    return {"ack": DEFAULT_ACK, "question": question, "rubric": rubric, "topic_tag": "misc"}


def build_system_prompt(interview: Interview, topics_asked: list[str]) -> str:
    return f"""You are {INTERVIEWER_NAME}, a warm, encouraging technical interviewer.
Keep turns SHORT and voice-friendly.

Role: {interview.category or "Software Engineer"}
Primary stack: {interview.industry or "Full-Stack"}
Already asked topics: {", ".join(topics_asked) or "(none)"}

Conversation style:
- Brief, human back-channels ("got it", "thanks", "okay") before the question
- ONE clear question per turn, at most 20 words
- No multi-part questions, no lists, no code
- Encourage gently if the candidate seems unsure"""


def build_turn_prompt(system_prompt: str, context: list[dict], topics_asked: list[str]) -> str:
    speakers = {"system": "Instructions", "user": "Candidate", "assistant": "Interviewer"}
    history = "\n\n".join(f"{speakers[m['role']]}: {m['content']}" for m in context[1:])
    return f"""{system_prompt}

Conversation so far:
{history or "(no messages yet)"}

Return ONLY valid minified JSON with these keys:
{{"ack": "<at most 12 words, warm back-channel, no question mark>",
  "question": "<ONE direct question, at most 20 words>",
  "rubric": "<private rubric for judging the answer, 1 short paragraph>",
  "topic_tag": "<kebab-case topic like 'state-management'>"}}

Hard rules:
- "ack" must NOT contain a question.
- "question" must be ONE sentence and avoid topics already asked: [{", ".join(topics_asked)}].
- No markdown, no code fences, no extra text outside JSON."""


def _clamp_score(value) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return FALLBACK_SCORE
    return max(1, min(5, score))


async def score_answer(answer: str, rubric: str, model: Optional[str] = None) -> tuple[int, str]:
    """Judge one answer against the private rubric: an integer 1-5 and a one-line reason.

    Any model failure, or a missing API key, scores the answer as average.
    """
    if not gemini_api_key():
        return FALLBACK_SCORE, FALLBACK_REASON

    prompt = f"""Rubric:
{rubric or "(none)"}

Answer:
{answer}

Score 1-5 (integer) and one-sentence reason.
Return JSON exactly: {{"score": <1-5>, "reason": "<short>"}}"""

    try:
        data = parse_json_reply(await generate_text(prompt, model or os.getenv("SCORING_MODEL", "gemini-2.5-flash-lite")))
    except Exception as e:
        logger.warning("[SCORE] Answer scoring failed, using fallback: %s", e)
        return FALLBACK_SCORE, FALLBACK_REASON

    reason = str(data.get("reason") or FALLBACK_REASON).strip()
    return _clamp_score(data.get("score", FALLBACK_SCORE)), reason


@contextlib.asynccontextmanager
async def _sql_scope(session_factory):
    async with session_factory() as db:
        yield ConversationMemory(SqlMessageStore(db)), SqlSessionRepository(db)


class GeminiDialogueEngine(DialogueEngine):
    """Opens its own storage scope per call, so it can run after the request has returned."""

    def __init__(
        self,
        session_factory=None,
        scope: Optional[Callable[[], AsyncContextManager]] = None,
        model: Optional[str] = None,
    ):
        if scope is None:
            if session_factory is None:
                raise ValueError("GeminiDialogueEngine needs a session_factory or a scope")
            scope = lambda: _sql_scope(session_factory)  # noqa: E731
        self._scope = scope
        self.model = model or os.getenv("DIALOGUE_MODEL", "gemini-2.5-flash-lite")

    async def start_session(self, session_id: str) -> TurnReply:
        async with self._scope() as (memory, repository):
            interview = await self._load(repository, session_id)
            flow = {**new_flow(), **(interview.stage_flow or {})}
            ack, question, rubric, topic = await self._next_turn(memory, session_id, interview, flow)
            self._remember_question(flow, question, rubric, topic)
            interview.stage_flow = flow
            await repository.save(interview)
            await memory.add_assistant_turn(session_id, f"{ack} {question}".strip())
            return TurnReply(ack=ack, question=question, stage=flow["stage"], turn=flow["turn"])

    async def handle_turn(self, session_id: str, utterance: str) -> TurnReply:
        async with self._scope() as (memory, repository):
            await memory.add_user_turn(session_id, utterance)
            interview = await self._load(repository, session_id)
            flow = {**new_flow(), **(interview.stage_flow or {})}

            if flow.get("current_question"):
                score, reason = await score_answer(utterance, flow.get("current_rubric") or "")
                interview.responses = [
                    *(interview.responses or []),
                    {
                        "turn": flow["turn"],
                        "question": flow["current_question"],
                        "answer": utterance,
                        "score": score,
                        "reasoning": reason,
                        "answered_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                    },
                ]

            flow["turn"] = int(flow.get("turn") or 0) + 1
            flow["stage"] = next_stage(flow.get("stage") or "intro", flow["turn"])

            ack, question, rubric, topic = await self._next_turn(memory, session_id, interview, flow)
            self._remember_question(flow, question, rubric, topic)
            interview.stage_flow = flow
            await repository.save(interview)
            await memory.add_assistant_turn(session_id, f"{ack} {question}".strip())

            logger.info("[TURN] %s turn=%s stage=%s topic=%s", session_id, flow["turn"], flow["stage"], topic)
            return TurnReply(ack=ack, question=question, stage=flow["stage"], turn=flow["turn"])

    @staticmethod
    async def _load(repository: SessionRepository, session_id: str) -> Interview:
        interview = await repository.get(session_id)
        if interview is None:
            raise SessionNotFound("Interview not found")
        return interview

    @staticmethod
    def _remember_question(flow: dict, question: str, rubric: str, topic: str) -> None:
        flow["current_question"] = question
        flow["current_rubric"] = rubric
        topics = list(flow.get("topics_asked") or [])
        if topic not in topics:
            topics.append(topic)
        flow["topics_asked"] = topics

    async def _next_turn(
        self, memory: ConversationMemory, session_id: str, interview: Interview, flow: dict
    ) -> tuple[str, str, str, str]:
        if not gemini_api_key():
            logger.warning("[TURN] GEMINI_API_KEY not configured, using fallback question")
            return DEFAULT_ACK, DEFAULT_QUESTION, "", "general"

        topics = list(flow.get("topics_asked") or [])
        system_prompt = build_system_prompt(interview, topics)
        context = await memory.get_context(session_id, system_prompt)
        parsed = parse_turn_reply(await generate_text(build_turn_prompt(system_prompt, context, topics), self.model))

        ack = str(parsed.get("ack") or DEFAULT_ACK).strip()
        question = str(parsed.get("question") or DEFAULT_QUESTION).strip()
        rubric = str(parsed.get("rubric") or "").strip()
        topic = str(parsed.get("topic_tag") or "general").strip().lower()
        return ack, question, rubric, topic
