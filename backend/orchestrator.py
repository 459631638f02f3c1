"""Turn orchestration and server-sent event framing.

One request is one turn. Access checks and the end-intent state change happen
in :meth:`TurnOrchestrator.begin_turn`, before anything is streamed. The
returned async generator is the only writer of its stream; ``sse_stream``
drains it, frames each event as ``data: <json>\\n\\n`` and closes with a literal
``[DONE]`` frame.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterator, Optional

from dialogue import DialogueEngine
from intents import is_end_intent
from sessions import COMPLETED, WRAP_STAGE, SessionStateMachine

logger = logging.getLogger(__name__)

DONE = "[DONE]"
END_ACK = "Understood, ending the interview now. Great job today."
CHUNK_MIN_CHARS = 26

_SENTENCE_END_RE = re.compile(r"[.!?]\s$")
_WORD_SPLIT_RE = re.compile(r"(\s+)")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class OutgoingEvent:
    text: str
    final: bool = False
    meta: Optional[dict] = None

    def to_dict(self) -> dict:
        payload = {"text": self.text, "final": self.final}
        if self.meta is not None:
            payload["meta"] = self.meta
        return payload


def encode_sse(event) -> str:
    if event == DONE:
        return f"data: {DONE}\n\n"
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


def chunk_text(text: str, min_chars: int = CHUNK_MIN_CHARS) -> Iterator[str]:
    """Split on word boundaries into TTS-sized pieces.

    A piece is flushed once it reaches ``min_chars`` or ends with a sentence
    terminator followed by whitespace; any remainder is flushed last.
    """
    buf = ""
    for token in _WORD_SPLIT_RE.split(text):
        buf += token
        if len(buf) >= min_chars or _SENTENCE_END_RE.search(buf):
            yield buf
            buf = ""
    if buf:
        yield buf


class TurnOrchestrator:
    def __init__(self, state_machine: SessionStateMachine, engine: DialogueEngine):
        self.state_machine = state_machine
        self.engine = engine

    async def begin_turn(self, session_id: str, user_id: str, last_user: str) -> AsyncIterator[OutgoingEvent]:
        """Authorize, apply the end branch if requested, and return the event producer.

        Raises a ``SessionError`` (not found, forbidden, invalid transition)
        before any event is produced.
        """
        interview = await self.state_machine.load(session_id, user_id, allow_recruiter=False)

        if is_end_intent(last_user) and interview.status != COMPLETED:
            await self.state_machine.end_by_intent(interview)
            logger.info("[TURN] %s end intent: %r", session_id, last_user[:80])
            return self._end_events()

        return self._normal_events(session_id, last_user)

    async def _end_events(self) -> AsyncIterator[OutgoingEvent]:
        yield OutgoingEvent(text=END_ACK, final=False)
        yield OutgoingEvent(text="", final=True, meta={"stage": WRAP_STAGE, "ended": True})

    async def _normal_events(self, session_id: str, last_user: str) -> AsyncIterator[OutgoingEvent]:
        try:
            reply = await self.engine.handle_turn(session_id, last_user)
        except Exception as e:
            logger.exception("[TURN] %s dialogue engine failed", session_id)
            yield OutgoingEvent(text=f"Error: {e}", final=True)
            return

        ack = str(reply.ack or "").strip()
        if ack:
            yield OutgoingEvent(text=ack)

        question = str(reply.question or "")
        for piece in chunk_text(question):
            yield OutgoingEvent(text=piece)

        yield OutgoingEvent(
            text="",
            final=True,
            meta={"stage": reply.stage, "turn": reply.turn, "newQuestion": question},
        )


async def sse_stream(
    events: AsyncIterator[OutgoingEvent],
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Frame events for ``text/event-stream``; stops early once the client has gone."""
    try:
        async for event in events:
            if is_disconnected is not None and await is_disconnected():
                logger.info("[TURN] Client disconnected, discarding remaining events")
                return
            yield encode_sse(event)
        yield encode_sse(DONE)
    finally:
        await events.aclose()
