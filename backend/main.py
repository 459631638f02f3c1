from fastapi import FastAPI, Depends, HTTPException, Header, Path, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, field_validator
from typing import Optional
import os
import json
import asyncio
import logging
from dotenv import load_dotenv
import numpy as np

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger("interview")

from database import init_db, get_db, ping_db, async_session
from models import Interview
from analysis import analyze_interview
from audio import PcmResampler, TARGET_RATE
from dialogue import DialogueEngine, GeminiDialogueEngine
from memory import ConversationMemory, SqlMessageStore
from orchestrator import SSE_HEADERS, TurnOrchestrator, sse_stream
from relay import SpeechSynthesisRelay, TranscriptionRelay, VendorError, fetch_streaming_token, pump_frames
from sessions import (
    SessionError,
    SessionRepository,
    SessionStateMachine,
    SqlSessionRepository,
    check_access,
)

OBJECT_ID_PATTERN = r"^[0-9a-fA-F]{24}$"

app = FastAPI(title="Interview Turn API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:3000")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    await init_db()


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(VendorError)
async def vendor_error_handler(request: Request, exc: VendorError):
    logger.warning("[VENDOR] %s", exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# ── Helpers ──────────────────────────────────────────────

def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_interview(interview: Interview) -> dict:
    return {
        "id": interview.id,
        "candidateId": interview.candidate_id,
        "recruiterId": interview.recruiter_id,
        "title": interview.title,
        "status": interview.status,
        "scheduledAt": _iso(interview.scheduled_at),
        "startedAt": _iso(interview.started_at),
        "endedAt": _iso(interview.ended_at),
        "stageFlow": interview.stage_flow or {},
        "aiAnalysis": interview.ai_analysis,
    }


# ── Dependencies ─────────────────────────────────────────

async def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller id as forwarded by the auth gateway."""
    if not x_user_id:
        raise HTTPException(401, "Unauthorized")
    return x_user_id


async def operator_user(user_id: str = Depends(current_user)) -> str:
    """Callers listed in OPERATOR_USER_IDS; cross-session views are limited to them."""
    operators = {v.strip() for v in os.getenv("OPERATOR_USER_IDS", "").split(",") if v.strip()}
    if user_id not in operators:
        raise HTTPException(403, "Operator access required")
    return user_id


def get_session_repository(db: AsyncSession = Depends(get_db)) -> SessionRepository:
    return SqlSessionRepository(db)


def get_memory(db: AsyncSession = Depends(get_db)) -> ConversationMemory:
    return ConversationMemory(SqlMessageStore(db))


def get_dialogue_engine() -> DialogueEngine:
    # streams outlive the request-scoped db session, so the engine opens its own
    return GeminiDialogueEngine(session_factory=async_session)


def get_state_machine(repository: SessionRepository = Depends(get_session_repository)) -> SessionStateMachine:
    analyzer = analyze_interview if _env_flag("ENABLE_INTERVIEW_ANALYSIS", True) else None
    return SessionStateMachine(repository, analyzer)


def get_orchestrator(
    state_machine: SessionStateMachine = Depends(get_state_machine),
    engine: DialogueEngine = Depends(get_dialogue_engine),
) -> TurnOrchestrator:
    return TurnOrchestrator(state_machine, engine)


# ── Turn Stream ──────────────────────────────────────────

class TurnRequest(BaseModel):
    sessionId: str = Field(..., pattern=OBJECT_ID_PATTERN)
    lastUser: str

    @field_validator("lastUser")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("lastUser must not be empty")
        return value


@app.post("/api/interview/stream")
async def interview_stream(
    body: TurnRequest,
    request: Request,
    user_id: str = Depends(current_user),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    events = await orchestrator.begin_turn(body.sessionId, user_id, body.lastUser)
    return StreamingResponse(
        sse_stream(events, request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ── Session Lifecycle ────────────────────────────────────

@app.post("/api/interviews/{interview_id}/start")
async def start_interview(
    interview_id: str = Path(..., pattern=OBJECT_ID_PATTERN),
    user_id: str = Depends(current_user),
    state_machine: SessionStateMachine = Depends(get_state_machine),
    engine: DialogueEngine = Depends(get_dialogue_engine),
):
    interview = await state_machine.start(interview_id, user_id)

    try:
        opening = await engine.start_session(interview.id)
    except Exception as e:
        logger.exception("[SESSION] Opening question failed for %s", interview.id)
        raise HTTPException(502, f"Dialogue engine error: {e}")

    return {
        "interviewId": interview.id,
        "sessionId": interview.id,
        "stage": opening.stage,
        "question": opening.question,
        "ack": opening.ack,
    }


@app.post("/api/interviews/{interview_id}/end")
async def end_interview(
    interview_id: str = Path(..., pattern=OBJECT_ID_PATTERN),
    user_id: str = Depends(current_user),
    state_machine: SessionStateMachine = Depends(get_state_machine),
):
    interview = await state_machine.end(interview_id, user_id)
    return {
        "success": True,
        "data": serialize_interview(interview),
        "message": "Interview ended successfully",
    }


# ── Conversation Memory ──────────────────────────────────

@app.get("/api/memory/sessions")
async def list_memory_sessions(
    user_id: str = Depends(operator_user),
    memory: ConversationMemory = Depends(get_memory),
):
    return {"sessions": await memory.list_active_sessions()}


@app.delete("/api/memory/sessions/{session_id}")
async def reset_memory_session(
    session_id: str = Path(..., pattern=OBJECT_ID_PATTERN),
    user_id: str = Depends(current_user),
    state_machine: SessionStateMachine = Depends(get_state_machine),
    memory: ConversationMemory = Depends(get_memory),
):
    await state_machine.load(session_id, user_id)
    removed = await memory.reset(session_id)
    return {"sessionId": session_id, "removed": removed}


# ── Vendor Credentials & Synthesis ───────────────────────

@app.get("/api/aai/token")
async def aai_token():
    return await fetch_streaming_token()


@app.get("/api/tts/stream")
async def tts_stream(q: str = "", lat: str = "3"):
    relay = SpeechSynthesisRelay()
    if not relay.configured:
        raise HTTPException(500, "Missing ELEVENLABS_API_KEY")
    text = q.strip()
    if not text:
        raise HTTPException(400, "Missing q")

    await relay.open_stream(text, lat)
    return StreamingResponse(
        relay.audio(),
        media_type="audio/mpeg",
        headers={"Cache-Control": "no-store, no-transform"},
        background=BackgroundTask(relay.close),
    )


@app.get("/api/tts/health")
async def tts_health():
    relay = SpeechSynthesisRelay()
    return {"ok": relay.configured, "voiceId": relay.voice_id, "modelId": relay.model_id}


@app.get("/api/health")
async def health():
    try:
        db_ok = await ping_db()
    except Exception as e:
        logger.warning("[DB] Health check failed: %s", e)
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "database": db_ok}


# ── WebSocket Transcription Relay ────────────────────────

async def _lookup_interview(session_id: str) -> Optional[Interview]:
    async with async_session() as db:
        return await SqlSessionRepository(db).get(session_id)


@app.websocket("/ws/transcribe/{session_id}")
async def websocket_transcribe(
    ws: WebSocket,
    session_id: str,
    audio_format: str = Query("pcm16", alias="format"),
    rate: int = TARGET_RATE,
):
    """WebSocket relay: Browser ↔ Backend ↔ AssemblyAI streaming STT."""
    user_id = ws.headers.get("x-user-id") or ""
    interview = await _lookup_interview(session_id)

    try:
        check_access(interview, user_id, allow_recruiter=False)
    except SessionError as e:
        await ws.close(code=4000 + e.status_code, reason=e.message)
        return

    await ws.accept()

    resampler = None
    frames: asyncio.Queue = asyncio.Queue()
    if audio_format == "f32":
        try:
            resampler = PcmResampler(rate, frames.put_nowait)
        except ValueError as e:
            await ws.send_json({"type": "error", "error": str(e)})
            await ws.close()
            return

    try:
        relay = await TranscriptionRelay.connect(session_id)
    except Exception as e:
        logger.warning("[WS] Could not open transcription session for %s: %s", session_id, e)
        await ws.send_json({"type": "error", "error": str(e)})
        await ws.close()
        return

    await ws.send_json({"type": "status", "message": "Connected to transcription service"})

    async def vendor_to_client():
        """Forward transcript and status events to the browser."""
        try:
            async for event in relay.downstream():
                await ws.send_json(event.to_client())
        except Exception as e:
            logger.warning("[WS] vendor_to_client error: %s", e)
        finally:
            try:
                await ws.close()
            except Exception:
                pass

    async def client_to_vendor():
        """Queue browser audio for the vendor; a text {"type": "stop"} ends the session."""
        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info("[WS] Client disconnected")
                    break
                data = message.get("bytes")
                if data is not None:
                    if resampler is None:
                        frames.put_nowait(data)
                        continue
                    try:
                        resampler.process(np.frombuffer(data, dtype="<f4"))
                    except ValueError as e:
                        logger.warning("[WS] Dropped malformed audio block: %s", e)
                    continue
                try:
                    msg = json.loads(message.get("text") or "")
                except json.JSONDecodeError:
                    logger.warning("[WS] Ignoring non-JSON client message")
                    continue
                if isinstance(msg, dict) and msg.get("type") == "stop":
                    logger.info("[WS] Client requested stop")
                    break
        except WebSocketDisconnect:
            logger.info("[WS] Client disconnected")
        except Exception as e:
            logger.warning("[WS] client_to_vendor error: %s", e)

    async def teardown(pump):
        await asyncio.gather(pump, return_exceptions=True)
        logger.info("[WS] Closing transcription relay to unblock downstream task")
        await relay.close()

    async def upstream():
        pump = asyncio.create_task(pump_frames(relay, frames))
        try:
            await client_to_vendor()
        finally:
            frames.put_nowait(None)
            # the vendor must see Terminate even if this handler is cancelled
            await asyncio.shield(teardown(pump))

    await asyncio.gather(vendor_to_client(), upstream(), return_exceptions=True)
    if resampler is not None:
        resampler.reset()
