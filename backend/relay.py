"""Vendor relays: streaming speech-to-text (AssemblyAI) and text-to-speech (ElevenLabs).

The transcription relay has two independent directions. ``on_upstream_ready``
forwards audio frames to the vendor in arrival order; ``on_downstream_message``
turns vendor JSON into transcript or status events. Each direction is FIFO;
there is no ordering between them. ``close`` is idempotent.
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from urllib.parse import quote, urlencode

import httpx
import websockets

from audio import TARGET_RATE

logger = logging.getLogger(__name__)

AAI_TOKEN_URL = "https://streaming.assemblyai.com/v3/token"
AAI_WS_URL = "wss://streaming.assemblyai.com/v3/ws"
ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream"

PARTIAL = "partial"
FINAL = "final"


class VendorError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class TranscriptEvent:
    kind: str  # partial | final
    text: str
    is_end_of_turn: bool

    def to_client(self) -> dict:
        return {"type": self.kind, "text": self.text, "isEndOfTurn": self.is_end_of_turn}


@dataclass
class StatusEvent:
    message: str
    vendor_type: str

    def to_client(self) -> dict:
        return {"type": "status", "message": self.message}


# ── Credentials ──────────────────────────────────────────

async def fetch_streaming_token(client: Optional[httpx.AsyncClient] = None) -> dict:
    """Short-lived AssemblyAI streaming token: ``{"token": ..., "expires_in_seconds": ...}``."""
    api_key = os.getenv("ASSEMBLYAI_API_KEY")
    if not api_key:
        raise VendorError("ASSEMBLYAI_API_KEY not configured", status_code=500)
    ttl = os.getenv("ASSEMBLYAI_TOKEN_TTL", "60")

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        logger.info("[STT] Requesting AssemblyAI token")
        r = await client.get(AAI_TOKEN_URL, params={"expires_in_seconds": ttl}, headers={"Authorization": api_key})
        if r.status_code != 200:
            raise VendorError(f"token failed: {r.status_code}")
        data = r.json()
        if not data.get("token"):
            raise VendorError("token missing from vendor response")
        return data
    except httpx.HTTPError as e:
        raise VendorError(f"token error: {e}") from e
    finally:
        if owns_client:
            await client.aclose()


# ── Transcription ────────────────────────────────────────

def _text_field(msg: dict, key: str) -> str:
    value = msg.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"vendor field {key!r} is not a string")
    return value


def parse_vendor_message(raw) -> Optional[object]:
    """Classify one downstream vendor frame. Returns None for frames to ignore."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    msg = json.loads(raw)
    if not isinstance(msg, dict):
        raise ValueError("vendor message is not a JSON object")

    kind = msg.get("type") or msg.get("message_type") or ""
    if kind == "Turn":
        final = msg.get("end_of_turn") is True
        return TranscriptEvent(kind=FINAL if final else PARTIAL, text=_text_field(msg, "transcript"), is_end_of_turn=final)
    if kind == "PartialTranscript":
        return TranscriptEvent(kind=PARTIAL, text=_text_field(msg, "text"), is_end_of_turn=False)
    if kind == "FinalTranscript":
        return TranscriptEvent(kind=FINAL, text=_text_field(msg, "text"), is_end_of_turn=True)
    if kind in ("Begin", "SessionBegins"):
        return StatusEvent(message=f"session started ({msg.get('id') or msg.get('session_id') or '-'})", vendor_type=kind)
    if kind in ("Termination", "SessionTerminated"):
        return StatusEvent(message="session terminated", vendor_type=kind)
    if kind == "Error" or "error" in msg:
        return StatusEvent(message=f"vendor error: {msg.get('error') or msg}", vendor_type="Error")
    return None


class TranscriptState:
    """Client-visible transcript: one replaceable partial plus committed finals."""

    def __init__(self):
        self.partial = ""
        self.finals: list[str] = []

    def apply(self, event: TranscriptEvent) -> Optional[str]:
        """Returns the committed utterance for a non-empty final, else None."""
        if event.kind == PARTIAL:
            self.partial = event.text
            return None
        self.partial = ""
        utterance = event.text.strip()
        if utterance:
            self.finals.append(utterance)
            return utterance
        return None


def build_stt_url(token: str, sample_rate: int = TARGET_RATE) -> str:
    query = urlencode({"sample_rate": sample_rate, "encoding": "pcm_s16le", "token": token}, quote_via=quote)
    return f"{AAI_WS_URL}?{query}"


class TranscriptionRelay:
    def __init__(self, vendor_ws, session_id: str = "-"):
        self.vendor_ws = vendor_ws
        self.session_id = session_id
        self.state = TranscriptState()
        self.frames_sent = 0
        self._closed = False

    @classmethod
    async def connect(cls, session_id: str, token: Optional[str] = None) -> "TranscriptionRelay":
        if token is None:
            token = (await fetch_streaming_token())["token"]
        vendor_ws = await websockets.connect(build_stt_url(token))
        logger.info("[STT] Vendor socket open for session %s", session_id)
        return cls(vendor_ws, session_id)

    @property
    def closed(self) -> bool:
        return self._closed

    async def on_upstream_ready(self, frame: bytes) -> None:
        if self._closed:
            return
        await self.vendor_ws.send(frame)
        self.frames_sent += 1
        if self.frames_sent % 20 == 0:
            logger.debug("[STT] %s sent %.1fs audio", self.session_id, self.frames_sent * 0.05)

    def on_downstream_message(self, raw) -> Optional[object]:
        """Parse a vendor frame. Malformed frames are logged and dropped."""
        try:
            event = parse_vendor_message(raw)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("[STT] %s dropped malformed vendor frame: %s", self.session_id, e)
            return None

        if isinstance(event, StatusEvent):
            logger.info("[STT] %s %s", self.session_id, event.message)
        elif isinstance(event, TranscriptEvent):
            committed = self.state.apply(event)
            if committed:
                logger.info("[User]: %s", committed[:120])
        return event

    async def downstream(self) -> AsyncIterator[object]:
        """Vendor events in arrival order until the vendor socket closes."""
        try:
            async for raw in self.vendor_ws:
                event = self.on_downstream_message(raw)
                if event is not None:
                    yield event
        except websockets.ConnectionClosed as e:
            logger.info("[STT] %s vendor connection closed: %s", self.session_id, e)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.vendor_ws.send(json.dumps({"type": "Terminate"}))
        except websockets.ConnectionClosed:
            pass
        finally:
            await self.vendor_ws.close()
        logger.info("[STT] %s relay closed after %d frames", self.session_id, self.frames_sent)


async def pump_frames(relay: TranscriptionRelay, frames: "asyncio.Queue[Optional[bytes]]") -> None:
    """Forward queued frames upstream until a None sentinel arrives."""
    while True:
        frame = await frames.get()
        if frame is None:
            return
        try:
            await relay.on_upstream_ready(frame)
        except websockets.ConnectionClosed as e:
            logger.info("[STT] %s vendor closed while sending audio: %s", relay.session_id, e)
            return


# ── Synthesis ────────────────────────────────────────────

class SpeechSynthesisRelay:
    """One text-to-speech request. Owns its HTTP client unless one is injected."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.api_key = os.getenv("ELEVENLABS_API_KEY")
        self.voice_id = os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
        self.model_id = os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2")
        self._owns_client = client is None
        self._client = client
        self._response: Optional[httpx.Response] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_request(self, client: httpx.AsyncClient, text: str, latency: str = "3") -> httpx.Request:
        url = ELEVENLABS_TTS_URL.format(voice_id=quote(self.voice_id, safe=""))
        return client.build_request(
            "POST",
            url,
            params={"optimize_streaming_latency": latency, "output_format": "mp3_44100_128"},
            headers={"xi-api-key": self.api_key or "", "Content-Type": "application/json", "Accept": "audio/mpeg"},
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {
                    "stability": 0.5,
                    "similarity_boost": 0.75,
                    "style": 0.0,
                    "use_speaker_boost": True,
                },
            },
        )

    async def open_stream(self, text: str, latency: str = "3") -> httpx.Response:
        if not self.configured:
            raise VendorError("Missing ELEVENLABS_API_KEY", status_code=500)
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))

        try:
            response = await self._client.send(self.build_request(self._client, text, latency), stream=True)
        except httpx.HTTPError as e:
            await self.close()
            raise VendorError(f"TTS error: {e}", status_code=500) from e
        self._response = response

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await self.close()
            raise VendorError(f"TTS failed: {response.status_code} {body}".strip())

        logger.info("[TTS] Streaming %d chars", len(text))
        return response

    async def audio(self) -> AsyncIterator[bytes]:
        if self._response is None:
            raise RuntimeError("open_stream() must be called first")
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        finally:
            await self.close()

    async def close(self) -> None:
        if self._response is not None:
            await self._response.aclose()
            self._response = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
