"""Interview lifecycle: scheduled -> in-progress -> completed.

Every transition checks ownership first, then the source state. Transitions
and the store write are not one atomic operation; a second writer on the same
interview can interleave between the check and the save.
"""
import datetime
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Interview

logger = logging.getLogger(__name__)

SCHEDULED = "scheduled"
IN_PROGRESS = "in-progress"
COMPLETED = "completed"

WRAP_STAGE = "wrap"


class SessionError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SessionNotFound(SessionError):
    status_code = 404


class SessionForbidden(SessionError):
    status_code = 403


class InvalidTransition(SessionError):
    status_code = 409


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


# ── Repository ───────────────────────────────────────────

class SessionRepository(ABC):
    @abstractmethod
    async def get(self, session_id: str) -> Optional[Interview]: ...

    @abstractmethod
    async def save(self, interview: Interview) -> None: ...


class InMemorySessionRepository(SessionRepository):
    def __init__(self, interviews: Optional[list[Interview]] = None):
        self._items = {i.id: i for i in interviews or []}

    async def get(self, session_id):
        return self._items.get(session_id)

    async def save(self, interview):
        self._items[interview.id] = interview


class SqlSessionRepository(SessionRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, session_id):
        result = await self.db.execute(select(Interview).where(Interview.id == session_id))
        return result.scalar_one_or_none()

    async def save(self, interview):
        self.db.add(interview)
        await self.db.commit()


# ── State machine ────────────────────────────────────────

Analyzer = Callable[[list[dict]], Awaitable[dict]]


def check_access(interview: Optional[Interview], user_id: str, allow_recruiter: bool = True) -> Interview:
    if interview is None:
        raise SessionNotFound("Interview not found")
    if str(interview.candidate_id) == str(user_id):
        return interview
    if allow_recruiter and interview.recruiter_id and str(interview.recruiter_id) == str(user_id):
        return interview
    raise SessionForbidden("Forbidden")


class SessionStateMachine:
    def __init__(self, repository: SessionRepository, analyzer: Optional[Analyzer] = None):
        self.repository = repository
        self.analyzer = analyzer

    async def load(self, session_id: str, user_id: str, allow_recruiter: bool = True) -> Interview:
        interview = await self.repository.get(session_id)
        return check_access(interview, user_id, allow_recruiter)

    async def start(self, session_id: str, user_id: str, now: Optional[datetime.datetime] = None) -> Interview:
        interview = await self.load(session_id, user_id)
        now = now or utcnow()
        if interview.status != SCHEDULED:
            raise InvalidTransition(f"Interview cannot be started. Current status: {interview.status}")
        if now < _as_utc(interview.scheduled_at):
            raise InvalidTransition(
                f"Interview is scheduled for {_as_utc(interview.scheduled_at).isoformat()} and cannot start yet"
            )

        interview.status = IN_PROGRESS
        interview.started_at = now
        await self.repository.save(interview)
        logger.info("[SESSION] %s started by %s", interview.id, user_id)
        return interview

    async def end(self, session_id: str, user_id: str, now: Optional[datetime.datetime] = None) -> Interview:
        """Administrative end; also stores an aggregate analysis of the recorded responses."""
        interview = await self.load(session_id, user_id)
        self._complete(interview, now)

        responses = list(interview.responses or [])
        if responses and self.analyzer is not None:
            interview.ai_analysis = await self.analyzer(responses)

        await self.repository.save(interview)
        logger.info("[SESSION] %s ended by %s (%d responses)", interview.id, user_id, len(responses))
        return interview

    async def end_by_intent(self, interview: Interview, now: Optional[datetime.datetime] = None) -> Interview:
        """End requested by the candidate mid-conversation. No analysis is run."""
        self._complete(interview, now)
        interview.stage_flow = {**(interview.stage_flow or {}), "stage": WRAP_STAGE}
        await self.repository.save(interview)
        logger.info("[SESSION] %s ended on candidate request", interview.id)
        return interview

    @staticmethod
    def _complete(interview: Interview, now: Optional[datetime.datetime]) -> None:
        if interview.status != IN_PROGRESS:
            raise InvalidTransition(f"Interview cannot be ended. Current status: {interview.status}")
        interview.status = COMPLETED
        interview.ended_at = now or utcnow()
