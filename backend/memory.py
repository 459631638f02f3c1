"""Bounded per-session conversation memory.

Each session keeps at most ``2 * MAX_TURNS`` messages. The bound is enforced on
every append: the message is written first, then everything older than the
newest ``2 * MAX_TURNS`` is deleted. Append and prune are two separate store
operations, so two concurrent writers on the same session can race; turns are
expected to be serialized per session by the caller.
"""
import datetime
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from models import ChatMessage

logger = logging.getLogger(__name__)

MAX_TURNS = 12  # user/assistant pairs kept per session
ACTIVE_SESSIONS_LIMIT = 200

ROLES = ("user", "assistant")


@dataclass
class ConversationMessage:
    id: int
    session_id: str
    role: str
    text: str
    created_at: datetime.datetime


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ── Store interface ──────────────────────────────────────

class MessageStore(ABC):
    """Keyed append log. Ordering is (created_at, id)."""

    @abstractmethod
    async def append(self, session_id: str, role: str, text: str) -> ConversationMessage: ...

    @abstractmethod
    async def query_ordered(
        self,
        session_id: str,
        newest_first: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[ConversationMessage]: ...

    @abstractmethod
    async def delete_ids(self, ids: list[int]) -> int: ...

    @abstractmethod
    async def delete_all(self, session_id: str) -> int: ...

    @abstractmethod
    async def list_sessions(self, limit: int) -> list[str]: ...


class InMemoryMessageStore(MessageStore):
    def __init__(self):
        self._messages: dict[str, list[ConversationMessage]] = {}
        self._ids = itertools.count(1)

    async def append(self, session_id, role, text):
        msg = ConversationMessage(
            id=next(self._ids), session_id=session_id, role=role, text=text, created_at=_utcnow()
        )
        self._messages.setdefault(session_id, []).append(msg)
        return msg

    async def query_ordered(self, session_id, newest_first=False, offset=0, limit=None):
        rows = sorted(self._messages.get(session_id, []), key=lambda m: (m.created_at, m.id))
        if newest_first:
            rows.reverse()
        rows = rows[offset:]
        return rows if limit is None else rows[:limit]

    async def delete_ids(self, ids):
        doomed = set(ids)
        removed = 0
        for session_id, rows in list(self._messages.items()):
            kept = [m for m in rows if m.id not in doomed]
            removed += len(rows) - len(kept)
            if kept:
                self._messages[session_id] = kept
            else:
                del self._messages[session_id]
        return removed

    async def delete_all(self, session_id):
        return len(self._messages.pop(session_id, []))

    async def list_sessions(self, limit):
        latest = {
            sid: max((m.created_at, m.id) for m in rows)
            for sid, rows in self._messages.items()
            if rows
        }
        return sorted(latest, key=latest.get, reverse=True)[:limit]


class SqlMessageStore(MessageStore):
    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _to_message(row: ChatMessage) -> ConversationMessage:
        return ConversationMessage(
            id=row.id, session_id=row.session_id, role=row.role, text=row.text, created_at=row.created_at
        )

    async def append(self, session_id, role, text):
        row = ChatMessage(session_id=session_id, role=role, text=text, created_at=_utcnow())
        self.db.add(row)
        await self.db.flush()
        msg = self._to_message(row)
        await self.db.commit()
        return msg

    async def query_ordered(self, session_id, newest_first=False, offset=0, limit=None):
        if newest_first:
            order = (ChatMessage.created_at.desc(), ChatMessage.id.desc())
        else:
            order = (ChatMessage.created_at.asc(), ChatMessage.id.asc())
        stmt = select(ChatMessage).where(ChatMessage.session_id == session_id).order_by(*order).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return [self._to_message(r) for r in result.scalars().all()]

    async def delete_ids(self, ids):
        if not ids:
            return 0
        result = await self.db.execute(delete(ChatMessage).where(ChatMessage.id.in_(ids)))
        await self.db.commit()
        return result.rowcount or 0

    async def delete_all(self, session_id):
        result = await self.db.execute(delete(ChatMessage).where(ChatMessage.session_id == session_id))
        await self.db.commit()
        return result.rowcount or 0

    async def list_sessions(self, limit):
        last = func.max(ChatMessage.created_at).label("last")
        result = await self.db.execute(
            select(ChatMessage.session_id, last)
            .group_by(ChatMessage.session_id)
            .order_by(last.desc(), func.max(ChatMessage.id).desc())
            .limit(limit)
        )
        return [row.session_id for row in result.all()]


# ── Memory ───────────────────────────────────────────────

class ConversationMemory:
    def __init__(self, store: MessageStore, max_turns: int = MAX_TURNS):
        self.store = store
        self.max_turns = max_turns

    @property
    def capacity(self) -> int:
        return self.max_turns * 2

    async def append(self, session_id: str, role: str, text: str) -> ConversationMessage:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        msg = await self.store.append(session_id, role, text)
        await self._prune(session_id)
        return msg

    async def add_user_turn(self, session_id: str, text: str) -> ConversationMessage:
        return await self.append(session_id, "user", text)

    async def add_assistant_turn(self, session_id: str, text: str) -> ConversationMessage:
        return await self.append(session_id, "assistant", text)

    async def get_context(self, session_id: str, system_prompt: Optional[str] = None) -> list[dict]:
        """Retained messages oldest first, optionally behind a system instruction."""
        rows = await self.store.query_ordered(session_id, limit=self.capacity)
        messages = [{"role": m.role, "content": m.text} for m in rows]
        if system_prompt:
            return [{"role": "system", "content": system_prompt}, *messages]
        return messages

    async def reset(self, session_id: str) -> int:
        removed = await self.store.delete_all(session_id)
        logger.info("[MEMORY] Reset session %s (%d messages removed)", session_id, removed)
        return removed

    async def list_active_sessions(self) -> list[str]:
        return await self.store.list_sessions(ACTIVE_SESSIONS_LIMIT)

    async def _prune(self, session_id: str) -> None:
        excess = await self.store.query_ordered(session_id, newest_first=True, offset=self.capacity)
        if excess:
            await self.store.delete_ids([m.id for m in excess])
            logger.debug("[MEMORY] Pruned %d messages from session %s", len(excess), session_id)
