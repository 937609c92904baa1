"""
Session management for conversations.

Sessions are transient views over SHORT_TERM records. The active index is a
process-local cache; dropping an entry never loses data that the backing
record still holds, so an expired session can be resurrected while its
record lives.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog

from ..config import Settings
from ..errors import SessionNotFound
from ..locks import KeyedLocks
from ..memory.store import MemoryStore, MemoryTier, utcnow
from ..memory.user_profile import SESSION_NAMESPACE

logger = structlog.get_logger()


class SessionState(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    IDLE = "idle"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Turn:
    """One message in a conversation."""

    role: str
    content: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Turn":
        return cls(
            role=data["role"],
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class Session:
    """Conversation state for one (user, session id) pair."""

    session_id: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    conversation_history: list[Turn] = field(default_factory=list)
    context_variables: dict[str, Any] = field(default_factory=dict)
    pending_tool_results: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "conversation_history": [turn.to_dict() for turn in self.conversation_history],
            "context_variables": self.context_variables,
            "pending_tool_results": self.pending_tool_results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            conversation_history=[Turn.from_dict(t) for t in data.get("conversation_history", [])],
            context_variables=dict(data.get("context_variables") or {}),
            pending_tool_results=list(data.get("pending_tool_results") or []),
        )


class SessionManager:
    """Tracks conversation sessions per user."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or store.settings
        self.clock = clock
        self._index: dict[str, Session] = {}
        self._locks = KeyedLocks()

    def state_of(self, session: Session, now: datetime | None = None) -> SessionState:
        now = now or self.clock()
        inactive = now - session.last_activity
        if inactive > self.settings.session_timeout:
            return SessionState.EXPIRED
        if not session.conversation_history:
            return SessionState.NEW
        if inactive > self.settings.session_idle_after:
            return SessionState.IDLE
        return SessionState.ACTIVE

    async def _persist(self, session: Session) -> None:
        # SHORT_TERM outages are absorbed by the store; the index keeps serving
        await self.store.store(
            session.session_id,
            session.to_dict(),
            MemoryTier.SHORT_TERM,
            namespace=SESSION_NAMESPACE,
            owner_user_id=session.user_id,
        )

    async def _load(self, session_id: str) -> Session | None:
        data = await self.store.retrieve(session_id, MemoryTier.SHORT_TERM, namespace=SESSION_NAMESPACE)
        return Session.from_dict(data) if data else None

    def _tracked(self, session_id: str, now: datetime) -> Session:
        """The live indexed session; expired entries are evicted on sight."""
        session = self._index.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if self.state_of(session, now) == SessionState.EXPIRED:
            del self._index[session_id]
            logger.info("Session expired", session_id=session_id, user_id=session.user_id)
            raise SessionNotFound(session_id, "has expired")
        return session

    async def get_or_create_session(self, user_id: str, session_id: str | None = None) -> Session:
        """Resolve a session, resurrecting or creating it as needed."""
        session_id = session_id or str(uuid4())

        async with self._locks.hold(session_id):
            now = self.clock()
            session = self._index.get(session_id)

            if session is not None and self.state_of(session, now) == SessionState.EXPIRED:
                del self._index[session_id]
                logger.info("Session expired", session_id=session_id, user_id=session.user_id)
                session = None

            if session is None:
                session = await self._load(session_id)
                if session is not None:
                    logger.info("Session resurrected", session_id=session_id, user_id=session.user_id)

            if session is not None and session.user_id != user_id:
                raise SessionNotFound(session_id, "belongs to another user")

            if session is None:
                session = Session(
                    session_id=session_id,
                    user_id=user_id,
                    created_at=now,
                    last_activity=now,
                )
                logger.info("Created new session", user_id=user_id, session_id=session_id)

            session.last_activity = now
            self._index[session_id] = session
            await self._persist(session)

        return session

    async def get_session(self, session_id: str) -> Session:
        """Get a tracked session without touching its activity time."""
        async with self._locks.hold(session_id):
            return self._tracked(session_id, self.clock())

    async def update_session(
        self,
        session_id: str,
        *,
        turn: Turn | None = None,
        context_variables: dict[str, Any] | None = None,
    ) -> Session:
        """Append a turn and/or merge variables into a tracked session."""
        async with self._locks.hold(session_id):
            now = self.clock()
            session = self._tracked(session_id, now)
            if turn is not None:
                session.conversation_history.append(turn)
            if context_variables:
                session.context_variables.update(context_variables)
            session.last_activity = now
            await self._persist(session)
        return session

    async def append_turn(self, session_id: str, role: str, content: str) -> Turn:
        turn = Turn(role=role, content=content, timestamp=self.clock())
        await self.update_session(session_id, turn=turn)
        return turn

    async def add_pending_tool_result(self, session_id: str, result: str) -> None:
        """Queue a tool result for the session's next assembly."""
        async with self._locks.hold(session_id):
            session = self._tracked(session_id, self.clock())
            session.pending_tool_results.append(result)
            await self._persist(session)

    async def take_pending_tool_results(self, session_id: str, limit: int | None = None) -> list[str]:
        """Remove and return queued tool results, oldest first.

        ``limit`` takes only that many, leaving results queued after a
        snapshot in place.
        """
        async with self._locks.hold(session_id):
            session = self._tracked(session_id, self.clock())
            count = len(session.pending_tool_results) if limit is None else limit
            results = session.pending_tool_results[:count]
            if results:
                session.pending_tool_results = session.pending_tool_results[count:]
                await self._persist(session)
        return results

    async def list_active_sessions(self, user_id: str) -> list[Session]:
        """Non-expired sessions of a user, most recently active first."""
        now = self.clock()
        active = []
        for session_id, session in list(self._index.items()):
            if session.user_id != user_id:
                continue
            async with self._locks.hold(session_id):
                if self._index.get(session_id) is not session:
                    continue
                if self.state_of(session, now) == SessionState.EXPIRED:
                    del self._index[session_id]
                    continue
                active.append(session)
        return sorted(active, key=lambda s: s.last_activity, reverse=True)

    async def evict_expired(self) -> int:
        """Drop expired sessions from the index. Their records stay until TTL."""
        now = self.clock()
        evicted = 0
        for session_id in list(self._index):
            async with self._locks.hold(session_id):
                session = self._index.get(session_id)
                if session is not None and self.state_of(session, now) == SessionState.EXPIRED:
                    del self._index[session_id]
                    evicted += 1
        if evicted:
            logger.info("Evicted expired sessions", count=evicted)
        return evicted

    async def end_session(self, session_id: str) -> None:
        """Stop tracking a session and drop its record."""
        async with self._locks.hold(session_id):
            self._index.pop(session_id, None)
            await self.store.forget(session_id, MemoryTier.SHORT_TERM, namespace=SESSION_NAMESPACE)
        logger.info("Session ended", session_id=session_id)

    async def drop_user_sessions(self, user_id: str) -> int:
        """Remove every indexed session of a user (records are left to the caller)."""
        dropped = 0
        for session_id, session in list(self._index.items()):
            if session.user_id != user_id:
                continue
            async with self._locks.hold(session_id):
                if self._index.pop(session_id, None) is not None:
                    dropped += 1
        return dropped

    def is_tracked(self, session_id: str) -> bool:
        return session_id in self._index
