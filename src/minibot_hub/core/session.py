"""In-memory conversational sessions, one table per flow type."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Generic, Hashable, Optional, TypeVar

from minibot_hub.log import get_logger

if TYPE_CHECKING:
    from minibot_hub.flows.steps import FlowDefinition

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass
class BroadcastSession:
    bot_id: int
    step: str = "awaiting_message"
    touched_at: float = 0.0


@dataclass
class ReplySession:
    feedback_id: int
    target_user_id: int
    bot_id: int
    step: str = "awaiting_reply"
    touched_at: float = 0.0


@dataclass
class AdminAddSession:
    bot_id: int
    step: str = "awaiting_admin_input"
    touched_at: float = 0.0


@dataclass
class WelcomeEditSession:
    bot_id: int
    step: str = "awaiting_welcome_message"
    touched_at: float = 0.0


@dataclass
class FlowSession:
    bot_id: int
    user_id: int
    flow: FlowDefinition
    current_step_index: int = 0
    user_data: dict[str, str] = field(default_factory=dict)
    step: str = "running"
    touched_at: float = 0.0


S = TypeVar("S")
K = TypeVar("K", bound=Hashable)


class SessionTable(Generic[K, S]):
    """One session per key; entries idle longer than *ttl* are treated as absent."""

    def __init__(self, name: str, ttl: float, clock: Clock = time.monotonic):
        self.name = name
        self._ttl = ttl
        self._clock = clock
        self._sessions: dict[K, S] = {}

    def _expired(self, session: Any) -> bool:
        return self._ttl > 0 and self._clock() - session.touched_at > self._ttl

    def get(self, key: K) -> Optional[S]:
        session = self._sessions.get(key)
        if session is None:
            return None
        if self._expired(session):
            del self._sessions[key]
            logger.info("session_expired", table=self.name, key=str(key))
            return None
        return session

    def start(self, key: K, session: S) -> S:
        """Begin a session, replacing any prior one for the same key."""
        if self.get(key) is not None:
            logger.info("session_replaced", table=self.name, key=str(key))
        session.touched_at = self._clock()  # type: ignore[attr-defined]
        self._sessions[key] = session
        return session

    def touch(self, key: K) -> None:
        session = self._sessions.get(key)
        if session is not None:
            session.touched_at = self._clock()  # type: ignore[attr-defined]

    def pop(self, key: K) -> Optional[S]:
        """Remove and return the live session for *key* (None if absent or expired)."""
        session = self.get(key)
        if session is not None:
            del self._sessions[key]
        return session

    def discard(self, key: K) -> bool:
        return self._sessions.pop(key, None) is not None

    def purge_expired(self) -> int:
        stale = [k for k, s in self._sessions.items() if self._expired(s)]
        for key in stale:
            del self._sessions[key]
        return len(stale)

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._sessions)


class SessionRegistry:
    """All conversational state of the runtime. Nothing here is persisted."""

    def __init__(self, ttl_seconds: float = 1800.0, clock: Clock = time.monotonic):
        self.broadcast: SessionTable[int, BroadcastSession] = SessionTable("broadcast", ttl_seconds, clock)
        self.reply: SessionTable[int, ReplySession] = SessionTable("reply", ttl_seconds, clock)
        self.admin_add: SessionTable[int, AdminAddSession] = SessionTable("admin_add", ttl_seconds, clock)
        self.welcome_edit: SessionTable[int, WelcomeEditSession] = SessionTable("welcome_edit", ttl_seconds, clock)
        # Keyed by (bot_id, user_id) so one user can run flows on several bots
        self.flows: SessionTable[tuple[int, int], FlowSession] = SessionTable("flows", ttl_seconds, clock)

    def _tables(self) -> list[SessionTable[Any, Any]]:
        return [self.broadcast, self.reply, self.admin_add, self.welcome_edit, self.flows]

    def cancel_all(self, user_id: int, bot_id: int | None = None) -> list[str]:
        """Drop every awaiting-input session of *user_id*; returns the cancelled table names."""
        cancelled = [t.name for t in (self.broadcast, self.reply, self.admin_add, self.welcome_edit) if t.discard(user_id)]
        if bot_id is not None and self.flows.discard((bot_id, user_id)):
            cancelled.append(self.flows.name)
        return cancelled

    def purge_expired(self) -> int:
        removed = sum(table.purge_expired() for table in self._tables())
        if removed:
            logger.info("sessions_purged", count=removed)
        return removed

    def clear(self) -> None:
        for table in self._tables():
            table.clear()

    def stats(self) -> dict[str, int]:
        return {table.name: len(table) for table in self._tables()}
