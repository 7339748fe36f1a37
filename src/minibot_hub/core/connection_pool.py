"""Active connection table: at most one live provider connection per bot id."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from minibot_hub.core.types import ConnectionStatus
from minibot_hub.storage.models import utcnow

if TYPE_CHECKING:
    from minibot_hub.messenger.base import MessengerAdapter
    from minibot_hub.storage.models import BotRecord


@dataclass(eq=False)
class ActiveConnection:
    bot_id: int
    connection: MessengerAdapter
    record: BotRecord
    token: str = field(repr=False)
    status: ConnectionStatus = ConnectionStatus.LAUNCHING
    launched_at: datetime = field(default_factory=utcnow)
    ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    task: Optional[asyncio.Task[Any]] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status is ConnectionStatus.ACTIVE

    def mark_active(self) -> None:
        self.status = ConnectionStatus.ACTIVE
        self.ready.set()

    def mark_failed(self) -> None:
        # Waiters are released too; they observe the failed status
        self.status = ConnectionStatus.FAILED
        self.ready.set()


class ConnectionPool:
    """Maps bot id to its ActiveConnection. Mutated only between awaits."""

    def __init__(self) -> None:
        self._entries: dict[int, ActiveConnection] = {}

    def register(self, entry: ActiveConnection) -> None:
        if entry.bot_id in self._entries:
            raise ValueError(f"Bot {entry.bot_id} already has an active connection")
        self._entries[entry.bot_id] = entry

    def get(self, bot_id: int) -> ActiveConnection | None:
        return self._entries.get(bot_id)

    def remove(self, bot_id: int) -> ActiveConnection | None:
        return self._entries.pop(bot_id, None)

    def remove_if(self, entry: ActiveConnection) -> bool:
        """Remove *entry* only if it is still the registered one for its bot."""
        if self._entries.get(entry.bot_id) is entry:
            del self._entries[entry.bot_id]
            return True
        return False

    async def wait_ready(self, bot_id: int, timeout: float) -> ActiveConnection | None:
        """Return the entry once it is active, or None if absent, failed or still launching after *timeout*."""
        entry = self._entries.get(bot_id)
        if entry is None:
            return None
        if not entry.ready.is_set():
            try:
                await asyncio.wait_for(entry.ready.wait(), timeout)
            except asyncio.TimeoutError:
                return None
        return entry if entry.is_active and self._entries.get(bot_id) is entry else None

    def ids(self) -> list[int]:
        return list(self._entries.keys())

    def all(self) -> list[ActiveConnection]:
        return list(self._entries.values())

    def count(self, status: ConnectionStatus | None = None) -> int:
        if status is None:
            return len(self._entries)
        return sum(1 for e in self._entries.values() if e.status is status)

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
