"""Mini-bot lifecycle: bootstrap sweep, per-bot start/stop and status."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from minibot_hub.config import RuntimeConfig
from minibot_hub.core.commands import USER_COMMANDS
from minibot_hub.core.connection_pool import ActiveConnection, ConnectionPool
from minibot_hub.core.types import ConnectionStatus
from minibot_hub.errors import BotNotActiveError
from minibot_hub.log import get_logger
from minibot_hub.messenger.base import EventCallback, MessengerAdapter
from minibot_hub.storage.bot_repo import BotRepository
from minibot_hub.storage.crypto import is_valid_bot_token
from minibot_hub.storage.models import BotRecord
from minibot_hub.storage.user_repo import UserRepository

logger = get_logger(__name__)

ConnectionFactory = Callable[[BotRecord, str], MessengerAdapter]
Sleep = Callable[[float], Awaitable[Any]]


class MiniBotManager:
    """Owns the connection pool and brings mini-bots up and down.

    ``get_status()["active_count"]`` counts every pool entry, launching
    connections included.
    """

    def __init__(
        self,
        bots: BotRepository,
        users: UserRepository,
        pool: ConnectionPool,
        connection_factory: ConnectionFactory,
        runtime: RuntimeConfig,
        on_event: Optional[EventCallback] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._bots = bots
        self._users = users
        self._pool = pool
        self._factory = connection_factory
        self._runtime = runtime
        self._on_event = on_event
        self._sleep = sleep
        self._initialized = False
        self._attempts = 0
        self._inflight: asyncio.Task[int] | None = None
        self._stop_listeners: list[Callable[[int], None]] = []

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def set_event_handler(self, handler: EventCallback) -> None:
        self._on_event = handler

    def on_stopped(self, listener: Callable[[int], None]) -> None:
        """Call *listener* with the bot id whenever a connection leaves the pool through stop_one."""
        self._stop_listeners.append(listener)

    # -- bootstrap ----------------------------------------------------------

    async def initialize_all(self) -> int:
        """Start every eligible bot. Concurrent callers share one sweep."""
        if self._inflight is None:
            task = asyncio.create_task(self._initialize_all())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        else:
            logger.info("bootstrap_already_running")
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task[int]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def force_reinitialize_all(self) -> int:
        self._attempts = 0
        self._initialized = False
        logger.info("bootstrap_forced")
        return await self.initialize_all()

    async def _initialize_all(self) -> int:
        self._attempts += 1
        logger.info("bootstrap_started", attempt=self._attempts)
        await self.teardown()

        records = await self._bots.list_active()
        logger.info("bootstrap_records_loaded", count=len(records))

        launched: list[ActiveConnection] = []
        for index, record in enumerate(records):
            if index:
                await self._sleep(self._runtime.startup_delay)
            try:
                if await self._users.is_banned(record.owner_id):
                    await self._bots.set_active(record.id, False)
                    logger.warning("bot_skipped_owner_banned", bot_id=record.id, owner_id=record.owner_id)
                    continue
                if await self.start_one(record):
                    entry = self._pool.get(record.id)
                    if entry is not None:
                        launched.append(entry)
            except Exception as e:
                logger.error("bot_start_error", bot_id=record.id, bot_name=record.bot_name, error=str(e))

        await self._await_launches(launched)
        started = sum(1 for entry in launched if entry.status is not ConnectionStatus.FAILED)
        self._initialized = True
        logger.info(
            "bootstrap_finished",
            started=started,
            total=len(records),
            active=self._pool.count(ConnectionStatus.ACTIVE),
            launching=self._pool.count(ConnectionStatus.LAUNCHING),
        )
        return started

    async def _await_launches(self, entries: list[ActiveConnection]) -> None:
        pending = [e for e in entries if not e.ready.is_set()]
        if not pending or self._runtime.launch_wait <= 0:
            return
        waiters = [asyncio.create_task(e.ready.wait()) for e in pending]
        done, not_done = await asyncio.wait(waiters, timeout=self._runtime.launch_wait)
        for waiter in not_done:
            waiter.cancel()
        if not_done:
            logger.warning("bootstrap_launch_wait_expired", still_launching=len(not_done))

    # -- single bot ---------------------------------------------------------

    async def start_one(self, record: BotRecord) -> bool:
        """Register a connection for *record* and launch it in the background.

        Returns False, without raising, when the token is missing,
        undecryptable or malformed.
        """
        while record.id in self._pool:
            logger.info("bot_restarting", bot_id=record.id)
            await self.stop_one(record.id)

        token = self._bots.decrypt_token(record)
        if not token:
            logger.error("bot_token_unavailable", bot_id=record.id, bot_name=record.bot_name)
            return False
        if not is_valid_bot_token(token):
            logger.error("bot_token_malformed", bot_id=record.id, bot_name=record.bot_name)
            return False

        connection = self._factory(record, token)
        if self._on_event is not None:
            connection.on_event(self._on_event)
        entry = ActiveConnection(bot_id=record.id, connection=connection, record=record, token=token)
        self._pool.register(entry)
        entry.task = asyncio.create_task(self._launch(entry), name=f"launch-bot-{record.id}")
        logger.info("bot_launching", bot_id=record.id, bot_name=record.bot_name, bot_type=str(record.bot_type))
        return True

    async def _launch(self, entry: ActiveConnection) -> None:
        try:
            await entry.connection.start()
        except Exception as e:
            logger.warning("bot_handshake_failed", bot_id=entry.bot_id, error=str(e))
            try:
                await entry.connection.start_fallback()
            except Exception as fallback_error:
                logger.error("bot_launch_failed", bot_id=entry.bot_id, error=str(fallback_error))
                entry.mark_failed()
                self._pool.remove_if(entry)
                await self._close(entry)
                return

        if self._pool.get(entry.bot_id) is not entry:
            # Superseded while launching; the handle opened here is ours to close
            logger.info("bot_launch_superseded", bot_id=entry.bot_id)
            await self._close(entry)
            return
        entry.mark_active()
        logger.info("bot_active", bot_id=entry.bot_id, bot_name=entry.record.bot_name)

        try:
            await entry.connection.set_commands(USER_COMMANDS)
        except Exception as e:
            logger.warning("bot_commands_failed", bot_id=entry.bot_id, error=str(e))

    async def stop_one(self, bot_id: int) -> bool:
        entry = self._pool.remove(bot_id)
        if entry is None:
            return False
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
            await asyncio.wait([entry.task])
        entry.ready.set()
        await self._close(entry)
        for listener in self._stop_listeners:
            listener(bot_id)
        logger.info("bot_stopped", bot_id=bot_id)
        return True

    async def _close(self, entry: ActiveConnection) -> None:
        try:
            await entry.connection.stop()
        except Exception as e:
            # Already-closed handles land here
            logger.warning("bot_close_error", bot_id=entry.bot_id, error=str(e))

    async def teardown(self) -> None:
        ids = self._pool.ids()
        for bot_id in ids:
            await self.stop_one(bot_id)
        if ids:
            logger.info("pool_drained", count=len(ids))

    def refresh_record(self, record: BotRecord) -> None:
        """Replace the record snapshot held by a live connection after a settings change."""
        entry = self._pool.get(record.id)
        if entry is not None:
            entry.record = record
            entry.connection.record = record

    # -- lookups ------------------------------------------------------------

    def get_connection(self, bot_id: int) -> Optional[MessengerAdapter]:
        entry = self._pool.get(bot_id)
        if entry is None or not entry.is_active:
            return None
        return entry.connection

    async def wait_for_connection(self, bot_id: int, timeout: float = 5.0) -> Optional[MessengerAdapter]:
        """Like get_connection, but waits for a launching bot to become ready."""
        entry = await self._pool.wait_ready(bot_id, timeout)
        return entry.connection if entry else None

    async def require_connection(self, bot_id: int, timeout: float = 5.0) -> MessengerAdapter:
        connection = await self.wait_for_connection(bot_id, timeout)
        if connection is None:
            raise BotNotActiveError(bot_id)
        return connection

    def get_status(self) -> dict[str, Any]:
        in_progress = self._inflight is not None and not self._inflight.done()
        if in_progress:
            status = "initializing"
        elif self._initialized:
            status = "ready"
        else:
            status = "not_initialized"
        return {
            "initialized": self._initialized,
            "in_progress": in_progress,
            "active_count": len(self._pool),
            "launching_count": self._pool.count(ConnectionStatus.LAUNCHING),
            "attempts": self._attempts,
            "max_attempts": self._runtime.max_init_attempts,
            "status": status,
        }

    def debug_dump(self) -> list[dict[str, Any]]:
        rows = [
            {
                "bot_id": entry.bot_id,
                "bot_name": entry.record.bot_name,
                "bot_username": entry.record.bot_username,
                "bot_type": str(entry.record.bot_type),
                "status": str(entry.status),
                "launched_at": entry.launched_at.isoformat(),
            }
            for entry in self._pool.all()
        ]
        logger.info("pool_dump", count=len(rows), status=self.get_status(), bots=rows)
        return rows
