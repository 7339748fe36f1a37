"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from typing import Any, Optional

from minibot_hub.config import AppConfig
from minibot_hub.core.connection_pool import ConnectionPool
from minibot_hub.core.manager import ConnectionFactory, MiniBotManager
from minibot_hub.core.session import SessionRegistry
from minibot_hub.core.types import BotType
from minibot_hub.errors import CredentialError
from minibot_hub.flows.engine import FlowEngine
from minibot_hub.handlers.bot_handlers import BotHandlers
from minibot_hub.handlers.broadcast import BroadcastEngine, BroadcastResult
from minibot_hub.handlers.dispatcher import Dispatcher
from minibot_hub.handlers.notifier import NotificationFanout
from minibot_hub.log import get_logger
from minibot_hub.messenger.telegram import TelegramConnection
from minibot_hub.services.service_manager import ServiceManager
from minibot_hub.storage.admin_repo import AdminRepository
from minibot_hub.storage.bot_repo import BotRepository
from minibot_hub.storage.broadcast_repo import BroadcastRepository
from minibot_hub.storage.crypto import TokenCipher, is_valid_bot_token
from minibot_hub.storage.database import Database
from minibot_hub.storage.feedback_repo import FeedbackRepository
from minibot_hub.storage.models import BotRecord
from minibot_hub.storage.user_log_repo import UserLogRepository
from minibot_hub.storage.user_repo import UserRepository

logger = get_logger(__name__)


class MiniBotHubApp:
    """Top-level application orchestrator."""

    def __init__(self, config: AppConfig, connection_factory: Optional[ConnectionFactory] = None):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.cipher = TokenCipher(config.security.encryption_key)

        self.bots = BotRepository(self.db, self.cipher)
        self.users = UserRepository(self.db)
        self.admins = AdminRepository(self.db)
        self.user_logs = UserLogRepository(self.db)
        self.feedback = FeedbackRepository(self.db)
        self.broadcast_history = BroadcastRepository(self.db)

        self.sessions = SessionRegistry(config.sessions.ttl_seconds)
        self.pool = ConnectionPool()
        self.manager = MiniBotManager(
            bots=self.bots,
            users=self.users,
            pool=self.pool,
            connection_factory=connection_factory or TelegramConnection,
            runtime=config.runtime,
        )
        self.notifier = NotificationFanout(self.admins)
        self.flows = FlowEngine(self.sessions, self.notifier)
        self.broadcasts = BroadcastEngine(self.user_logs, self.users, self.broadcast_history, config.broadcast)
        self.handlers = BotHandlers(
            manager=self.manager,
            sessions=self.sessions,
            bots=self.bots,
            users=self.users,
            admins=self.admins,
            user_logs=self.user_logs,
            feedback=self.feedback,
            notifier=self.notifier,
            broadcasts=self.broadcasts,
            flows=self.flows,
            runtime=config.runtime,
        )
        self.dispatcher = Dispatcher(
            manager=self.manager,
            bots=self.bots,
            users=self.users,
            admins=self.admins,
            handlers=self.handlers,
            flows=self.flows,
            runtime=config.runtime,
        )
        self.manager.set_event_handler(self.dispatcher.dispatch)
        self.manager.on_stopped(self.dispatcher.forget_bot)
        self.service_manager = ServiceManager(config.sessions, self.sessions)

    async def start(self) -> None:
        """Initialize and start all components."""
        # 1. Database
        await self.db.initialize()

        # 2. Services
        await self.service_manager.start_all()

        # 3. Mini-bots
        started = await self.manager.initialize_all()
        logger.info("minibot_hub_started", started=started, status=self.manager.get_status())

    async def reinitialize(self) -> int:
        started = await self.manager.force_reinitialize_all()
        logger.info("minibot_hub_reinitialized", started=started)
        return started

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await self.handlers.drain(cancel=True)
        await self.manager.teardown()
        await self.service_manager.stop_all()
        self.sessions.clear()
        await self.db.close()
        logger.info("minibot_hub_stopped")

    async def platform_broadcast(self, message: str) -> BroadcastResult:
        """Send *message* to every non-banned platform user through the main bot.

        The database must be open.
        """
        main = self.config.main_bot
        if not is_valid_bot_token(main.token):
            raise CredentialError("main_bot.token is missing or malformed")
        record = BotRecord(
            id=0,
            owner_id=main.creator_id or 0,
            bot_name=main.username or "main",
            bot_username=main.username,
            token_encrypted="",
        )
        connection = TelegramConnection(record, main.token)
        await connection.open_send_only()
        try:
            return await self.broadcasts.run_platform_broadcast(
                connection,
                sent_by=main.creator_id or 0,
                message=message,
                report_chat_id=main.creator_id,
            )
        finally:
            await connection.stop()

    async def provision_bot(
        self,
        owner_id: int,
        bot_name: str,
        bot_username: str,
        token: str,
        custom_flow: Optional[dict[str, Any]] = None,
        welcome_message: Optional[str] = None,
    ) -> BotRecord:
        """Store a new mini-bot. The database must be open."""
        if not is_valid_bot_token(token):
            raise CredentialError("Bot token is malformed")
        await self.users.ensure(owner_id)
        return await self.bots.create(
            owner_id=owner_id,
            bot_name=bot_name,
            bot_username=bot_username.lstrip("@"),
            token=token,
            bot_type=BotType.CUSTOM if custom_flow else BotType.QUICK,
            custom_flow=custom_flow,
            welcome_message=welcome_message,
        )
