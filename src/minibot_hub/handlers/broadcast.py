"""Sequential, rate-limited broadcasts with per-recipient isolation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from minibot_hub.config import BroadcastConfig
from minibot_hub.core.types import BroadcastType
from minibot_hub.errors import DeliveryError
from minibot_hub.handlers.delivery import send_with_fallback
from minibot_hub.log import get_logger
from minibot_hub.messenger.base import MessengerAdapter
from minibot_hub.messenger.models import OutgoingMessage
from minibot_hub.storage.broadcast_repo import BroadcastRepository
from minibot_hub.storage.models import BotRecord, BroadcastRecord
from minibot_hub.storage.user_log_repo import UserLogRepository
from minibot_hub.storage.user_repo import UserRepository

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class BroadcastResult:
    total: int = 0
    successful: int = 0
    failed: int = 0

    @property
    def success_rate(self) -> float:
        return (self.successful / self.total * 100) if self.total else 0.0

    def summary(self) -> str:
        return (
            "Broadcast completed\n\n"
            f"Recipients: {self.total}\n"
            f"Delivered: {self.successful}\n"
            f"Failed: {self.failed}\n"
            f"Success rate: {self.success_rate:.1f}%"
        )


class ProgressReporter:
    """A single status message, edited in place as the broadcast advances."""

    def __init__(self, connection: MessengerAdapter, chat_id: Optional[int]):
        self._connection = connection
        self._chat_id = chat_id
        self._message_id: Optional[int] = None

    async def begin(self, total: int) -> None:
        await self._post(f"Broadcasting to {total} users...")

    async def update(self, result: BroadcastResult, sent: int) -> None:
        await self._post(
            f"Broadcasting... {sent}/{result.total}\n"
            f"Delivered: {result.successful}  Failed: {result.failed}"
        )

    async def finish(self, result: BroadcastResult) -> None:
        await self._post(result.summary())

    async def _post(self, text: str) -> None:
        if self._chat_id is None:
            return
        try:
            if self._message_id is None:
                self._message_id = await self._connection.send(OutgoingMessage(chat_id=self._chat_id, text=text))
            else:
                await self._connection.edit(self._chat_id, self._message_id, text)
        except DeliveryError as e:
            logger.warning("broadcast_progress_failed", chat_id=self._chat_id, error=str(e))


class BroadcastEngine:
    def __init__(
        self,
        user_logs: UserLogRepository,
        users: UserRepository,
        history: BroadcastRepository,
        config: BroadcastConfig,
        sleep: Sleep = asyncio.sleep,
    ):
        self._user_logs = user_logs
        self._users = users
        self._history = history
        self._config = config
        self._sleep = sleep

    async def run_bot_broadcast(
        self,
        connection: MessengerAdapter,
        bot: BotRecord,
        sent_by: int,
        message: str,
        report_chat_id: Optional[int] = None,
    ) -> BroadcastResult:
        """Send *message* to every user that has interacted with *bot*."""
        try:
            recipients = await self._user_logs.list_user_ids(bot.id)
        except Exception as e:
            logger.error("broadcast_recipients_failed", bot_id=bot.id, error=str(e))
            return BroadcastResult()
        return await self._run(connection, recipients, message, sent_by, bot.id, BroadcastType.BOT, report_chat_id)

    async def run_platform_broadcast(
        self,
        connection: MessengerAdapter,
        sent_by: int,
        message: str,
        report_chat_id: Optional[int] = None,
    ) -> BroadcastResult:
        """Send *message* to every non-banned platform user through the main bot."""
        try:
            recipients = await self._users.list_broadcast_ids()
        except Exception as e:
            logger.error("broadcast_recipients_failed", bot_id=None, error=str(e))
            return BroadcastResult()
        return await self._run(connection, recipients, message, sent_by, None, BroadcastType.PLATFORM, report_chat_id)

    async def _run(
        self,
        connection: MessengerAdapter,
        recipients: list[int],
        message: str,
        sent_by: int,
        bot_id: Optional[int],
        broadcast_type: BroadcastType,
        report_chat_id: Optional[int],
    ) -> BroadcastResult:
        result = BroadcastResult(total=len(recipients))
        reporter = ProgressReporter(connection, report_chat_id)
        logger.info("broadcast_started", bot_id=bot_id, type=str(broadcast_type), total=result.total)
        await reporter.begin(result.total)

        for sent, chat_id in enumerate(recipients, start=1):
            try:
                await send_with_fallback(connection, chat_id, message)
                result.successful += 1
            except DeliveryError as e:
                result.failed += 1
                logger.info("broadcast_recipient_failed", bot_id=bot_id, chat_id=chat_id, error=str(e))
            except Exception as e:
                result.failed += 1
                logger.error("broadcast_recipient_error", bot_id=bot_id, chat_id=chat_id, error=str(e))

            if sent % self._config.progress_every == 0 and sent < result.total:
                await reporter.update(result, sent)
            if sent % self._config.pause_every == 0 and sent < result.total:
                await self._sleep(self._config.pause_seconds)

        try:
            await self._history.save(
                BroadcastRecord(
                    bot_id=bot_id,
                    sent_by=sent_by,
                    message=message,
                    total_users=result.total,
                    successful_sends=result.successful,
                    failed_sends=result.failed,
                    broadcast_type=broadcast_type,
                )
            )
        except Exception as e:
            logger.error("broadcast_audit_failed", bot_id=bot_id, error=str(e))

        await reporter.finish(result)
        logger.info(
            "broadcast_finished",
            bot_id=bot_id,
            total=result.total,
            successful=result.successful,
            failed=result.failed,
        )
        return result
