"""Per-event request context, built once before any handler runs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from minibot_hub.core.types import Role
from minibot_hub.errors import DeliveryError, MarkupError
from minibot_hub.log import get_logger
from minibot_hub.messenger.models import Button, IncomingEvent, OutgoingMessage, ParseMode, Sender

if TYPE_CHECKING:
    from minibot_hub.messenger.base import MessengerAdapter
    from minibot_hub.storage.models import BotRecord

logger = get_logger(__name__)

# Strong references to fire-and-forget deletions
_pending_deletes: set[asyncio.Task[Any]] = set()


@dataclass(frozen=True)
class RequestContext:
    event: IncomingEvent
    bot: BotRecord
    connection: MessengerAdapter
    role: Role

    @property
    def sender(self) -> Sender:
        return self.event.sender

    @property
    def user_id(self) -> int:
        return self.event.sender.user_id

    @property
    def chat_id(self) -> int:
        return self.event.chat_id

    @property
    def bot_id(self) -> int:
        return self.bot.id

    async def reply(
        self,
        text: str,
        buttons: Optional[list[list[Button]]] = None,
        parse_mode: Optional[ParseMode] = None,
    ) -> int:
        """Send to the event's chat; formatted text the provider rejects is resent plain."""
        message = OutgoingMessage(chat_id=self.chat_id, text=text, parse_mode=parse_mode, buttons=buttons or [])
        try:
            return await self.connection.send(message)
        except MarkupError:
            if parse_mode is None:
                raise
            logger.warning("reply_markup_rejected", bot_id=self.bot_id, parse_mode=str(parse_mode))
            return await self.connection.send(
                OutgoingMessage(chat_id=self.chat_id, text=text, buttons=buttons or [])
            )

    async def edit_or_reply(
        self,
        text: str,
        buttons: Optional[list[list[Button]]] = None,
        parse_mode: Optional[ParseMode] = None,
    ) -> None:
        """Edit the pressed message for button events, otherwise send a new one."""
        if self.event.is_callback and self.event.message_id is not None:
            try:
                await self.connection.edit(self.chat_id, self.event.message_id, text, parse_mode, buttons)
                return
            except DeliveryError as e:
                logger.debug("edit_fallback_to_reply", bot_id=self.bot_id, error=str(e))
        await self.reply(text, buttons, parse_mode)

    async def reply_ephemeral(self, text: str, delete_after: float) -> int:
        """Reply, then delete the reply after *delete_after* seconds (0 keeps it)."""
        message_id = await self.reply(text)
        if delete_after > 0:
            task = asyncio.create_task(self._delete_later(message_id, delete_after))
            _pending_deletes.add(task)
            task.add_done_callback(_pending_deletes.discard)
        return message_id

    async def _delete_later(self, message_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.connection.delete(self.chat_id, message_id)
        except DeliveryError as e:
            logger.debug("ephemeral_delete_failed", bot_id=self.bot_id, error=str(e))
