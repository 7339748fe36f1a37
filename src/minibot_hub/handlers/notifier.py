"""Fan-out of user activity to a bot's admins and owner."""

from __future__ import annotations

from dataclasses import replace

from minibot_hub.core.types import NATIVE_MEDIA_TYPES, MessageType
from minibot_hub.errors import DeliveryError
from minibot_hub.log import get_logger
from minibot_hub.messenger.base import MessengerAdapter
from minibot_hub.messenger.models import Button, MediaPayload, OutgoingMessage, Sender
from minibot_hub.storage.admin_repo import AdminRepository
from minibot_hub.storage.models import BotRecord, FeedbackRecord

logger = get_logger(__name__)

REPLY_PREFIX = "reply_"


class NotificationFanout:
    def __init__(self, admins: AdminRepository):
        self._admins = admins

    async def recipients(self, bot: BotRecord) -> list[int]:
        """Admin ids in insertion order, then the owner; duplicates removed."""
        ids = [admin.admin_user_id for admin in await self._admins.list_for_bot(bot.id)]
        ids.append(bot.owner_id)
        return list(dict.fromkeys(ids))

    async def notify_feedback(
        self, connection: MessengerAdapter, bot: BotRecord, feedback: FeedbackRecord
    ) -> int:
        """Push a captured message to every recipient. Returns the number delivered."""
        header = f"New message from {feedback.user_first_name}"
        if feedback.user_username:
            header += f" (@{feedback.user_username})"
        buttons = [[Button(text="Reply", callback_data=f"{REPLY_PREFIX}{feedback.id}")]]

        if feedback.message_type in NATIVE_MEDIA_TYPES and feedback.media_file_id:
            caption = header
            if feedback.media_caption:
                caption += f"\n\n{feedback.media_caption}"
            media = MediaPayload(feedback.message_type, feedback.media_file_id)
            template = OutgoingMessage(chat_id=0, text=caption, buttons=buttons, media=media)
        else:
            body = feedback.message or feedback.media_caption or ""
            if feedback.message_type is not MessageType.TEXT:
                body = f"[{feedback.message_type}] {body}".rstrip()
            text = f"{header}\n\n{body}\n\nBot: {bot.bot_name}"
            template = OutgoingMessage(chat_id=0, text=text, buttons=buttons)

        delivered = 0
        recipients = await self.recipients(bot)
        for chat_id in recipients:
            try:
                await connection.send(replace(template, chat_id=chat_id))
                delivered += 1
            except DeliveryError as e:
                logger.warning(
                    "notify_recipient_failed",
                    bot_id=bot.id,
                    recipient=chat_id,
                    feedback_id=feedback.id,
                    error=str(e),
                )
        logger.info("feedback_fanned_out", bot_id=bot.id, feedback_id=feedback.id, delivered=delivered, total=len(recipients))
        return delivered

    async def notify_flow_completed(
        self,
        connection: MessengerAdapter,
        bot: BotRecord,
        sender: Sender,
        flow_name: str,
        user_data: dict[str, str],
    ) -> int:
        text = (
            f"Custom flow completed\n\n"
            f"User: {sender.display}\n"
            f"Flow: {flow_name}\n"
            f"Fields collected: {len(user_data)}"
        )
        delivered = 0
        for chat_id in await self.recipients(bot):
            try:
                await connection.send(OutgoingMessage(chat_id=chat_id, text=text))
                delivered += 1
            except DeliveryError as e:
                logger.warning("flow_notify_failed", bot_id=bot.id, recipient=chat_id, error=str(e))
        return delivered
