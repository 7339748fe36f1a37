"""Telegram provider connection using python-telegram-bot v21+."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from telegram import (
    BotCommand,
    BotCommandScopeChat,
    BotCommandScopeDefault,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
    Update,
)
from telegram.constants import ParseMode as TGParseMode
from telegram.error import BadRequest, Forbidden, RetryAfter, TelegramError
from telegram.ext import Application, CallbackQueryHandler, MessageHandler as TGMessageHandler, filters

from minibot_hub.core.types import MessageType
from minibot_hub.errors import ConnectivityError, DeliveryError, MarkupError
from minibot_hub.log import get_logger
from minibot_hub.messenger.base import MessengerAdapter
from minibot_hub.messenger.models import (
    BotCommandSpec,
    Button,
    EventKind,
    IncomingEvent,
    MediaPayload,
    OutgoingMessage,
    ParseMode,
    Sender,
)

logger = get_logger(__name__)

T = TypeVar("T")

ALLOWED_UPDATES = ["message", "callback_query", "my_chat_member"]

MEDIA_FILTER = (
    filters.PHOTO
    | filters.VIDEO
    | filters.Document.ALL
    | filters.AUDIO
    | filters.VOICE
    | filters.Sticker.ALL
    | filters.ANIMATION
    | filters.VIDEO_NOTE
)

_PARSE_MODES = {
    ParseMode.MARKDOWN: TGParseMode.MARKDOWN,
    ParseMode.MARKDOWN_V2: TGParseMode.MARKDOWN_V2,
    ParseMode.HTML: TGParseMode.HTML,
}

# Bot API method per media type, and whether it accepts a caption
_MEDIA_METHODS = {
    MessageType.IMAGE: ("send_photo", True),
    MessageType.VIDEO: ("send_video", True),
    MessageType.DOCUMENT: ("send_document", True),
    MessageType.AUDIO: ("send_audio", True),
    MessageType.VOICE: ("send_voice", True),
    MessageType.ANIMATION: ("send_animation", True),
    MessageType.STICKER: ("send_sticker", False),
    MessageType.VIDEO_NOTE: ("send_video_note", False),
}


def _keyboard(rows: Optional[list[list[Button]]]) -> InlineKeyboardMarkup | None:
    if not rows:
        return None
    return InlineKeyboardMarkup(
        [
            [InlineKeyboardButton(b.text, callback_data=b.callback_data, url=b.url) for b in row]
            for row in rows
        ]
    )


def _classify_media(msg: Message) -> MediaPayload:
    caption = msg.caption
    if msg.photo:
        return MediaPayload(MessageType.IMAGE, msg.photo[-1].file_id, caption)
    # Animations also carry a document, so they are checked before it
    if msg.animation:
        return MediaPayload(MessageType.ANIMATION, msg.animation.file_id, caption)
    if msg.video:
        return MediaPayload(MessageType.VIDEO, msg.video.file_id, caption)
    if msg.video_note:
        return MediaPayload(MessageType.VIDEO_NOTE, msg.video_note.file_id, caption)
    if msg.voice:
        return MediaPayload(MessageType.VOICE, msg.voice.file_id, caption)
    if msg.audio:
        return MediaPayload(MessageType.AUDIO, msg.audio.file_id, caption)
    if msg.sticker:
        return MediaPayload(MessageType.STICKER, msg.sticker.file_id, caption)
    if msg.document:
        return MediaPayload(MessageType.DOCUMENT, msg.document.file_id, caption)
    return MediaPayload(MessageType.OTHER, None, caption)


def _parse_command(text: str) -> str:
    """'/Start@my_bot payload' -> 'start'."""
    head = text.split(maxsplit=1)[0]
    return head[1:].split("@", 1)[0].lower()


class TelegramConnection(MessengerAdapter):
    """One mini-bot's long-polling connection."""

    def __init__(self, record, token: str):
        super().__init__(record, token)
        self._app: Application | None = None  # type: ignore[type-arg]

    def _build(self) -> Application:  # type: ignore[type-arg]
        app = Application.builder().token(self._token).concurrent_updates(True).build()
        app.add_handler(TGMessageHandler(filters.COMMAND, self._on_message))
        app.add_handler(TGMessageHandler(filters.TEXT & ~filters.COMMAND, self._on_message))
        app.add_handler(TGMessageHandler(MEDIA_FILTER, self._on_message))
        app.add_handler(CallbackQueryHandler(self._on_callback))
        app.add_error_handler(self._on_error)
        return app

    async def start(self) -> None:
        try:
            if self._app is None:
                self._app = self._build()
            await self._app.initialize()
            await self._app.start()
            await self._app.updater.start_polling(  # type: ignore[union-attr]
                drop_pending_updates=True,
                allowed_updates=ALLOWED_UPDATES,
            )
        except TelegramError as e:
            raise ConnectivityError(f"Handshake failed for bot {self.bot_id}: {e}") from e
        logger.info("telegram_connection_started", bot_id=self.bot_id, username=self.record.bot_username)

    async def start_fallback(self) -> None:
        """Drop any webhook left on the bot and fall back to plain polling."""
        try:
            if self._app is None:
                self._app = self._build()
            await self._app.initialize()
            await self._app.bot.delete_webhook(drop_pending_updates=True)
            if not self._app.running:
                await self._app.start()
            if not self._app.updater.running:  # type: ignore[union-attr]
                await self._app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]
        except TelegramError as e:
            raise ConnectivityError(f"Fallback handshake failed for bot {self.bot_id}: {e}") from e
        logger.info("telegram_connection_started_fallback", bot_id=self.bot_id)

    async def open_send_only(self) -> None:
        """Authenticate without polling; used for one-off sends such as the platform broadcast."""
        try:
            if self._app is None:
                self._app = self._build()
            await self._app.initialize()
        except TelegramError as e:
            raise ConnectivityError(f"Handshake failed for bot {self.bot_id}: {e}") from e

    async def stop(self) -> None:
        if not self._app:
            return
        app, self._app = self._app, None
        if app.updater and app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()
        logger.info("telegram_connection_stopped", bot_id=self.bot_id)

    # -- outbound -----------------------------------------------------------

    async def send(self, message: OutgoingMessage) -> int:
        bot = self._require_bot()
        parse_mode = _PARSE_MODES.get(message.parse_mode) if message.parse_mode else None
        markup = _keyboard(message.buttons)
        chat_id = message.chat_id
        media = message.media

        if media and media.file_id and media.kind in _MEDIA_METHODS:
            method_name, captioned = _MEDIA_METHODS[media.kind]
            method = getattr(bot, method_name)
            kwargs: dict[str, Any] = {"reply_markup": markup}
            if captioned:
                kwargs.update(caption=message.text or media.caption or None, parse_mode=parse_mode)
            sent = await self._call(lambda: method(chat_id, media.file_id, **kwargs), chat_id)
        else:
            text = message.text or (media.caption if media else "") or ""
            sent = await self._call(
                lambda: bot.send_message(chat_id, text, parse_mode=parse_mode, reply_markup=markup),
                chat_id,
            )
        return sent.message_id

    async def edit(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        parse_mode: Optional[ParseMode] = None,
        buttons: Optional[list[list[Button]]] = None,
    ) -> None:
        bot = self._require_bot()
        try:
            await self._call(
                lambda: bot.edit_message_text(
                    text,
                    chat_id=chat_id,
                    message_id=message_id,
                    parse_mode=_PARSE_MODES.get(parse_mode) if parse_mode else None,
                    reply_markup=_keyboard(buttons),
                ),
                chat_id,
            )
        except DeliveryError as e:
            if "not modified" in str(e).lower():
                return
            raise

    async def delete(self, chat_id: int, message_id: int) -> None:
        bot = self._require_bot()
        await self._call(lambda: bot.delete_message(chat_id, message_id), chat_id)

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        bot = self._require_bot()
        await self._call(lambda: bot.answer_callback_query(callback_id, text=text), None)

    async def set_commands(self, commands: list[BotCommandSpec], chat_id: Optional[int] = None) -> None:
        bot = self._require_bot()
        scope = BotCommandScopeChat(chat_id) if chat_id is not None else BotCommandScopeDefault()
        await self._call(
            lambda: bot.set_my_commands(
                [BotCommand(c.command, c.description) for c in commands], scope=scope
            ),
            chat_id,
        )

    def _require_bot(self):
        if not self._app:
            raise DeliveryError(f"Connection for bot {self.bot_id} is closed")
        return self._app.bot

    async def _call(self, factory: Callable[[], Awaitable[T]], chat_id: Optional[int]) -> T:
        """Run a Bot API call, honouring one flood wait and mapping provider errors."""
        for attempt in range(2):
            try:
                return await factory()
            except RetryAfter as e:
                if attempt:
                    raise DeliveryError(f"Flood limit: {e}", chat_id) from e
                delay = e.retry_after
                if isinstance(delay, timedelta):
                    delay = delay.total_seconds()
                logger.warning("telegram_flood_wait", bot_id=self.bot_id, chat_id=chat_id, delay=delay)
                await asyncio.sleep(float(delay))
            except BadRequest as e:
                if "parse entities" in str(e).lower():
                    raise MarkupError(str(e), chat_id) from e
                raise DeliveryError(str(e), chat_id) from e
            except Forbidden as e:
                raise DeliveryError(f"Blocked or forbidden: {e}", chat_id) from e
            except TelegramError as e:
                raise DeliveryError(str(e), chat_id) from e
        raise DeliveryError("Flood limit retry exhausted", chat_id)

    # -- inbound ------------------------------------------------------------

    async def _on_message(self, update: Update, context: Any) -> None:
        msg = update.message
        if not msg or not msg.from_user or not self._event_callback:
            return

        sender = Sender(
            user_id=msg.from_user.id,
            first_name=msg.from_user.first_name or "",
            username=msg.from_user.username,
        )
        text = msg.text or ""
        command = None
        media = None
        if text.startswith("/"):
            command = _parse_command(text)
            kind = EventKind.START if command == "start" else EventKind.COMMAND
        elif msg.text is not None:
            kind = EventKind.TEXT
        else:
            kind = EventKind.MEDIA
            media = _classify_media(msg)
            text = msg.caption or ""

        event = IncomingEvent(
            kind=kind,
            bot_id=self.bot_id,
            chat_id=msg.chat_id,
            sender=sender,
            text=text,
            command=command,
            media=media,
            message_id=msg.message_id,
            timestamp=msg.date or datetime.now(timezone.utc),
        )
        await self._emit(event)

    async def _on_callback(self, update: Update, context: Any) -> None:
        query = update.callback_query
        if not query or not self._event_callback:
            return
        user = query.from_user
        chat_id = query.message.chat.id if query.message else user.id
        event = IncomingEvent(
            kind=EventKind.CALLBACK,
            bot_id=self.bot_id,
            chat_id=chat_id,
            sender=Sender(user_id=user.id, first_name=user.first_name or "", username=user.username),
            callback_data=query.data,
            callback_id=query.id,
            message_id=query.message.message_id if query.message else None,
        )
        await self._emit(event)

    async def _emit(self, event: IncomingEvent) -> None:
        try:
            await self._event_callback(self, event)  # type: ignore[misc]
        except Exception as e:
            logger.error(
                "telegram_handler_error",
                bot_id=self.bot_id,
                chat_id=event.chat_id,
                error=str(e),
            )

    async def _on_error(self, update: object, context: Any) -> None:
        logger.error("telegram_update_error", bot_id=self.bot_id, error=str(context.error))
