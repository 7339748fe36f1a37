"""Per-event pipeline shared by every mini-bot connection."""

from __future__ import annotations

import asyncio
from typing import Optional

from minibot_hub.config import RuntimeConfig
from minibot_hub.core.commands import commands_for
from minibot_hub.core.context import RequestContext
from minibot_hub.core.manager import MiniBotManager
from minibot_hub.core.types import Role
from minibot_hub.errors import DeliveryError
from minibot_hub.flows.engine import CALLBACK_PREFIX, FlowEngine
from minibot_hub.handlers.bot_handlers import BotHandlers
from minibot_hub.log import get_logger
from minibot_hub.messenger.base import MessengerAdapter
from minibot_hub.messenger.models import EventKind, IncomingEvent, OutgoingMessage
from minibot_hub.storage.admin_repo import AdminRepository
from minibot_hub.storage.bot_repo import BotRepository
from minibot_hub.storage.models import BotRecord
from minibot_hub.storage.user_repo import UserRepository

logger = get_logger(__name__)

APOLOGY = "Sorry, something went wrong. Please try again in a moment."
BANNED_NOTICE = "You have been banned from using this platform."


class Dispatcher:
    """Builds the request context, applies ban and menu middleware, then routes.

    Failures are contained here: nothing raised by a handler leaves
    ``dispatch``, so one bot's error never reaches another connection.
    """

    def __init__(
        self,
        manager: MiniBotManager,
        bots: BotRepository,
        users: UserRepository,
        admins: AdminRepository,
        handlers: BotHandlers,
        flows: FlowEngine,
        runtime: RuntimeConfig,
    ):
        self._manager = manager
        self._bots = bots
        self._users = users
        self._admins = admins
        self._handlers = handlers
        self._flows = flows
        self._runtime = runtime
        self._menus: set[tuple[int, int, Role]] = set()

    async def dispatch(self, connection: MessengerAdapter, event: IncomingEvent) -> None:
        try:
            await asyncio.wait_for(self._handle(connection, event), timeout=self._runtime.handler_timeout)
        except asyncio.TimeoutError:
            logger.error("handler_timeout", bot_id=event.bot_id, kind=str(event.kind), user_id=event.sender.user_id)
            await self._apologize(connection, event)
        except Exception as e:
            logger.error(
                "handler_error",
                bot_id=event.bot_id,
                bot_name=connection.record.bot_name if connection.record else None,
                kind=str(event.kind),
                user_id=event.sender.user_id,
                error=str(e),
                exc_info=True,
            )
            await self._apologize(connection, event)

    async def _handle(self, connection: MessengerAdapter, event: IncomingEvent) -> None:
        bot = await self._resolve_bot(connection, event)
        if bot is None:
            logger.warning("event_dropped_unknown_bot", bot_id=event.bot_id)
            return

        user_id = event.sender.user_id
        if await self._users.is_banned(user_id):
            logger.info("banned_user_rejected", bot_id=bot.id, user_id=user_id)
            if event.is_callback and event.callback_id:
                await connection.answer_callback(event.callback_id, BANNED_NOTICE)
            else:
                await connection.send(OutgoingMessage(chat_id=event.chat_id, text=BANNED_NOTICE))
            return

        role = await self._resolve_role(bot, user_id)
        ctx = RequestContext(event=event, bot=bot, connection=connection, role=role)
        await self._ensure_menu(ctx)
        await self._route(ctx)

    def forget_bot(self, bot_id: int) -> None:
        """Drop menu bookkeeping for a stopped bot so a relaunch registers menus again."""
        self._menus = {key for key in self._menus if key[0] != bot_id}

    async def _resolve_bot(self, connection: MessengerAdapter, event: IncomingEvent) -> Optional[BotRecord]:
        """Connection snapshot, else the pool entry, else a storage re-fetch."""
        record = connection.record
        if record is not None and record.id == event.bot_id:
            return record
        entry = self._manager.pool.get(event.bot_id)
        if entry is not None:
            return entry.record
        logger.warning("bot_context_rehydrated", bot_id=event.bot_id)
        return await self._bots.get_by_id(event.bot_id)

    async def _resolve_role(self, bot: BotRecord, user_id: int) -> Role:
        if bot.owner_id == user_id:
            return Role.OWNER
        if await self._admins.is_admin(bot.id, user_id):
            return Role.ADMIN
        return Role.USER

    async def _ensure_menu(self, ctx: RequestContext) -> None:
        key = (ctx.bot_id, ctx.user_id, ctx.role)
        if key in self._menus:
            return
        self._menus.add(key)
        try:
            await ctx.connection.set_commands(commands_for(ctx.role), chat_id=ctx.chat_id)
        except Exception as e:
            self._menus.discard(key)
            logger.warning("menu_registration_failed", bot_id=ctx.bot_id, user_id=ctx.user_id, error=str(e))

    async def _route(self, ctx: RequestContext) -> None:
        event = ctx.event
        match event.kind:
            case EventKind.CALLBACK:
                await self._route_callback(ctx)
            case EventKind.START:
                await self._handlers.start(ctx)
            case EventKind.COMMAND:
                if ctx.bot.is_custom and await self._flows.handle_text(ctx, event.text):
                    return
                await self._handlers.command(ctx, event.command)
            case EventKind.TEXT:
                if ctx.bot.is_custom and await self._flows.handle_text(ctx, event.text):
                    return
                await self._handlers.text(ctx, event.text)
            case EventKind.MEDIA:
                await self._handlers.media(ctx)

    async def _route_callback(self, ctx: RequestContext) -> None:
        event = ctx.event
        data = event.callback_data or ""
        if event.callback_id:
            try:
                await ctx.connection.answer_callback(event.callback_id)
            except DeliveryError as e:
                logger.debug("callback_answer_failed", bot_id=ctx.bot_id, error=str(e))

        if data.startswith(CALLBACK_PREFIX):
            await self._flows.handle_choice(ctx, data)
            return
        await self._handlers.callback(ctx, data)

    async def _apologize(self, connection: MessengerAdapter, event: IncomingEvent) -> None:
        try:
            await connection.send(OutgoingMessage(chat_id=event.chat_id, text=APOLOGY))
        except Exception as e:
            logger.debug("apology_failed", bot_id=event.bot_id, error=str(e))
