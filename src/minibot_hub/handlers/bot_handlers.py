"""Mini-bot behaviour: commands, session continuations and button presses."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Optional, TypeVar

import aiosqlite

from minibot_hub.config import RuntimeConfig
from minibot_hub.core.context import RequestContext
from minibot_hub.core.manager import MiniBotManager
from minibot_hub.core.session import (
    AdminAddSession,
    BroadcastSession,
    ReplySession,
    SessionRegistry,
    SessionTable,
    WelcomeEditSession,
)
from minibot_hub.core.types import MessageType
from minibot_hub.errors import BotNotActiveError, DeliveryError
from minibot_hub.flows.engine import FlowEngine
from minibot_hub.handlers.broadcast import BroadcastEngine
from minibot_hub.handlers.notifier import REPLY_PREFIX, NotificationFanout
from minibot_hub.log import get_logger
from minibot_hub.messenger.models import Button, MediaPayload, OutgoingMessage, ParseMode
from minibot_hub.storage.admin_repo import AdminRepository
from minibot_hub.storage.bot_repo import BotRepository
from minibot_hub.storage.feedback_repo import FeedbackRepository
from minibot_hub.storage.models import BotRecord, FeedbackRecord
from minibot_hub.storage.user_log_repo import UserLogRepository
from minibot_hub.storage.user_repo import UserRepository

logger = get_logger(__name__)

S = TypeVar("S")

DEFAULT_QUICK_WELCOME = (
    "Welcome to *{botName}*!\n\n"
    "We are here to help with any questions you may have. "
    "Send us a message and we will reply as soon as possible."
)
DEFAULT_CUSTOM_WELCOME = (
    "Welcome to *{botName}*!\n\n"
    "This bot has interactive commands. Open the menu (/) to see what it can do."
)

ADMIN_ONLY = "This is only available to the bot's admins."
OWNER_ONLY = "Only the bot owner can do this."
CANCEL_HINT = "Send /cancel to abort."


class BotHandlers:
    def __init__(
        self,
        manager: MiniBotManager,
        sessions: SessionRegistry,
        bots: BotRepository,
        users: UserRepository,
        admins: AdminRepository,
        user_logs: UserLogRepository,
        feedback: FeedbackRepository,
        notifier: NotificationFanout,
        broadcasts: BroadcastEngine,
        flows: FlowEngine,
        runtime: RuntimeConfig,
    ):
        self._manager = manager
        self._sessions = sessions
        self._bots = bots
        self._users = users
        self._admins = admins
        self._user_logs = user_logs
        self._feedback = feedback
        self._notifier = notifier
        self._broadcasts = broadcasts
        self._flows = flows
        self._runtime = runtime
        self._background: set[asyncio.Task[Any]] = set()

    # -- entry points -------------------------------------------------------

    async def start(self, ctx: RequestContext) -> None:
        sender = ctx.sender
        try:
            await self._user_logs.touch(ctx.bot_id, sender.user_id, sender.username, sender.first_name)
        except aiosqlite.IntegrityError:
            logger.warning("user_log_skipped_bot_missing", bot_id=ctx.bot_id, user_id=sender.user_id)
        except Exception as e:
            logger.error("user_log_failed", bot_id=ctx.bot_id, user_id=sender.user_id, error=str(e))

        if ctx.role.has_admin_access:
            await self.show_dashboard(ctx)
            return
        await self.show_welcome(ctx)

    async def command(self, ctx: RequestContext, command: Optional[str]) -> None:
        match command:
            case "start":
                await self.start(ctx)
            case "help":
                await self.show_help(ctx)
            case "cancel":
                await self.cancel(ctx)
            case "dashboard":
                if ctx.role.has_admin_access:
                    await self.show_dashboard(ctx)
                else:
                    await self.show_welcome(ctx)
            case "broadcast":
                await self.start_broadcast(ctx)
            case "stats":
                await self.show_stats(ctx)
            case "admins":
                await self.show_admins(ctx)
            case "settings":
                await self.show_settings(ctx)
            case "messages":
                await self.show_pending_messages(ctx)
            case _:
                await self.text(ctx, ctx.event.text)

    async def text(self, ctx: RequestContext, text: str) -> None:
        """Free text. The first matching branch wins."""
        uid = ctx.user_id

        if self._bound_session(self._sessions.welcome_edit, uid, ctx.bot_id) is not None:
            self._sessions.welcome_edit.pop(uid)
            await self._finish_welcome_edit(ctx, text)
            return

        if self._bound_session(self._sessions.broadcast, uid, ctx.bot_id) is not None:
            if len(text) > self._runtime.max_broadcast_length:
                self._sessions.broadcast.touch(uid)
                await ctx.reply(
                    f"That message is too long ({len(text)} characters, the limit is "
                    f"{self._runtime.max_broadcast_length}). Send a shorter one. {CANCEL_HINT}"
                )
                return
            self._sessions.broadcast.pop(uid)
            await self._finish_broadcast(ctx, text)
            return

        reply_session = self._sessions.reply.pop(uid)
        if reply_session is not None:
            await self._finish_reply(ctx, reply_session, text=text)
            return

        admin_session = self._bound_session(self._sessions.admin_add, uid, ctx.bot_id)
        if admin_session is not None:
            self._sessions.admin_add.pop(uid)
            await self._finish_admin_add(ctx, admin_session, text)
            return

        if ctx.role.has_admin_access:
            await self.show_dashboard(ctx)
            return

        await self._capture(ctx, text)

    async def media(self, ctx: RequestContext) -> None:
        media = ctx.event.media
        if media is None:
            return

        reply_session = self._sessions.reply.pop(ctx.user_id)
        if reply_session is not None:
            await self._finish_reply(ctx, reply_session, text=media.caption or "", media=media)
            return

        if ctx.role.has_admin_access:
            await self.show_dashboard(ctx)
            return

        await self._capture(ctx, media.caption or "", media)

    async def callback(self, ctx: RequestContext, data: str) -> None:
        if data.startswith("mini_"):
            await self._menu_action(ctx, data.removeprefix("mini_"))
        elif data.startswith(REPLY_PREFIX):
            await self.start_reply(ctx, data.removeprefix(REPLY_PREFIX))
        elif data == "admin_add":
            await self.start_admin_add(ctx)
        elif data.startswith("remove_admin_"):
            await self.remove_admin(ctx, data.removeprefix("remove_admin_"))
        elif data == "settings_welcome":
            await self.start_welcome_edit(ctx)
        elif data == "settings_reset_welcome":
            await self.reset_welcome(ctx)
        else:
            logger.info("callback_unknown", bot_id=ctx.bot_id, data=data)

    async def _menu_action(self, ctx: RequestContext, action: str) -> None:
        match action:
            case "dashboard":
                await self.show_dashboard(ctx)
            case "broadcast":
                await self.start_broadcast(ctx)
            case "stats":
                await self.show_stats(ctx)
            case "admins":
                await self.show_admins(ctx)
            case "settings":
                await self.show_settings(ctx)
            case "messages":
                await self.show_pending_messages(ctx)
            case "about":
                await self.show_about(ctx)
            case _:
                logger.info("menu_action_unknown", bot_id=ctx.bot_id, action=action)

    # -- screens ------------------------------------------------------------

    async def show_welcome(self, ctx: RequestContext) -> None:
        """Welcome for non-admin users, one algorithm for both bot types."""
        flow = self._flows.flow_for(ctx)
        if flow is not None and flow.welcome_message:
            text = flow.welcome_message
        elif ctx.bot.welcome_message:
            text = ctx.bot.welcome_message
        elif ctx.bot.is_custom:
            text = DEFAULT_CUSTOM_WELCOME
        else:
            text = DEFAULT_QUICK_WELCOME
        await ctx.reply(text.replace("{botName}", ctx.bot.bot_name), parse_mode=ParseMode.MARKDOWN)

        if flow is not None:
            await self._flows.auto_start(ctx)

    async def show_help(self, ctx: RequestContext) -> None:
        lines = [
            f"{ctx.bot.bot_name}",
            "",
            "Send a message here and the team behind this bot will answer you.",
            "",
            "/start - show the welcome message",
            "/cancel - cancel the current action",
        ]
        if ctx.role.has_admin_access:
            lines += [
                "",
                "Admin commands:",
                "/dashboard - admin dashboard",
                "/messages - pending user messages",
                "/broadcast - message every user",
                "/stats - statistics",
                "/admins - admin list",
            ]
        if ctx.role.has_owner_access:
            lines.append("/settings - welcome message and other settings")
        await ctx.reply("\n".join(lines))

    async def show_dashboard(self, ctx: RequestContext) -> None:
        if not ctx.role.has_admin_access:
            await ctx.reply(ADMIN_ONLY)
            return
        stats = await self._feedback.stats(ctx.bot_id)
        users = await self._user_logs.count(ctx.bot_id)
        text = (
            f"Admin dashboard: {ctx.bot.bot_name}\n\n"
            f"Pending messages: {stats.pending}\n"
            f"Total users: {users}\n"
            f"Total messages: {stats.total}"
        )
        buttons = [
            [Button("Pending messages", "mini_messages")],
            [Button("Send broadcast", "mini_broadcast")],
            [Button("Statistics", "mini_stats")],
            [Button("Manage admins", "mini_admins")],
        ]
        if ctx.role.has_owner_access:
            buttons.append([Button("Bot settings", "mini_settings")])
        buttons.append([Button("About", "mini_about")])
        await ctx.edit_or_reply(text, buttons)

    async def show_stats(self, ctx: RequestContext) -> None:
        if not ctx.role.has_admin_access:
            await ctx.reply(ADMIN_ONLY)
            return
        stats = await self._feedback.stats(ctx.bot_id)
        users = await self._user_logs.count(ctx.bot_id)
        breakdown = "\n".join(f"- {kind}: {count}" for kind, count in sorted(stats.by_type.items())) or "- none yet"
        text = (
            "Bot statistics\n\n"
            f"Total users: {users}\n"
            f"Total messages: {stats.total}\n"
            f"Pending replies: {stats.pending}\n\n"
            f"Message types:\n{breakdown}"
        )
        await ctx.edit_or_reply(text, [[Button("Back", "mini_dashboard")]])

    async def show_pending_messages(self, ctx: RequestContext) -> None:
        if not ctx.role.has_admin_access:
            await ctx.reply(ADMIN_ONLY)
            return
        pending = await self._feedback.list_pending(ctx.bot_id, limit=10)
        if not pending:
            await ctx.edit_or_reply("No pending messages.", [[Button("Back", "mini_dashboard")]])
            return
        lines = ["Pending messages", ""]
        buttons: list[list[Button]] = []
        for item in pending:
            preview = item.message if item.message_type is MessageType.TEXT else f"[{item.message_type}] {item.message}"
            lines.append(f"#{item.id} {item.user_first_name}: {preview[:80]}")
            buttons.append([Button(f"Reply to #{item.id} {item.user_first_name}", f"{REPLY_PREFIX}{item.id}")])
        buttons.append([Button("Back", "mini_dashboard")])
        await ctx.edit_or_reply("\n".join(lines), buttons)

    async def show_admins(self, ctx: RequestContext) -> None:
        if not ctx.role.has_admin_access:
            await ctx.reply(ADMIN_ONLY)
            return
        admins = await self._admins.list_for_bot(ctx.bot_id)
        lines = ["Admins", "", f"Owner: {ctx.bot.owner_id}", f"Admins: {len(admins)}/{self._runtime.max_admins_per_bot}"]
        for admin in admins:
            name = f"@{admin.admin_username}" if admin.admin_username else str(admin.admin_user_id)
            lines.append(f"- {name}")
        buttons: list[list[Button]] = []
        if ctx.role.has_owner_access:
            buttons.append([Button("Add admin", "admin_add")])
            for admin in admins:
                name = f"@{admin.admin_username}" if admin.admin_username else str(admin.admin_user_id)
                buttons.append([Button(f"Remove {name}", f"remove_admin_{admin.id}")])
        buttons.append([Button("Back", "mini_dashboard")])
        await ctx.edit_or_reply("\n".join(lines), buttons)

    async def show_settings(self, ctx: RequestContext, bot: Optional[BotRecord] = None) -> None:
        if not ctx.role.has_owner_access:
            await ctx.reply(OWNER_ONLY)
            return
        bot = bot or ctx.bot
        current = bot.welcome_message or "(default)"
        text = f"Settings: {bot.bot_name}\n\nWelcome message:\n{current}"
        buttons = [
            [Button("Edit welcome message", "settings_welcome")],
            [Button("Reset welcome message", "settings_reset_welcome")],
            [Button("Back", "mini_dashboard")],
        ]
        await ctx.edit_or_reply(text, buttons)

    async def show_about(self, ctx: RequestContext) -> None:
        bot = ctx.bot
        text = (
            f"{bot.bot_name} (@{bot.bot_username})\n"
            f"Type: {bot.bot_type}\n"
            f"Created: {bot.created_at:%Y-%m-%d}"
        )
        await ctx.edit_or_reply(text)

    async def cancel(self, ctx: RequestContext) -> None:
        cancelled = self._sessions.cancel_all(ctx.user_id, ctx.bot_id)
        if cancelled:
            logger.info("sessions_cancelled", bot_id=ctx.bot_id, user_id=ctx.user_id, flows=cancelled)
            await ctx.reply("Cancelled.")
        else:
            await ctx.reply("Nothing to cancel.")

    # -- broadcast ----------------------------------------------------------

    async def start_broadcast(self, ctx: RequestContext) -> None:
        if not ctx.role.has_admin_access:
            await ctx.reply(ADMIN_ONLY)
            return
        count = await self._user_logs.count(ctx.bot_id)
        if count == 0:
            await ctx.reply("There are no users to broadcast to yet.")
            return
        self._sessions.broadcast.start(ctx.user_id, BroadcastSession(bot_id=ctx.bot_id))
        await ctx.reply(f"Send the message to broadcast to {count} users.\n\n{CANCEL_HINT}")

    async def _finish_broadcast(self, ctx: RequestContext, text: str) -> None:
        # Runs outside the handler ceiling; large user bases take minutes
        task = asyncio.create_task(
            self._broadcasts.run_bot_broadcast(ctx.connection, ctx.bot, ctx.user_id, text, report_chat_id=ctx.chat_id)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self, cancel: bool = False) -> None:
        """Wait for background broadcasts, optionally cancelling them first."""
        tasks = list(self._background)
        if not tasks:
            return
        if cancel:
            for task in tasks:
                task.cancel()
            logger.warning("broadcasts_cancelled", count=len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- replies ------------------------------------------------------------

    async def start_reply(self, ctx: RequestContext, raw_id: str) -> None:
        if not ctx.role.has_admin_access:
            await ctx.reply(ADMIN_ONLY)
            return
        feedback = await self._feedback.get(int(raw_id)) if raw_id.isdigit() else None
        if feedback is None or feedback.bot_id != ctx.bot_id:
            await ctx.reply("That message no longer exists.")
            return
        self._sessions.reply.start(
            ctx.user_id,
            ReplySession(feedback_id=feedback.id, target_user_id=feedback.user_id, bot_id=feedback.bot_id),  # type: ignore[arg-type]
        )
        await ctx.reply(f"Replying to {feedback.user_first_name}. Send your reply (text or media).\n\n{CANCEL_HINT}")

    async def _finish_reply(
        self,
        ctx: RequestContext,
        session: ReplySession,
        text: str,
        media: Optional[MediaPayload] = None,
    ) -> None:
        try:
            connection = await self._manager.require_connection(session.bot_id)
        except BotNotActiveError:
            logger.warning("reply_bot_not_active", bot_id=session.bot_id, feedback_id=session.feedback_id)
            await ctx.reply("This bot is not active right now, so the reply could not be delivered.")
            return

        body = f"Reply from admin:\n\n{text}" if text else ""
        try:
            await connection.send(OutgoingMessage(chat_id=session.target_user_id, text=body, media=media))
        except DeliveryError as e:
            logger.warning("reply_delivery_failed", bot_id=session.bot_id, feedback_id=session.feedback_id, error=str(e))
            await ctx.reply("The reply could not be delivered. The user may have blocked the bot.")
            return

        stored = text if text else f"[{media.kind}]" if media else ""
        await self._feedback.mark_replied(session.feedback_id, stored, ctx.user_id)
        logger.info("feedback_replied", bot_id=session.bot_id, feedback_id=session.feedback_id, replied_by=ctx.user_id)
        await ctx.reply("Reply sent.")

    # -- admins -------------------------------------------------------------

    async def start_admin_add(self, ctx: RequestContext) -> None:
        if not ctx.role.has_owner_access:
            await ctx.reply(OWNER_ONLY)
            return
        if await self._admins.count_for_bot(ctx.bot_id) >= self._runtime.max_admins_per_bot:
            await ctx.reply(f"This bot already has the maximum of {self._runtime.max_admins_per_bot} admins.")
            return
        self._sessions.admin_add.start(ctx.user_id, AdminAddSession(bot_id=ctx.bot_id))
        await ctx.reply(f"Send the new admin's numeric user id or @username.\n\n{CANCEL_HINT}")

    async def _finish_admin_add(self, ctx: RequestContext, session: AdminAddSession, text: str) -> None:
        value = text.strip()
        user = None
        if value.isdigit():
            user = await self._users.get(int(value))
        elif value.startswith("@") and len(value) > 1:
            user = await self._users.get_by_username(value)

        if user is None:
            # Input error: keep the session and ask again
            self._sessions.admin_add.start(ctx.user_id, session)
            await ctx.reply(
                "User not found. They must have started the platform bot before. "
                f"Send a numeric id or @username.\n\n{CANCEL_HINT}"
            )
            return
        if user.telegram_id == ctx.bot.owner_id:
            await ctx.reply("The owner already has full access.")
            return
        if await self._admins.is_admin(ctx.bot_id, user.telegram_id):
            await ctx.reply("That user is already an admin.")
            return
        if await self._admins.count_for_bot(ctx.bot_id) >= self._runtime.max_admins_per_bot:
            await ctx.reply(f"This bot already has the maximum of {self._runtime.max_admins_per_bot} admins.")
            return

        await self._admins.add(ctx.bot_id, user.telegram_id, user.username, ctx.user_id)
        logger.info("admin_added", bot_id=ctx.bot_id, admin_user_id=user.telegram_id, added_by=ctx.user_id)
        name = f"@{user.username}" if user.username else str(user.telegram_id)
        await ctx.reply(f"{name} is now an admin of {ctx.bot.bot_name}.")
        try:
            await ctx.connection.send(
                OutgoingMessage(chat_id=user.telegram_id, text=f"You are now an admin of {ctx.bot.bot_name}. Send /start to open the dashboard.")
            )
        except DeliveryError as e:
            logger.info("admin_added_notice_failed", bot_id=ctx.bot_id, admin_user_id=user.telegram_id, error=str(e))

    async def remove_admin(self, ctx: RequestContext, raw_id: str) -> None:
        if not ctx.role.has_owner_access:
            await ctx.reply(OWNER_ONLY)
            return
        admin = await self._admins.get(int(raw_id)) if raw_id.isdigit() else None
        if admin is None or admin.bot_id != ctx.bot_id:
            await ctx.reply("That admin no longer exists.")
            return
        await self._admins.remove(admin.id)  # type: ignore[arg-type]
        logger.info("admin_removed", bot_id=ctx.bot_id, admin_user_id=admin.admin_user_id, removed_by=ctx.user_id)
        await self.show_admins(ctx)

    # -- welcome message ----------------------------------------------------

    async def start_welcome_edit(self, ctx: RequestContext) -> None:
        if not ctx.role.has_owner_access:
            await ctx.reply(OWNER_ONLY)
            return
        self._sessions.welcome_edit.start(ctx.user_id, WelcomeEditSession(bot_id=ctx.bot_id))
        await ctx.reply(
            "Send the new welcome message. Use {botName} to insert the bot's name.\n\n" + CANCEL_HINT
        )

    async def _finish_welcome_edit(self, ctx: RequestContext, text: str) -> None:
        await self._bots.update_welcome_message(ctx.bot_id, text)
        updated = replace(ctx.bot, welcome_message=text)
        self._manager.refresh_record(updated)
        await ctx.reply("Welcome message updated.")
        await self.show_settings(ctx, updated)

    async def reset_welcome(self, ctx: RequestContext) -> None:
        if not ctx.role.has_owner_access:
            await ctx.reply(OWNER_ONLY)
            return
        await self._bots.update_welcome_message(ctx.bot_id, None)
        updated = replace(ctx.bot, welcome_message=None)
        self._manager.refresh_record(updated)
        await ctx.reply("Welcome message reset to the default.")
        await self.show_settings(ctx, updated)

    # -- user messages ------------------------------------------------------

    async def _capture(self, ctx: RequestContext, text: str, media: Optional[MediaPayload] = None) -> None:
        sender = ctx.sender
        record = FeedbackRecord(
            bot_id=ctx.bot_id,
            user_id=sender.user_id,
            user_first_name=sender.first_name,
            user_username=sender.username,
            message=text,
            message_id=ctx.event.message_id,
            message_type=media.kind if media else MessageType.TEXT,
            media_file_id=media.file_id if media else None,
            media_caption=media.caption if media else None,
        )
        try:
            await self._user_logs.touch(ctx.bot_id, sender.user_id, sender.username, sender.first_name)
            feedback = await self._feedback.create(record)
        except aiosqlite.IntegrityError:
            logger.warning("feedback_skipped_bot_missing", bot_id=ctx.bot_id, user_id=sender.user_id)
            await ctx.reply("Sorry, this bot is not available right now. Please try again later.")
            return

        await self._notifier.notify_feedback(ctx.connection, ctx.bot, feedback)
        await ctx.reply_ephemeral(
            "Your message has been sent. We will get back to you soon.",
            self._runtime.ack_delete_after,
        )

    @staticmethod
    def _bound_session(table: SessionTable[int, S], user_id: int, bot_id: int) -> Optional[S]:
        """The user's session in *table* if it belongs to this bot."""
        session = table.get(user_id)
        if session is not None and getattr(session, "bot_id", None) == bot_id:
            return session
        return None
