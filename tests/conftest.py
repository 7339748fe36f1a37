"""Shared fixtures: an in-memory provider connection, repositories and a wired hub."""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from minibot_hub.app import MiniBotHubApp
from minibot_hub.config import AppConfig, BroadcastConfig, RuntimeConfig, SecurityConfig, StorageConfig
from minibot_hub.core.context import RequestContext
from minibot_hub.core.types import Role
from minibot_hub.errors import ConnectivityError, DeliveryError, MarkupError
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
from minibot_hub.storage.admin_repo import AdminRepository
from minibot_hub.storage.bot_repo import BotRepository
from minibot_hub.storage.broadcast_repo import BroadcastRepository
from minibot_hub.storage.crypto import TokenCipher
from minibot_hub.storage.database import Database
from minibot_hub.storage.feedback_repo import FeedbackRepository
from minibot_hub.storage.models import BotRecord
from minibot_hub.storage.user_log_repo import UserLogRepository
from minibot_hub.storage.user_repo import UserRepository

VALID_TOKEN = "123456789:" + "A" * 35
OTHER_TOKEN = "987654321:" + "b" * 35


def token_for(n: int) -> str:
    return f"{100000000 + n}:" + "x" * 35


# ── Fake provider connection ──────────────────────────


class FakeConnection(MessengerAdapter):
    """Records everything sent through it; failures are switched on per test."""

    def __init__(self, record: BotRecord, token: str):
        super().__init__(record, token)
        self.sent: list[OutgoingMessage] = []
        self.edits: list[tuple[int, int, str]] = []
        self.deleted: list[tuple[int, int]] = []
        self.answered: list[tuple[str, Optional[str]]] = []
        self.commands: list[tuple[list[BotCommandSpec], Optional[int]]] = []
        self.fail_start = False
        self.fail_fallback = False
        self.fail_chats: set[int] = set()
        self.reject_markup = False
        self.start_gate: asyncio.Event | None = None
        self.start_calls = 0
        self.fallback_calls = 0
        self.stop_calls = 0
        self._next_message_id = 1000

    async def start(self) -> None:
        self.start_calls += 1
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.fail_start:
            raise ConnectivityError("handshake refused")

    async def start_fallback(self) -> None:
        self.fallback_calls += 1
        if self.fail_fallback:
            raise ConnectivityError("fallback refused")

    async def stop(self) -> None:
        self.stop_calls += 1

    async def send(self, message: OutgoingMessage) -> int:
        if message.chat_id in self.fail_chats:
            raise DeliveryError("Forbidden: bot was blocked by the user", message.chat_id)
        if self.reject_markup and message.parse_mode is not None:
            raise MarkupError("Can't parse entities", message.chat_id)
        self.sent.append(message)
        self._next_message_id += 1
        return self._next_message_id

    async def edit(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        parse_mode: Optional[ParseMode] = None,
        buttons: Optional[list[list[Button]]] = None,
    ) -> None:
        self.edits.append((chat_id, message_id, text))

    async def delete(self, chat_id: int, message_id: int) -> None:
        self.deleted.append((chat_id, message_id))

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        self.answered.append((callback_id, text))

    async def set_commands(self, commands: list[BotCommandSpec], chat_id: Optional[int] = None) -> None:
        self.commands.append((commands, chat_id))

    def texts(self, chat_id: Optional[int] = None) -> list[str]:
        return [m.text for m in self.sent if chat_id is None or m.chat_id == chat_id]

    def callback_data(self, chat_id: Optional[int] = None) -> list[str]:
        return [
            b.callback_data
            for m in self.sent
            if chat_id is None or m.chat_id == chat_id
            for row in m.buttons
            for b in row
            if b.callback_data
        ]


class FakeFactory:
    """Connection factory handing out FakeConnections, configured per bot id."""

    def __init__(self) -> None:
        self.created: list[FakeConnection] = []
        self.fail_start: set[int] = set()
        self.fail_fallback: set[int] = set()
        self.gates: dict[int, asyncio.Event] = {}
        self.raise_for: set[int] = set()

    def __call__(self, record: BotRecord, token: str) -> FakeConnection:
        if record.id in self.raise_for:
            raise RuntimeError(f"cannot build connection for bot {record.id}")
        conn = FakeConnection(record, token)
        conn.fail_start = record.id in self.fail_start
        conn.fail_fallback = record.id in self.fail_fallback
        conn.start_gate = self.gates.get(record.id)
        self.created.append(conn)
        return conn

    def for_bot(self, bot_id: int) -> FakeConnection:
        """Most recent connection built for *bot_id*."""
        return [c for c in self.created if c.bot_id == bot_id][-1]

    def built_for(self, bot_id: int) -> int:
        return sum(1 for c in self.created if c.bot_id == bot_id)


# ── Event / context builders ──────────────────────────


def make_event(
    kind: EventKind,
    bot_id: int,
    user_id: int,
    text: str = "",
    *,
    command: Optional[str] = None,
    callback_data: Optional[str] = None,
    media: Optional[MediaPayload] = None,
    first_name: str = "Ada",
    username: Optional[str] = None,
    message_id: int = 1,
) -> IncomingEvent:
    if kind in (EventKind.START, EventKind.COMMAND) and command is None:
        command = text.lstrip("/").split()[0].split("@", 1)[0].lower() if text else "start"
        text = text or "/start"
    return IncomingEvent(
        kind=kind,
        bot_id=bot_id,
        chat_id=user_id,
        sender=Sender(user_id=user_id, first_name=first_name, username=username),
        text=text,
        command=command,
        callback_data=callback_data,
        callback_id=f"cb-{user_id}" if kind is EventKind.CALLBACK else None,
        media=media,
        message_id=message_id,
    )


def text_event(bot_id: int, user_id: int, text: str, **kwargs) -> IncomingEvent:
    if text.startswith("/"):
        kind = EventKind.START if text.split()[0] == "/start" else EventKind.COMMAND
        return make_event(kind, bot_id, user_id, text, **kwargs)
    return make_event(EventKind.TEXT, bot_id, user_id, text, **kwargs)


def callback_event(bot_id: int, user_id: int, data: str, **kwargs) -> IncomingEvent:
    return make_event(EventKind.CALLBACK, bot_id, user_id, callback_data=data, **kwargs)


def make_ctx(
    connection: FakeConnection, bot: BotRecord, event: IncomingEvent, role: Role = Role.USER
) -> RequestContext:
    return RequestContext(event=event, bot=bot, connection=connection, role=role)


# ── Storage fixtures ──────────────────────────────────


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TokenCipher.generate_key())


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def bots(db, cipher) -> BotRepository:
    return BotRepository(db, cipher)


@pytest.fixture
def users(db) -> UserRepository:
    return UserRepository(db)


@pytest.fixture
def admins(db) -> AdminRepository:
    return AdminRepository(db)


@pytest.fixture
def user_logs(db) -> UserLogRepository:
    return UserLogRepository(db)


@pytest.fixture
def feedback(db) -> FeedbackRepository:
    return FeedbackRepository(db)


@pytest.fixture
def history(db) -> BroadcastRepository:
    return BroadcastRepository(db)


@pytest.fixture
def runtime() -> RuntimeConfig:
    return RuntimeConfig(startup_delay=0, launch_wait=1.0, ack_delete_after=0, handler_timeout=5.0)


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


# ── Wired application ─────────────────────────────────


@pytest.fixture
async def hub(tmp_path, factory):
    config = AppConfig(
        security=SecurityConfig(encryption_key=TokenCipher.generate_key()),
        storage=StorageConfig(db_path=str(tmp_path / "hub.db")),
        runtime=RuntimeConfig(startup_delay=0, launch_wait=1.0, ack_delete_after=0, handler_timeout=5.0),
        broadcast=BroadcastConfig(progress_every=2, pause_every=3, pause_seconds=0),
    )
    app = MiniBotHubApp(config, connection_factory=factory)
    await app.db.initialize()
    yield app
    await app.handlers.drain(cancel=True)
    await app.manager.teardown()
    await app.db.close()


async def launch(app: MiniBotHubApp, factory: FakeFactory, record: BotRecord) -> FakeConnection:
    """Start *record* on the hub and wait until its connection is active."""
    assert await app.manager.start_one(record)
    assert await app.manager.wait_for_connection(record.id, timeout=1.0) is not None
    return factory.for_bot(record.id)
