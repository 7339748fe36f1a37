"""Broadcast engine: isolation, progress, pacing and the audit row."""

import pytest

from conftest import VALID_TOKEN, FakeConnection
from minibot_hub.config import BroadcastConfig
from minibot_hub.core.types import BroadcastType
from minibot_hub.errors import DeliveryError
from minibot_hub.handlers.broadcast import BroadcastEngine, BroadcastResult
from minibot_hub.handlers.delivery import escape_markdown_v2, send_with_fallback
from minibot_hub.messenger.models import ParseMode

ADMIN = 10


@pytest.fixture
async def bot(bots):
    return await bots.create(ADMIN, "News", "news_bot", VALID_TOKEN)


@pytest.fixture
def conn(bot):
    return FakeConnection(bot, VALID_TOKEN)


@pytest.fixture
def engine(user_logs, users, history, fake_sleep):
    return BroadcastEngine(
        user_logs, users, history, BroadcastConfig(progress_every=2, pause_every=3, pause_seconds=1.5), sleep=fake_sleep
    )


async def _audience(user_logs, bot, ids):
    for uid in ids:
        await user_logs.touch(bot.id, uid, None, f"u{uid}")


class TestBotBroadcast:
    async def test_failures_are_isolated(self, engine, conn, bot, user_logs, history):
        await _audience(user_logs, bot, [101, 102, 103, 104, 105])
        conn.fail_chats.add(103)

        result = await engine.run_bot_broadcast(conn, bot, ADMIN, "Sale today!", report_chat_id=ADMIN)

        assert (result.total, result.successful, result.failed) == (5, 4, 1)
        delivered = {m.chat_id for m in conn.sent if m.chat_id != ADMIN}
        assert delivered == {101, 102, 104, 105}

        rows = await history.list_recent(bot.id)
        assert len(rows) == 1
        assert (rows[0].total_users, rows[0].successful_sends, rows[0].failed_sends) == (5, 4, 1)
        assert rows[0].broadcast_type is BroadcastType.BOT

    async def test_progress_and_pacing(self, engine, conn, bot, user_logs, fake_sleep):
        await _audience(user_logs, bot, [101, 102, 103, 104, 105])
        result = await engine.run_bot_broadcast(conn, bot, ADMIN, "hello", report_chat_id=ADMIN)

        # One status message, edited at sends 2 and 4 and once more for the summary
        assert conn.texts(ADMIN) == ["Broadcasting to 5 users..."]
        assert len(conn.edits) == 3
        assert conn.edits[-1][2] == result.summary()
        # Pause after the third send only; never after the last
        assert fake_sleep.calls == [1.5]

    async def test_no_report_chat(self, engine, conn, bot, user_logs):
        await _audience(user_logs, bot, [101])
        await engine.run_bot_broadcast(conn, bot, ADMIN, "hello")
        assert conn.edits == []
        assert [m.chat_id for m in conn.sent] == [101]

    async def test_markup_rejection_falls_back_to_plain(self, engine, conn, bot, user_logs):
        await _audience(user_logs, bot, [101])
        conn.reject_markup = True
        result = await engine.run_bot_broadcast(conn, bot, ADMIN, "50% off *today*")
        assert result.successful == 1
        assert conn.sent[0].parse_mode is None
        assert conn.sent[0].text == "50% off *today*"

    async def test_empty_audience(self, engine, conn, bot):
        result = await engine.run_bot_broadcast(conn, bot, ADMIN, "hello", report_chat_id=ADMIN)
        assert result.total == 0
        assert result.success_rate == 0.0
        assert conn.edits[-1][2] == result.summary()


class TestPlatformBroadcast:
    async def test_skips_banned_users(self, engine, conn, users, history):
        for uid in (1, 2, 3):
            await users.upsert(uid, None, f"u{uid}")
        await users.set_banned(2, True)

        result = await engine.run_platform_broadcast(conn, sent_by=99, message="Maintenance tonight")
        assert result.successful == 2
        assert {m.chat_id for m in conn.sent} == {1, 3}

        rows = await history.list_recent()
        assert rows[0].bot_id is None
        assert rows[0].broadcast_type is BroadcastType.PLATFORM


class TestDelivery:
    async def test_markdown_v2_first(self, conn):
        await send_with_fallback(conn, 1, "a.b")
        assert conn.sent[0].parse_mode is ParseMode.MARKDOWN_V2
        assert conn.sent[0].text == escape_markdown_v2("a.b") == "a\\.b"

    async def test_plain_text_after_markup_rejections(self, conn):
        conn.reject_markup = True
        await send_with_fallback(conn, 1, "a.b <i>")
        assert len(conn.sent) == 1
        assert conn.sent[0].parse_mode is None
        assert conn.sent[0].text == "a.b <i>"

    async def test_delivery_errors_propagate(self, conn):
        conn.fail_chats.add(1)
        with pytest.raises(DeliveryError):
            await send_with_fallback(conn, 1, "hi")

    def test_summary(self):
        result = BroadcastResult(total=4, successful=3, failed=1)
        assert "Success rate: 75.0%" in result.summary()
