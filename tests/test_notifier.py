"""Fan-out of captured user messages to admins and the owner."""

import pytest

from conftest import VALID_TOKEN, FakeConnection
from minibot_hub.core.types import MessageType
from minibot_hub.handlers.notifier import NotificationFanout
from minibot_hub.messenger.models import Sender
from minibot_hub.storage.models import FeedbackRecord

OWNER = 10


@pytest.fixture
async def bot(bots):
    return await bots.create(OWNER, "Help Desk", "helpdesk_bot", VALID_TOKEN)


@pytest.fixture
def conn(bot):
    return FakeConnection(bot, VALID_TOKEN)


def _feedback(bot, **kwargs) -> FeedbackRecord:
    defaults = dict(bot_id=bot.id, user_id=50, user_first_name="Eve", user_username="eve", message="Where is my order?")
    defaults.update(kwargs)
    record = FeedbackRecord(**defaults)
    record.id = 7
    return record


class TestRecipients:
    async def test_admins_then_owner_without_duplicates(self, bot, admins):
        await admins.add(bot.id, 21, None, added_by=OWNER)
        await admins.add(bot.id, 20, None, added_by=OWNER)
        fanout = NotificationFanout(admins)
        assert await fanout.recipients(bot) == [21, 20, OWNER]

        await admins.add(bot.id, OWNER, None, added_by=OWNER)
        assert await fanout.recipients(bot) == [21, 20, OWNER]


class TestNotifyFeedback:
    async def test_text_message(self, bot, admins, conn):
        await admins.add(bot.id, 20, None, added_by=OWNER)
        delivered = await NotificationFanout(admins).notify_feedback(conn, bot, _feedback(bot))

        assert delivered == 2
        assert [m.chat_id for m in conn.sent] == [20, OWNER]
        text = conn.sent[0].text
        assert "New message from Eve (@eve)" in text
        assert "Where is my order?" in text
        assert "Bot: Help Desk" in text
        assert conn.callback_data(OWNER) == ["reply_7"]

    async def test_native_media_is_resent(self, bot, admins, conn):
        record = _feedback(
            bot, message="", message_type=MessageType.IMAGE, media_file_id="photo-1", media_caption="broken box"
        )
        await NotificationFanout(admins).notify_feedback(conn, bot, record)

        sent = conn.sent[0]
        assert sent.media is not None
        assert sent.media.file_id == "photo-1"
        assert sent.media.kind is MessageType.IMAGE
        assert "broken box" in sent.text

    async def test_other_media_falls_back_to_text(self, bot, admins, conn):
        record = _feedback(bot, message="", message_type=MessageType.STICKER, media_file_id="sticker-1")
        await NotificationFanout(admins).notify_feedback(conn, bot, record)

        sent = conn.sent[0]
        assert sent.media is None
        assert "[sticker]" in sent.text

    async def test_failed_recipient_does_not_stop_others(self, bot, admins, conn):
        await admins.add(bot.id, 20, None, added_by=OWNER)
        await admins.add(bot.id, 21, None, added_by=OWNER)
        conn.fail_chats.add(20)

        delivered = await NotificationFanout(admins).notify_feedback(conn, bot, _feedback(bot))
        assert delivered == 2
        assert [m.chat_id for m in conn.sent] == [21, OWNER]


class TestNotifyFlowCompleted:
    async def test_summary(self, bot, admins, conn):
        sender = Sender(user_id=50, first_name="Eve", username="eve")
        await NotificationFanout(admins).notify_flow_completed(conn, bot, sender, "Survey", {"a": "1", "b": "2"})
        text = conn.texts(OWNER)[0]
        assert "Eve (@eve)" in text
        assert "Flow: Survey" in text
        assert "Fields collected: 2" in text
