"""Captured user messages awaiting (or having received) an admin reply."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from minibot_hub.core.types import MessageType
from minibot_hub.storage.database import Database
from minibot_hub.storage.models import FeedbackRecord, parse_timestamp, utcnow


@dataclass
class FeedbackStats:
    total: int = 0
    pending: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


class FeedbackRepository:
    def __init__(self, db: Database):
        self._db = db

    async def create(self, record: FeedbackRecord) -> FeedbackRecord:
        cursor = await self._db.conn.execute(
            """INSERT INTO feedback
               (bot_id, user_id, user_username, user_first_name, message, message_id,
                message_type, media_file_id, media_caption)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.bot_id,
                record.user_id,
                record.user_username,
                record.user_first_name,
                record.message,
                record.message_id,
                str(record.message_type),
                record.media_file_id,
                record.media_caption,
            ),
        )
        await self._db.conn.commit()
        record.id = cursor.lastrowid
        return record

    async def get(self, feedback_id: int) -> Optional[FeedbackRecord]:
        cursor = await self._db.conn.execute("SELECT * FROM feedback WHERE id = ?", (feedback_id,))
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def mark_replied(self, feedback_id: int, reply: str, replied_by: int) -> None:
        await self._db.conn.execute(
            """UPDATE feedback
               SET is_replied = 1, reply_message = ?, replied_by = ?,
                   replied_at = strftime('%Y-%m-%dT%H:%M:%f','now')
               WHERE id = ?""",
            (reply, replied_by, feedback_id),
        )
        await self._db.conn.commit()

    async def list_pending(self, bot_id: int, limit: int = 10) -> list[FeedbackRecord]:
        cursor = await self._db.conn.execute(
            """SELECT * FROM feedback
               WHERE bot_id = ? AND is_replied = 0
               ORDER BY created_at DESC, id DESC
               LIMIT ?""",
            (bot_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def stats(self, bot_id: int) -> FeedbackStats:
        cursor = await self._db.conn.execute(
            """SELECT message_type, COUNT(*) AS total, SUM(is_replied = 0) AS pending
               FROM feedback WHERE bot_id = ? GROUP BY message_type""",
            (bot_id,),
        )
        rows = await cursor.fetchall()
        stats = FeedbackStats()
        for row in rows:
            stats.by_type[row["message_type"]] = row["total"]
            stats.total += row["total"]
            stats.pending += row["pending"] or 0
        return stats

    @staticmethod
    def _row_to_record(row) -> FeedbackRecord:
        return FeedbackRecord(
            id=row["id"],
            bot_id=row["bot_id"],
            user_id=row["user_id"],
            user_username=row["user_username"],
            user_first_name=row["user_first_name"],
            message=row["message"],
            message_id=row["message_id"],
            message_type=MessageType(row["message_type"]),
            media_file_id=row["media_file_id"],
            media_caption=row["media_caption"],
            is_replied=bool(row["is_replied"]),
            reply_message=row["reply_message"],
            replied_by=row["replied_by"],
            replied_at=parse_timestamp(row["replied_at"]),
            created_at=parse_timestamp(row["created_at"]) or utcnow(),
        )
