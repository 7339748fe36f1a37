"""Audit trail of broadcast runs."""

from __future__ import annotations

from typing import Optional

from minibot_hub.core.types import BroadcastType
from minibot_hub.storage.database import Database
from minibot_hub.storage.models import BroadcastRecord, parse_timestamp, utcnow


class BroadcastRepository:
    def __init__(self, db: Database):
        self._db = db

    async def save(self, record: BroadcastRecord) -> int:
        cursor = await self._db.conn.execute(
            """INSERT INTO broadcast_history
               (bot_id, sent_by, message, total_users, successful_sends, failed_sends, broadcast_type)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.bot_id,
                record.sent_by,
                record.message,
                record.total_users,
                record.successful_sends,
                record.failed_sends,
                str(record.broadcast_type),
            ),
        )
        await self._db.conn.commit()
        record.id = cursor.lastrowid
        return cursor.lastrowid  # type: ignore[return-value]

    async def list_recent(self, bot_id: Optional[int] = None, limit: int = 20) -> list[BroadcastRecord]:
        """Most recent runs for a bot, or platform-wide runs when *bot_id* is None."""
        if bot_id is None:
            cursor = await self._db.conn.execute(
                """SELECT * FROM broadcast_history WHERE bot_id IS NULL
                   ORDER BY id DESC LIMIT ?""",
                (limit,),
            )
        else:
            cursor = await self._db.conn.execute(
                """SELECT * FROM broadcast_history WHERE bot_id = ?
                   ORDER BY id DESC LIMIT ?""",
                (bot_id, limit),
            )
        rows = await cursor.fetchall()
        return [
            BroadcastRecord(
                id=row["id"],
                bot_id=row["bot_id"],
                sent_by=row["sent_by"],
                message=row["message"],
                total_users=row["total_users"],
                successful_sends=row["successful_sends"],
                failed_sends=row["failed_sends"],
                broadcast_type=BroadcastType(row["broadcast_type"]),
                created_at=parse_timestamp(row["created_at"]) or utcnow(),
            )
            for row in rows
        ]
