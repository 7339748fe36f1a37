"""Per-bot interaction log: which users have talked to which mini-bot."""

from __future__ import annotations

from typing import Optional

from minibot_hub.storage.database import Database
from minibot_hub.storage.models import UserLogRecord, parse_timestamp, utcnow


class UserLogRepository:
    def __init__(self, db: Database):
        self._db = db

    async def touch(
        self, bot_id: int, user_id: int, username: Optional[str], first_name: str
    ) -> None:
        """Create the log row or bump its counter and last-interaction time.

        Raises ``aiosqlite.IntegrityError`` if the bot row no longer exists.
        """
        await self._db.conn.execute(
            """INSERT INTO user_logs (bot_id, user_id, user_username, user_first_name)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(bot_id, user_id)
               DO UPDATE SET user_username = excluded.user_username,
                             user_first_name = excluded.user_first_name,
                             interaction_count = interaction_count + 1,
                             last_interaction = strftime('%Y-%m-%dT%H:%M:%f','now')""",
            (bot_id, user_id, username, first_name),
        )
        await self._db.conn.commit()

    async def get(self, bot_id: int, user_id: int) -> Optional[UserLogRecord]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM user_logs WHERE bot_id = ? AND user_id = ?", (bot_id, user_id)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return UserLogRecord(
            bot_id=row["bot_id"],
            user_id=row["user_id"],
            user_username=row["user_username"],
            user_first_name=row["user_first_name"],
            first_interaction=parse_timestamp(row["first_interaction"]) or utcnow(),
            last_interaction=parse_timestamp(row["last_interaction"]) or utcnow(),
            interaction_count=row["interaction_count"],
        )

    async def count(self, bot_id: int) -> int:
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM user_logs WHERE bot_id = ?", (bot_id,)
        )
        row = await cursor.fetchone()
        return row[0]

    async def list_user_ids(self, bot_id: int) -> list[int]:
        cursor = await self._db.conn.execute(
            "SELECT user_id FROM user_logs WHERE bot_id = ? ORDER BY first_interaction ASC",
            (bot_id,),
        )
        rows = await cursor.fetchall()
        return [row["user_id"] for row in rows]
