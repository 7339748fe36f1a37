"""Platform users (the main bot's user base) and their ban flag."""

from __future__ import annotations

from typing import Optional

from minibot_hub.storage.database import Database
from minibot_hub.storage.models import PlatformUser


class UserRepository:
    def __init__(self, db: Database):
        self._db = db

    async def upsert(self, telegram_id: int, username: Optional[str], first_name: str) -> None:
        await self._db.conn.execute(
            """INSERT INTO users (telegram_id, username, first_name)
               VALUES (?, ?, ?)
               ON CONFLICT(telegram_id)
               DO UPDATE SET username = excluded.username, first_name = excluded.first_name""",
            (telegram_id, username, first_name),
        )
        await self._db.conn.commit()

    async def ensure(self, telegram_id: int) -> None:
        """Insert a bare row for *telegram_id* unless one exists."""
        await self._db.conn.execute(
            "INSERT OR IGNORE INTO users (telegram_id) VALUES (?)", (telegram_id,)
        )
        await self._db.conn.commit()

    async def get(self, telegram_id: int) -> Optional[PlatformUser]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_user(row) if row else None

    async def get_by_username(self, username: str) -> Optional[PlatformUser]:
        """Case-insensitive lookup; a leading ``@`` is ignored."""
        cursor = await self._db.conn.execute(
            "SELECT * FROM users WHERE lower(username) = lower(?)", (username.lstrip("@"),)
        )
        row = await cursor.fetchone()
        return self._row_to_user(row) if row else None

    async def is_banned(self, telegram_id: int) -> bool:
        cursor = await self._db.conn.execute(
            "SELECT is_banned FROM users WHERE telegram_id = ?", (telegram_id,)
        )
        row = await cursor.fetchone()
        return bool(row and row["is_banned"])

    async def set_banned(self, telegram_id: int, banned: bool) -> None:
        await self._db.conn.execute(
            "UPDATE users SET is_banned = ? WHERE telegram_id = ?", (int(banned), telegram_id)
        )
        await self._db.conn.commit()

    async def count(self) -> int:
        cursor = await self._db.conn.execute("SELECT COUNT(*) FROM users")
        row = await cursor.fetchone()
        return row[0]

    async def list_broadcast_ids(self) -> list[int]:
        """Ids of every platform user that is not banned."""
        cursor = await self._db.conn.execute(
            "SELECT telegram_id FROM users WHERE is_banned = 0 ORDER BY telegram_id ASC"
        )
        rows = await cursor.fetchall()
        return [row["telegram_id"] for row in rows]

    @staticmethod
    def _row_to_user(row) -> PlatformUser:
        return PlatformUser(
            telegram_id=row["telegram_id"],
            username=row["username"],
            first_name=row["first_name"],
            is_banned=bool(row["is_banned"]),
        )
