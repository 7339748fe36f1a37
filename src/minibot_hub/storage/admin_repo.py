"""Co-admins of a mini-bot ("who may act on bot X")."""

from __future__ import annotations

import json
from typing import Optional

from minibot_hub.storage.database import Database
from minibot_hub.storage.models import AdminRecord, parse_timestamp, utcnow

DEFAULT_PERMISSIONS = {
    "can_reply": True,
    "can_broadcast": True,
    "can_manage_admins": False,
    "can_view_stats": True,
    "can_deactivate": False,
}


class AdminRepository:
    def __init__(self, db: Database):
        self._db = db

    async def add(
        self,
        bot_id: int,
        admin_user_id: int,
        admin_username: Optional[str],
        added_by: int,
    ) -> AdminRecord:
        record = AdminRecord(
            bot_id=bot_id,
            admin_user_id=admin_user_id,
            admin_username=admin_username,
            added_by=added_by,
            permissions=dict(DEFAULT_PERMISSIONS),
        )
        cursor = await self._db.conn.execute(
            """INSERT INTO admins (bot_id, admin_user_id, admin_username, added_by, permissions_json)
               VALUES (?, ?, ?, ?, ?)""",
            (bot_id, admin_user_id, admin_username, added_by, json.dumps(record.permissions)),
        )
        await self._db.conn.commit()
        record.id = cursor.lastrowid
        return record

    async def get(self, admin_id: int) -> Optional[AdminRecord]:
        cursor = await self._db.conn.execute("SELECT * FROM admins WHERE id = ?", (admin_id,))
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def list_for_bot(self, bot_id: int) -> list[AdminRecord]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM admins WHERE bot_id = ? ORDER BY id ASC", (bot_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def is_admin(self, bot_id: int, user_id: int) -> bool:
        cursor = await self._db.conn.execute(
            "SELECT 1 FROM admins WHERE bot_id = ? AND admin_user_id = ?", (bot_id, user_id)
        )
        return await cursor.fetchone() is not None

    async def count_for_bot(self, bot_id: int) -> int:
        cursor = await self._db.conn.execute(
            "SELECT COUNT(*) FROM admins WHERE bot_id = ?", (bot_id,)
        )
        row = await cursor.fetchone()
        return row[0]

    async def remove(self, admin_id: int) -> bool:
        cursor = await self._db.conn.execute("DELETE FROM admins WHERE id = ?", (admin_id,))
        await self._db.conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_record(row) -> AdminRecord:
        return AdminRecord(
            id=row["id"],
            bot_id=row["bot_id"],
            admin_user_id=row["admin_user_id"],
            admin_username=row["admin_username"],
            added_by=row["added_by"],
            permissions=json.loads(row["permissions_json"] or "{}"),
            created_at=parse_timestamp(row["created_at"]) or utcnow(),
        )
