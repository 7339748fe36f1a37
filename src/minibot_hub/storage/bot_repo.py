"""Credential store: mini-bot records and their encrypted tokens."""

from __future__ import annotations

import json
from typing import Any, Optional

from minibot_hub.core.types import BotType
from minibot_hub.log import get_logger
from minibot_hub.storage.crypto import TokenCipher
from minibot_hub.storage.database import Database
from minibot_hub.storage.models import BotRecord, parse_timestamp, utcnow

logger = get_logger(__name__)


class BotRepository:
    """CRUD over the ``bots`` table plus token decryption."""

    def __init__(self, db: Database, cipher: TokenCipher):
        self._db = db
        self._cipher = cipher

    async def create(
        self,
        owner_id: int,
        bot_name: str,
        bot_username: str,
        token: str,
        bot_type: BotType = BotType.QUICK,
        custom_flow: Optional[dict[str, Any]] = None,
        welcome_message: Optional[str] = None,
        is_active: bool = True,
    ) -> BotRecord:
        """Provision a new bot record; the token is encrypted before it is stored."""
        encrypted = self._cipher.encrypt(token)
        cursor = await self._db.conn.execute(
            """INSERT INTO bots
               (owner_id, bot_name, bot_username, token_encrypted, bot_type,
                is_active, custom_flow_json, welcome_message)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                owner_id,
                bot_name,
                bot_username,
                encrypted,
                str(bot_type),
                int(is_active),
                json.dumps(custom_flow) if custom_flow is not None else None,
                welcome_message,
            ),
        )
        await self._db.conn.commit()
        logger.info("bot_created", bot_id=cursor.lastrowid, owner_id=owner_id, bot_type=str(bot_type))
        return BotRecord(
            id=cursor.lastrowid,  # type: ignore[arg-type]
            owner_id=owner_id,
            bot_name=bot_name,
            bot_username=bot_username,
            token_encrypted=encrypted,
            bot_type=bot_type,
            is_active=is_active,
            custom_flow=custom_flow,
            welcome_message=welcome_message,
            created_at=utcnow(),
        )

    async def list_active(self) -> list[BotRecord]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM bots WHERE is_active = 1 ORDER BY id ASC"
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def list_all(self) -> list[BotRecord]:
        cursor = await self._db.conn.execute("SELECT * FROM bots ORDER BY id ASC")
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def get_by_id(self, bot_id: int) -> Optional[BotRecord]:
        cursor = await self._db.conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,))
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def set_active(self, bot_id: int, active: bool) -> None:
        await self._db.conn.execute(
            "UPDATE bots SET is_active = ? WHERE id = ?", (int(active), bot_id)
        )
        await self._db.conn.commit()
        logger.info("bot_active_flag_set", bot_id=bot_id, active=active)

    async def update_welcome_message(self, bot_id: int, message: Optional[str]) -> None:
        """Set the welcome override; ``None`` restores the default."""
        await self._db.conn.execute(
            "UPDATE bots SET welcome_message = ? WHERE id = ?", (message, bot_id)
        )
        await self._db.conn.commit()

    async def update_custom_flow(self, bot_id: int, flow: Optional[dict[str, Any]]) -> None:
        await self._db.conn.execute(
            "UPDATE bots SET custom_flow_json = ? WHERE id = ?",
            (json.dumps(flow) if flow is not None else None, bot_id),
        )
        await self._db.conn.commit()

    def decrypt_token(self, record: BotRecord) -> Optional[str]:
        """Return the plaintext token, or None when it cannot be decrypted. Never raises."""
        try:
            return self._cipher.decrypt(record.token_encrypted)
        except Exception as e:
            logger.error("token_decrypt_error", bot_id=record.id, error=str(e))
            return None

    @staticmethod
    def _row_to_record(row) -> BotRecord:
        flow_json = row["custom_flow_json"]
        try:
            custom_flow = json.loads(flow_json) if flow_json else None
        except json.JSONDecodeError:
            logger.warning("custom_flow_json_invalid", bot_id=row["id"])
            custom_flow = None
        return BotRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            bot_name=row["bot_name"],
            bot_username=row["bot_username"],
            token_encrypted=row["token_encrypted"],
            bot_type=BotType(row["bot_type"]),
            is_active=bool(row["is_active"]),
            custom_flow=custom_flow,
            welcome_message=row["welcome_message"],
            created_at=parse_timestamp(row["created_at"]) or utcnow(),
        )
