"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from minibot_hub.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    telegram_id     INTEGER PRIMARY KEY,
    username        TEXT,
    first_name      TEXT    NOT NULL DEFAULT '',
    is_banned       INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);

CREATE TABLE IF NOT EXISTS bots (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        INTEGER NOT NULL,
    bot_name        TEXT    NOT NULL,
    bot_username    TEXT    NOT NULL,
    token_encrypted TEXT    NOT NULL,
    bot_type        TEXT    NOT NULL DEFAULT 'quick' CHECK(bot_type IN ('quick','custom')),
    is_active       INTEGER NOT NULL DEFAULT 1,
    custom_flow_json TEXT,
    welcome_message TEXT,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_bots_active ON bots(is_active);

CREATE TABLE IF NOT EXISTS admins (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id          INTEGER NOT NULL REFERENCES bots(id) ON DELETE CASCADE,
    admin_user_id   INTEGER NOT NULL,
    admin_username  TEXT,
    added_by        INTEGER,
    permissions_json TEXT   NOT NULL DEFAULT '{}',
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    UNIQUE (bot_id, admin_user_id)
);

CREATE TABLE IF NOT EXISTS user_logs (
    bot_id            INTEGER NOT NULL REFERENCES bots(id) ON DELETE CASCADE,
    user_id           INTEGER NOT NULL,
    user_username     TEXT,
    user_first_name   TEXT    NOT NULL DEFAULT '',
    first_interaction TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    last_interaction  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    interaction_count INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (bot_id, user_id)
);

CREATE TABLE IF NOT EXISTS feedback (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id          INTEGER NOT NULL REFERENCES bots(id) ON DELETE CASCADE,
    user_id         INTEGER NOT NULL,
    user_username   TEXT,
    user_first_name TEXT    NOT NULL DEFAULT '',
    message         TEXT    NOT NULL DEFAULT '',
    message_id      INTEGER,
    message_type    TEXT    NOT NULL DEFAULT 'text',
    media_file_id   TEXT,
    media_caption   TEXT,
    is_replied      INTEGER NOT NULL DEFAULT 0,
    reply_message   TEXT,
    replied_by      INTEGER,
    replied_at      TEXT,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_feedback_bot
    ON feedback(bot_id, is_replied, created_at);

CREATE TABLE IF NOT EXISTS broadcast_history (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    bot_id           INTEGER REFERENCES bots(id) ON DELETE SET NULL,
    sent_by          INTEGER NOT NULL,
    message          TEXT    NOT NULL,
    total_users      INTEGER NOT NULL,
    successful_sends INTEGER NOT NULL,
    failed_sends     INTEGER NOT NULL,
    broadcast_type   TEXT    NOT NULL DEFAULT 'bot' CHECK(broadcast_type IN ('bot','platform')),
    created_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
