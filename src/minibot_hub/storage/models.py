"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from minibot_hub.core.types import BotType, BroadcastType, MessageType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BotRecord:
    id: int
    owner_id: int
    bot_name: str
    bot_username: str
    token_encrypted: str
    bot_type: BotType = BotType.QUICK
    is_active: bool = True
    custom_flow: Optional[dict[str, Any]] = None  # raw flow definition, parsed by flows.steps
    welcome_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_custom(self) -> bool:
        return self.bot_type is BotType.CUSTOM


@dataclass
class PlatformUser:
    telegram_id: int
    username: Optional[str] = None
    first_name: str = ""
    is_banned: bool = False


@dataclass
class AdminRecord:
    bot_id: int
    admin_user_id: int
    admin_username: Optional[str] = None
    added_by: Optional[int] = None
    permissions: dict[str, bool] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class UserLogRecord:
    bot_id: int
    user_id: int
    user_username: Optional[str]
    user_first_name: str
    first_interaction: datetime
    last_interaction: datetime
    interaction_count: int = 1


@dataclass
class FeedbackRecord:
    bot_id: int
    user_id: int
    user_first_name: str
    message: str
    message_type: MessageType = MessageType.TEXT
    user_username: Optional[str] = None
    message_id: Optional[int] = None
    media_file_id: Optional[str] = None
    media_caption: Optional[str] = None
    is_replied: bool = False
    reply_message: Optional[str] = None
    replied_by: Optional[int] = None
    replied_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class BroadcastRecord:
    sent_by: int
    message: str
    total_users: int
    successful_sends: int
    failed_sends: int
    bot_id: Optional[int] = None  # None for a platform-wide broadcast
    broadcast_type: BroadcastType = BroadcastType.BOT
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an SQLite ISO timestamp (stored as naive UTC) into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
