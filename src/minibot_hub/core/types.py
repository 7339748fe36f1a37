"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class BotType(StrEnum):
    QUICK = "quick"
    CUSTOM = "custom"


class ConnectionStatus(StrEnum):
    LAUNCHING = "launching"
    ACTIVE = "active"
    FAILED = "failed"


class Role(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    USER = "user"

    @property
    def has_admin_access(self) -> bool:
        return self in (Role.OWNER, Role.ADMIN)

    @property
    def has_owner_access(self) -> bool:
        return self is Role.OWNER


class MessageType(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    AUDIO = "audio"
    VOICE = "voice"
    STICKER = "sticker"
    ANIMATION = "animation"
    VIDEO_NOTE = "video_note"
    MEDIA_GROUP = "media_group"
    OTHER = "other"


# Types the provider can re-send natively by file id
NATIVE_MEDIA_TYPES = frozenset(
    {MessageType.IMAGE, MessageType.VIDEO, MessageType.DOCUMENT, MessageType.AUDIO, MessageType.VOICE}
)


class BroadcastType(StrEnum):
    BOT = "bot"
    PLATFORM = "platform"
