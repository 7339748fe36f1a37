"""Provider-neutral event and message models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional

from minibot_hub.core.types import MessageType


class EventKind(StrEnum):
    START = "start"
    COMMAND = "command"
    TEXT = "text"
    MEDIA = "media"
    CALLBACK = "callback"


class ParseMode(StrEnum):
    MARKDOWN = "markdown"
    MARKDOWN_V2 = "markdown_v2"
    HTML = "html"


@dataclass(frozen=True, slots=True)
class Sender:
    user_id: int
    first_name: str = ""
    username: Optional[str] = None

    @property
    def display(self) -> str:
        if self.username:
            return f"{self.first_name} (@{self.username})"
        return self.first_name or str(self.user_id)


@dataclass(frozen=True, slots=True)
class MediaPayload:
    """A media item referenced by the provider's file id."""

    kind: MessageType
    file_id: Optional[str] = None
    caption: Optional[str] = None


@dataclass(frozen=True, slots=True)
class IncomingEvent:
    kind: EventKind
    bot_id: int
    chat_id: int
    sender: Sender
    text: str = ""
    command: Optional[str] = None  # lower-cased, without the leading slash
    callback_data: Optional[str] = None
    callback_id: Optional[str] = None
    media: Optional[MediaPayload] = None
    message_id: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_callback(self) -> bool:
        return self.kind is EventKind.CALLBACK


@dataclass(frozen=True, slots=True)
class Button:
    text: str
    callback_data: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    chat_id: int
    text: str = ""
    parse_mode: Optional[ParseMode] = None
    buttons: list[list[Button]] = field(default_factory=list)
    media: Optional[MediaPayload] = None


@dataclass(frozen=True, slots=True)
class BotCommandSpec:
    command: str
    description: str
