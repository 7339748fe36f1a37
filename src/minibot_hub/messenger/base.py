"""Abstract provider connection interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from minibot_hub.messenger.models import BotCommandSpec, Button, IncomingEvent, OutgoingMessage, ParseMode

if TYPE_CHECKING:
    from minibot_hub.storage.models import BotRecord

EventCallback = Callable[["MessengerAdapter", IncomingEvent], Awaitable[None]]


class MessengerAdapter(ABC):
    """One authenticated connection to the messaging provider for one mini-bot.

    The connection pool is the only owner of an adapter: nothing else may
    start, stop or reconfigure it. Handlers only send through it.
    """

    def __init__(self, record: BotRecord, token: str):
        self.bot_id = record.id
        self.record = record
        self._token = token
        self._event_callback: EventCallback | None = None

    @abstractmethod
    async def start(self) -> None:
        """Open the connection and complete the provider handshake.

        Raises ``ConnectivityError`` on authentication or network failure.
        """
        ...

    @abstractmethod
    async def start_fallback(self) -> None:
        """Retry the handshake with the alternate transport mode."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def send(self, message: OutgoingMessage) -> int:
        """Send a message and return its provider message id.

        Raises ``DeliveryError`` (``MarkupError`` for formatting rejections).
        """
        ...

    @abstractmethod
    async def edit(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        parse_mode: Optional[ParseMode] = None,
        buttons: Optional[list[list[Button]]] = None,
    ) -> None:
        ...

    @abstractmethod
    async def delete(self, chat_id: int, message_id: int) -> None:
        ...

    @abstractmethod
    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def set_commands(self, commands: list[BotCommandSpec], chat_id: Optional[int] = None) -> None:
        """Register the command menu, for one chat or as the default."""
        ...

    def on_event(self, callback: EventCallback) -> None:
        """Register the callback invoked for every inbound event."""
        self._event_callback = callback
