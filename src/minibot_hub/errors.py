"""Exception types shared by the runtime, the storage layer and messenger adapters."""

from __future__ import annotations


class MiniBotError(Exception):
    """Base class for all platform errors."""


class CredentialError(MiniBotError):
    """A bot token is missing, undecryptable or malformed."""


class ConnectivityError(MiniBotError):
    """The provider handshake for a bot failed."""


class DeliveryError(MiniBotError):
    """A message could not be delivered to one recipient."""

    def __init__(self, message: str, chat_id: int | None = None):
        super().__init__(message)
        self.chat_id = chat_id


class MarkupError(DeliveryError):
    """The provider rejected the message formatting (entities could not be parsed)."""


class BotNotActiveError(MiniBotError):
    """No live connection exists for the requested bot."""

    def __init__(self, bot_id: int):
        super().__init__(f"Bot {bot_id} has no active connection")
        self.bot_id = bot_id
