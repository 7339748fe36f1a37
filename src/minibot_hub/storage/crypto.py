"""Encryption at rest for mini-bot tokens (Fernet)."""

from __future__ import annotations

import re
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from minibot_hub.errors import CredentialError
from minibot_hub.log import get_logger

logger = get_logger(__name__)

# BotFather tokens: numeric bot id, colon, 35-char secret
BOT_TOKEN_PATTERN = re.compile(r"^\d{9,11}:[A-Za-z0-9_-]{35}$")


def is_valid_bot_token(token: Optional[str]) -> bool:
    """Return True if *token* has the shape of a Telegram bot token."""
    return bool(token) and BOT_TOKEN_PATTERN.fullmatch(token) is not None


class TokenCipher:
    """Encrypts and decrypts bot tokens with a symmetric Fernet key."""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid encryption key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> Optional[str]:
        """Decrypt a token; returns None if the ciphertext is corrupt or the key changed."""
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, UnicodeDecodeError):
            logger.error("token_decryption_failed")
            return None
