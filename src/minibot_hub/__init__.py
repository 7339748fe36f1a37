"""Multi-tenant Telegram mini-bot platform runtime."""

__version__ = "0.3.0"
