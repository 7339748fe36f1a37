"""Command menus shown by mini-bots, per role."""

from __future__ import annotations

from minibot_hub.core.types import Role
from minibot_hub.messenger.models import BotCommandSpec

USER_COMMANDS = [
    BotCommandSpec("start", "Start the bot"),
    BotCommandSpec("help", "Show help"),
    BotCommandSpec("cancel", "Cancel the current action"),
]

ADMIN_COMMANDS = USER_COMMANDS + [
    BotCommandSpec("dashboard", "Admin dashboard"),
    BotCommandSpec("messages", "Pending user messages"),
    BotCommandSpec("broadcast", "Send a message to all users"),
    BotCommandSpec("stats", "Bot statistics"),
    BotCommandSpec("admins", "Manage admins"),
]

OWNER_COMMANDS = ADMIN_COMMANDS + [
    BotCommandSpec("settings", "Bot settings"),
]


def commands_for(role: Role) -> list[BotCommandSpec]:
    match role:
        case Role.OWNER:
            return OWNER_COMMANDS
        case Role.ADMIN:
            return ADMIN_COMMANDS
        case _:
            return USER_COMMANDS
