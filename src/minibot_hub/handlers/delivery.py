"""Outbound formatting helpers shared by notifications and broadcasts."""

from __future__ import annotations

import html
import re

from minibot_hub.errors import MarkupError
from minibot_hub.messenger.base import MessengerAdapter
from minibot_hub.messenger.models import OutgoingMessage, ParseMode

_MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown_v2(text: str) -> str:
    return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", text)


def escape_html(text: str) -> str:
    return html.escape(text, quote=False)


async def send_with_fallback(connection: MessengerAdapter, chat_id: int, text: str) -> int:
    """Send *text* as MarkdownV2, then HTML, then plain text on markup rejections.

    Any non-markup ``DeliveryError`` propagates to the caller.
    """
    formatted = (
        (escape_markdown_v2(text), ParseMode.MARKDOWN_V2),
        (escape_html(text), ParseMode.HTML),
    )
    for body, parse_mode in formatted:
        try:
            return await connection.send(OutgoingMessage(chat_id=chat_id, text=body, parse_mode=parse_mode))
        except MarkupError:
            continue
    return await connection.send(OutgoingMessage(chat_id=chat_id, text=text))
