"""Telegram notification adapter — implements NotificationPort.

Messages go out as plain text; labels and contact names are user input.
Quick replies become a reply keyboard whose buttons send their text back.
"""

from __future__ import annotations

import logging

from telegram import Bot, ReplyKeyboardMarkup
from telegram.error import TelegramError

from solguard.ports.notification_port import NotificationError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(
        self, chat_id: int, text: str, quick_replies: list[str] | None = None,
    ) -> None:
        kwargs = {}
        if quick_replies:
            kwargs["reply_markup"] = ReplyKeyboardMarkup(
                [quick_replies], resize_keyboard=True, is_persistent=True,
            )
        try:
            await self._bot.send_message(chat_id=chat_id, text=text, **kwargs)
        except TelegramError as exc:
            # e.g. Forbidden once the user has blocked the bot
            raise NotificationError(f"Telegram chat {chat_id}: {exc}") from exc
        logger.debug("Message sent to chat %d", chat_id)
