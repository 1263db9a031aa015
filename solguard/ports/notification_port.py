"""Notification port — plain-text messages to a user or group chat.

Used for check-in reminders and, by the Telegram alert dispatcher, for
posting alerts. Core modules never see the messenger behind it.
"""

from __future__ import annotations

from typing import Protocol


class NotificationError(Exception):
    """Raised when a message could not be delivered to a chat."""


class NotificationPort(Protocol):
    """Sends one message to one chat. Raises NotificationError on failure.

    ``quick_replies`` are one-tap answers offered with the message (e.g. the
    "I'm safe" button); a messenger without buttons may ignore them.
    """

    async def send_message(
        self, chat_id: int, text: str, quick_replies: list[str] | None = None,
    ) -> None: ...
