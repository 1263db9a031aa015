"""Telegram alert adapter — implements AlertDispatcher.

Posts the missed check-in alert to one or more Telegram chats (typically a
family group the emergency contacts are in), listing who should be reached.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from solguard.core.messages import format_alert_message, format_contact_line
from solguard.ports.alert_port import DispatchFailure, DispatchOutcome
from solguard.ports.notification_port import NotificationError

if TYPE_CHECKING:
    from solguard.data.models import CheckInWindow, Contact, RecurrenceRule
    from solguard.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


class TelegramAlertDispatcher:
    """Telegram implementation of AlertDispatcher."""

    def __init__(self, notifier: NotificationPort, chat_ids: list[int]) -> None:
        self._notifier = notifier
        self._chat_ids = list(chat_ids)

    async def send(
        self,
        contacts: list[Contact],
        rule: RecurrenceRule,
        window: CheckInWindow,
    ) -> DispatchOutcome:
        if not self._chat_ids:
            raise DispatchFailure("No ALERT_CHAT_IDS configured")

        text = format_alert_message(rule, window)
        if contacts:
            text += "\n\nEmergency contacts:\n" + "\n".join(
                f"• {format_contact_line(c)}" for c in contacts
            )
        else:
            text += "\n\n⚠️ No emergency contacts are configured."

        delivered = 0
        errors: list[str] = []
        for chat_id in self._chat_ids:
            try:
                await self._notifier.send_message(chat_id, text)
                delivered += 1
            except NotificationError as exc:
                logger.error("Alert to chat %d failed: %s", chat_id, exc)
                errors.append(f"{chat_id}: {exc}")

        if delivered == 0:
            raise DispatchFailure("; ".join(errors))
        return DispatchOutcome(
            success=True,
            delivered=delivered,
            failed=len(errors),
            error_message="; ".join(errors),
        )
