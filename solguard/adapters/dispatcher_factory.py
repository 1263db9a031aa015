"""Alert dispatcher factory — creates the right adapter based on config."""

from __future__ import annotations

from typing import TYPE_CHECKING

from solguard.config import settings

if TYPE_CHECKING:
    from solguard.ports.alert_port import AlertDispatcher
    from solguard.ports.notification_port import NotificationPort


def create_alert_dispatcher(notifier: NotificationPort) -> AlertDispatcher:
    """Return the alert dispatcher matching the ALERT_PROVIDER setting.

    Args:
        notifier: Used by the Telegram dispatcher to post into alert chats.
    """
    provider = settings.ALERT_PROVIDER.lower()

    if provider == "telegram":
        from solguard.adapters.telegram_alert_dispatcher import TelegramAlertDispatcher

        return TelegramAlertDispatcher(notifier, settings.ALERT_CHAT_IDS)

    if provider == "webhook":
        from solguard.adapters.webhook_alert_dispatcher import WebhookAlertDispatcher

        return WebhookAlertDispatcher(
            url=settings.ALERT_WEBHOOK_URL,
            token=settings.ALERT_WEBHOOK_TOKEN,
            timeout=settings.ALERT_TIMEOUT_SECONDS,
        )

    raise ValueError(f"Unknown ALERT_PROVIDER: {provider!r}")
