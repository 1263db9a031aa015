"""Webhook alert adapter — implements AlertDispatcher.

Posts one JSON message per emergency contact to an SMS/email gateway
endpoint. The gateway decides how to reach the phone number or address:

    POST {ALERT_WEBHOOK_URL}
    {"to_phone": "...", "to_email": "...", "name": "...", "message": "...",
     "window_id": "...", "primary": true}
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from solguard.core.messages import format_alert_message
from solguard.ports.alert_port import DispatchFailure, DispatchOutcome

if TYPE_CHECKING:
    from solguard.data.models import CheckInWindow, Contact, RecurrenceRule

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 10


class WebhookAlertDispatcher:
    """HTTP gateway implementation of AlertDispatcher."""

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def send(
        self,
        contacts: list[Contact],
        rule: RecurrenceRule,
        window: CheckInWindow,
    ) -> DispatchOutcome:
        if not self._url:
            raise DispatchFailure("No ALERT_WEBHOOK_URL configured")

        reachable = [c for c in contacts if c.phone or c.email]
        if not reachable:
            raise DispatchFailure("No contact has a phone number or email")

        message = format_alert_message(rule, window)
        delivered = 0
        errors: list[str] = []

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for contact in reachable:
                try:
                    resp = await client.post(
                        self._url,
                        json={
                            "to_phone": contact.phone,
                            "to_email": contact.email,
                            "name": contact.name,
                            "message": message,
                            "window_id": window.id,
                            "primary": contact.is_primary,
                        },
                        headers=self._headers(),
                    )
                    resp.raise_for_status()
                    delivered += 1
                except httpx.HTTPError as exc:
                    logger.warning("Alert webhook failed for contact #%d: %s", contact.id, exc)
                    errors.append(f"{contact.name}: {exc}")

        if delivered == 0:
            raise DispatchFailure("; ".join(errors))
        return DispatchOutcome(
            success=True,
            delivered=delivered,
            failed=len(errors),
            error_message="; ".join(errors),
        )
