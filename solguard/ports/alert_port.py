"""Alert port — abstract interface for notifying emergency contacts.

Core modules depend on this protocol, never on a specific delivery channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from solguard.data.models import CheckInWindow, Contact, RecurrenceRule


class DispatchFailure(Exception):
    """Raised when an alert could not be delivered to anyone."""


@dataclass
class DispatchOutcome:
    """Result of one escalation dispatch attempt."""

    success: bool
    delivered: int = 0
    failed: int = 0
    error_message: str = ""


class AlertDispatcher(Protocol):
    """Delivers a missed check-in alert to emergency contacts."""

    async def send(
        self,
        contacts: list[Contact],
        rule: RecurrenceRule,
        window: CheckInWindow,
    ) -> DispatchOutcome: ...
