"""Store ports — abstract interfaces for persistence.

The scheduler and service depend on these protocols, never on SQLite.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Protocol

from solguard.data.models import (
    CheckInEvent,
    CheckInStatus,
    CheckInWindow,
    Contact,
    RecurrenceRule,
    SchedulerState,
)


class StoreUnavailableError(Exception):
    """Raised when the persistence layer cannot be read or written."""


class ScheduleStore(Protocol):
    """Recurring check-in rules, owned by the user."""

    def list_rules(self) -> list[RecurrenceRule]: ...

    def subscribe(self, listener: Callable[[], None]) -> None: ...


class ContactStore(Protocol):
    """Emergency contacts, read-only from the core's point of view."""

    def list_contacts(self) -> list[Contact]: ...


class CheckInLedger(Protocol):
    """Append-only history of check-in events."""

    def append(self, event: CheckInEvent) -> CheckInEvent: ...

    def latest(
        self, rule_id: int | None = None, status: CheckInStatus | None = None,
    ) -> CheckInEvent | None: ...


class WindowStore(Protocol):
    """Persisted scheduler state: windows, cursors, last evaluation."""

    def load(self) -> SchedulerState: ...

    def commit(
        self,
        windows: list[CheckInWindow],
        cursors: dict[int, tuple[datetime, str]],
        removed_rule_ids: list[int],
        events: list[CheckInEvent],
        evaluated_at: datetime | None,
    ) -> None: ...
