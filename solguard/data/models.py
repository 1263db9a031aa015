"""
SolGuard — Data Models.

Recurrence rules and contacts are user-owned records; windows and ledger
events are produced by the miss-detection scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class WindowState(str, Enum):
    """Lifecycle of a single check-in window."""

    OPEN = "open"
    SATISFIED = "satisfied"
    MISSED = "missed"
    ESCALATED = "escalated"


class CheckInStatus(str, Enum):
    """Ledger event kinds, matching the check-in history screen."""

    CHECKED_IN = "checked_in"
    MISSED = "missed"
    ALERT_SENT = "alert_sent"


@dataclass
class RecurrenceRule:
    """A weekly repeating check-in schedule.

    Days use 0=Sunday..6=Saturday. Times are local to the configured timezone.
    """

    id: int
    hour: int
    minute: int
    days_of_week: list[int]
    enabled: bool = True
    grace_minutes: int = 0
    label: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def time_of_day(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass
class CheckInWindow:
    """Runtime window for one occurrence of a rule."""

    rule_id: int
    opens_at: datetime
    deadline_at: datetime
    state: WindowState = WindowState.OPEN
    skipped_occurrences: int = 0      # expired occurrences folded into this one
    closed_at: datetime | None = None

    @property
    def id(self) -> str:
        return window_id(self.rule_id, self.opens_at)

    @property
    def is_open(self) -> bool:
        return self.state is WindowState.OPEN

    def contains(self, instant: datetime) -> bool:
        return self.opens_at <= instant <= self.deadline_at


def window_id(rule_id: int, opens_at: datetime) -> str:
    """Stable identifier: one window per rule occurrence.

    Aware instants are keyed in UTC so the id survives timezone round-trips.
    """
    if opens_at.tzinfo is not None:
        opens_at = opens_at.astimezone(timezone.utc)
    return f"{rule_id}@{opens_at.strftime('%Y-%m-%dT%H:%M')}"


@dataclass
class CheckInEvent:
    """Append-only ledger entry."""

    timestamp: datetime
    status: CheckInStatus
    rule_id: int | None = None
    window_id: str | None = None
    detail: str = ""
    id: int | None = None


@dataclass
class Contact:
    """An emergency contact notified when a check-in is missed."""

    id: int
    name: str
    phone: str = ""
    email: str = ""
    relationship: str = "Family"
    is_primary: bool = False
    created_at: str = ""


@dataclass
class SchedulerState:
    """Everything the scheduler persists between evaluations."""

    windows: dict[str, CheckInWindow] = field(default_factory=dict)
    cursors: dict[int, datetime] = field(default_factory=dict)
    seeded_versions: dict[int, str] = field(default_factory=dict)  # rule id -> updated_at seen
    last_evaluated_at: datetime | None = None

    def open_window(self, rule_id: int) -> CheckInWindow | None:
        for window in self.windows.values():
            if window.rule_id == rule_id and window.is_open:
                return window
        return None
