"""Occurrence calculator — pure recurrence logic.

Computes the next instant a weekly check-in rule fires, validates rules,
and formats schedules for display.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable

from solguard.data.models import RecurrenceRule

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
WEEKDAYS = frozenset({1, 2, 3, 4, 5})
WEEKENDS = frozenset({0, 6})
EVERY_DAY = frozenset(range(7))

_SCAN_LIMIT = 7  # weekly rules always match within a week

# Half the shortest gap between occurrences (a daily rule, 23h across a DST
# change), so a window always closes before the next one is due.
MAX_GRACE_MINUTES = 12 * 60

_DAY_ALIASES = {
    "sun": 0, "sunday": 0,
    "mon": 1, "monday": 1,
    "tue": 2, "tues": 2, "tuesday": 2,
    "wed": 3, "wednesday": 3,
    "thu": 4, "thur": 4, "thurs": 4, "thursday": 4,
    "fri": 5, "friday": 5,
    "sat": 6, "saturday": 6,
}


class InvalidRuleError(ValueError):
    """Raised when a recurrence rule cannot generate occurrences."""


def weekday_of(dt: datetime) -> int:
    """Weekday as 0=Sunday..6=Saturday."""
    return dt.isoweekday() % 7


def _normalize(candidate: datetime) -> datetime:
    """Round-trip aware datetimes through UTC so DST-gap times become real instants."""
    if candidate.tzinfo is None:
        return candidate
    return candidate.astimezone(timezone.utc).astimezone(candidate.tzinfo)


def next_occurrence(rule: RecurrenceRule, reference: datetime) -> datetime:
    """Return the first occurrence of ``rule`` strictly after ``reference``.

    The candidate starts on the reference's calendar date at the rule's time;
    if that is not after the reference it moves to the next day, then scans
    forward until the weekday is in ``rule.days_of_week``.

    Raises InvalidRuleError if the rule has no days.
    """
    if not rule.days_of_week:
        raise InvalidRuleError(f"Rule {rule.id} has no days of week")

    days = set(rule.days_of_week)
    candidate = reference.replace(
        hour=rule.hour, minute=rule.minute, second=0, microsecond=0,
    )
    if _normalize(candidate) <= reference:
        candidate += timedelta(days=1)

    for _ in range(_SCAN_LIMIT):
        if weekday_of(candidate) in days:
            result = _normalize(candidate)
            if result > reference:
                return result
        candidate += timedelta(days=1)

    # Only reachable when every matching day lands in a DST gap before reference
    raise InvalidRuleError(f"Rule {rule.id} produced no occurrence after {reference}")


def validate_rule(rule: RecurrenceRule) -> None:
    """Raise InvalidRuleError if the rule is malformed."""
    if not (0 <= rule.hour <= 23 and 0 <= rule.minute <= 59):
        raise InvalidRuleError(f"Time out of range: {rule.hour}:{rule.minute}")
    bad_days = [d for d in rule.days_of_week if d not in EVERY_DAY]
    if bad_days:
        raise InvalidRuleError(f"Invalid weekday values: {bad_days}")
    if rule.enabled and not rule.days_of_week:
        raise InvalidRuleError("An enabled schedule needs at least one day")
    if rule.grace_minutes < 0:
        raise InvalidRuleError(f"Grace minutes must not be negative: {rule.grace_minutes}")
    if rule.grace_minutes > MAX_GRACE_MINUTES:
        raise InvalidRuleError(
            f"Grace period too long: {rule.grace_minutes} min (max {MAX_GRACE_MINUTES})"
        )


def parse_time_of_day(raw: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    text = raw.strip()
    if ":" not in text:
        raise InvalidRuleError(f"No colon in time: {raw!r}")
    try:
        hour, minute = map(int, text.split(":"))
    except ValueError as exc:
        raise InvalidRuleError(f"Invalid time: {raw!r}") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidRuleError(f"Hour/minute out of range: {raw!r}")
    return hour, minute


def parse_days(raw: str) -> list[int]:
    """Parse "weekdays", "weekends", "daily" or "mon,wed,fri" into weekday numbers."""
    text = raw.strip().lower()
    if text in ("daily", "everyday", "every day", "all"):
        return sorted(EVERY_DAY)
    if text == "weekdays":
        return sorted(WEEKDAYS)
    if text == "weekends":
        return sorted(WEEKENDS)

    days: set[int] = set()
    for part in text.replace(" ", ",").split(","):
        if not part:
            continue
        if part not in _DAY_ALIASES:
            raise InvalidRuleError(f"Unknown day: {part!r}")
        days.add(_DAY_ALIASES[part])
    if not days:
        raise InvalidRuleError("No days given")
    return sorted(days)


def format_time(hour: int, minute: int) -> str:
    """12-hour display, e.g. 21:00 -> "9:00 PM"."""
    ampm = "PM" if hour >= 12 else "AM"
    h12 = hour % 12 or 12
    return f"{h12}:{minute:02d} {ampm}"


def format_repeat_days(days: Iterable[int]) -> str:
    """Human summary of a day set: "Every day", "Weekdays", "Weekends" or "Mon, Wed"."""
    day_set = frozenset(days)
    if day_set == EVERY_DAY:
        return "Every day"
    if day_set == WEEKDAYS:
        return "Weekdays"
    if day_set == WEEKENDS:
        return "Weekends"
    return ", ".join(DAY_NAMES[d] for d in sorted(day_set))
