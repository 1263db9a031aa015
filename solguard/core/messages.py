"""Message text for reminders and alerts, shared by every delivery channel."""

from __future__ import annotations

from solguard.core.occurrence import format_repeat_days, format_time
from solguard.data.models import CheckInWindow, Contact, RecurrenceRule


SAFE_BUTTON_TEXT = "✅ I'm safe"


def rule_title(rule: RecurrenceRule) -> str:
    return rule.label or f"Check-in at {format_time(rule.hour, rule.minute)}"


def format_reminder_message(rule: RecurrenceRule, window: CheckInWindow) -> str:
    """Nudge sent to the user when a window opens."""
    deadline = window.deadline_at.strftime("%H:%M")
    return (
        f"⏰ Time to check in: {rule_title(rule)}\n"
        f"Tap {SAFE_BUTTON_TEXT} (or /safe) before {deadline} to let your contacts know you're OK."
    )


def format_alert_message(rule: RecurrenceRule, window: CheckInWindow) -> str:
    """Alert text delivered to emergency contacts."""
    lines = [
        "🚨 SolGuard alert: a scheduled safety check-in was missed.",
        f"Check-in: {rule_title(rule)} ({format_repeat_days(rule.days_of_week)})",
        f"Expected by: {window.deadline_at.strftime('%a %d %b %H:%M')}",
    ]
    if window.skipped_occurrences:
        lines.append(
            f"{window.skipped_occurrences} earlier check-in(s) were also missed."
        )
    lines.append("Please try to reach them.")
    return "\n".join(lines)


def format_contact_line(contact: Contact) -> str:
    parts = [contact.name]
    if contact.relationship:
        parts.append(f"({contact.relationship})")
    if contact.phone:
        parts.append(contact.phone)
    if contact.email:
        parts.append(contact.email)
    line = " ".join(parts)
    return f"⭐ {line}" if contact.is_primary else line
