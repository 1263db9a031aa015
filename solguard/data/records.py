"""
SolGuard — Versioned JSON records.

Stable, forward-compatible representations of rules, contacts and ledger
events for export and restore. Each record carries a schema version; fields
added by newer versions are ignored when read by older code.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from solguard.data.models import CheckInEvent, CheckInStatus, Contact, RecurrenceRule

if TYPE_CHECKING:
    from solguard.data.db import CheckInLedgerDB, ContactDB, ScheduleDB

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = SCHEMA_VERSION


class RuleRecord(_Record):
    id: int
    time: str                          # "HH:MM", local time
    days_of_week: list[int]            # 0=Sunday..6=Saturday
    enabled: bool = True
    grace_minutes: int = 0
    label: str = ""

    @classmethod
    def from_rule(cls, rule: RecurrenceRule) -> RuleRecord:
        return cls(
            id=rule.id,
            time=rule.time_of_day,
            days_of_week=list(rule.days_of_week),
            enabled=rule.enabled,
            grace_minutes=rule.grace_minutes,
            label=rule.label,
        )


class ContactRecord(_Record):
    id: int
    name: str = Field(min_length=1)
    phone: str = ""
    email: str = ""
    relationship: str = "Family"
    is_primary: bool = False
    created_at: str = ""

    @classmethod
    def from_contact(cls, contact: Contact) -> ContactRecord:
        return cls(
            id=contact.id,
            name=contact.name,
            phone=contact.phone,
            email=contact.email,
            relationship=contact.relationship,
            is_primary=contact.is_primary,
            created_at=contact.created_at,
        )


class CheckInEventRecord(_Record):
    id: int | None = None
    timestamp: datetime
    status: CheckInStatus
    rule_id: int | None = None
    window_id: str | None = None
    detail: str = ""

    @classmethod
    def from_event(cls, event: CheckInEvent) -> CheckInEventRecord:
        return cls(
            id=event.id,
            timestamp=event.timestamp,
            status=event.status,
            rule_id=event.rule_id,
            window_id=event.window_id,
            detail=event.detail,
        )


class Snapshot(_Record):
    exported_at: datetime
    schedules: list[RuleRecord] = []
    contacts: list[ContactRecord] = []
    history: list[CheckInEventRecord] = []


def build_snapshot(
    schedule_db: ScheduleDB,
    contact_db: ContactDB,
    ledger: CheckInLedgerDB,
    exported_at: datetime,
    history_limit: int = 500,
) -> Snapshot:
    """Collect everything the user owns into one versioned document."""
    return Snapshot(
        exported_at=exported_at,
        schedules=[RuleRecord.from_rule(r) for r in schedule_db.list_rules()],
        contacts=[ContactRecord.from_contact(c) for c in contact_db.list_contacts()],
        history=[CheckInEventRecord.from_event(e) for e in ledger.list_events(history_limit)],
    )


def restore_snapshot(
    snapshot: Snapshot,
    schedule_db: ScheduleDB,
    contact_db: ContactDB,
) -> tuple[int, int]:
    """Re-create schedules and contacts from a snapshot.

    Every record is checked before anything is written, so a bad file leaves
    the stores untouched. History is not restored: the ledger is append-only.
    Returns the number of (schedules, contacts) created. Raises
    InvalidRuleError on a bad rule, ValueError on a blank contact name.
    """
    from solguard.core.occurrence import parse_time_of_day, validate_rule

    if snapshot.version > SCHEMA_VERSION:
        logger.warning(
            "Snapshot version %d is newer than %d; unknown fields ignored",
            snapshot.version, SCHEMA_VERSION,
        )

    parsed: list[tuple[int, int, RuleRecord]] = []
    for record in snapshot.schedules:
        hour, minute = parse_time_of_day(record.time)
        validate_rule(RecurrenceRule(
            id=record.id,
            hour=hour,
            minute=minute,
            days_of_week=record.days_of_week,
            enabled=record.enabled,
            grace_minutes=record.grace_minutes,
        ))
        parsed.append((hour, minute, record))
    for record in snapshot.contacts:
        if not record.name.strip():
            raise ValueError(f"Contact {record.id} has no name")

    for hour, minute, record in parsed:
        schedule_db.add_rule(
            hour, minute, record.days_of_week,
            grace_minutes=record.grace_minutes,
            label=record.label,
            enabled=record.enabled,
        )

    primary_id: int | None = None
    for record in snapshot.contacts:
        contact = contact_db.add_contact(
            record.name, record.phone, record.email, record.relationship,
        )
        if record.is_primary:
            primary_id = contact.id
    if primary_id is not None:
        contact_db.set_primary(primary_id)

    rules, contacts = len(parsed), len(snapshot.contacts)
    logger.info("Snapshot restored: %d schedules, %d contacts", rules, contacts)
    return rules, contacts
