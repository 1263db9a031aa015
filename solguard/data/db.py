"""
SolGuard — SQLite stores.

Rules, contacts, the check-in ledger and the scheduler's runtime state all
live in one SQLite file so they survive bot restarts. Every sqlite3 error is
surfaced as StoreUnavailableError; callers decide how to degrade.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from solguard.core.occurrence import validate_rule
from solguard.data.models import (
    CheckInEvent,
    CheckInStatus,
    CheckInWindow,
    Contact,
    RecurrenceRule,
    SchedulerState,
    WindowState,
)
from solguard.ports.clock_port import Clock
from solguard.ports.store_port import StoreUnavailableError

logger = logging.getLogger(__name__)

_DEFAULT_SCHEDULES = [
    # (hour, minute, days, label): out-of-the-box check-ins
    (8, 0, [1, 2, 3, 4, 5], "Morning Check-In"),
    (21, 0, [0, 1, 2, 3, 4, 5, 6], "Evening Check-In"),
]


def _to_iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _from_iso(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


class _SQLiteStore:
    """Shared connection handling for the SQLite-backed stores."""

    def __init__(self, db_path: str | None = None, clock: Clock | None = None) -> None:
        if db_path is None:
            from solguard.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        self._clock = clock
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock.now()
        return datetime.now(timezone.utc)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction; commit on success."""
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        raise NotImplementedError


def _create_ledger_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS checkin_events (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp  TEXT    NOT NULL,
            status     TEXT    NOT NULL,
            rule_id    INTEGER,
            window_id  TEXT,
            detail     TEXT    NOT NULL DEFAULT ''
        )
    """)


def _insert_event(conn: sqlite3.Connection, event: CheckInEvent) -> int:
    cursor = conn.execute(
        """
        INSERT INTO checkin_events (timestamp, status, rule_id, window_id, detail)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            event.timestamp.isoformat(), event.status.value,
            event.rule_id, event.window_id, event.detail,
        ),
    )
    return cursor.lastrowid


class ScheduleDB(_SQLiteStore):
    """SQLite-backed storage for recurring check-in rules."""

    def __init__(self, db_path: str | None = None, clock: Clock | None = None) -> None:
        self._listeners: list[Callable[[], None]] = []
        super().__init__(db_path, clock)

    def _init_db(self) -> None:
        """Create the schedules table if it doesn't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schedules (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    hour          INTEGER NOT NULL,
                    minute        INTEGER NOT NULL,
                    days_of_week  TEXT    NOT NULL,
                    enabled       INTEGER NOT NULL DEFAULT 1,
                    grace_minutes INTEGER NOT NULL DEFAULT 0,
                    label         TEXT    NOT NULL DEFAULT '',
                    created_at    TEXT    NOT NULL,
                    updated_at    TEXT    NOT NULL
                )
            """)
            # Migrate existing DBs: add new columns if missing
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(schedules)").fetchall()
            }
            if "label" not in existing_cols:
                conn.execute("ALTER TABLE schedules ADD COLUMN label TEXT NOT NULL DEFAULT ''")
        logger.debug("Schedules table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> RecurrenceRule:
        days = [int(d) for d in row["days_of_week"].split(",") if d != ""]
        return RecurrenceRule(
            id=row["id"],
            hour=row["hour"],
            minute=row["minute"],
            days_of_week=days,
            enabled=bool(row["enabled"]),
            grace_minutes=row["grace_minutes"],
            label=row["label"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def subscribe(self, listener: Callable[[], None]) -> None:
        """Register a callback fired after every rule change."""
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception:
                logger.exception("Schedule change listener failed")

    def add_rule(
        self,
        hour: int,
        minute: int,
        days_of_week: list[int],
        grace_minutes: int = 0,
        label: str = "",
        enabled: bool = True,
    ) -> RecurrenceRule:
        """Validate and insert a new rule. Raises InvalidRuleError."""
        now = self._now()
        rule = RecurrenceRule(
            id=0,
            hour=hour,
            minute=minute,
            days_of_week=sorted(set(days_of_week)),
            enabled=enabled,
            grace_minutes=grace_minutes,
            label=label.strip(),
            created_at=now,
            updated_at=now,
        )
        validate_rule(rule)

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO schedules
                    (hour, minute, days_of_week, enabled, grace_minutes, label,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.hour, rule.minute, ",".join(map(str, rule.days_of_week)),
                    int(rule.enabled), rule.grace_minutes, rule.label,
                    now.isoformat(), now.isoformat(),
                ),
            )
            rule.id = cursor.lastrowid

        logger.info(
            "Schedule added: #%d %s days=%s grace=%d",
            rule.id, rule.time_of_day, rule.days_of_week, rule.grace_minutes,
        )
        self._notify()
        return rule

    def get_rule(self, rule_id: int) -> RecurrenceRule | None:
        """Fetch a single rule by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM schedules WHERE id = ?", (rule_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def list_rules(self, enabled_only: bool = False) -> list[RecurrenceRule]:
        """List rules ordered by time of day."""
        query = "SELECT * FROM schedules"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY hour, minute, id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def update_rule(
        self,
        rule_id: int,
        hour: int | None = None,
        minute: int | None = None,
        days_of_week: list[int] | None = None,
        grace_minutes: int | None = None,
        label: str | None = None,
        enabled: bool | None = None,
    ) -> RecurrenceRule | None:
        """Edit a rule in place. Returns None if it doesn't exist.

        Raises InvalidRuleError (and writes nothing) if the edit is invalid.
        """
        rule = self.get_rule(rule_id)
        if rule is None:
            return None

        if hour is not None:
            rule.hour = hour
        if minute is not None:
            rule.minute = minute
        if days_of_week is not None:
            rule.days_of_week = sorted(set(days_of_week))
        if grace_minutes is not None:
            rule.grace_minutes = grace_minutes
        if label is not None:
            rule.label = label.strip()
        if enabled is not None:
            rule.enabled = enabled
        validate_rule(rule)

        rule.updated_at = self._now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE schedules
                SET hour = ?, minute = ?, days_of_week = ?, enabled = ?,
                    grace_minutes = ?, label = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    rule.hour, rule.minute, ",".join(map(str, rule.days_of_week)),
                    int(rule.enabled), rule.grace_minutes, rule.label,
                    rule.updated_at.isoformat(), rule_id,
                ),
            )
        logger.info("Schedule #%d updated", rule_id)
        self._notify()
        return rule

    def set_enabled(self, rule_id: int, enabled: bool) -> RecurrenceRule | None:
        """Toggle a rule on or off."""
        return self.update_rule(rule_id, enabled=enabled)

    def delete_rule(self, rule_id: int) -> bool:
        """Permanently delete a rule by ID."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM schedules WHERE id = ?", (rule_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Schedule #%d deleted", rule_id)
            self._notify()
        return deleted

    def seed_defaults(self, grace_minutes: int = 0) -> list[RecurrenceRule]:
        """Insert the default morning/evening check-ins if no rules exist yet."""
        with self._connect() as conn:
            count = conn.execute("SELECT COUNT(*) FROM schedules").fetchone()[0]
        if count:
            return []
        return [
            self.add_rule(hour, minute, days, grace_minutes=grace_minutes, label=label)
            for hour, minute, days, label in _DEFAULT_SCHEDULES
        ]


class ContactDB(_SQLiteStore):
    """SQLite-backed storage for emergency contacts."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    name        TEXT    NOT NULL,
                    phone       TEXT    NOT NULL DEFAULT '',
                    email       TEXT    NOT NULL DEFAULT '',
                    relationship TEXT   NOT NULL DEFAULT 'Family',
                    is_primary  INTEGER NOT NULL DEFAULT 0,
                    created_at  TEXT    NOT NULL
                )
            """)
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(contacts)").fetchall()
            }
            if "relationship" not in existing_cols:
                conn.execute(
                    "ALTER TABLE contacts ADD COLUMN relationship TEXT NOT NULL DEFAULT 'Family'"
                )
        logger.debug("Contacts table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> Contact:
        return Contact(
            id=row["id"],
            name=row["name"],
            phone=row["phone"],
            email=row["email"],
            relationship=row["relationship"],
            is_primary=bool(row["is_primary"]),
            created_at=row["created_at"],
        )

    def add_contact(
        self,
        name: str,
        phone: str = "",
        email: str = "",
        relationship: str = "Family",
    ) -> Contact:
        """Insert a new contact. The first contact becomes primary."""
        name = name.strip()
        if not name:
            raise ValueError("Contact name is required")

        created_at = self._now().isoformat()
        with self._connect() as conn:
            count = conn.execute("SELECT COUNT(*) FROM contacts").fetchone()[0]
            is_primary = count == 0
            cursor = conn.execute(
                """
                INSERT INTO contacts (name, phone, email, relationship, is_primary, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    name, phone.strip(), email.strip(), relationship.strip() or "Family",
                    int(is_primary), created_at,
                ),
            )
            contact_id = cursor.lastrowid

        contact = Contact(
            id=contact_id,
            name=name,
            phone=phone.strip(),
            email=email.strip(),
            relationship=relationship.strip() or "Family",
            is_primary=is_primary,
            created_at=created_at,
        )
        logger.info("Contact added: #%d '%s'%s", contact_id, name, " (primary)" if is_primary else "")
        return contact

    def get_contact(self, contact_id: int) -> Contact | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_contact(row)

    def list_contacts(self) -> list[Contact]:
        """Return all contacts, primary first, then in creation order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM contacts ORDER BY is_primary DESC, id"
            ).fetchall()
        return [self._row_to_contact(r) for r in rows]

    def update_contact(
        self,
        contact_id: int,
        name: str | None = None,
        phone: str | None = None,
        email: str | None = None,
        relationship: str | None = None,
    ) -> Contact | None:
        """Edit contact details. Returns None if the contact doesn't exist."""
        contact = self.get_contact(contact_id)
        if contact is None:
            return None

        if name is not None:
            if not name.strip():
                raise ValueError("Contact name is required")
            contact.name = name.strip()
        if phone is not None:
            contact.phone = phone.strip()
        if email is not None:
            contact.email = email.strip()
        if relationship is not None:
            contact.relationship = relationship.strip() or contact.relationship

        with self._connect() as conn:
            conn.execute(
                "UPDATE contacts SET name = ?, phone = ?, email = ?, relationship = ? WHERE id = ?",
                (contact.name, contact.phone, contact.email, contact.relationship, contact_id),
            )
        logger.info("Contact #%d updated", contact_id)
        return contact

    def set_primary(self, contact_id: int) -> bool:
        """Make one contact primary and clear the flag on every other contact."""
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            if exists is None:
                return False
            conn.execute(
                "UPDATE contacts SET is_primary = CASE WHEN id = ? THEN 1 ELSE 0 END",
                (contact_id,),
            )
        logger.info("Contact #%d set as primary", contact_id)
        return True

    def delete_contact(self, contact_id: int) -> bool:
        """Delete a contact. If it was primary, the oldest remaining one takes over."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT is_primary FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM contacts WHERE id = ?", (contact_id,))
            if row["is_primary"]:
                conn.execute(
                    """
                    UPDATE contacts SET is_primary = 1
                    WHERE id = (SELECT MIN(id) FROM contacts)
                    """
                )
        logger.info("Contact #%d deleted", contact_id)
        return True


class CheckInLedgerDB(_SQLiteStore):
    """Append-only SQLite ledger of check-in events."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            _create_ledger_table(conn)
        logger.debug("Ledger table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> CheckInEvent:
        return CheckInEvent(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            status=CheckInStatus(row["status"]),
            rule_id=row["rule_id"],
            window_id=row["window_id"],
            detail=row["detail"],
        )

    def append(self, event: CheckInEvent) -> CheckInEvent:
        """Record an event. Events are never updated afterwards."""
        with self._connect() as conn:
            event.id = _insert_event(conn, event)
        logger.info("Ledger: %s at %s (rule=%s)", event.status.value, event.timestamp, event.rule_id)
        return event

    def latest(
        self, rule_id: int | None = None, status: CheckInStatus | None = None,
    ) -> CheckInEvent | None:
        """Most recent event, optionally for one rule and/or status."""
        conditions: list[str] = []
        params: list = []
        if rule_id is not None:
            conditions.append("rule_id = ?")
            params.append(rule_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        query = "SELECT * FROM checkin_events"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id DESC LIMIT 1"

        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def list_events(self, limit: int = 50) -> list[CheckInEvent]:
        """Newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM checkin_events ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def summary(self) -> dict[CheckInStatus, int]:
        """Count of events per status (every status present)."""
        counts = {status: 0 for status in CheckInStatus}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM checkin_events GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[CheckInStatus(row["status"])] = row["n"]
        return counts


class SchedulerStateDB(_SQLiteStore):
    """Persists the miss-detection scheduler's windows and cursors.

    commit() writes windows, cursors and the ledger events produced by the
    same transition in a single transaction, so a failure leaves the previous
    state untouched.
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS checkin_windows (
                    id                  TEXT    PRIMARY KEY,
                    rule_id             INTEGER NOT NULL,
                    opens_at            TEXT    NOT NULL,
                    deadline_at         TEXT    NOT NULL,
                    state               TEXT    NOT NULL,
                    skipped_occurrences INTEGER NOT NULL DEFAULT 0,
                    closed_at           TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduler_cursors (
                    rule_id        INTEGER PRIMARY KEY,
                    next_opens_at  TEXT    NOT NULL,
                    seeded_version TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduler_meta (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            _create_ledger_table(conn)
        logger.debug("Scheduler state tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_window(row: sqlite3.Row) -> CheckInWindow:
        return CheckInWindow(
            rule_id=row["rule_id"],
            opens_at=datetime.fromisoformat(row["opens_at"]),
            deadline_at=datetime.fromisoformat(row["deadline_at"]),
            state=WindowState(row["state"]),
            skipped_occurrences=row["skipped_occurrences"],
            closed_at=_from_iso(row["closed_at"]),
        )

    def load(self) -> SchedulerState:
        """Load non-terminal windows, cursors and the last evaluation time.

        Terminal windows stay in the table as history but the scheduler never
        needs them again.
        """
        state = SchedulerState()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM checkin_windows WHERE state IN (?, ?)",
                (WindowState.OPEN.value, WindowState.MISSED.value),
            ).fetchall()
            for row in rows:
                window = self._row_to_window(row)
                state.windows[window.id] = window

            for row in conn.execute("SELECT * FROM scheduler_cursors").fetchall():
                state.cursors[row["rule_id"]] = datetime.fromisoformat(row["next_opens_at"])
                state.seeded_versions[row["rule_id"]] = row["seeded_version"]

            meta = conn.execute(
                "SELECT value FROM scheduler_meta WHERE key = 'last_evaluated_at'"
            ).fetchone()
            if meta is not None:
                state.last_evaluated_at = datetime.fromisoformat(meta["value"])
        return state

    def commit(
        self,
        windows: list[CheckInWindow],
        cursors: dict[int, tuple[datetime, str]],
        removed_rule_ids: list[int],
        events: list[CheckInEvent],
        evaluated_at: datetime | None,
    ) -> None:
        """Apply one batch of scheduler changes atomically.

        Removals run first: a re-seeded rule appears in both removed_rule_ids
        and cursors.
        """
        with self._connect() as conn:
            for rule_id in removed_rule_ids:
                conn.execute("DELETE FROM scheduler_cursors WHERE rule_id = ?", (rule_id,))
                conn.execute(
                    "DELETE FROM checkin_windows WHERE rule_id = ? AND state IN (?, ?)",
                    (rule_id, WindowState.OPEN.value, WindowState.MISSED.value),
                )
            for window in windows:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO checkin_windows
                        (id, rule_id, opens_at, deadline_at, state,
                         skipped_occurrences, closed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        window.id, window.rule_id, window.opens_at.isoformat(),
                        window.deadline_at.isoformat(), window.state.value,
                        window.skipped_occurrences, _to_iso(window.closed_at),
                    ),
                )
            for rule_id, (next_opens_at, version) in cursors.items():
                conn.execute(
                    """
                    INSERT OR REPLACE INTO scheduler_cursors
                        (rule_id, next_opens_at, seeded_version)
                    VALUES (?, ?, ?)
                    """,
                    (rule_id, next_opens_at.isoformat(), version),
                )
            for event in events:
                event.id = _insert_event(conn, event)
            if evaluated_at is not None:
                conn.execute(
                    "INSERT OR REPLACE INTO scheduler_meta (key, value) VALUES ('last_evaluated_at', ?)",
                    (evaluated_at.isoformat(),),
                )

    def list_windows(self, limit: int = 50) -> list[CheckInWindow]:
        """Window history, newest first (diagnostics)."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM checkin_windows ORDER BY opens_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_window(r) for r in rows]


def reset_all_data(db_path: str | None = None) -> None:
    """Full data reset: wipe rules, contacts, ledger and scheduler state."""
    if db_path is None:
        from solguard.config import settings
        db_path = settings.DATABASE_PATH

    try:
        conn = sqlite3.connect(db_path)
        try:
            with conn:
                tables = [
                    row[0] for row in conn.execute(
                        "SELECT name FROM sqlite_master WHERE type = 'table' "
                        "AND name NOT LIKE 'sqlite_%'"
                    ).fetchall()
                ]
                for table in tables:
                    conn.execute(f"DELETE FROM {table}")
        finally:
            conn.close()
    except sqlite3.Error as exc:
        raise StoreUnavailableError(f"Reset failed: {exc}") from exc
    logger.warning("All data reset in %s", db_path)
