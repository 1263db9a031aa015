"""
SolGuard — Miss-Detection Scheduler.

Tracks one check-in window per recurrence rule occurrence and decides when a
window is satisfied, missed, or escalated:

    (none) -> open -> satisfied
                   -> missed -> escalated

Every public operation loads persisted state, applies transitions for the
given instant, and commits the result in one store transaction while holding
a single lock, so a tick and a check-in can never race on the same window.
Alert delivery is NOT done here: escalations are returned to the caller,
which dispatches them after the lock is released.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING

from solguard.core.occurrence import (
    InvalidRuleError,
    next_occurrence,
    validate_rule,
    weekday_of,
)
from solguard.data.models import (
    CheckInEvent,
    CheckInStatus,
    CheckInWindow,
    RecurrenceRule,
    SchedulerState,
    WindowState,
)
from solguard.ports.store_port import StoreUnavailableError

if TYPE_CHECKING:
    from solguard.ports.store_port import ScheduleStore, WindowStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class Escalation:
    """A missed window whose contacts must be alerted."""

    rule: RecurrenceRule
    window: CheckInWindow


@dataclass
class OpenedWindow:
    """A window that opened during an evaluation (reminder trigger)."""

    rule: RecurrenceRule
    window: CheckInWindow


@dataclass
class EvaluationResult:
    success: bool
    escalations: list[Escalation] = field(default_factory=list)
    opened: list[OpenedWindow] = field(default_factory=list)
    error_message: str = ""


@dataclass
class CheckInResult:
    success: bool
    satisfied: list[CheckInWindow] = field(default_factory=list)
    escalations: list[Escalation] = field(default_factory=list)
    event: CheckInEvent | None = None
    error_message: str = ""

    @property
    def satisfied_window_ids(self) -> list[str]:
        return [w.id for w in self.satisfied]

    @property
    def satisfied_window_id(self) -> str | None:
        """The earliest satisfied window, or None."""
        return self.satisfied[0].id if self.satisfied else None


@dataclass
class SchedulerStatus:
    open_windows: list[OpenedWindow]
    last_evaluated_at: datetime | None


class _Changes:
    """Accumulates the writes of one operation for a single commit."""

    def __init__(self) -> None:
        self.windows: dict[str, CheckInWindow] = {}
        self.cursors: dict[int, tuple[datetime, str]] = {}
        self.removed_rule_ids: list[int] = []
        self.events: list[CheckInEvent] = []
        self.escalations: list[Escalation] = []
        self.opened: list[OpenedWindow] = []

    def touch(self, window: CheckInWindow) -> None:
        self.windows[window.id] = window


def _rule_version(rule: RecurrenceRule) -> str:
    return rule.updated_at.isoformat() if rule.updated_at else ""


def _rule_from_window(window: CheckInWindow) -> RecurrenceRule:
    """Stand-in for a rule deleted while one of its windows was still missed."""
    return RecurrenceRule(
        id=window.rule_id,
        hour=window.opens_at.hour,
        minute=window.opens_at.minute,
        days_of_week=[weekday_of(window.opens_at)],
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class MissDetectionScheduler:
    """State machine over all enabled recurrence rules.

    Args:
        schedules: Read-only view of the user's rules.
        state_store: Persistence for windows, cursors and ledger events.
        tz: Timezone the rules' times of day are interpreted in.
        satisfy_all_open: If True, one check-in satisfies every open window;
            otherwise only the earliest one.
    """

    def __init__(
        self,
        schedules: ScheduleStore,
        state_store: WindowStore,
        tz: tzinfo | None = None,
        satisfy_all_open: bool = True,
    ) -> None:
        self._schedules = schedules
        self._store = state_store
        self._tz = tz or timezone.utc
        self._satisfy_all_open = satisfy_all_open
        self._lock = threading.Lock()

    # -- public operations --------------------------------------------------

    def evaluate(self, now: datetime) -> EvaluationResult:
        """Apply every transition due at ``now`` and return escalations to dispatch.

        Safe to call repeatedly and out of order: an escalated window is
        terminal, so the same or an earlier ``now`` never fires it again.
        """
        now = self._localize(now)
        with self._lock:
            try:
                state, rules, changes = self._begin(now)
                self._advance(state, rules, now, changes)
                self._commit(state, changes, now)
            except StoreUnavailableError as exc:
                logger.error("Evaluation at %s not committed: %s", now, exc)
                return EvaluationResult(success=False, error_message=str(exc))

        return EvaluationResult(
            success=True,
            escalations=changes.escalations,
            opened=[o for o in changes.opened if o.window.is_open],
        )

    def record_check_in(self, now: datetime) -> CheckInResult:
        """Record an "I'm safe" check-in at ``now``.

        State is first advanced to ``now`` (so an expired window is declared
        missed before the check-in is applied and is never revived), then the
        open windows containing ``now`` are satisfied.
        """
        now = self._localize(now)
        with self._lock:
            try:
                state, rules, changes = self._begin(now)
                self._advance(state, rules, now, changes)

                candidates = sorted(
                    (w for w in state.windows.values() if w.is_open and w.contains(now)),
                    key=lambda w: (w.opens_at, w.rule_id),
                )
                if not self._satisfy_all_open:
                    candidates = candidates[:1]
                for window in candidates:
                    window.state = WindowState.SATISFIED
                    window.closed_at = now
                    changes.touch(window)
                    logger.info("Window %s satisfied", window.id)

                event = CheckInEvent(timestamp=now, status=CheckInStatus.CHECKED_IN)
                if candidates:
                    event.rule_id = candidates[0].rule_id
                    event.window_id = candidates[0].id
                    event.detail = "satisfied " + ", ".join(w.id for w in candidates)
                changes.events.append(event)

                self._commit(state, changes, now)
            except StoreUnavailableError as exc:
                logger.error("Check-in at %s not committed: %s", now, exc)
                return CheckInResult(success=False, error_message=str(exc))

        return CheckInResult(
            success=True,
            satisfied=candidates,
            escalations=changes.escalations,
            event=event,
        )

    def sync_rules(self, now: datetime) -> bool:
        """Re-seed runtime state after rules were added, edited or deleted."""
        now = self._localize(now)
        with self._lock:
            try:
                state, _, changes = self._begin(now, escalate_missed=False)
                self._store.commit(
                    windows=list(changes.windows.values()),
                    cursors=changes.cursors,
                    removed_rule_ids=changes.removed_rule_ids,
                    events=changes.events,
                    evaluated_at=None,
                )
            except StoreUnavailableError as exc:
                logger.error("Rule sync not committed: %s", exc)
                return False
        return True

    def status(self) -> SchedulerStatus:
        """Snapshot of currently open windows. Raises StoreUnavailableError."""
        with self._lock:
            state = self._load()
            rules = {r.id: r for r in self._schedules.list_rules()}
        open_windows = [
            OpenedWindow(rules[w.rule_id], w)
            for w in sorted(state.windows.values(), key=lambda w: w.opens_at)
            if w.is_open and w.rule_id in rules
        ]
        return SchedulerStatus(open_windows=open_windows, last_evaluated_at=state.last_evaluated_at)

    def next_check_in(self, now: datetime) -> tuple[RecurrenceRule, datetime] | None:
        """Soonest upcoming occurrence across enabled rules, for display."""
        now = self._localize(now)
        upcoming: list[tuple[datetime, int, RecurrenceRule]] = []
        for rule in self._schedules.list_rules():
            if not rule.enabled:
                continue
            try:
                upcoming.append((next_occurrence(rule, now), rule.id, rule))
            except InvalidRuleError as exc:
                logger.warning("Skipping rule #%d: %s", rule.id, exc)
        if not upcoming:
            return None
        when, _, rule = min(upcoming, key=lambda item: (item[0], item[1]))
        return rule, when

    # -- internals ----------------------------------------------------------

    def _localize(self, dt: datetime) -> datetime:
        if dt.tzinfo is None:
            return dt.replace(tzinfo=self._tz)
        return dt.astimezone(self._tz)

    def _load(self) -> SchedulerState:
        state = self._store.load()
        for window in state.windows.values():
            window.opens_at = self._localize(window.opens_at)
            window.deadline_at = self._localize(window.deadline_at)
        state.cursors = {rid: self._localize(c) for rid, c in state.cursors.items()}
        return state

    def _begin(
        self, now: datetime, escalate_missed: bool = True,
    ) -> tuple[SchedulerState, list[RecurrenceRule], _Changes]:
        """Load state and rules, then reconcile them.

        With ``escalate_missed`` false (rule-change sync, which cannot
        dispatch), rules holding a missed window are left untouched until the
        next evaluation escalates it.
        """
        state = self._load()
        all_rules = {r.id: r for r in self._schedules.list_rules()}
        rules: list[RecurrenceRule] = []
        for rule in sorted(all_rules.values(), key=lambda r: r.id):
            if not rule.enabled:
                continue
            try:
                validate_rule(rule)
            except InvalidRuleError as exc:
                logger.error("Rule #%d cannot be scheduled: %s", rule.id, exc)
                continue
            rules.append(rule)

        changes = _Changes()
        if escalate_missed:
            self._escalate_leftovers(state, all_rules, changes)
        self._sync(state, rules, now, changes)
        return state, rules, changes

    def _escalate_leftovers(
        self,
        state: SchedulerState,
        all_rules: dict[int, RecurrenceRule],
        changes: _Changes,
    ) -> None:
        """Escalate windows left in ``missed`` by an interrupted run."""
        missed = sorted(
            (w for w in state.windows.values() if w.state is WindowState.MISSED),
            key=lambda w: (w.opens_at, w.rule_id),
        )
        for window in missed:
            rule = all_rules.get(window.rule_id) or _rule_from_window(window)
            self._escalate(rule, window, changes)

    def _commit(self, state: SchedulerState, changes: _Changes, now: datetime) -> None:
        evaluated_at = now
        if state.last_evaluated_at is not None and state.last_evaluated_at > now:
            evaluated_at = state.last_evaluated_at
        self._store.commit(
            windows=list(changes.windows.values()),
            cursors=changes.cursors,
            removed_rule_ids=changes.removed_rule_ids,
            events=changes.events,
            evaluated_at=evaluated_at,
        )

    def _drop_rule(self, state: SchedulerState, rule_id: int, changes: _Changes) -> None:
        state.cursors.pop(rule_id, None)
        state.seeded_versions.pop(rule_id, None)
        for wid in [wid for wid, w in state.windows.items() if w.rule_id == rule_id]:
            window = state.windows.pop(wid)
            if window.state is not WindowState.ESCALATED:
                changes.windows.pop(wid, None)
        changes.removed_rule_ids.append(rule_id)

    def _sync(
        self,
        state: SchedulerState,
        rules: list[RecurrenceRule],
        now: datetime,
        changes: _Changes,
    ) -> None:
        """Drop state of vanished rules; (re)seed new or edited ones."""
        active = {r.id: r for r in rules}
        known = set(state.cursors) | {w.rule_id for w in state.windows.values()}
        pending = {w.rule_id for w in state.windows.values() if w.state is WindowState.MISSED}

        for rule_id in sorted(known - set(active) - pending):
            logger.info("Rule #%d disabled or deleted, dropping its windows", rule_id)
            self._drop_rule(state, rule_id, changes)

        for rule in rules:
            if rule.id in pending:
                continue
            version = _rule_version(rule)
            if rule.id in state.cursors and state.seeded_versions.get(rule.id) == version:
                continue
            if rule.id in known:
                logger.info("Rule #%d changed, re-seeding", rule.id)
                self._drop_rule(state, rule.id, changes)

            anchor = self._localize(rule.updated_at) if rule.updated_at else now
            try:
                cursor = next_occurrence(rule, anchor)
            except InvalidRuleError as exc:
                logger.error("Rule #%d cannot be scheduled: %s", rule.id, exc)
                continue
            state.cursors[rule.id] = cursor
            state.seeded_versions[rule.id] = version
            changes.cursors[rule.id] = (cursor, version)
            logger.info("Rule #%d seeded, first window opens at %s", rule.id, cursor)

    def _advance(
        self,
        state: SchedulerState,
        rules: list[RecurrenceRule],
        now: datetime,
        changes: _Changes,
    ) -> None:
        """Run every rule's state machine forward to ``now``."""
        for rule in rules:
            if rule.id not in state.cursors:
                continue  # unschedulable, already logged by _sync

            while True:
                window = state.open_window(rule.id)
                if window is not None:
                    if now > window.deadline_at:
                        self._mark_missed(rule, window, now, changes)
                        self._escalate(rule, window, changes)
                        continue
                    break

                cursor = state.cursors[rule.id]
                if cursor > now:
                    break

                window = self._open_window(rule, cursor, now)
                state.windows[window.id] = window
                changes.touch(window)
                changes.opened.append(OpenedWindow(rule, window))

                next_cursor = next_occurrence(rule, window.opens_at)
                state.cursors[rule.id] = next_cursor
                changes.cursors[rule.id] = (next_cursor, state.seeded_versions[rule.id])

    def _open_window(self, rule: RecurrenceRule, cursor: datetime, now: datetime) -> CheckInWindow:
        """Open the window due at ``cursor``.

        Consecutive occurrences that have all expired by ``now`` collapse into
        the latest of them, so a long gap produces one escalation, not many.
        """
        grace = timedelta(minutes=rule.grace_minutes)
        opens_at = cursor
        skipped = 0
        following = next_occurrence(rule, opens_at)
        while following + grace < now:
            opens_at = following
            skipped += 1
            following = next_occurrence(rule, opens_at)

        if skipped:
            logger.warning(
                "Rule #%d: %d expired occurrence(s) folded into window at %s",
                rule.id, skipped, opens_at,
            )
        window = CheckInWindow(
            rule_id=rule.id,
            opens_at=opens_at,
            deadline_at=opens_at + grace,
            skipped_occurrences=skipped,
        )
        logger.info("Window %s opened, deadline %s", window.id, window.deadline_at)
        return window

    def _mark_missed(
        self,
        rule: RecurrenceRule,
        window: CheckInWindow,
        now: datetime,
        changes: _Changes,
    ) -> None:
        window.state = WindowState.MISSED
        window.closed_at = now
        changes.touch(window)
        changes.events.append(CheckInEvent(
            timestamp=now,
            status=CheckInStatus.MISSED,
            rule_id=rule.id,
            window_id=window.id,
            detail=f"deadline {window.deadline_at.isoformat()}",
        ))
        logger.warning("Window %s missed (deadline %s)", window.id, window.deadline_at)

    def _escalate(self, rule: RecurrenceRule, window: CheckInWindow, changes: _Changes) -> None:
        # Committed before dispatch: a failed or slow delivery must not re-fire.
        window.state = WindowState.ESCALATED
        changes.touch(window)
        changes.escalations.append(Escalation(rule, window))
        logger.warning("Window %s escalated", window.id)
