"""
SolGuard — Check-in Service.

Async orchestration around the miss-detection scheduler. State transitions
happen inside the scheduler's lock; everything slow or fallible (alert
delivery, reminders) happens here, after the lock is released.

This module is provider-agnostic: it depends on the AlertDispatcher,
NotificationPort and store protocols, not on specific implementations.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from solguard.core.messages import SAFE_BUTTON_TEXT, format_reminder_message
from solguard.data.models import CheckInEvent, CheckInStatus
from solguard.ports.alert_port import DispatchFailure, DispatchOutcome
from solguard.ports.notification_port import NotificationError
from solguard.ports.store_port import StoreUnavailableError

if TYPE_CHECKING:
    from solguard.core.miss_detector import (
        CheckInResult,
        Escalation,
        MissDetectionScheduler,
        OpenedWindow,
        SchedulerStatus,
    )
    from solguard.data.models import Contact, RecurrenceRule
    from solguard.ports.alert_port import AlertDispatcher
    from solguard.ports.clock_port import Clock
    from solguard.ports.notification_port import NotificationPort
    from solguard.ports.store_port import CheckInLedger, ContactStore

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """What happened when one escalation was handed to the dispatcher."""

    escalation: Escalation
    outcome: DispatchOutcome


@dataclass
class EvaluationReport:
    success: bool
    dispatches: list[DispatchReport] = field(default_factory=list)
    reminders_sent: int = 0
    error_message: str = ""


@dataclass
class CheckInReport:
    result: CheckInResult
    dispatches: list[DispatchReport] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.result.success


class CheckInService:
    """Runs evaluations and check-ins, then dispatches their side effects."""

    def __init__(
        self,
        scheduler: MissDetectionScheduler,
        contacts: ContactStore,
        ledger: CheckInLedger,
        dispatcher: AlertDispatcher,
        notifier: NotificationPort | None = None,
        clock: Clock | None = None,
        user_ids: list[int] | None = None,
        dispatch_timeout: float = 10,
    ) -> None:
        self._scheduler = scheduler
        self._contacts = contacts
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._clock = clock
        self._user_ids = list(user_ids or [])
        self._dispatch_timeout = dispatch_timeout

    def _now(self, now: datetime | None) -> datetime:
        if now is not None:
            return now
        if self._clock is not None:
            return self._clock.now()
        return datetime.now(timezone.utc)

    async def run_evaluation(self, now: datetime | None = None) -> EvaluationReport:
        """Evaluate all rules at ``now``, alert on misses, remind on new windows."""
        now = self._now(now)
        result = self._scheduler.evaluate(now)
        if not result.success:
            return EvaluationReport(success=False, error_message=result.error_message)

        dispatches = await self._dispatch_all(result.escalations, now)
        reminders = await self._send_reminders(result.opened)
        return EvaluationReport(success=True, dispatches=dispatches, reminders_sent=reminders)

    async def check_in(self, now: datetime | None = None) -> CheckInReport:
        """Record an "I'm safe" check-in; dispatch any misses found on the way."""
        now = self._now(now)
        result = self._scheduler.record_check_in(now)
        if not result.success:
            return CheckInReport(result=result)

        dispatches = await self._dispatch_all(result.escalations, now)
        return CheckInReport(result=result, dispatches=dispatches)

    def sync_rules(self, now: datetime | None = None) -> bool:
        """Schedule-store change listener: re-seed scheduler state."""
        return self._scheduler.sync_rules(self._now(now))

    def status(self) -> SchedulerStatus:
        return self._scheduler.status()

    def next_check_in(self, now: datetime | None = None) -> tuple[RecurrenceRule, datetime] | None:
        return self._scheduler.next_check_in(self._now(now))

    # -- dispatch -----------------------------------------------------------

    def _load_contacts(self) -> list[Contact]:
        try:
            return self._contacts.list_contacts()
        except StoreUnavailableError as exc:
            # Still attempt delivery: channel-level alerts don't need contacts.
            logger.error("Contacts unavailable for alert dispatch: %s", exc)
            return []

    async def _dispatch_all(
        self, escalations: list[Escalation], now: datetime,
    ) -> list[DispatchReport]:
        reports: list[DispatchReport] = []
        for escalation in escalations:
            outcome = await self._dispatch(escalation, now)
            reports.append(DispatchReport(escalation=escalation, outcome=outcome))
        return reports

    async def _dispatch(self, escalation: Escalation, now: datetime) -> DispatchOutcome:
        """Invoke the dispatcher once and record the attempt in the ledger."""
        rule, window = escalation.rule, escalation.window
        contacts = self._load_contacts()

        try:
            outcome = await asyncio.wait_for(
                self._dispatcher.send(contacts, rule, window),
                timeout=self._dispatch_timeout,
            )
        except DispatchFailure as exc:
            logger.error("Alert dispatch failed for window %s: %s", window.id, exc)
            outcome = DispatchOutcome(success=False, error_message=str(exc))
        except asyncio.TimeoutError:
            logger.error(
                "Alert dispatch for window %s timed out after %ss",
                window.id, self._dispatch_timeout,
            )
            outcome = DispatchOutcome(
                success=False, error_message=f"timed out after {self._dispatch_timeout}s",
            )
        except Exception as exc:
            logger.exception("Alert dispatcher crashed for window %s", window.id)
            outcome = DispatchOutcome(success=False, error_message=str(exc))

        if outcome.success:
            detail = f"delivered to {outcome.delivered} recipient(s)"
            if outcome.failed:
                detail += f", {outcome.failed} failed"
        else:
            detail = f"delivery failed: {outcome.error_message}"

        try:
            self._ledger.append(CheckInEvent(
                timestamp=now,
                status=CheckInStatus.ALERT_SENT,
                rule_id=rule.id,
                window_id=window.id,
                detail=detail,
            ))
        except StoreUnavailableError as exc:
            logger.error("Could not record alert for window %s: %s", window.id, exc)

        logger.info("Escalation for window %s: %s", window.id, detail)
        return outcome

    async def _send_reminders(self, opened: list[OpenedWindow]) -> int:
        if self._notifier is None:
            return 0
        sent = 0
        for item in opened:
            text = format_reminder_message(item.rule, item.window)
            for user_id in self._user_ids:
                try:
                    await self._notifier.send_message(
                        user_id, text, quick_replies=[SAFE_BUTTON_TEXT],
                    )
                    sent += 1
                except NotificationError as exc:
                    logger.error("Failed to send reminder to %d: %s", user_id, exc)
        return sent
