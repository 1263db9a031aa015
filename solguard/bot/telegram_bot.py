"""
SolGuard — Telegram Bot.

Telegram is the user interface: the "I'm safe" button, schedule and contact
management, and history all flow through this bot. A repeating job drives
the miss-detection scheduler so missed check-ins escalate even when nobody
is chatting with the bot.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, ReplyKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)
from telegram.helpers import escape_markdown

from solguard.config import settings
from solguard.core.messages import SAFE_BUTTON_TEXT, format_contact_line, rule_title
from solguard.core.occurrence import (
    InvalidRuleError,
    format_repeat_days,
    format_time,
    parse_days,
    parse_time_of_day,
)
from solguard.data.models import CheckInStatus
from solguard.ports.store_port import StoreUnavailableError

if TYPE_CHECKING:
    from solguard.core.checkin_service import CheckInService
    from solguard.data.db import CheckInLedgerDB, ContactDB, ScheduleDB
    from solguard.data.models import RecurrenceRule
    from solguard.ports.clock_port import Clock
    from solguard.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_SAVE_FAILED = "Couldn't save that right now — nothing was changed. Please try again."

_STATUS_LABELS = {
    CheckInStatus.CHECKED_IN: "✓ Checked in",
    CheckInStatus.MISSED: "✗ Missed",
    CheckInStatus.ALERT_SENT: "🚨 Alert sent",
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _format_when(when: datetime) -> str:
    return when.strftime("%a %d %b, %H:%M")


def _md_title(rule: RecurrenceRule) -> str:
    """Rule title for Markdown replies; labels are user input."""
    return escape_markdown(rule_title(rule))


def _safe_keyboard() -> ReplyKeyboardMarkup:
    """Persistent one-button keyboard that sends the "I'm safe" check-in."""
    return ReplyKeyboardMarkup([[SAFE_BUTTON_TEXT]], resize_keyboard=True, is_persistent=True)


def _rule_button_text(rule: RecurrenceRule) -> str:
    text = f"{format_time(rule.hour, rule.minute)} {format_repeat_days(rule.days_of_week)}"
    if rule.label:
        text += f" · {rule.label}"
    return text


def _format_rule(rule: RecurrenceRule) -> str:
    state = "on" if rule.enabled else "off"
    line = (
        f"`{rule.id}` — {format_time(rule.hour, rule.minute)} "
        f"{format_repeat_days(rule.days_of_week)} [{state}]"
    )
    if rule.grace_minutes:
        line += f", {rule.grace_minutes} min grace"
    if rule.label:
        line += f"\n      {escape_markdown(rule.label)}"
    return line


def _parse_id(args: list[str] | None) -> int | None:
    if not args:
        return None
    try:
        return int(args[0])
    except ValueError:
        return None


def _parse_schedule_args(args: list[str], default_grace: int) -> dict:
    """Parse `/addschedule HH:MM days [grace] [label...]`.

    Raises InvalidRuleError with a user-facing message.
    """
    if len(args) < 2:
        raise InvalidRuleError("Usage: /addschedule HH:MM days [grace_minutes] [label]")

    hour, minute = parse_time_of_day(args[0])
    days = parse_days(args[1])

    rest = args[2:]
    grace = default_grace
    if rest and rest[0].isdigit():
        grace = int(rest[0])
        rest = rest[1:]

    return {
        "hour": hour,
        "minute": minute,
        "days_of_week": days,
        "grace_minutes": grace,
        "label": " ".join(rest),
    }


def _parse_contact_text(text: str) -> dict:
    """Parse `name | phone | email | relationship` (trailing fields optional)."""
    parts = [p.strip() for p in text.split("|")]
    fields = ["name", "phone", "email", "relationship"]
    parsed = dict(zip(fields, parts))
    if not parsed.get("name"):
        raise ValueError("Please enter a name")
    if not parsed.get("relationship"):
        parsed.pop("relationship", None)
    return parsed


# ---------------------------------------------------------------------------
# Check-in commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *SolGuard*!\n\n"
        "Check in regularly to let your emergency contacts know you're safe. "
        "If you miss a scheduled check-in, they'll be alerted.\n\n"
        f"• {SAFE_BUTTON_TEXT} (or /safe) — check in now\n"
        "• /schedules — your check-in schedule\n"
        "• /contacts — your emergency contacts\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
        reply_markup=_safe_keyboard(),
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/safe — Check in now\n"
        "/status — Current check-in status\n"
        "/schedules — List scheduled check-ins\n"
        "/addschedule HH:MM days [grace] [label] — e.g. `/addschedule 08:00 weekdays 30 Morning`\n"
        "/toggleschedule <id> — Turn a schedule on/off\n"
        "/deleteschedule — Pick a schedule to delete\n"
        "/contacts — List emergency contacts\n"
        "/addcontact name | phone | email | relationship\n"
        "/editcontact <id> name | phone | email | relationship\n"
        "/primary <id> — Set the primary contact\n"
        "/deletecontact — Pick a contact to remove\n"
        "/history — Recent check-ins\n"
        "/export — Download your data as JSON\n"
        "/import — Restore schedules and contacts from an export\n"
        "/reset — Delete all data\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_safe(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /safe — the "I'm safe" check-in."""
    service: CheckInService = context.bot_data["service"]

    report = await service.check_in()
    if not report.success:
        logger.error("/safe failed: %s", report.result.error_message)
        await update.message.reply_text(_SAVE_FAILED)
        return

    lines = ["✓ Check-in complete. You're safe!"]
    satisfied = len(report.result.satisfied)
    if satisfied:
        lines.append(f"Closed {satisfied} scheduled check-in window(s).")
    if report.dispatches:
        lines.append(
            f"⚠️ {len(report.dispatches)} earlier check-in(s) had already been missed "
            "and your contacts were alerted."
        )

    try:
        upcoming = service.next_check_in()
    except StoreUnavailableError as exc:
        logger.warning("/safe next check-in lookup failed: %s", exc)
        upcoming = None
    if upcoming is not None:
        rule, when = upcoming
        lines.append(f"Next check-in: {_format_when(when)} ({rule_title(rule)})")

    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /status — last check-in, open windows, next check-in."""
    service: CheckInService = context.bot_data["service"]
    ledger: CheckInLedgerDB = context.bot_data["ledger"]

    try:
        last = ledger.latest(status=CheckInStatus.CHECKED_IN)
        status = service.status()
        upcoming = service.next_check_in()
    except StoreUnavailableError as exc:
        logger.error("/status error: %s", exc)
        await update.message.reply_text("Couldn't load your status. Please try again.")
        return

    lines = ["*Status*"]
    if status.open_windows:
        lines.append("🔴 Check-in due now:")
        for item in status.open_windows:
            lines.append(
                f"  • {_md_title(item.rule)} — before {item.window.deadline_at.strftime('%H:%M')}"
            )
    else:
        lines.append("🟢 Nothing due right now")

    lines.append(f"Last check-in: {_format_when(last.timestamp) if last else 'Never'}")
    if upcoming is not None:
        rule, when = upcoming
        lines.append(f"Next: {_format_when(when)} ({_md_title(rule)})")
    else:
        lines.append("Next: no active schedules")

    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /history — recent ledger events and totals."""
    ledger: CheckInLedgerDB = context.bot_data["ledger"]

    try:
        events = ledger.list_events(limit=10)
        totals = ledger.summary()
    except StoreUnavailableError as exc:
        logger.error("/history error: %s", exc)
        await update.message.reply_text("Couldn't load history. Please try again.")
        return

    if not events:
        await update.message.reply_text("No check-ins yet.")
        return

    lines = [
        f"Checked in: {totals[CheckInStatus.CHECKED_IN]}  "
        f"Missed: {totals[CheckInStatus.MISSED]}  "
        f"Alerts: {totals[CheckInStatus.ALERT_SENT]}",
        "",
    ]
    for event in events:
        lines.append(f"{_STATUS_LABELS[event.status]} — {_format_when(event.timestamp)}")
    await update.message.reply_text("\n".join(lines))


# ---------------------------------------------------------------------------
# Schedule commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_schedules(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /schedules — list all check-in rules."""
    schedules: ScheduleDB = context.bot_data["schedules"]
    service: CheckInService = context.bot_data["service"]

    try:
        rules = schedules.list_rules()
        upcoming = service.next_check_in()
    except StoreUnavailableError as exc:
        logger.error("/schedules error: %s", exc)
        await update.message.reply_text("Couldn't load schedules. Please try again.")
        return

    if not rules:
        await update.message.reply_text(
            "No schedules yet. Add one with /addschedule 08:00 weekdays"
        )
        return

    lines = ["*Scheduled check-ins:*\n"]
    lines.extend(_format_rule(r) for r in rules)
    if upcoming is not None:
        lines.append(f"\nNext: {_format_when(upcoming[1])}")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_addschedule(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addschedule HH:MM days [grace] [label]."""
    schedules: ScheduleDB = context.bot_data["schedules"]

    try:
        fields = _parse_schedule_args(context.args or [], settings.DEFAULT_GRACE_MINUTES)
        rule = schedules.add_rule(**fields)
    except InvalidRuleError as exc:
        await update.message.reply_text(f"⚠️ {exc}")
        return
    except StoreUnavailableError as exc:
        logger.error("/addschedule error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    await update.message.reply_text(
        f"✅ Added: {format_time(rule.hour, rule.minute)} "
        f"{format_repeat_days(rule.days_of_week)} (#{rule.id})"
    )


@authorized_only
async def cmd_toggleschedule(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /toggleschedule <id> — enable or disable a rule."""
    schedules: ScheduleDB = context.bot_data["schedules"]

    rule_id = _parse_id(context.args)
    if rule_id is None:
        await update.message.reply_text("Usage: /toggleschedule <id>\nUse /schedules to see IDs.")
        return

    try:
        rule = schedules.get_rule(rule_id)
        if rule is None:
            await update.message.reply_text(f"Schedule {rule_id} not found.")
            return
        rule = schedules.set_enabled(rule_id, not rule.enabled)
    except InvalidRuleError as exc:
        await update.message.reply_text(f"⚠️ {exc}")
        return
    except StoreUnavailableError as exc:
        logger.error("/toggleschedule error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    state = "enabled" if rule.enabled else "disabled"
    await update.message.reply_text(f"Schedule #{rule_id} {state}.")


@authorized_only
async def cmd_deleteschedule(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /deleteschedule — pick a rule from buttons, or pass its id."""
    schedules: ScheduleDB = context.bot_data["schedules"]

    rule_id = _parse_id(context.args)
    if rule_id is None:
        try:
            rules = schedules.list_rules()
        except StoreUnavailableError as exc:
            logger.error("/deleteschedule error: %s", exc)
            await update.message.reply_text("Couldn't load schedules. Please try again.")
            return

        if not rules:
            await update.message.reply_text("No schedules to delete.")
            return

        keyboard = [
            [InlineKeyboardButton(_rule_button_text(r), callback_data=f"delschedule:{r.id}")]
            for r in rules
        ]
        await update.message.reply_text(
            "Which schedule do you want to delete?",
            reply_markup=InlineKeyboardMarkup(keyboard),
        )
        return

    try:
        deleted = schedules.delete_rule(rule_id)
    except StoreUnavailableError as exc:
        logger.error("/deleteschedule error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    if deleted:
        await update.message.reply_text(f"✅ Schedule #{rule_id} deleted.")
    else:
        await update.message.reply_text(f"Schedule {rule_id} not found.")


async def _handle_deleteschedule_callback(
    update: Update, context: ContextTypes.DEFAULT_TYPE,
) -> None:
    """Handle the inline button tap to delete a schedule."""
    schedules: ScheduleDB = context.bot_data["schedules"]

    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    rule_id = int(query.data.split(":")[1])

    try:
        rule = schedules.get_rule(rule_id)
        if rule is None:
            await query.edit_message_text("Schedule not found or already deleted.")
            return
        schedules.delete_rule(rule_id)
    except StoreUnavailableError as exc:
        logger.error("deleteschedule callback error: %s", exc)
        await query.edit_message_text(_SAVE_FAILED)
        return

    await query.edit_message_text(f"✅ Deleted: {_rule_button_text(rule)}")


# ---------------------------------------------------------------------------
# Contact commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_contacts(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /contacts — list emergency contacts, primary first."""
    contacts: ContactDB = context.bot_data["contacts"]

    try:
        items = contacts.list_contacts()
    except StoreUnavailableError as exc:
        logger.error("/contacts error: %s", exc)
        await update.message.reply_text("Couldn't load contacts. Please try again.")
        return

    if not items:
        await update.message.reply_text(
            "No emergency contacts yet.\n"
            "Add one with /addcontact name | phone | email | relationship"
        )
        return

    lines = ["Emergency contacts:\n"]
    lines.extend(f"{c.id} — {format_contact_line(c)}" for c in items)
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_addcontact(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addcontact name | phone | email | relationship."""
    contacts: ContactDB = context.bot_data["contacts"]

    try:
        fields = _parse_contact_text(" ".join(context.args or []))
        contact = contacts.add_contact(**fields)
    except ValueError as exc:
        await update.message.reply_text(
            f"⚠️ {exc}\nUsage: /addcontact name | phone | email | relationship"
        )
        return
    except StoreUnavailableError as exc:
        logger.error("/addcontact error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    suffix = " (primary)" if contact.is_primary else ""
    await update.message.reply_text(f"✅ Added {contact.name}{suffix}.")


@authorized_only
async def cmd_primary(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /primary <id> — make one contact the primary."""
    contacts: ContactDB = context.bot_data["contacts"]

    contact_id = _parse_id(context.args)
    if contact_id is None:
        await update.message.reply_text("Usage: /primary <id>\nUse /contacts to see IDs.")
        return

    try:
        updated = contacts.set_primary(contact_id)
    except StoreUnavailableError as exc:
        logger.error("/primary error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    if updated:
        await update.message.reply_text(f"⭐ Contact #{contact_id} is now your primary contact.")
    else:
        await update.message.reply_text(f"Contact {contact_id} not found.")


@authorized_only
async def cmd_editcontact(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /editcontact <id> name | phone | email | relationship.

    Fields left out keep their value; a blank phone or email clears it.
    """
    contacts: ContactDB = context.bot_data["contacts"]
    usage = "Usage: /editcontact <id> name | phone | email | relationship"

    args = context.args or []
    contact_id = _parse_id(args)
    if contact_id is None or len(args) < 2:
        await update.message.reply_text(f"{usage}\nUse /contacts to see IDs.")
        return

    try:
        fields = _parse_contact_text(" ".join(args[1:]))
        contact = contacts.update_contact(contact_id, **fields)
    except ValueError as exc:
        await update.message.reply_text(f"⚠️ {exc}\n{usage}")
        return
    except StoreUnavailableError as exc:
        logger.error("/editcontact error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    if contact is None:
        await update.message.reply_text(f"Contact {contact_id} not found.")
        return
    await update.message.reply_text(f"✅ Updated: {format_contact_line(contact)}")


@authorized_only
async def cmd_deletecontact(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /deletecontact — pick a contact from buttons, or pass its id."""
    contacts: ContactDB = context.bot_data["contacts"]

    contact_id = _parse_id(context.args)
    if contact_id is None:
        try:
            items = contacts.list_contacts()
        except StoreUnavailableError as exc:
            logger.error("/deletecontact error: %s", exc)
            await update.message.reply_text("Couldn't load contacts. Please try again.")
            return

        if not items:
            await update.message.reply_text("No contacts to remove.")
            return

        keyboard = [
            [InlineKeyboardButton(format_contact_line(c), callback_data=f"delcontact:{c.id}")]
            for c in items
        ]
        await update.message.reply_text(
            "Which contact do you want to remove?",
            reply_markup=InlineKeyboardMarkup(keyboard),
        )
        return

    try:
        deleted = contacts.delete_contact(contact_id)
    except StoreUnavailableError as exc:
        logger.error("/deletecontact error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    if deleted:
        await update.message.reply_text(f"✅ Contact #{contact_id} removed.")
    else:
        await update.message.reply_text(f"Contact {contact_id} not found.")


async def _handle_deletecontact_callback(
    update: Update, context: ContextTypes.DEFAULT_TYPE,
) -> None:
    """Handle the inline button tap to remove a contact."""
    contacts: ContactDB = context.bot_data["contacts"]

    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    contact_id = int(query.data.split(":")[1])

    try:
        contact = contacts.get_contact(contact_id)
        if contact is None:
            await query.edit_message_text("Contact not found or already removed.")
            return
        contacts.delete_contact(contact_id)
    except StoreUnavailableError as exc:
        logger.error("deletecontact callback error: %s", exc)
        await query.edit_message_text(_SAVE_FAILED)
        return

    await query.edit_message_text(f"✅ {contact.name} removed from your emergency contacts.")


# ---------------------------------------------------------------------------
# Data commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_export(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /export — send schedules, contacts and history as JSON."""
    from solguard.data.records import build_snapshot

    clock: Clock = context.bot_data["clock"]

    try:
        snapshot = build_snapshot(
            context.bot_data["schedules"],
            context.bot_data["contacts"],
            context.bot_data["ledger"],
            exported_at=clock.now(),
        )
    except StoreUnavailableError as exc:
        logger.error("/export error: %s", exc)
        await update.message.reply_text("Couldn't read your data. Please try again.")
        return

    await update.message.reply_document(
        document=snapshot.model_dump_json(indent=2).encode("utf-8"),
        filename="solguard-export.json",
    )


@authorized_only
async def cmd_import(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /import — wait for an export file to restore from."""
    context.user_data["awaiting_import"] = True
    await update.message.reply_text(
        "Send me a SolGuard export file (.json). Its schedules and contacts "
        "will be added to your current ones; history is not restored."
    )


@authorized_only
async def handle_import_document(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Restore schedules and contacts from an uploaded export after /import."""
    from pydantic import ValidationError

    from solguard.data.records import Snapshot, restore_snapshot

    if not context.user_data.pop("awaiting_import", False):
        await update.message.reply_text("To restore from this file, send /import first.")
        return

    try:
        tg_file = await context.bot.get_file(update.message.document.file_id)
        raw = await tg_file.download_as_bytearray()
    except TelegramError as exc:
        logger.error("Import download failed: %s", exc)
        await update.message.reply_text("Couldn't download that file. Please try again.")
        return

    try:
        snapshot = Snapshot.model_validate_json(bytes(raw))
        rules, contacts = restore_snapshot(
            snapshot, context.bot_data["schedules"], context.bot_data["contacts"],
        )
    except ValidationError as exc:
        logger.warning("Rejected import file: %s", exc)
        await update.message.reply_text("That file isn't a valid SolGuard export.")
        return
    except ValueError as exc:
        await update.message.reply_text(f"⚠️ {exc}\nNothing was imported.")
        return
    except StoreUnavailableError as exc:
        logger.error("Import error: %s", exc)
        await update.message.reply_text(_SAVE_FAILED)
        return

    await update.message.reply_text(f"✅ Imported {rules} schedule(s) and {contacts} contact(s).")


@authorized_only
async def cmd_reset(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reset — ask to confirm deleting all data."""
    buttons = [
        [InlineKeyboardButton("Delete everything", callback_data="reset:confirm")],
        [InlineKeyboardButton("Abort", callback_data="reset:abort")],
    ]
    await update.message.reply_text(
        "This will delete all your check-ins, contacts, and schedules. "
        "This cannot be undone.",
        reply_markup=InlineKeyboardMarkup(buttons),
    )


async def _handle_reset_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle confirmation/abort for /reset."""
    from solguard.data.db import reset_all_data

    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or user.id not in settings.ALLOWED_USER_IDS:
        return

    action = query.data.split(":")[1]
    if action == "abort":
        await query.edit_message_text("Reset aborted. Nothing was deleted.")
        return

    try:
        reset_all_data(settings.DATABASE_PATH)
    except StoreUnavailableError as exc:
        logger.error("reset callback error: %s", exc)
        await query.edit_message_text("Failed to reset data.")
        return

    await query.edit_message_text("All data has been cleared.")


# ---------------------------------------------------------------------------
# Periodic evaluation
# ---------------------------------------------------------------------------


async def _evaluation_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Job-queue tick: advance the scheduler and dispatch escalations."""
    service: CheckInService = context.bot_data["service"]
    report = await service.run_evaluation()
    if not report.success:
        logger.warning("Evaluation tick failed: %s", report.error_message)
        return
    if report.dispatches:
        logger.info("Evaluation tick dispatched %d alert(s)", len(report.dispatches))


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


def _warn_if_alerts_unroutable() -> None:
    """Log loudly when escalations have nowhere to go."""
    provider = settings.ALERT_PROVIDER.strip().lower()
    if provider == "telegram" and not settings.ALERT_CHAT_IDS:
        logger.warning(
            "ALERT_PROVIDER=telegram but ALERT_CHAT_IDS is empty: "
            "missed check-ins will not alert anyone"
        )
    elif provider == "webhook" and not settings.ALERT_WEBHOOK_URL:
        logger.warning(
            "ALERT_PROVIDER=webhook but ALERT_WEBHOOK_URL is empty: "
            "missed check-ins will not alert anyone"
        )


def build_app(
    notifier: NotificationPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    from solguard.adapters.dispatcher_factory import create_alert_dispatcher
    from solguard.adapters.system_clock import SystemClock
    from solguard.core.checkin_service import CheckInService
    from solguard.core.miss_detector import MissDetectionScheduler
    from solguard.data.db import CheckInLedgerDB, ContactDB, ScheduleDB, SchedulerStateDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from solguard.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    clock = SystemClock(settings.TIMEZONE)
    schedules = ScheduleDB(clock=clock)
    contacts = ContactDB(clock=clock)
    ledger = CheckInLedgerDB()
    scheduler = MissDetectionScheduler(
        schedules,
        SchedulerStateDB(),
        tz=clock.tz,
        satisfy_all_open=settings.CHECKIN_SATISFIES_ALL_OPEN,
    )
    service = CheckInService(
        scheduler,
        contacts,
        ledger,
        create_alert_dispatcher(notifier),
        notifier=notifier,
        clock=clock,
        user_ids=settings.ALLOWED_USER_IDS,
        dispatch_timeout=settings.ALERT_TIMEOUT_SECONDS,
    )
    _warn_if_alerts_unroutable()
    schedules.subscribe(service.sync_rules)
    if settings.SEED_DEFAULT_SCHEDULES:
        schedules.seed_defaults(grace_minutes=settings.DEFAULT_GRACE_MINUTES)

    # Store collaborators in bot_data for handler access
    app.bot_data.update({
        "service": service,
        "schedules": schedules,
        "contacts": contacts,
        "ledger": ledger,
        "clock": clock,
    })

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("safe", cmd_safe))
    app.add_handler(CommandHandler("status", cmd_status))
    app.add_handler(CommandHandler("history", cmd_history))
    app.add_handler(CommandHandler("schedules", cmd_schedules))
    app.add_handler(CommandHandler("addschedule", cmd_addschedule))
    app.add_handler(CommandHandler("toggleschedule", cmd_toggleschedule))
    app.add_handler(CommandHandler("deleteschedule", cmd_deleteschedule))
    app.add_handler(CommandHandler("contacts", cmd_contacts))
    app.add_handler(CommandHandler("addcontact", cmd_addcontact))
    app.add_handler(CommandHandler("primary", cmd_primary))
    app.add_handler(CommandHandler("editcontact", cmd_editcontact))
    app.add_handler(CommandHandler("deletecontact", cmd_deletecontact))
    app.add_handler(CommandHandler("export", cmd_export))
    app.add_handler(CommandHandler("import", cmd_import))
    app.add_handler(CommandHandler("reset", cmd_reset))
    app.add_handler(MessageHandler(filters.Text([SAFE_BUTTON_TEXT]), cmd_safe))
    app.add_handler(MessageHandler(filters.Document.FileExtension("json"), handle_import_document))

    # Inline keyboard callbacks
    app.add_handler(CallbackQueryHandler(
        _handle_deleteschedule_callback, pattern=r"^delschedule:\d+$",
    ))
    app.add_handler(CallbackQueryHandler(_handle_deletecontact_callback, pattern=r"^delcontact:\d+$"))
    app.add_handler(CallbackQueryHandler(_handle_reset_callback, pattern=r"^reset:(confirm|abort)$"))

    # First run shortly after start doubles as the "app resumed" evaluation
    app.job_queue.run_repeating(
        _evaluation_job,
        interval=settings.EVALUATION_INTERVAL_SECONDS,
        first=5,
        name="checkin_evaluation",
    )

    logger.info(
        "Telegram bot application built; evaluating every %ds in %s",
        settings.EVALUATION_INTERVAL_SECONDS,
        settings.TIMEZONE,
    )
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting SolGuard bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
