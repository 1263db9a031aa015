"""Tests for solguard.bot.telegram_bot — Telegram bot handlers.

Tests command parsing, command handlers and authorization. Stores are real
temp-file SQLite; the alert dispatcher is mocked.
"""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from solguard.bot.telegram_bot import (
    _handle_deletecontact_callback,
    _handle_deleteschedule_callback,
    _handle_reset_callback,
    _parse_contact_text,
    _parse_schedule_args,
    cmd_addcontact,
    cmd_addschedule,
    cmd_contacts,
    cmd_deletecontact,
    cmd_deleteschedule,
    cmd_editcontact,
    cmd_export,
    cmd_history,
    cmd_import,
    cmd_primary,
    cmd_reset,
    cmd_safe,
    cmd_schedules,
    cmd_start,
    cmd_status,
    cmd_toggleschedule,
    handle_import_document,
)
from solguard.core.checkin_service import CheckInService
from solguard.core.messages import SAFE_BUTTON_TEXT
from solguard.core.occurrence import InvalidRuleError
from solguard.data.models import CheckInStatus
from solguard.ports.alert_port import DispatchOutcome

MON_0800 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParseScheduleArgs:
    def test_full(self):
        fields = _parse_schedule_args(["08:30", "weekdays", "45", "Morning", "walk"], 30)
        assert fields == {
            "hour": 8, "minute": 30, "days_of_week": [1, 2, 3, 4, 5],
            "grace_minutes": 45, "label": "Morning walk",
        }

    def test_default_grace_and_no_label(self):
        fields = _parse_schedule_args(["21:00", "mon,fri"], 30)
        assert fields["grace_minutes"] == 30
        assert fields["days_of_week"] == [1, 5]
        assert fields["label"] == ""

    def test_label_without_grace(self):
        assert _parse_schedule_args(["07:00", "daily", "Meds"], 0)["label"] == "Meds"

    def test_too_few_args(self):
        with pytest.raises(InvalidRuleError, match="Usage"):
            _parse_schedule_args(["08:00"], 30)

    def test_bad_time(self):
        with pytest.raises(InvalidRuleError):
            _parse_schedule_args(["8am", "daily"], 30)


class TestParseContactText:
    def test_all_fields(self):
        assert _parse_contact_text("Mom | +1555 | mom@example.com | Parent") == {
            "name": "Mom", "phone": "+1555", "email": "mom@example.com", "relationship": "Parent",
        }

    def test_name_only(self):
        assert _parse_contact_text("Dad") == {"name": "Dad"}

    def test_blank_relationship_dropped(self):
        assert "relationship" not in _parse_contact_text("Dad | +1 | | ")

    def test_missing_name(self):
        with pytest.raises(ValueError):
            _parse_contact_text(" | +1555")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_update(user_id=12345):
    """Create a mock Update from an authorized user."""
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    update.message.reply_document = AsyncMock()
    return update


def _reply(update):
    return update.message.reply_text.call_args.args[0]


def _make_callback(data, user_id=12345):
    """Create a mock Update carrying an inline button tap."""
    update = MagicMock()
    update.callback_query.data = data
    update.callback_query.from_user.id = user_id
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_text = AsyncMock()
    return update


def _edited(update):
    return update.callback_query.edit_message_text.call_args.args[0]


@pytest.fixture
def bot_context(scheduler, schedule_db, contact_db, ledger_db, clock):
    """Mock context whose bot_data holds a real service over temp stores."""
    dispatcher = MagicMock()
    dispatcher.send = AsyncMock(return_value=DispatchOutcome(success=True, delivered=1))
    service = CheckInService(scheduler, contact_db, ledger_db, dispatcher, clock=clock)

    context = MagicMock()
    context.args = []
    context.user_data = {}
    context.bot_data = {
        "service": service,
        "schedules": schedule_db,
        "contacts": contact_db,
        "ledger": ledger_db,
        "clock": clock,
    }
    return context


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_silently_ignored(self, bot_context, ledger_db):
        update = _make_update(user_id=999)
        await cmd_safe(update, bot_context)
        update.message.reply_text.assert_not_called()
        assert ledger_db.list_events() == []

    @pytest.mark.asyncio
    async def test_missing_user_ignored(self, bot_context):
        update = _make_update()
        update.effective_user = None
        await cmd_schedules(update, bot_context)
        update.message.reply_text.assert_not_called()


# ---------------------------------------------------------------------------
# Check-in commands
# ---------------------------------------------------------------------------


class TestCmdStart:
    @pytest.mark.asyncio
    async def test_offers_safe_button(self, bot_context):
        update = _make_update()

        await cmd_start(update, bot_context)

        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        assert markup.keyboard[0][0].text == SAFE_BUTTON_TEXT


class TestCmdSafe:
    @pytest.mark.asyncio
    async def test_check_in_closes_window(self, bot_context, schedule_db, ledger_db, clock):
        schedule_db.add_rule(8, 0, [1], grace_minutes=30, label="Morning")
        clock.current = MON_0800 + timedelta(minutes=5)
        update = _make_update()

        await cmd_safe(update, bot_context)

        text = _reply(update)
        assert "You're safe" in text
        assert "Closed 1" in text
        assert "Next check-in" in text
        assert ledger_db.latest().status is CheckInStatus.CHECKED_IN

    @pytest.mark.asyncio
    async def test_check_in_reports_earlier_miss(self, bot_context, schedule_db, clock):
        schedule_db.add_rule(8, 0, [1])
        clock.current = MON_0800 + timedelta(minutes=5)
        update = _make_update()

        await cmd_safe(update, bot_context)

        assert "already been missed" in _reply(update)

    @pytest.mark.asyncio
    async def test_store_failure_tells_user(self, bot_context):
        service = MagicMock()
        service.check_in = AsyncMock(return_value=MagicMock(success=False))
        bot_context.bot_data["service"] = service
        update = _make_update()

        await cmd_safe(update, bot_context)

        assert "Couldn't save" in _reply(update)


class TestCmdStatus:
    @pytest.mark.asyncio
    async def test_open_window_shown(self, bot_context, schedule_db, clock):
        schedule_db.add_rule(8, 0, [1], grace_minutes=30, label="Morning")
        clock.current = MON_0800 + timedelta(minutes=5)
        await bot_context.bot_data["service"].run_evaluation()
        update = _make_update()

        await cmd_status(update, bot_context)

        text = _reply(update)
        assert "Check-in due now" in text
        assert "Morning — before 08:30" in text
        assert "Last check-in: Never" in text

    @pytest.mark.asyncio
    async def test_no_schedules(self, bot_context):
        update = _make_update()
        await cmd_status(update, bot_context)
        assert "no active schedules" in _reply(update)

    @pytest.mark.asyncio
    async def test_label_markdown_escaped(self, bot_context, schedule_db, clock):
        schedule_db.add_rule(8, 0, [1], grace_minutes=30, label="night_shift *late*")
        clock.current = MON_0800 + timedelta(minutes=5)
        await bot_context.bot_data["service"].run_evaluation()
        update = _make_update()

        await cmd_status(update, bot_context)

        text = _reply(update)
        assert "night\\_shift \\*late\\* — before 08:30" in text
        assert "night_shift" not in text


class TestCmdHistory:
    @pytest.mark.asyncio
    async def test_empty(self, bot_context):
        update = _make_update()
        await cmd_history(update, bot_context)
        assert _reply(update) == "No check-ins yet."

    @pytest.mark.asyncio
    async def test_lists_events_and_totals(self, bot_context, clock):
        clock.current = MON_0800
        await bot_context.bot_data["service"].check_in()
        update = _make_update()

        await cmd_history(update, bot_context)

        text = _reply(update)
        assert "Checked in: 1" in text
        assert "✓ Checked in — Mon 01 Jan, 08:00" in text


# ---------------------------------------------------------------------------
# Schedule commands
# ---------------------------------------------------------------------------


class TestScheduleCommands:
    @pytest.mark.asyncio
    async def test_addschedule(self, bot_context, schedule_db):
        bot_context.args = ["08:00", "weekdays", "15", "Morning"]
        update = _make_update()

        await cmd_addschedule(update, bot_context)

        assert "Added: 8:00 AM Weekdays" in _reply(update)
        rule = schedule_db.list_rules()[0]
        assert (rule.grace_minutes, rule.label) == (15, "Morning")

    @pytest.mark.asyncio
    async def test_addschedule_invalid(self, bot_context, schedule_db):
        bot_context.args = ["08:00", "someday"]
        update = _make_update()

        await cmd_addschedule(update, bot_context)

        assert "Unknown day" in _reply(update)
        assert schedule_db.list_rules() == []

    @pytest.mark.asyncio
    async def test_schedules_empty(self, bot_context):
        update = _make_update()
        await cmd_schedules(update, bot_context)
        assert "No schedules yet" in _reply(update)

    @pytest.mark.asyncio
    async def test_schedules_lists_rules(self, bot_context, schedule_db):
        schedule_db.add_rule(21, 0, list(range(7)), label="Evening")
        update = _make_update()

        await cmd_schedules(update, bot_context)

        text = _reply(update)
        assert "9:00 PM Every day [on]" in text
        assert "Evening" in text

    @pytest.mark.asyncio
    async def test_schedules_escapes_label(self, bot_context, schedule_db):
        schedule_db.add_rule(21, 0, list(range(7)), label="night_shift")
        update = _make_update()

        await cmd_schedules(update, bot_context)

        assert "night\\_shift" in _reply(update)
        assert update.message.reply_text.call_args.kwargs["parse_mode"] == "Markdown"

    @pytest.mark.asyncio
    async def test_addschedule_overlong_grace(self, bot_context, schedule_db):
        bot_context.args = ["08:00", "daily", "9999999999"]
        update = _make_update()

        await cmd_addschedule(update, bot_context)

        assert "too long" in _reply(update)
        assert schedule_db.list_rules() == []

    @pytest.mark.asyncio
    async def test_toggle(self, bot_context, schedule_db):
        rule = schedule_db.add_rule(8, 0, [1])
        bot_context.args = [str(rule.id)]
        update = _make_update()

        await cmd_toggleschedule(update, bot_context)

        assert "disabled" in _reply(update)
        assert schedule_db.get_rule(rule.id).enabled is False

    @pytest.mark.asyncio
    async def test_toggle_missing(self, bot_context):
        bot_context.args = ["42"]
        update = _make_update()
        await cmd_toggleschedule(update, bot_context)
        assert "not found" in _reply(update)

    @pytest.mark.asyncio
    async def test_toggle_needs_id(self, bot_context):
        bot_context.args = ["abc"]
        update = _make_update()
        await cmd_toggleschedule(update, bot_context)
        assert "Usage" in _reply(update)

    @pytest.mark.asyncio
    async def test_delete(self, bot_context, schedule_db):
        rule = schedule_db.add_rule(8, 0, [1])
        bot_context.args = [str(rule.id)]
        update = _make_update()

        await cmd_deleteschedule(update, bot_context)

        assert "deleted" in _reply(update)
        assert schedule_db.list_rules() == []

    @pytest.mark.asyncio
    async def test_delete_without_id_offers_buttons(self, bot_context, schedule_db):
        rule = schedule_db.add_rule(8, 0, [1], label="Morning")
        update = _make_update()

        await cmd_deleteschedule(update, bot_context)

        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        button = markup.inline_keyboard[0][0]
        assert button.callback_data == f"delschedule:{rule.id}"
        assert button.text == "8:00 AM Mon · Morning"
        assert len(schedule_db.list_rules()) == 1

    @pytest.mark.asyncio
    async def test_delete_button(self, bot_context, schedule_db):
        rule = schedule_db.add_rule(8, 0, [1])
        update = _make_callback(f"delschedule:{rule.id}")

        await _handle_deleteschedule_callback(update, bot_context)

        assert "Deleted: 8:00 AM Mon" in _edited(update)
        assert schedule_db.list_rules() == []

    @pytest.mark.asyncio
    async def test_delete_button_already_gone(self, bot_context):
        update = _make_callback("delschedule:42")
        await _handle_deleteschedule_callback(update, bot_context)
        assert "already deleted" in _edited(update)

    @pytest.mark.asyncio
    async def test_delete_button_from_stranger_ignored(self, bot_context, schedule_db):
        rule = schedule_db.add_rule(8, 0, [1])
        update = _make_callback(f"delschedule:{rule.id}", user_id=999)

        await _handle_deleteschedule_callback(update, bot_context)

        assert len(schedule_db.list_rules()) == 1


# ---------------------------------------------------------------------------
# Contact commands
# ---------------------------------------------------------------------------


class TestContactCommands:
    @pytest.mark.asyncio
    async def test_addcontact(self, bot_context, contact_db):
        bot_context.args = "Mom | +1555 | mom@example.com | Parent".split()
        update = _make_update()

        await cmd_addcontact(update, bot_context)

        assert "Added Mom (primary)" in _reply(update)
        assert contact_db.list_contacts()[0].relationship == "Parent"

    @pytest.mark.asyncio
    async def test_addcontact_without_name(self, bot_context, contact_db):
        bot_context.args = []
        update = _make_update()

        await cmd_addcontact(update, bot_context)

        assert "Usage" in _reply(update)
        assert contact_db.list_contacts() == []

    @pytest.mark.asyncio
    async def test_contacts_lists_primary_first(self, bot_context, contact_db):
        contact_db.add_contact("Mom")
        dad = contact_db.add_contact("Dad")
        contact_db.set_primary(dad.id)
        update = _make_update()

        await cmd_contacts(update, bot_context)

        lines = _reply(update).splitlines()
        assert "⭐ Dad" in lines[2]

    @pytest.mark.asyncio
    async def test_primary(self, bot_context, contact_db):
        contact_db.add_contact("Mom")
        dad = contact_db.add_contact("Dad")
        bot_context.args = [str(dad.id)]
        update = _make_update()

        await cmd_primary(update, bot_context)

        assert "primary contact" in _reply(update)
        assert contact_db.get_contact(dad.id).is_primary

    @pytest.mark.asyncio
    async def test_deletecontact_promotes(self, bot_context, contact_db):
        mom = contact_db.add_contact("Mom")
        dad = contact_db.add_contact("Dad")
        bot_context.args = [str(mom.id)]
        update = _make_update()

        await cmd_deletecontact(update, bot_context)

        assert "removed" in _reply(update)
        assert contact_db.get_contact(dad.id).is_primary

    @pytest.mark.asyncio
    async def test_deletecontact_without_id_offers_buttons(self, bot_context, contact_db):
        mom = contact_db.add_contact("Mom")
        update = _make_update()

        await cmd_deletecontact(update, bot_context)

        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        assert markup.inline_keyboard[0][0].callback_data == f"delcontact:{mom.id}"
        assert contact_db.get_contact(mom.id) is not None

    @pytest.mark.asyncio
    async def test_deletecontact_button(self, bot_context, contact_db):
        mom = contact_db.add_contact("Mom")
        dad = contact_db.add_contact("Dad")
        update = _make_callback(f"delcontact:{mom.id}")

        await _handle_deletecontact_callback(update, bot_context)

        assert "Mom removed" in _edited(update)
        assert contact_db.get_contact(dad.id).is_primary

    @pytest.mark.asyncio
    async def test_editcontact(self, bot_context, contact_db):
        mom = contact_db.add_contact("Mom", "+1555", "mom@example.com", "Parent")
        bot_context.args = [str(mom.id), *"Mother | +1666".split()]
        update = _make_update()

        await cmd_editcontact(update, bot_context)

        assert "Updated" in _reply(update)
        edited = contact_db.get_contact(mom.id)
        assert (edited.name, edited.phone) == ("Mother", "+1666")
        assert (edited.email, edited.relationship) == ("mom@example.com", "Parent")

    @pytest.mark.asyncio
    async def test_editcontact_missing(self, bot_context):
        bot_context.args = ["42", "Nobody"]
        update = _make_update()
        await cmd_editcontact(update, bot_context)
        assert "not found" in _reply(update)

    @pytest.mark.asyncio
    async def test_editcontact_needs_fields(self, bot_context, contact_db):
        mom = contact_db.add_contact("Mom")
        bot_context.args = [str(mom.id)]
        update = _make_update()

        await cmd_editcontact(update, bot_context)

        assert "Usage" in _reply(update)
        assert contact_db.get_contact(mom.id).name == "Mom"


# ---------------------------------------------------------------------------
# Data commands
# ---------------------------------------------------------------------------


class TestDataCommands:
    @pytest.mark.asyncio
    async def test_export_sends_json(self, bot_context, schedule_db):
        schedule_db.add_rule(8, 0, [1])
        update = _make_update()

        await cmd_export(update, bot_context)

        kwargs = update.message.reply_document.call_args.kwargs
        assert kwargs["filename"] == "solguard-export.json"
        assert b'"time": "08:00"' in kwargs["document"]

    @pytest.mark.asyncio
    async def test_reset_asks_with_buttons(self, bot_context, schedule_db):
        schedule_db.add_rule(8, 0, [1])
        update = _make_update()

        await cmd_reset(update, bot_context)

        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        data = [row[0].callback_data for row in markup.inline_keyboard]
        assert data == ["reset:confirm", "reset:abort"]
        assert len(schedule_db.list_rules()) == 1

    @pytest.mark.asyncio
    async def test_reset_confirm_button(self, bot_context, schedule_db, tmp_db_path):
        schedule_db.add_rule(8, 0, [1])
        update = _make_callback("reset:confirm")

        with patch("solguard.bot.telegram_bot.settings") as mock_settings:
            mock_settings.ALLOWED_USER_IDS = [12345]
            mock_settings.DATABASE_PATH = tmp_db_path
            await _handle_reset_callback(update, bot_context)

        assert "cleared" in _edited(update)
        assert schedule_db.list_rules() == []

    @pytest.mark.asyncio
    async def test_reset_abort_button(self, bot_context, schedule_db):
        schedule_db.add_rule(8, 0, [1])
        update = _make_callback("reset:abort")

        await _handle_reset_callback(update, bot_context)

        assert "aborted" in _edited(update)
        assert len(schedule_db.list_rules()) == 1

    @pytest.mark.asyncio
    async def test_reset_button_from_stranger_ignored(self, bot_context, schedule_db):
        schedule_db.add_rule(8, 0, [1])
        update = _make_callback("reset:confirm", user_id=999)

        await _handle_reset_callback(update, bot_context)

        update.callback_query.edit_message_text.assert_not_called()
        assert len(schedule_db.list_rules()) == 1


def _export_bytes(schedule_db, contact_db, ledger_db):
    from solguard.data.records import build_snapshot

    return build_snapshot(schedule_db, contact_db, ledger_db, MON_0800).model_dump_json().encode()


def _document_update(bot_context, payload):
    update = _make_update()
    update.message.document.file_id = "file-1"
    tg_file = MagicMock()
    tg_file.download_as_bytearray = AsyncMock(return_value=bytearray(payload))
    bot_context.bot.get_file = AsyncMock(return_value=tg_file)
    return update


class TestImport:
    @pytest.mark.asyncio
    async def test_import_restores_after_command(
        self, bot_context, schedule_db, contact_db, ledger_db, tmp_path,
    ):
        from solguard.data.db import ContactDB, ScheduleDB

        source = str(tmp_path / "source.db")
        old_schedules, old_contacts = ScheduleDB(db_path=source), ContactDB(db_path=source)
        old_schedules.add_rule(7, 30, [1, 3], label="Meds")
        old_contacts.add_contact("Mom", "+1555")
        payload = _export_bytes(old_schedules, old_contacts, ledger_db)

        await cmd_import(_make_update(), bot_context)
        update = _document_update(bot_context, payload)
        await handle_import_document(update, bot_context)

        assert "Imported 1 schedule(s) and 1 contact(s)" in _reply(update)
        assert [r.label for r in schedule_db.list_rules()] == ["Meds"]
        assert [c.name for c in contact_db.list_contacts()] == ["Mom"]
        bot_context.bot.get_file.assert_awaited_once_with("file-1")

    @pytest.mark.asyncio
    async def test_document_without_import_command_ignored(self, bot_context, schedule_db):
        update = _document_update(bot_context, b"{}")

        await handle_import_document(update, bot_context)

        assert "send /import first" in _reply(update)
        bot_context.bot.get_file.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_file_rejected(self, bot_context, schedule_db):
        await cmd_import(_make_update(), bot_context)
        update = _document_update(bot_context, b"not json")

        await handle_import_document(update, bot_context)

        assert "isn't a valid SolGuard export" in _reply(update)
        assert schedule_db.list_rules() == []

    @pytest.mark.asyncio
    async def test_bad_rule_imports_nothing(self, bot_context, schedule_db, contact_db):
        payload = (
            b'{"exported_at": "2024-01-01T08:00:00+00:00",'
            b' "schedules": [{"id": 1, "time": "08:00", "days_of_week": [1],'
            b' "grace_minutes": 99999}],'
            b' "contacts": [{"id": 1, "name": "Mom"}]}'
        )
        await cmd_import(_make_update(), bot_context)
        update = _document_update(bot_context, payload)

        await handle_import_document(update, bot_context)

        assert "Nothing was imported" in _reply(update)
        assert schedule_db.list_rules() == []
        assert contact_db.list_contacts() == []

# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


class TestBuildApp:
    def test_wires_service_and_seeds_defaults(self, tmp_db_path):
        from solguard.bot.telegram_bot import build_app
        from solguard.config import settings
        from solguard.data.db import SchedulerStateDB

        with patch.object(settings, "DATABASE_PATH", tmp_db_path):
            app = build_app(notifier=MagicMock())

        assert isinstance(app.bot_data["service"], CheckInService)
        labels = [r.label for r in app.bot_data["schedules"].list_rules()]
        assert labels == ["Morning Check-In", "Evening Check-In"]
        # Seeding notified the scheduler, which created cursors
        assert len(SchedulerStateDB(db_path=tmp_db_path).load().cursors) == 2

    def test_safe_button_text_routes_to_check_in(self, tmp_db_path):
        from telegram.ext import MessageHandler

        from solguard.bot.telegram_bot import build_app
        from solguard.config import settings

        with patch.object(settings, "DATABASE_PATH", tmp_db_path):
            app = build_app(notifier=MagicMock())

        callbacks = [
            h.callback for h in app.handlers[0] if isinstance(h, MessageHandler)
        ]
        assert cmd_safe in callbacks

    def test_warns_when_alerts_have_no_destination(self, tmp_db_path, caplog):
        from solguard.bot.telegram_bot import build_app
        from solguard.config import settings

        with patch.object(settings, "DATABASE_PATH", tmp_db_path), \
                patch.object(settings, "ALERT_PROVIDER", "telegram"), \
                patch.object(settings, "ALERT_CHAT_IDS", []), \
                caplog.at_level(logging.WARNING, logger="solguard.bot.telegram_bot"):
            build_app(notifier=MagicMock())

        assert "ALERT_CHAT_IDS is empty" in caplog.text

    def test_no_warning_when_alert_chats_configured(self, tmp_db_path, caplog):
        from solguard.bot.telegram_bot import build_app
        from solguard.config import settings

        with patch.object(settings, "DATABASE_PATH", tmp_db_path), \
                patch.object(settings, "ALERT_PROVIDER", "telegram"), \
                patch.object(settings, "ALERT_CHAT_IDS", [-100]), \
                caplog.at_level(logging.WARNING, logger="solguard.bot.telegram_bot"):
            build_app(notifier=MagicMock())

        assert "ALERT_CHAT_IDS is empty" not in caplog.text
