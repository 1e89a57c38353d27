"""
Tests for Reminder Scheduler
Tests reminder intent generation and alarm recurrence
"""

import pytest
from datetime import datetime, timedelta

from exceptions import InvalidTransition
from models import Alarm, AlarmRecurrence, DeliveryStatus, NotificationAttempt
from actions.reminder_scheduler import add_months, next_occurrence, reminder_scheduler
from services.dose_ledger_service import dose_ledger_service


# =============================================================================
# Recurrence
# =============================================================================

class TestNextOccurrence:
    """Tests for alarm recurrence"""

    @pytest.mark.unit
    def test_weekly_skips_past_occurrences(self):
        start = datetime(2026, 3, 1, 9, 0)
        assert next_occurrence(start, AlarmRecurrence.WEEKLY, start + timedelta(days=10)) == datetime(2026, 3, 15, 9, 0)

    @pytest.mark.unit
    def test_daily_is_strictly_after_now(self):
        start = datetime(2026, 3, 1, 9, 0)
        assert next_occurrence(start, AlarmRecurrence.DAILY, datetime(2026, 3, 3, 9, 0)) == datetime(2026, 3, 4, 9, 0)

    @pytest.mark.unit
    def test_monthly_clamps_to_short_month(self):
        start = datetime(2026, 1, 31, 9, 0)
        assert next_occurrence(start, AlarmRecurrence.MONTHLY, datetime(2026, 2, 1)) == datetime(2026, 2, 28, 9, 0)
        assert next_occurrence(start, AlarmRecurrence.MONTHLY, datetime(2026, 3, 1)) == datetime(2026, 3, 31, 9, 0)

    @pytest.mark.unit
    def test_once_has_no_next(self):
        assert next_occurrence(datetime(2026, 3, 1), AlarmRecurrence.ONCE, datetime(2026, 3, 2)) is None

    @pytest.mark.unit
    def test_add_months_across_year(self):
        assert add_months(datetime(2026, 12, 15), 2) == datetime(2027, 2, 15)


# =============================================================================
# Dose intents
# =============================================================================

class TestDoseIntents:
    """Tests for dose reminder intents"""

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_offsets_in_the_past_are_skipped(self, db_session, fixed_now, test_item, make_dose):
        dose = make_dose(test_item, fixed_now + timedelta(minutes=10))

        summary = await reminder_scheduler.generate_reminder_intents(db_session)

        assert summary.dose_intents == 2
        intents = db_session.query(NotificationAttempt).order_by(NotificationAttempt.scheduled_at).all()
        assert [i.attempt_metadata["offset_minutes"] for i in intents] == [5, 0]
        assert [i.scheduled_at for i in intents] == [
            fixed_now + timedelta(minutes=5),
            fixed_now + timedelta(minutes=10),
        ]
        assert all(i.dose_id == dose.id for i in intents)
        assert all(i.delivery_status == DeliveryStatus.SCHEDULED for i in intents)

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_generation_is_idempotent(self, db_session, fixed_now, test_item, make_dose):
        make_dose(test_item, fixed_now + timedelta(hours=2))

        first = await reminder_scheduler.generate_reminder_intents(db_session)
        second = await reminder_scheduler.generate_reminder_intents(db_session)

        assert first.dose_intents == 3
        assert second.dose_intents == 0
        assert second.skipped_duplicates == 3
        assert db_session.query(NotificationAttempt).count() == 3

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_beyond_horizon_not_generated(self, db_session, fixed_now, test_item, make_dose):
        make_dose(test_item, fixed_now + timedelta(hours=30))

        summary = await reminder_scheduler.generate_reminder_intents(db_session, horizon_hours=24)

        assert summary.dose_intents == 0

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_snoozed_dose_gets_fresh_intents(self, db_session, fixed_now, test_item, make_dose):
        dose = make_dose(test_item, fixed_now + timedelta(minutes=10))
        await reminder_scheduler.generate_reminder_intents(db_session)

        await dose_ledger_service.snooze_dose(dose.id, db_session)
        summary = await reminder_scheduler.generate_reminder_intents(db_session)

        assert summary.dose_intents == 3


# =============================================================================
# Alarm intents
# =============================================================================

class TestAlarmIntents:
    """Tests for alarm intents and advancement"""

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_overdue_weekly_alarm_fires_once(self, db_session, fixed_now, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Check blood pressure", fixed_now - timedelta(days=10), db_session,
            recurrence=AlarmRecurrence.WEEKLY
        )

        summary = await reminder_scheduler.generate_reminder_intents(db_session)

        assert summary.alarm_intents == 1
        intent = db_session.query(NotificationAttempt).one()
        assert intent.alarm_id == alarm.id
        assert intent.scheduled_at == fixed_now
        assert intent.attempt_metadata["alarm_scheduled_at"] == (fixed_now - timedelta(days=10)).isoformat()

        again = await reminder_scheduler.generate_reminder_intents(db_session)
        assert again.alarm_intents == 0
        assert again.skipped_duplicates == 1

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_daily_alarm_fills_horizon(self, db_session, fixed_now, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Stretch", fixed_now + timedelta(hours=1), db_session,
            recurrence=AlarmRecurrence.DAILY
        )

        summary = await reminder_scheduler.generate_reminder_intents(db_session, horizon_hours=48)

        assert summary.alarm_intents == 2
        db_session.refresh(alarm)
        assert alarm.scheduled_at == fixed_now + timedelta(hours=1)

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_one_time_alarm_stays_enabled_until_fired(self, db_session, fixed_now, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Call pharmacy", fixed_now + timedelta(hours=10), db_session
        )

        summary = await reminder_scheduler.generate_reminder_intents(db_session)

        assert summary.alarm_intents == 1
        db_session.refresh(alarm)
        assert alarm.enabled is True
        assert alarm.last_triggered is None
        assert alarm.scheduled_at == fixed_now + timedelta(hours=10)

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_monthly_alarm_keeps_its_day(self, db_session, fixed_now, test_user, monkeypatch):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Order refills", datetime(2026, 1, 31, 9, 0), db_session,
            recurrence=AlarmRecurrence.MONTHLY
        )

        monkeypatch.setattr(reminder_scheduler, "clock", lambda: datetime(2026, 2, 1))
        february = await reminder_scheduler.advance_alarm(alarm.id, db_session)
        assert february.scheduled_at == datetime(2026, 2, 28, 9, 0)

        monkeypatch.setattr(reminder_scheduler, "clock", lambda: datetime(2026, 3, 1))
        march = await reminder_scheduler.advance_alarm(alarm.id, db_session)
        assert march.scheduled_at == datetime(2026, 3, 31, 9, 0)
        assert march.last_triggered == datetime(2026, 2, 28, 9, 0)

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_advance_completed_alarm(self, db_session, fixed_now, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Call pharmacy", fixed_now - timedelta(hours=1), db_session
        )
        advanced = await reminder_scheduler.advance_alarm(alarm.id, db_session)
        assert advanced.enabled is False

        with pytest.raises(InvalidTransition):
            await reminder_scheduler.advance_alarm(alarm.id, db_session)

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_disable_drops_pending_intents(self, db_session, fixed_now, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Daily", fixed_now + timedelta(hours=1), db_session,
            recurrence=AlarmRecurrence.DAILY
        )
        await reminder_scheduler.generate_reminder_intents(db_session)
        assert db_session.query(NotificationAttempt).count() == 1

        await reminder_scheduler.disable_alarm(alarm.id, db_session)

        assert db_session.query(NotificationAttempt).count() == 0

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_disabled_alarm_generates_nothing(self, db_session, fixed_now, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Stretch", fixed_now + timedelta(hours=1), db_session,
            recurrence=AlarmRecurrence.DAILY
        )
        await reminder_scheduler.disable_alarm(alarm.id, db_session)

        summary = await reminder_scheduler.generate_reminder_intents(db_session)

        assert summary.alarm_intents == 0
        assert db_session.query(Alarm).filter(Alarm.enabled == True).count() == 0  # noqa: E712
