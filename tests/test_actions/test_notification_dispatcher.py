"""
Tests for Notification Dispatcher
Tests channel fallback, retries, stale intents and delivery metrics
"""

import asyncio
import json

import httpx
import pytest
from datetime import datetime, timedelta

from config import engine_config
from exceptions import DeliveryFailure
from models import (
    AlarmRecurrence, DeliveryStatus, DoseStatus, NotificationAttempt, NotificationChannel, PushSubscription
)
from actions.notification_dispatcher import NotificationDispatcher
from actions.reminder_scheduler import reminder_scheduler
from services.dose_ledger_service import dose_ledger_service
from tools.channel_senders import (
    ChannelSender, DeliveryResult, NotificationRequest, PushGatewaySender
)


NOW = datetime(2026, 3, 11, 12, 0)


class FakeSender(ChannelSender):
    """Sender that fails a set number of times before succeeding"""

    def __init__(self, channel, failures=0, retryable=True, status=DeliveryStatus.SENT, hang=False):
        self.channel = channel
        self.failures = failures
        self.retryable = retryable
        self.status = status
        self.hang = hang
        self.calls = 0

    async def send(self, request: NotificationRequest) -> DeliveryResult:
        self.calls += 1
        if self.hang:
            await asyncio.sleep(1)
        if self.calls <= self.failures:
            raise DeliveryFailure("gateway down", channel=self.channel.value, retryable=self.retryable)
        return DeliveryResult(channel=self.channel, status=self.status)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_dispatcher(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    def _make(**senders):
        return NotificationDispatcher(
            senders={NotificationChannel(name): sender for name, sender in senders.items()},
            clock=lambda: NOW,
            sleep=fake_sleep
        )

    return _make


@pytest.fixture
def make_intent(db_session, test_user):
    def _make(dose=None, scheduled_at=NOW, key="intent-1"):
        metadata = {"offset_minutes": 0}
        if dose is not None:
            metadata["due_at"] = dose.due_at.isoformat()
        intent = NotificationAttempt(
            user_id=test_user.id,
            intent_key=key,
            dose_id=dose.id if dose else None,
            channel=NotificationChannel.PUSH,
            delivery_status=DeliveryStatus.SCHEDULED,
            category="dose_reminder",
            title="Time for Metformin",
            body="Time to take Metformin (500mg).",
            scheduled_at=scheduled_at,
            attempt_metadata=metadata
        )
        db_session.add(intent)
        db_session.commit()
        db_session.refresh(intent)
        return intent

    return _make


@pytest.fixture
def push_subscription(db_session, test_user):
    sub = PushSubscription(user_id=test_user.id, endpoint="https://push.example/abc", is_active=True)
    db_session.add(sub)
    db_session.commit()
    return sub


def attempts_for(db_session, intent):
    return db_session.query(NotificationAttempt).filter(
        NotificationAttempt.intent_id == intent.id
    ).order_by(NotificationAttempt.id).all()


# =============================================================================
# Fallback and retries
# =============================================================================

class TestDispatch:
    """Tests for delivering a single intent"""

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_no_push_subscription_falls_back_to_local(self, db_session, make_dispatcher, make_intent):
        push = FakeSender(NotificationChannel.PUSH)
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(push=push, local=local)
        intent = make_intent()

        outcome = await dispatcher.dispatch(intent, db_session)

        assert outcome.delivered is True
        assert outcome.channel == NotificationChannel.LOCAL
        assert outcome.status == DeliveryStatus.FALLBACK
        assert push.calls == 0

        attempts = attempts_for(db_session, intent)
        assert [(a.channel, a.delivery_status) for a in attempts] == [
            (NotificationChannel.PUSH, DeliveryStatus.FAILED),
            (NotificationChannel.LOCAL, DeliveryStatus.FALLBACK),
        ]

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_push_success(self, db_session, make_dispatcher, make_intent, push_subscription):
        push = FakeSender(NotificationChannel.PUSH, status=DeliveryStatus.DELIVERED)
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(push=push, local=local)
        intent = make_intent()

        outcome = await dispatcher.dispatch(intent, db_session)

        assert outcome.status == DeliveryStatus.DELIVERED
        assert local.calls == 0
        assert len(attempts_for(db_session, intent)) == 1

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_retries_with_backoff_then_falls_back(
        self, db_session, sleeps, make_dispatcher, make_intent, push_subscription
    ):
        push = FakeSender(NotificationChannel.PUSH, failures=10)
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(push=push, local=local)
        intent = make_intent()

        outcome = await dispatcher.dispatch(intent, db_session)

        assert push.calls == engine_config.DELIVERY_MAX_RETRIES + 1
        assert sleeps == [1.0, 2.0, 4.0]
        assert outcome.channel == NotificationChannel.LOCAL
        failed = attempts_for(db_session, intent)[0]
        assert failed.delivery_status == DeliveryStatus.FAILED
        assert failed.retry_count == engine_config.DELIVERY_MAX_RETRIES
        assert failed.error_message == "gateway down"

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_success_after_retry_on_first_channel(
        self, db_session, sleeps, make_dispatcher, make_intent, push_subscription
    ):
        push = FakeSender(NotificationChannel.PUSH, failures=1, status=DeliveryStatus.DELIVERED)
        dispatcher = make_dispatcher(push=push)
        intent = make_intent()

        outcome = await dispatcher.dispatch(intent, db_session)

        assert outcome.status == DeliveryStatus.DELIVERED
        assert attempts_for(db_session, intent)[0].retry_count == 1
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_non_retryable_failure_moves_on(
        self, db_session, make_dispatcher, make_intent, push_subscription
    ):
        push = FakeSender(NotificationChannel.PUSH, failures=10, retryable=False)
        web = FakeSender(NotificationChannel.WEB)
        dispatcher = make_dispatcher(push=push, web=web)
        intent = make_intent()

        outcome = await dispatcher.dispatch(intent, db_session)

        assert push.calls == 1
        assert outcome.channel == NotificationChannel.WEB

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_timeouts_count_as_failures(
        self, db_session, monkeypatch, make_dispatcher, make_intent, push_subscription
    ):
        monkeypatch.setattr(engine_config, "DELIVERY_TIMEOUT_SECONDS", 0.01)
        push = FakeSender(NotificationChannel.PUSH, hang=True)
        sound = FakeSender(NotificationChannel.SOUND)
        dispatcher = make_dispatcher(push=push, sound=sound)
        intent = make_intent()

        outcome = await dispatcher.dispatch(intent, db_session)

        assert outcome.channel == NotificationChannel.SOUND
        assert "Timed out" in attempts_for(db_session, intent)[0].error_message

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_all_channels_fail(self, db_session, make_dispatcher, make_intent):
        local = FakeSender(NotificationChannel.LOCAL, failures=10, retryable=False)
        dispatcher = make_dispatcher(local=local)
        intent = make_intent()

        outcome = await dispatcher.dispatch(intent, db_session)

        assert outcome.delivered is False
        assert outcome.reason == "all channels failed"


class TestStaleIntents:
    """Tests for intents that no longer apply"""

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_taken_dose_is_not_reminded(
        self, db_session, fixed_now, make_dispatcher, make_intent, make_dose, test_item
    ):
        dose = make_dose(test_item, NOW - timedelta(minutes=5))
        intent = make_intent(dose=dose)
        await dose_ledger_service.record_taken(dose.id, db_session)
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(local=local)

        outcome = await dispatcher.dispatch(intent, db_session)

        assert outcome.skipped is True
        assert local.calls == 0
        assert attempts_for(db_session, intent) == []

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_intent_claimed_only_once(self, db_session, make_dispatcher, make_intent):
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(local=local)
        intent = make_intent()

        await dispatcher.dispatch(intent, db_session)
        again = await dispatcher.dispatch(intent, db_session)

        assert again.skipped is True
        assert again.reason == "already dispatched"
        assert local.calls == 1


class TestProcessDueIntents:
    """Tests for the batch run"""

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_only_due_intents_dispatched(self, db_session, make_dispatcher, make_intent):
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(local=local)
        due = make_intent(key="due")
        make_intent(scheduled_at=NOW + timedelta(minutes=5), key="later")

        outcomes = await dispatcher.process_due_intents(db_session)

        assert [o.intent_id for o in outcomes] == [due.id]
        assert await dispatcher.process_due_intents(db_session) == []

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_metrics(self, db_session, make_dispatcher, make_intent, test_user):
        dispatcher = make_dispatcher(
            push=FakeSender(NotificationChannel.PUSH),
            local=FakeSender(NotificationChannel.LOCAL)
        )
        make_intent(key="a")
        make_intent(scheduled_at=NOW + timedelta(hours=1), key="b")
        await dispatcher.process_due_intents(db_session)

        metrics = await dispatcher.get_metrics(db_session, user_id=test_user.id)

        assert metrics["total"] == 2
        assert metrics["delivered"] == 1
        assert metrics["failed"] == 1
        assert metrics["fallback"] == 1
        assert metrics["success_rate"] == 0.5
        assert metrics["by_channel"]["push"] == {"total": 1, "successful": 0, "failed": 1}
        assert metrics["pending_intents"] == 1


class TestAlarmIntents:
    """Tests for alarm intents at fire time"""

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_one_time_alarm_disabled_once_fired(self, db_session, fixed_now, make_dispatcher, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Call pharmacy", NOW + timedelta(hours=10), db_session
        )
        await reminder_scheduler.generate_reminder_intents(db_session)
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(local=local)
        dispatcher.clock = lambda: NOW + timedelta(hours=10)

        outcomes = await dispatcher.process_due_intents(db_session)

        assert [o.delivered for o in outcomes] == [True]
        db_session.refresh(alarm)
        assert alarm.enabled is False
        assert alarm.last_triggered == NOW + timedelta(hours=10)

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_recurring_alarm_advances_once_fired(self, db_session, fixed_now, make_dispatcher, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Stretch", NOW + timedelta(hours=1), db_session,
            recurrence=AlarmRecurrence.DAILY
        )
        await reminder_scheduler.generate_reminder_intents(db_session)
        dispatcher = make_dispatcher(local=FakeSender(NotificationChannel.LOCAL))
        dispatcher.clock = lambda: NOW + timedelta(hours=1)

        await dispatcher.process_due_intents(db_session)

        db_session.refresh(alarm)
        assert alarm.enabled is True
        assert alarm.last_triggered == NOW + timedelta(hours=1)
        assert alarm.scheduled_at == NOW + timedelta(hours=25)

    @pytest.mark.asyncio
    @pytest.mark.database
    async def test_disabled_alarm_does_not_fire(self, db_session, fixed_now, make_dispatcher, test_user):
        alarm = await reminder_scheduler.create_alarm(
            test_user.id, "Daily", NOW + timedelta(hours=1), db_session,
            recurrence=AlarmRecurrence.DAILY
        )
        await reminder_scheduler.generate_reminder_intents(db_session)
        alarm.enabled = False
        db_session.commit()
        local = FakeSender(NotificationChannel.LOCAL)
        dispatcher = make_dispatcher(local=local)
        dispatcher.clock = lambda: NOW + timedelta(hours=2)

        outcomes = await dispatcher.process_due_intents(db_session)

        assert [(o.skipped, o.reason) for o in outcomes] == [(True, "alarm disabled")]
        assert local.calls == 0


# =============================================================================
# Push gateway sender
# =============================================================================

class TestPushGatewaySender:
    """Tests for the HTTP push backend"""

    @staticmethod
    def _request():
        return NotificationRequest(
            user_id=1,
            title="Time for Metformin",
            body="Time to take Metformin.",
            push_endpoints=["https://push.example/abc"]
        )

    @pytest.mark.asyncio
    async def test_delivers_through_gateway(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "msg-1"})

        sender = PushGatewaySender(
            gateway_url="https://gateway.example/send",
            token="secret",
            transport=httpx.MockTransport(handler)
        )

        result = await sender.send(self._request())

        assert result.status == DeliveryStatus.DELIVERED
        assert result.message_id == "msg-1"
        assert seen["auth"] == "Bearer secret"
        assert seen["payload"]["endpoints"] == ["https://push.example/abc"]
        assert seen["payload"]["notification"]["title"] == "Time for Metformin"

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        sender = PushGatewaySender(
            gateway_url="https://gateway.example/send",
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        with pytest.raises(DeliveryFailure) as exc_info:
            await sender.send(self._request())
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_rejected_subscription_is_final(self):
        sender = PushGatewaySender(
            gateway_url="https://gateway.example/send",
            transport=httpx.MockTransport(lambda request: httpx.Response(410))
        )
        with pytest.raises(DeliveryFailure) as exc_info:
            await sender.send(self._request())
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self):
        sender = PushGatewaySender(gateway_url="")
        with pytest.raises(DeliveryFailure) as exc_info:
            await sender.send(self._request())
        assert exc_info.value.retryable is False
