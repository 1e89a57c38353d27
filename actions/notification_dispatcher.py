"""
Notification Dispatcher
Delivers due reminder intents across channels with retry and fallback
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Any, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from collections import defaultdict
from sqlalchemy.orm import Session
from sqlalchemy import and_, update

from config import engine_config
from exceptions import DeliveryFailure
import models
from models import DeliveryStatus, DoseStatus, NotificationChannel
from actions.reminder_scheduler import reminder_scheduler
from services.time_utils import Clock, utcnow
from tools.channel_senders import ChannelSender, DeliveryResult, NotificationRequest, default_senders


logger = logging.getLogger(__name__)


SUCCESS_STATUSES = (DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.FALLBACK)


@dataclass
class DispatchOutcome:
    """What happened to one intent"""
    intent_id: int
    delivered: bool = False
    skipped: bool = False
    channel: Optional[NotificationChannel] = None
    status: Optional[DeliveryStatus] = None
    attempt_ids: List[int] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "delivered": self.delivered,
            "skipped": self.skipped,
            "channel": self.channel.value if self.channel else None,
            "status": self.status.value if self.status else None,
            "attempt_ids": self.attempt_ids,
            "reason": self.reason,
        }


class NotificationDispatcher:
    """
    Sends intents through the channel priority list.

    Each channel is retried with doubling backoff before the next one is
    tried. Every try that reaches a verdict is appended to the attempt log;
    a success after an earlier channel failed is recorded as fallback.
    """

    def __init__(
        self,
        senders: Optional[Dict[NotificationChannel, ChannelSender]] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.senders = senders if senders is not None else default_senders()
        self.clock = clock or utcnow
        self.sleep = sleep
        self.channel_priority = [NotificationChannel(c) for c in engine_config.CHANNEL_PRIORITY]

    # ==================== DELIVERY ====================

    async def _send_with_retry(
        self,
        sender: ChannelSender,
        request: NotificationRequest
    ) -> Tuple[Optional[DeliveryResult], int, Optional[str]]:
        """Returns (result or None, retries used, last error)"""
        max_tries = engine_config.DELIVERY_MAX_RETRIES + 1
        error = None

        for attempt in range(max_tries):
            try:
                result = await asyncio.wait_for(
                    sender.send(request),
                    timeout=engine_config.DELIVERY_TIMEOUT_SECONDS
                )
                return result, attempt, None
            except DeliveryFailure as e:
                error = e.message
                if not e.retryable:
                    return None, attempt, error
            except asyncio.TimeoutError:
                error = f"Timed out after {engine_config.DELIVERY_TIMEOUT_SECONDS}s"

            if attempt < max_tries - 1:
                delay = engine_config.DELIVERY_BACKOFF_SECONDS * (2 ** attempt)
                logger.warning(
                    f"{sender.channel.value} send failed ({error}); retry {attempt + 1} in {delay}s"
                )
                await self.sleep(delay)

        return None, max_tries - 1, error

    def _record_attempt(
        self,
        intent: models.NotificationAttempt,
        channel: NotificationChannel,
        status: DeliveryStatus,
        db: Session,
        retry_count: int = 0,
        error: Optional[str] = None
    ) -> models.NotificationAttempt:
        attempt = models.NotificationAttempt(
            user_id=intent.user_id,
            intent_id=intent.id,
            dose_id=intent.dose_id,
            alarm_id=intent.alarm_id,
            channel=channel,
            delivery_status=status,
            category=intent.category,
            title=intent.title,
            body=intent.body,
            scheduled_at=intent.scheduled_at,
            attempted_at=self.clock(),
            retry_count=retry_count,
            error_message=error,
            attempt_metadata=dict(intent.attempt_metadata or {})
        )
        db.add(attempt)
        db.flush()
        return attempt

    def _stale_reason(self, intent: models.NotificationAttempt, now: datetime, db: Session) -> Optional[str]:
        """Why an intent should no longer fire, if it should not"""
        if intent.alarm_id is not None:
            alarm = db.query(models.Alarm).filter(models.Alarm.id == intent.alarm_id).first()
            if alarm is None:
                return "alarm removed"
            if not alarm.enabled:
                return "alarm disabled"
            return None
        if intent.dose_id is None:
            return None
        dose = db.query(models.DoseInstance).filter(models.DoseInstance.id == intent.dose_id).first()
        if dose is None:
            return "dose removed"
        status = dose.status_at(now)
        if status != DoseStatus.SCHEDULED:
            return f"dose already {status.value}"
        due_at = (intent.attempt_metadata or {}).get("due_at")
        if due_at and due_at != dose.due_at.isoformat():
            return "dose was rescheduled"
        return None

    def _claim(self, intent: models.NotificationAttempt, now: datetime, db: Session) -> bool:
        """Mark the intent dispatched; only one concurrent dispatcher wins"""
        result = db.execute(
            update(models.NotificationAttempt)
            .where(
                and_(
                    models.NotificationAttempt.id == intent.id,
                    models.NotificationAttempt.dispatched_at.is_(None)
                )
            )
            .values(dispatched_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def _fire_alarm(self, intent: models.NotificationAttempt, now: datetime, db: Session) -> None:
        """The occurrence has been triggered whatever the channels said; move the alarm on"""
        alarm = db.query(models.Alarm).filter(models.Alarm.id == intent.alarm_id).first()
        occurrence = (intent.attempt_metadata or {}).get("alarm_scheduled_at")
        if alarm is None or occurrence is None:
            return
        reminder_scheduler.mark_alarm_fired(alarm, datetime.fromisoformat(occurrence), now)

    async def dispatch(self, intent: models.NotificationAttempt, db: Session) -> DispatchOutcome:
        """
        Deliver one intent.

        Delivery failures never escape: the outcome reports them and the
        attempt log records every channel verdict.
        """
        now = self.clock()
        outcome = DispatchOutcome(intent_id=intent.id)

        if intent.delivery_status != DeliveryStatus.SCHEDULED or intent.intent_id is not None:
            outcome.skipped = True
            outcome.reason = "not an intent"
            return outcome

        stale = self._stale_reason(intent, now, db)
        if not self._claim(intent, now, db):
            outcome.skipped = True
            outcome.reason = "already dispatched"
            return outcome
        if stale:
            logger.info(f"Skipping intent {intent.id}: {stale}")
            outcome.skipped = True
            outcome.reason = stale
            return outcome

        endpoints = [
            sub.endpoint for sub in db.query(models.PushSubscription).filter(
                and_(
                    models.PushSubscription.user_id == intent.user_id,
                    models.PushSubscription.is_active == True  # noqa: E712
                )
            )
        ]
        request = NotificationRequest(
            user_id=intent.user_id,
            title=intent.title or "",
            body=intent.body or "",
            category=intent.category or "dose_reminder",
            data=dict(intent.attempt_metadata or {}),
            push_endpoints=endpoints
        )

        had_failure = False
        for channel in self.channel_priority:
            sender = self.senders.get(channel)
            if sender is None:
                continue

            if channel == NotificationChannel.PUSH and not endpoints:
                attempt = self._record_attempt(
                    intent, channel, DeliveryStatus.FAILED, db,
                    error="No active push subscription"
                )
                outcome.attempt_ids.append(attempt.id)
                had_failure = True
                continue

            result, retries, error = await self._send_with_retry(sender, request)
            if result is None:
                attempt = self._record_attempt(
                    intent, channel, DeliveryStatus.FAILED, db,
                    retry_count=retries, error=error
                )
                outcome.attempt_ids.append(attempt.id)
                had_failure = True
                continue

            status = DeliveryStatus.FALLBACK if had_failure else result.status
            attempt = self._record_attempt(intent, channel, status, db, retry_count=retries)
            outcome.attempt_ids.append(attempt.id)
            outcome.delivered = True
            outcome.channel = channel
            outcome.status = status
            break

        if intent.alarm_id is not None:
            self._fire_alarm(intent, now, db)

        db.commit()
        if outcome.delivered:
            logger.info(f"Intent {intent.id} delivered via {outcome.channel.value} ({outcome.status.value})")
        else:
            outcome.reason = "all channels failed"
            logger.warning(f"Intent {intent.id} could not be delivered on any channel")
        return outcome

    async def process_due_intents(
        self,
        db: Session,
        user_id: Optional[int] = None,
        limit: int = 200
    ) -> List[DispatchOutcome]:
        """Dispatch every undispatched intent whose fire time has come"""
        now = self.clock()
        query = db.query(models.NotificationAttempt).filter(
            and_(
                models.NotificationAttempt.delivery_status == DeliveryStatus.SCHEDULED,
                models.NotificationAttempt.intent_id.is_(None),
                models.NotificationAttempt.dispatched_at.is_(None),
                models.NotificationAttempt.scheduled_at <= now
            )
        )
        if user_id is not None:
            query = query.filter(models.NotificationAttempt.user_id == user_id)
        intents = query.order_by(models.NotificationAttempt.scheduled_at).limit(limit).all()

        if not intents:
            return []

        results = await asyncio.gather(
            *(self.dispatch(intent, db) for intent in intents),
            return_exceptions=True
        )

        outcomes = []
        for intent, result in zip(intents, results):
            if isinstance(result, Exception):
                logger.error(f"Dispatch of intent {intent.id} crashed: {result}", exc_info=result)
                outcomes.append(DispatchOutcome(intent_id=intent.id, reason=str(result)))
            else:
                outcomes.append(result)

        delivered = sum(1 for o in outcomes if o.delivered)
        logger.info(f"Dispatched {len(outcomes)} intents, {delivered} delivered")
        return outcomes

    # ==================== METRICS ====================

    async def get_metrics(
        self,
        db: Session,
        user_id: Optional[int] = None,
        days: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Aggregate delivery attempts (intents excluded).

        Returns:
            Totals, counts by status and channel, fallback count and the
            share of attempts that reached the user
        """
        query = db.query(models.NotificationAttempt).filter(
            models.NotificationAttempt.delivery_status != DeliveryStatus.SCHEDULED
        )
        if user_id is not None:
            query = query.filter(models.NotificationAttempt.user_id == user_id)
        if days is not None:
            since = self.clock() - timedelta(days=days)
            query = query.filter(models.NotificationAttempt.attempted_at >= since)

        attempts = query.all()
        by_status = defaultdict(int)
        by_channel: Dict[str, Dict[str, int]] = defaultdict(lambda: {"total": 0, "successful": 0, "failed": 0})

        for attempt in attempts:
            by_status[attempt.delivery_status.value] += 1
            channel_stats = by_channel[attempt.channel.value]
            channel_stats["total"] += 1
            if attempt.delivery_status in SUCCESS_STATUSES:
                channel_stats["successful"] += 1
            elif attempt.delivery_status == DeliveryStatus.FAILED:
                channel_stats["failed"] += 1

        total = len(attempts)
        successful = sum(by_status[s.value] for s in SUCCESS_STATUSES)

        pending_query = db.query(models.NotificationAttempt).filter(
            and_(
                models.NotificationAttempt.delivery_status == DeliveryStatus.SCHEDULED,
                models.NotificationAttempt.dispatched_at.is_(None)
            )
        )
        if user_id is not None:
            pending_query = pending_query.filter(models.NotificationAttempt.user_id == user_id)

        return {
            "total": total,
            "delivered": successful,
            "failed": by_status[DeliveryStatus.FAILED.value],
            "fallback": by_status[DeliveryStatus.FALLBACK.value],
            "success_rate": round(successful / total, 4) if total else 0.0,
            "by_status": dict(by_status),
            "by_channel": {k: dict(v) for k, v in by_channel.items()},
            "pending_intents": pending_query.count(),
            "window_days": days,
        }


# Singleton instance
notification_dispatcher = NotificationDispatcher()
