"""
Reminder Scheduler
Turns upcoming doses and due alarms into notification intents
"""

import calendar
import logging
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError

from config import engine_config
from exceptions import InvalidTransition, NotFound
import models
from models import AlarmRecurrence, DeliveryStatus, DoseStatus, NotificationChannel
from services.time_utils import Clock, to_naive_utc, utcnow


logger = logging.getLogger(__name__)


def add_months(moment: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the month's last day"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_occurrence(
    anchor: datetime,
    recurrence: AlarmRecurrence,
    now: datetime
) -> Optional[datetime]:
    """
    First occurrence strictly after `now` of the series starting at `anchor`.

    Whole recurrence units are added to the anchor until the result is in
    the future. Month steps clamp to the last day of a shorter month but are
    always counted from the anchor, so an alarm on the 31st returns to the
    31st after February. One-time alarms have no next occurrence.
    """
    if recurrence == AlarmRecurrence.ONCE:
        return None

    step = 1
    while True:
        if recurrence == AlarmRecurrence.DAILY:
            candidate = anchor + timedelta(days=step)
        elif recurrence == AlarmRecurrence.WEEKLY:
            candidate = anchor + timedelta(weeks=step)
        else:
            candidate = add_months(anchor, step)
        if candidate > now:
            return candidate
        step += 1


def dose_intent_key(dose: models.DoseInstance, offset_minutes: int) -> str:
    return f"dose:{dose.id}:{dose.due_at.isoformat()}:{offset_minutes}"


def alarm_intent_key(alarm: models.Alarm, occurrence: datetime) -> str:
    return f"alarm:{alarm.id}:{occurrence.isoformat()}"


def alarm_anchor(alarm: models.Alarm) -> datetime:
    return alarm.anchor_at or alarm.scheduled_at


@dataclass
class GenerationSummary:
    """Counts from one generation run"""
    dose_intents: int = 0
    alarm_intents: int = 0
    skipped_duplicates: int = 0
    intent_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dose_intents": self.dose_intents,
            "alarm_intents": self.alarm_intents,
            "skipped_duplicates": self.skipped_duplicates,
            "intent_ids": self.intent_ids,
        }


class ReminderScheduler:
    """
    Reminder intent generation and alarm bookkeeping
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    def _add_intent(self, intent: models.NotificationAttempt, db: Session) -> bool:
        """Insert one intent; False when its key already exists"""
        exists = db.query(models.NotificationAttempt.id).filter(
            models.NotificationAttempt.intent_key == intent.intent_key
        ).first()
        if exists:
            return False
        try:
            with db.begin_nested():
                db.add(intent)
        except IntegrityError:
            logger.debug(f"Intent {intent.intent_key} inserted concurrently")
            return False
        return True

    def _dose_message(self, item: models.Item, offset: int) -> Dict[str, str]:
        dose_text = f" ({item.dose_text})" if item.dose_text else ""
        food_note = " Take with food." if item.with_food else ""
        if offset > 0:
            return {
                "title": f"{item.name} in {offset} minutes",
                "body": f"Upcoming: {item.name}{dose_text}.{food_note}",
            }
        return {
            "title": f"Time for {item.name}",
            "body": f"Time to take {item.name}{dose_text}.{food_note}",
        }

    async def generate_reminder_intents(
        self,
        db: Session,
        horizon_hours: int = engine_config.REMINDER_HORIZON_HOURS,
        user_id: Optional[int] = None
    ) -> GenerationSummary:
        """
        Record reminder intents firing within the next `horizon_hours`.

        Each scheduled dose gets one intent per reminder offset whose fire
        time is not in the past; alarms get one intent per occurrence in the
        horizon and are advanced only when the dispatcher fires them.
        Re-running over the same horizon adds nothing.
        """
        now = self.clock()
        horizon_end = now + timedelta(hours=horizon_hours)
        offsets = sorted(engine_config.REMINDER_OFFSETS_MINUTES, reverse=True)
        summary = GenerationSummary()

        # Doses
        dose_query = db.query(models.DoseInstance, models.Item).join(
            models.Item, models.Item.id == models.DoseInstance.item_id
        ).join(
            models.User, models.User.id == models.Item.user_id
        ).filter(
            and_(
                models.DoseInstance.status == DoseStatus.SCHEDULED,
                models.DoseInstance.due_at >= now,
                models.DoseInstance.due_at <= horizon_end + timedelta(minutes=max(offsets, default=0)),
                models.Item.is_active == True,  # noqa: E712
                models.User.is_active == True  # noqa: E712
            )
        )
        if user_id is not None:
            dose_query = dose_query.filter(models.Item.user_id == user_id)

        for dose, item in dose_query.order_by(models.DoseInstance.due_at).all():
            for offset in offsets:
                fire_at = dose.due_at - timedelta(minutes=offset)
                if fire_at < now or fire_at > horizon_end:
                    continue

                message = self._dose_message(item, offset)
                intent = models.NotificationAttempt(
                    user_id=item.user_id,
                    intent_key=dose_intent_key(dose, offset),
                    dose_id=dose.id,
                    channel=NotificationChannel.PUSH,
                    delivery_status=DeliveryStatus.SCHEDULED,
                    category="dose_reminder",
                    title=message["title"],
                    body=message["body"],
                    scheduled_at=fire_at,
                    attempt_metadata={
                        "offset_minutes": offset,
                        "due_at": dose.due_at.isoformat(),
                        "item_id": item.id,
                        "item_name": item.name,
                    }
                )
                if self._add_intent(intent, db):
                    summary.dose_intents += 1
                    summary.intent_ids.append(intent.id)
                else:
                    summary.skipped_duplicates += 1

        # Alarms
        alarm_query = db.query(models.Alarm).join(models.User).filter(
            and_(
                models.Alarm.enabled == True,  # noqa: E712
                models.Alarm.scheduled_at <= horizon_end,
                models.User.is_active == True  # noqa: E712
            )
        )
        if user_id is not None:
            alarm_query = alarm_query.filter(models.Alarm.user_id == user_id)

        # The alarm itself only moves once an intent is dispatched
        for alarm in alarm_query.all():
            occurrence = alarm.scheduled_at
            while occurrence is not None and occurrence <= horizon_end:
                # Overdue alarms fire once, now, rather than replaying every missed occurrence
                fire_at = max(occurrence, now)
                intent = models.NotificationAttempt(
                    user_id=alarm.user_id,
                    intent_key=alarm_intent_key(alarm, occurrence),
                    alarm_id=alarm.id,
                    channel=NotificationChannel.PUSH,
                    delivery_status=DeliveryStatus.SCHEDULED,
                    category=alarm.category or "alarm",
                    title=alarm.title,
                    body=alarm.message or alarm.title,
                    scheduled_at=fire_at,
                    attempt_metadata={
                        "offset_minutes": 0,
                        "alarm_scheduled_at": occurrence.isoformat(),
                        "recurrence": alarm.recurrence.value,
                    }
                )
                if self._add_intent(intent, db):
                    summary.alarm_intents += 1
                    summary.intent_ids.append(intent.id)
                else:
                    summary.skipped_duplicates += 1
                occurrence = next_occurrence(alarm_anchor(alarm), alarm.recurrence, fire_at)

        db.commit()
        logger.info(
            f"Generated {summary.dose_intents} dose and {summary.alarm_intents} alarm intents "
            f"({summary.skipped_duplicates} already present) until {horizon_end}"
        )
        return summary

    # ==================== ALARMS ====================

    def _advance(self, alarm: models.Alarm, occurrence: datetime, after: datetime) -> None:
        alarm.last_triggered = occurrence
        following = next_occurrence(alarm_anchor(alarm), alarm.recurrence, after)
        if following is None:
            alarm.enabled = False
        else:
            alarm.scheduled_at = following

    def mark_alarm_fired(self, alarm: models.Alarm, occurrence: datetime, fired_at: datetime) -> bool:
        """
        Advance an alarm whose occurrence was dispatched.
        Returns False when the alarm is disabled or already past that occurrence.
        Does not commit; runs inside the dispatcher's transaction.
        """
        if not alarm.enabled or alarm.scheduled_at > occurrence:
            return False
        self._advance(alarm, occurrence, max(occurrence, fired_at))
        logger.info(f"Alarm {alarm.id} fired for {occurrence}; enabled={alarm.enabled}, next={alarm.scheduled_at}")
        return True

    async def advance_alarm(self, alarm_id: int, db: Session) -> models.Alarm:
        """Mark the alarm's current occurrence fired and move to the next one"""
        alarm = await self.get_alarm(alarm_id, db)
        if not alarm.enabled:
            raise InvalidTransition(f"Alarm {alarm_id} is disabled or already completed")

        self._advance(alarm, alarm.scheduled_at, max(alarm.scheduled_at, self.clock()))
        db.commit()
        db.refresh(alarm)
        logger.info(f"Advanced alarm {alarm_id}; enabled={alarm.enabled}, next={alarm.scheduled_at}")
        return alarm

    async def get_alarm(self, alarm_id: int, db: Session, user_id: Optional[int] = None) -> models.Alarm:
        query = db.query(models.Alarm).filter(models.Alarm.id == alarm_id)
        if user_id is not None:
            query = query.filter(models.Alarm.user_id == user_id)
        alarm = query.first()
        if not alarm:
            raise NotFound(f"Alarm {alarm_id} not found")
        return alarm

    async def create_alarm(
        self,
        user_id: int,
        title: str,
        scheduled_at: datetime,
        db: Session,
        recurrence: AlarmRecurrence = AlarmRecurrence.ONCE,
        message: Optional[str] = None,
        category: str = "check_in"
    ) -> models.Alarm:
        if not db.query(models.User.id).filter(models.User.id == user_id).first():
            raise NotFound(f"User {user_id} not found")

        alarm = models.Alarm(
            user_id=user_id,
            title=title,
            message=message,
            category=category,
            scheduled_at=to_naive_utc(scheduled_at),
            anchor_at=to_naive_utc(scheduled_at),
            recurrence=recurrence,
            enabled=True
        )
        db.add(alarm)
        db.commit()
        db.refresh(alarm)
        logger.info(f"Created {recurrence.value} alarm {alarm.id} for user {user_id} at {scheduled_at}")
        return alarm

    async def disable_alarm(self, alarm_id: int, db: Session, user_id: Optional[int] = None) -> models.Alarm:
        """Stops future intents and drops undispatched ones; sent history keeps its rows"""
        alarm = await self.get_alarm(alarm_id, db, user_id=user_id)
        alarm.enabled = False
        dropped = db.query(models.NotificationAttempt).filter(
            and_(
                models.NotificationAttempt.alarm_id == alarm.id,
                models.NotificationAttempt.delivery_status == DeliveryStatus.SCHEDULED,
                models.NotificationAttempt.dispatched_at.is_(None)
            )
        ).delete(synchronize_session="fetch")
        db.commit()
        db.refresh(alarm)
        logger.info(f"Disabled alarm {alarm_id}; dropped {dropped} pending intents")
        return alarm


# Singleton instance
reminder_scheduler = ReminderScheduler()
