"""
Dose Ledger Service
Materializes schedules into dose instances and records their outcomes
"""

import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, date, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError

from config import engine_config
from exceptions import InvalidTransition, NotFound
import models
from models import DoseStatus, ScheduleFrequency
from services.adherence_service import adherence_service
from services.stock_service import stock_service
from services.time_utils import Clock, ensure_time, local_date, local_to_utc, to_naive_utc, utcnow


logger = logging.getLogger(__name__)


DOSE_ACTIONS = ("taken", "skipped", "missed", "snooze")


def effective_status(
    dose: models.DoseInstance,
    now: datetime,
    grace_hours: int = engine_config.MISSED_GRACE_HOURS
) -> DoseStatus:
    """
    Status as observed at `now`.

    A scheduled dose more than `grace_hours` past due reads as missed even
    though the stored row is untouched.
    """
    return dose.status_at(now, grace_hours)


def schedule_applies_on(schedule: models.Schedule, day: date) -> bool:
    """Whether the schedule has occurrences on the given local date"""
    if schedule.start_date and day < schedule.start_date:
        return False

    if schedule.frequency == ScheduleFrequency.SPECIFIC_DAYS:
        return day.weekday() in (schedule.days_of_week or [])

    if schedule.frequency == ScheduleFrequency.INTERVAL:
        anchor = schedule.start_date or (schedule.created_at or datetime.utcnow()).date()
        step = max(schedule.interval_days or 1, 1)
        return (day - anchor).days % step == 0

    return True


def occurrences(
    schedule: models.Schedule,
    window_start: datetime,
    window_end: datetime,
    tz_name: Optional[str] = None
) -> List[datetime]:
    """
    Every due_at (naive UTC) of the schedule inside [window_start, window_end).

    Clock times are read in tz_name, so "08:00" stays 08:00 local across
    daylight saving changes.
    """
    if window_end <= window_start:
        return []

    clock_times = sorted({ensure_time(t) for t in (schedule.times or [])})
    if not clock_times:
        return []

    day = local_date(window_start, tz_name)
    last_day = local_date(window_end, tz_name)
    due_times = set()

    while day <= last_day:
        if schedule_applies_on(schedule, day):
            for clock_time in clock_times:
                due_at = local_to_utc(day, clock_time, tz_name)
                if window_start <= due_at < window_end:
                    due_times.add(due_at)
        day += timedelta(days=1)

    return sorted(due_times)


class DoseLedgerService:
    """
    Service owning dose instances and their terminal transitions
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    # ==================== LOOKUPS ====================

    def get_item(self, item_id: int, db: Session, user_id: Optional[int] = None) -> models.Item:
        query = db.query(models.Item).filter(models.Item.id == item_id)
        if user_id is not None:
            query = query.filter(models.Item.user_id == user_id)
        item = query.first()
        if not item:
            raise NotFound(f"Item {item_id} not found")
        return item

    def _active_schedule(self, item_id: int, db: Session) -> Optional[models.Schedule]:
        return db.query(models.Schedule).filter(
            and_(
                models.Schedule.item_id == item_id,
                models.Schedule.is_active == True  # noqa: E712
            )
        ).order_by(models.Schedule.id.desc()).first()

    async def get_dose(
        self,
        dose_id: int,
        db: Session,
        user_id: Optional[int] = None
    ) -> models.DoseInstance:
        query = db.query(models.DoseInstance).filter(models.DoseInstance.id == dose_id)
        if user_id is not None:
            query = query.join(models.Item).filter(models.Item.user_id == user_id)
        dose = query.first()
        if not dose:
            raise NotFound(f"Dose {dose_id} not found")
        return dose

    async def list_doses(
        self,
        user_id: int,
        db: Session,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        item_id: Optional[int] = None
    ) -> List[models.DoseInstance]:
        """Doses of a user ordered by due time; status is not rewritten on read"""
        query = db.query(models.DoseInstance).join(models.Item).filter(
            models.Item.user_id == user_id
        )
        if item_id is not None:
            query = query.filter(models.DoseInstance.item_id == item_id)
        if start is not None:
            query = query.filter(models.DoseInstance.due_at >= to_naive_utc(start))
        if end is not None:
            query = query.filter(models.DoseInstance.due_at < to_naive_utc(end))
        return query.order_by(models.DoseInstance.due_at).all()

    def dose_to_dict(self, dose: models.DoseInstance, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        return {
            "id": dose.id,
            "item_id": dose.item_id,
            "schedule_id": dose.schedule_id,
            "due_at": dose.due_at.isoformat(),
            "status": effective_status(dose, now).value,
            "stored_status": dose.status.value,
            "taken_at": dose.taken_at.isoformat() if dose.taken_at else None,
            "delay_minutes": dose.delay_minutes,
        }

    # ==================== MATERIALIZATION ====================

    async def materialize_doses(
        self,
        item_id: int,
        db: Session,
        schedule: Optional[models.Schedule] = None,
        window_end: Optional[datetime] = None,
        window_start: Optional[datetime] = None
    ) -> List[models.DoseInstance]:
        """
        Create the missing dose instances of a schedule within a window.

        Args:
            item_id: Item whose schedule is expanded
            schedule: Schedule to expand; defaults to the item's active one
            window_end: Exclusive upper bound, defaults to now + 7 days
            window_start: Inclusive lower bound, defaults to now
            db: Database session

        Returns:
            Only the newly created instances. Occurrences that already have an
            instance (including ones inserted concurrently) are skipped.
        """
        now = self.clock()
        item = self.get_item(item_id, db)
        schedule = schedule or self._active_schedule(item_id, db)

        if not item.is_active or schedule is None or not schedule.is_active:
            logger.debug(f"Nothing to materialize for item {item_id}")
            return []
        if schedule.item_id != item.id:
            raise NotFound(f"Schedule {schedule.id} does not belong to item {item_id}")

        window_start = to_naive_utc(window_start) or now
        window_end = to_naive_utc(window_end) or now + timedelta(days=engine_config.MATERIALIZE_DEFAULT_DAYS)
        tz_name = item.user.timezone if item.user else None

        due_times = occurrences(schedule, window_start, window_end, tz_name)
        if not due_times:
            return []

        existing = {
            row.due_at for row in db.query(models.DoseInstance.due_at).filter(
                and_(
                    models.DoseInstance.item_id == item_id,
                    models.DoseInstance.due_at >= window_start,
                    models.DoseInstance.due_at < window_end
                )
            )
        }

        created = []
        for due_at in due_times:
            if due_at in existing:
                continue
            dose = models.DoseInstance(
                item_id=item_id,
                schedule_id=schedule.id,
                due_at=due_at,
                status=DoseStatus.SCHEDULED
            )
            try:
                with db.begin_nested():
                    db.add(dose)
            except IntegrityError:
                # Another run inserted the same (item, due_at) first
                logger.debug(f"Dose for item {item_id} at {due_at} already exists")
                continue
            created.append(dose)

        db.commit()
        logger.info(f"Materialized {len(created)} doses for item {item_id} until {window_end}")
        return created

    async def materialize_all(
        self,
        db: Session,
        window_end: Optional[datetime] = None,
        user_id: Optional[int] = None
    ) -> Dict[int, int]:
        """Materialize every active scheduled item; returns created counts per item"""
        query = db.query(models.Item).join(models.Schedule).filter(
            and_(
                models.Item.is_active == True,  # noqa: E712
                models.Schedule.is_active == True  # noqa: E712
            )
        )
        if user_id is not None:
            query = query.filter(models.Item.user_id == user_id)

        results = {}
        for item in query.distinct().all():
            created = await self.materialize_doses(item.id, db=db, window_end=window_end)
            results[item.id] = len(created)
        return results

    # ==================== TRANSITIONS ====================

    def _transition(
        self,
        dose: models.DoseInstance,
        new_status: DoseStatus,
        db: Session,
        **values
    ) -> None:
        """
        Compare-and-set from scheduled to a terminal status.
        Exactly one concurrent writer wins; the others get InvalidTransition.
        """
        result = db.execute(
            update(models.DoseInstance)
            .where(
                and_(
                    models.DoseInstance.id == dose.id,
                    models.DoseInstance.status == DoseStatus.SCHEDULED
                )
            )
            .values(status=new_status, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise InvalidTransition(
                f"Dose {dose.id} is no longer scheduled",
                detail={"dose_id": dose.id}
            )

    def _require_open(self, dose: models.DoseInstance, now: datetime) -> None:
        status = effective_status(dose, now)
        if status != DoseStatus.SCHEDULED:
            raise InvalidTransition(
                f"Dose {dose.id} is already {status.value}",
                detail={"dose_id": dose.id, "status": status.value}
            )

    async def record_taken(
        self,
        dose_id: int,
        db: Session,
        at: Optional[datetime] = None,
        user_id: Optional[int] = None
    ) -> models.DoseInstance:
        """Mark a dose taken, consume one unit and feed streak recovery"""
        now = self.clock()
        at = to_naive_utc(at) or now
        dose = await self.get_dose(dose_id, db, user_id=user_id)
        self._require_open(dose, now)

        delay = max(0, int((at - dose.due_at).total_seconds() // 60))
        self._transition(dose, DoseStatus.TAKEN, db, taken_at=at, delay_minutes=delay)
        db.refresh(dose)

        stock_service.consume(dose.item_id, at, db)
        adherence_service.record_dose_outcome(dose, db, now=now)

        db.commit()
        db.refresh(dose)
        logger.info(f"Dose {dose_id} taken (delay {delay} min)")
        return dose

    async def record_skipped(
        self,
        dose_id: int,
        db: Session,
        at: Optional[datetime] = None,
        user_id: Optional[int] = None
    ) -> models.DoseInstance:
        now = self.clock()
        dose = await self.get_dose(dose_id, db, user_id=user_id)
        self._require_open(dose, now)

        self._transition(dose, DoseStatus.SKIPPED, db)
        db.refresh(dose)
        adherence_service.record_dose_outcome(dose, db, now=now)

        db.commit()
        db.refresh(dose)
        logger.info(f"Dose {dose_id} skipped")
        return dose

    async def record_missed(
        self,
        dose_id: int,
        db: Session,
        at: Optional[datetime] = None,
        user_id: Optional[int] = None
    ) -> models.DoseInstance:
        """Persist a missed outcome; valid for any dose still stored as scheduled"""
        now = self.clock()
        dose = await self.get_dose(dose_id, db, user_id=user_id)
        if dose.status != DoseStatus.SCHEDULED:
            raise InvalidTransition(
                f"Dose {dose.id} is already {dose.status.value}",
                detail={"dose_id": dose.id, "status": dose.status.value}
            )

        self._transition(dose, DoseStatus.MISSED, db)
        db.refresh(dose)
        adherence_service.record_dose_outcome(dose, db, now=now)

        db.commit()
        db.refresh(dose)
        logger.info(f"Dose {dose_id} marked missed")
        return dose

    async def snooze_dose(
        self,
        dose_id: int,
        db: Session,
        minutes: int = engine_config.SNOOZE_MINUTES,
        user_id: Optional[int] = None
    ) -> models.DoseInstance:
        """Push a scheduled dose's due time forward"""
        now = self.clock()
        dose = await self.get_dose(dose_id, db, user_id=user_id)
        self._require_open(dose, now)
        new_due_at = dose.due_at + timedelta(minutes=minutes)

        try:
            result = db.execute(
                update(models.DoseInstance)
                .where(
                    and_(
                        models.DoseInstance.id == dose.id,
                        models.DoseInstance.status == DoseStatus.SCHEDULED
                    )
                )
                .values(due_at=new_due_at, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            db.rollback()
            raise InvalidTransition(
                f"Another dose of item {dose.item_id} is already due at {new_due_at}",
                detail={"dose_id": dose.id}
            )
        if result.rowcount != 1:
            db.rollback()
            raise InvalidTransition(f"Dose {dose.id} is no longer scheduled", detail={"dose_id": dose.id})

        db.commit()
        db.refresh(dose)
        logger.info(f"Dose {dose_id} snoozed to {new_due_at}")
        return dose

    async def record_dose_action(
        self,
        dose_id: int,
        action: str,
        db: Session,
        at: Optional[datetime] = None,
        user_id: Optional[int] = None
    ) -> models.DoseInstance:
        """Route a user action to its transition"""
        if action not in DOSE_ACTIONS:
            raise ValueError(f"Unknown dose action: {action}")
        if action == "taken":
            return await self.record_taken(dose_id, db, at=at, user_id=user_id)
        if action == "skipped":
            return await self.record_skipped(dose_id, db, at=at, user_id=user_id)
        if action == "missed":
            return await self.record_missed(dose_id, db, at=at, user_id=user_id)
        return await self.snooze_dose(dose_id, db, user_id=user_id)

    # ==================== SCHEDULE CHANGES ====================

    def _drop_future_doses(self, item_id: int, now: datetime, db: Session) -> int:
        future_ids = [
            row.id for row in db.query(models.DoseInstance.id).filter(
                and_(
                    models.DoseInstance.item_id == item_id,
                    models.DoseInstance.status == DoseStatus.SCHEDULED,
                    models.DoseInstance.due_at > now
                )
            )
        ]
        if not future_ids:
            return 0

        # Undispatched intents go with their doses; sent history keeps its rows
        db.query(models.NotificationAttempt).filter(
            and_(
                models.NotificationAttempt.dose_id.in_(future_ids),
                models.NotificationAttempt.delivery_status == models.DeliveryStatus.SCHEDULED,
                models.NotificationAttempt.dispatched_at.is_(None)
            )
        ).delete(synchronize_session="fetch")
        db.query(models.DoseInstance).filter(
            models.DoseInstance.id.in_(future_ids)
        ).delete(synchronize_session="fetch")
        return len(future_ids)

    async def update_schedule(
        self,
        item_id: int,
        db: Session,
        times: List[str],
        frequency: ScheduleFrequency = ScheduleFrequency.DAILY,
        days_of_week: Optional[List[int]] = None,
        interval_days: Optional[int] = None,
        start_date: Optional[date] = None,
        window_end: Optional[datetime] = None,
        user_id: Optional[int] = None
    ) -> models.Schedule:
        """
        Replace the item's active schedule.

        Past instances are kept for history; future scheduled ones are
        dropped and regenerated from the new definition.
        """
        now = self.clock()
        item = self.get_item(item_id, db, user_id=user_id)
        for t in times:
            ensure_time(t)
        if frequency == ScheduleFrequency.SPECIFIC_DAYS and not days_of_week:
            raise ValueError("specific_days schedules need at least one weekday")

        db.query(models.Schedule).filter(
            and_(
                models.Schedule.item_id == item.id,
                models.Schedule.is_active == True  # noqa: E712
            )
        ).update({"is_active": False}, synchronize_session=False)
        dropped = self._drop_future_doses(item.id, now, db)

        schedule = models.Schedule(
            item_id=item.id,
            frequency=frequency,
            times=list(times),
            days_of_week=days_of_week,
            interval_days=interval_days or 1,
            start_date=start_date or local_date(now, item.user.timezone if item.user else None),
            is_active=True
        )
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        logger.info(f"Schedule {schedule.id} replaces previous for item {item_id}; dropped {dropped} future doses")

        await self.materialize_doses(item.id, db=db, schedule=schedule, window_end=window_end)
        return schedule

    async def disable_schedule(
        self,
        item_id: int,
        db: Session,
        user_id: Optional[int] = None
    ) -> int:
        """Stop materialization for the item and drop its future scheduled doses"""
        now = self.clock()
        item = self.get_item(item_id, db, user_id=user_id)
        db.query(models.Schedule).filter(
            and_(
                models.Schedule.item_id == item.id,
                models.Schedule.is_active == True  # noqa: E712
            )
        ).update({"is_active": False}, synchronize_session=False)
        dropped = self._drop_future_doses(item.id, now, db)
        db.commit()
        logger.info(f"Disabled schedule for item {item_id}; dropped {dropped} future doses")
        return dropped


# Singleton instance
dose_ledger_service = DoseLedgerService()
