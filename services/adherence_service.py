"""
Adherence Service
Daily adherence, streaks and streak protection (freezes and recovery)
"""

import logging
from typing import Dict, Iterable, List, Optional, Any, Set, Tuple
from datetime import datetime, date, timedelta
from collections import defaultdict
from sqlalchemy.orm import Session
from sqlalchemy import and_

from config import engine_config
from exceptions import InvalidTransition, NotFound
import models
from models import DoseStatus
from services.time_utils import Clock, local_date, start_of_local_day_utc, utcnow, week_start


logger = logging.getLogger(__name__)


def compute_daily_adherence(
    doses: Iterable[models.DoseInstance],
    now: datetime,
    tz_name: Optional[str] = None
) -> Dict[date, float]:
    """
    Ratio of taken to resolved doses per local calendar day.

    Doses that are still open (not yet due, or inside the grace window) are
    left out so the current day is not penalised for doses it cannot have
    taken yet. Days without any resolved dose are absent from the result.
    """
    taken = defaultdict(int)
    total = defaultdict(int)

    for dose in doses:
        status = dose.status_at(now)
        if status == DoseStatus.SCHEDULED:
            continue
        day = local_date(dose.due_at, tz_name)
        total[day] += 1
        if status == DoseStatus.TAKEN:
            taken[day] += 1

    return {day: taken[day] / count for day, count in total.items() if count}


def is_counting_day(
    day: date,
    daily: Dict[date, float],
    protected: Set[date],
    threshold: float = engine_config.STREAK_THRESHOLD
) -> bool:
    if day in protected:
        return True
    return day in daily and daily[day] >= threshold


def compute_streaks(
    daily: Dict[date, float],
    today: date,
    protected: Optional[Set[date]] = None,
    threshold: float = engine_config.STREAK_THRESHOLD,
    window_days: int = engine_config.STREAK_WINDOW_DAYS
) -> Tuple[int, int]:
    """
    Current and longest streak over the trailing window.

    The current streak walks back from today and stops at the first
    non-counting or missing day. Today only counts once it has a resolved
    dose; until then the walk starts at yesterday.
    """
    protected = protected or set()
    window_start = today - timedelta(days=window_days - 1)

    current = 0
    day = today
    if day not in daily and day not in protected:
        day -= timedelta(days=1)
    while day >= window_start and is_counting_day(day, daily, protected, threshold):
        current += 1
        day -= timedelta(days=1)

    longest = 0
    run = 0
    day = window_start
    while day <= today:
        if is_counting_day(day, daily, protected, threshold):
            run += 1
            longest = max(longest, run)
        else:
            run = 0
        day += timedelta(days=1)

    return current, max(longest, current)


def _average_percent(daily: Dict[date, float], first: date, last: date) -> Optional[float]:
    values = [ratio for day, ratio in daily.items() if first <= day <= last]
    if not values:
        return None
    return round(sum(values) / len(values) * 100, 1)


class AdherenceService:
    """
    Service for adherence tracking and streak protection
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    def _get_user(self, user_id: int, db: Session) -> models.User:
        user = db.query(models.User).filter(models.User.id == user_id).first()
        if not user:
            raise NotFound(f"User {user_id} not found")
        return user

    def _doses_between(
        self,
        user_id: int,
        first_day: date,
        now: datetime,
        tz_name: Optional[str],
        db: Session
    ) -> List[models.DoseInstance]:
        return db.query(models.DoseInstance).join(models.Item).filter(
            and_(
                models.Item.user_id == user_id,
                models.DoseInstance.due_at >= start_of_local_day_utc(first_day, tz_name),
                models.DoseInstance.due_at <= now
            )
        ).all()

    def _get_protection_state(self, user_id: int, today: date, db: Session) -> models.StreakProtectionState:
        """Load or create the user's protection record and roll its week"""
        state = db.query(models.StreakProtectionState).filter(
            models.StreakProtectionState.user_id == user_id
        ).first()
        if not state:
            state = models.StreakProtectionState(
                user_id=user_id,
                week_start=week_start(today),
                freezes_used_this_week=0,
                protected_dates=[],
                recovery_doses_completed=0
            )
            db.add(state)
            db.flush()

        current_week = week_start(today)
        if state.week_start != current_week:
            state.week_start = current_week
            state.freezes_used_this_week = 0
        return state

    @staticmethod
    def _protected(state: models.StreakProtectionState) -> Set[date]:
        return {date.fromisoformat(d) for d in (state.protected_dates or [])}

    @staticmethod
    def _protect_day(state: models.StreakProtectionState, day: date) -> None:
        dates = list(state.protected_dates or [])
        if day.isoformat() not in dates:
            dates.append(day.isoformat())
        state.protected_dates = sorted(dates)

    async def get_streak(self, user_id: int, db: Session) -> Dict[str, Any]:
        """
        Current and longest streak plus week-over-week comparison

        Returns:
            Dict with streak counts, weekly averages (percent) and the
            protection state (freezes, recovery progress)
        """
        now = self.clock()
        user = self._get_user(user_id, db)
        tz_name = user.timezone
        today = local_date(now, tz_name)
        window_start = today - timedelta(days=engine_config.STREAK_WINDOW_DAYS - 1)

        doses = self._doses_between(user_id, window_start, now, tz_name, db)
        daily = compute_daily_adherence(doses, now, tz_name)

        state = self._get_protection_state(user_id, today, db)
        protected = self._protected(state)
        current, longest = compute_streaks(daily, today, protected)
        db.commit()

        this_week = _average_percent(daily, today - timedelta(days=6), today)
        last_week = _average_percent(daily, today - timedelta(days=13), today - timedelta(days=7))

        return {
            "user_id": user_id,
            "current_streak": current,
            "longest_streak": longest,
            "this_week_average": this_week,
            "last_week_average": last_week,
            "is_improving": (this_week or 0) > (last_week or 0),
            "freezes_available": max(0, engine_config.STREAK_FREEZES_PER_WEEK - (state.freezes_used_this_week or 0)),
            "freezes_used_this_week": state.freezes_used_this_week or 0,
            "last_freeze_date": state.last_freeze_date.isoformat() if state.last_freeze_date else None,
            "protected_dates": sorted(d.isoformat() for d in protected),
            "recovery": {
                "target_date": state.recovery_target_date.isoformat() if state.recovery_target_date else None,
                "doses_completed": state.recovery_doses_completed or 0,
                "doses_required": engine_config.STREAK_RECOVERY_DOSES,
                "recovered_at": state.recovered_at.isoformat() if state.recovered_at else None,
            },
        }

    async def use_streak_freeze(self, user_id: int, db: Session) -> Dict[str, Any]:
        """Protect a non-counting yesterday with this week's freeze"""
        now = self.clock()
        user = self._get_user(user_id, db)
        today = local_date(now, user.timezone)
        yesterday = today - timedelta(days=1)

        state = self._get_protection_state(user_id, today, db)
        if (state.freezes_used_this_week or 0) >= engine_config.STREAK_FREEZES_PER_WEEK:
            db.rollback()
            raise InvalidTransition("No streak freeze left this week", detail={"user_id": user_id})

        doses = self._doses_between(user_id, yesterday, now, user.timezone, db)
        daily = compute_daily_adherence(doses, now, user.timezone)
        if is_counting_day(yesterday, daily, self._protected(state)):
            db.rollback()
            raise InvalidTransition("Yesterday already counts toward the streak", detail={"user_id": user_id})

        self._protect_day(state, yesterday)
        state.freezes_used_this_week = (state.freezes_used_this_week or 0) + 1
        state.last_freeze_date = today
        if state.recovery_target_date == yesterday:
            state.recovery_target_date = None
            state.recovery_doses_completed = 0
        db.commit()

        logger.info(f"User {user_id} used a streak freeze for {yesterday}")
        return await self.get_streak(user_id, db)

    def record_dose_outcome(
        self,
        dose: models.DoseInstance,
        db: Session,
        now: Optional[datetime] = None
    ) -> Optional[models.StreakProtectionState]:
        """
        Advance the recovery mission after a dose transition.

        A mission opens when yesterday broke a running streak. On-time taken
        doses count toward it; anything else resets the count. Completing the
        mission protects the broken day. Runs inside the caller's transaction.
        """
        now = now or self.clock()
        item = dose.item or db.query(models.Item).filter(models.Item.id == dose.item_id).first()
        if item is None:
            return None
        user = item.user
        tz_name = user.timezone if user else None
        today = local_date(now, tz_name)
        yesterday = today - timedelta(days=1)

        state = self._get_protection_state(item.user_id, today, db)

        if state.recovery_target_date is not None and state.recovery_target_date != yesterday:
            state.recovery_target_date = None
            state.recovery_doses_completed = 0

        if state.recovery_target_date is None:
            day_before = yesterday - timedelta(days=1)
            doses = self._doses_between(item.user_id, day_before, now, tz_name, db)
            daily = compute_daily_adherence(doses, now, tz_name)
            protected = self._protected(state)
            streak_broke = (
                not is_counting_day(yesterday, daily, protected)
                and is_counting_day(day_before, daily, protected)
            )
            if not streak_broke:
                return state
            state.recovery_target_date = yesterday
            state.recovery_doses_completed = 0

        on_time = (
            dose.status == DoseStatus.TAKEN
            and (dose.delay_minutes or 0) <= engine_config.ON_TIME_TOLERANCE_MINUTES
        )
        if not on_time:
            state.recovery_doses_completed = 0
            return state

        state.recovery_doses_completed = (state.recovery_doses_completed or 0) + 1
        if state.recovery_doses_completed >= engine_config.STREAK_RECOVERY_DOSES:
            self._protect_day(state, state.recovery_target_date)
            logger.info(f"User {item.user_id} recovered streak day {state.recovery_target_date}")
            state.recovered_at = now
            state.recovery_target_date = None
            state.recovery_doses_completed = 0
        return state


# Singleton instance
adherence_service = AdherenceService()
