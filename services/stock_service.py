"""
Stock Service
Inventory bookkeeping and depletion forecasting
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from config import engine_config
from exceptions import NotFound
import models
from models import ConsumptionReason, DoseStatus
from services.time_utils import Clock, to_naive_utc, utcnow


logger = logging.getLogger(__name__)


class ConsumptionTrend:
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


def daily_consumption_avg(
    taken_times: Sequence[datetime],
    now: datetime,
    window_days: int = engine_config.CONSUMPTION_WINDOW_DAYS
) -> float:
    """Taken doses inside the trailing window divided by its length in days"""
    since = now - timedelta(days=window_days)
    count = sum(1 for t in taken_times if since <= t <= now)
    return count / window_days


def days_remaining(
    units_left: int,
    average: float,
    now: datetime,
    projected_end_at: Optional[datetime] = None
) -> Optional[int]:
    """
    Days until the stock runs out.

    A manual or refill-provided projected_end_at wins; otherwise the stock
    is divided by the average daily consumption. Returns None when there is
    no signal to forecast from.
    """
    if projected_end_at is not None:
        return max(0, (projected_end_at.date() - now.date()).days)
    if average > 0:
        # half-up rounding
        return max(0, int(math.floor(units_left / average + 0.5)))
    return None


def consumption_trend(
    taken_times: Sequence[datetime],
    now: datetime,
    window_days: int = engine_config.CONSUMPTION_WINDOW_DAYS
) -> str:
    """Compare the two halves of the trailing window"""
    since = now - timedelta(days=window_days)
    midpoint = now - timedelta(days=window_days / 2)

    first_half = sum(1 for t in taken_times if since <= t <= midpoint)
    second_half = sum(1 for t in taken_times if midpoint < t <= now)

    if second_half > first_half * engine_config.TREND_UP_FACTOR:
        return ConsumptionTrend.INCREASING
    if second_half < first_half * engine_config.TREND_DOWN_FACTOR:
        return ConsumptionTrend.DECREASING
    return ConsumptionTrend.STABLE


def sort_critical_first(projections: List["StockProjection"]) -> List["StockProjection"]:
    """Ascending by days remaining, unknown projections last"""
    return sorted(
        projections,
        key=lambda p: (p.days_remaining is None, p.days_remaining or 0, p.item_name)
    )


@dataclass
class StockProjection:
    """Computed-on-read forecast for one item"""
    item_id: int
    item_name: str
    units_left: int
    units_total: int
    projected_end_at: Optional[datetime]
    last_refill_at: Optional[datetime]
    daily_consumption_avg: float
    days_remaining: Optional[int]
    consumption_trend: str
    taken_count_7d: int = 0
    scheduled_count_7d: int = 0
    adherence_7d: int = 0
    consumption_history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "item_name": self.item_name,
            "units_left": self.units_left,
            "units_total": self.units_total,
            "projected_end_at": self.projected_end_at.isoformat() if self.projected_end_at else None,
            "last_refill_at": self.last_refill_at.isoformat() if self.last_refill_at else None,
            "daily_consumption_avg": round(self.daily_consumption_avg, 3),
            "days_remaining": self.days_remaining,
            "consumption_trend": self.consumption_trend,
            "taken_count_7d": self.taken_count_7d,
            "scheduled_count_7d": self.scheduled_count_7d,
            "adherence_7d": self.adherence_7d,
            "consumption_history": self.consumption_history,
        }


class StockService:
    """
    Service for stock tracking and projections
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    def _get_stock(self, item_id: int, db: Session) -> models.StockRecord:
        stock = db.query(models.StockRecord).filter(
            models.StockRecord.item_id == item_id
        ).first()
        if not stock:
            raise NotFound(f"No stock record for item {item_id}")
        return stock

    def _append_history(
        self,
        stock: models.StockRecord,
        at: datetime,
        amount: int,
        reason: ConsumptionReason
    ) -> None:
        # Reassign so the JSON column is flagged dirty
        history = list(stock.consumption_history or [])
        history.append({
            "date": at.isoformat(),
            "amount": amount,
            "reason": reason.value,
        })
        stock.consumption_history = history

    @staticmethod
    def _track_depletion(stock: models.StockRecord, at: datetime) -> None:
        if stock.units_left > 0:
            stock.depleted_at = None
        elif stock.depleted_at is None:
            stock.depleted_at = at

    def consume(
        self,
        item_id: int,
        at: datetime,
        db: Session,
        amount: int = 1
    ) -> Optional[models.StockRecord]:
        """
        Decrement stock for a taken dose.
        Items without a stock record are not tracked and are left alone.
        Does not commit; runs inside the caller's transaction.
        """
        stock = db.query(models.StockRecord).filter(
            models.StockRecord.item_id == item_id
        ).first()
        if not stock:
            logger.debug(f"No stock tracked for item {item_id}")
            return None

        stock.units_left = max(0, (stock.units_left or 0) - amount)
        self._append_history(stock, at, amount, ConsumptionReason.TAKEN)
        self._track_depletion(stock, at)

        if stock.units_left == 0:
            logger.warning(f"Stock for item {item_id} is now empty")
        return stock

    async def refill(
        self,
        item_id: int,
        amount: int,
        db: Session,
        projected_end_at: Optional[datetime] = None
    ) -> models.StockRecord:
        """
        Add units and reset the refill bookkeeping.

        projected_end_at is replaced by the given override, or cleared so the
        projection falls back to the consumption average.
        """
        if amount <= 0:
            raise ValueError("Refill amount must be positive")

        now = self.clock()
        stock = self._get_stock(item_id, db)
        stock.units_left = (stock.units_left or 0) + amount
        stock.units_total = stock.units_left
        stock.last_refill_at = now
        stock.projected_end_at = to_naive_utc(projected_end_at)
        self._append_history(stock, now, amount, ConsumptionReason.REFILL)
        self._track_depletion(stock, now)

        db.commit()
        db.refresh(stock)
        logger.info(f"Refilled item {item_id} with {amount} units (now {stock.units_left})")
        return stock

    async def adjust_stock(
        self,
        item_id: int,
        delta: int,
        reason: ConsumptionReason,
        db: Session
    ) -> models.StockRecord:
        """Manual correction (adjusted) or loss (lost) of units"""
        if reason not in (ConsumptionReason.ADJUSTED, ConsumptionReason.LOST):
            raise ValueError(f"Unsupported adjustment reason: {reason.value}")
        if reason == ConsumptionReason.LOST and delta > 0:
            delta = -delta

        now = self.clock()
        stock = self._get_stock(item_id, db)
        stock.units_left = max(0, (stock.units_left or 0) + delta)
        self._append_history(stock, now, abs(delta), reason)
        self._track_depletion(stock, now)

        db.commit()
        db.refresh(stock)
        logger.info(f"Adjusted item {item_id} stock by {delta} ({reason.value})")
        return stock

    async def set_projected_end(
        self,
        item_id: int,
        projected_end_at: Optional[datetime],
        db: Session
    ) -> models.StockRecord:
        """Manual override of the depletion date; None returns to the forecast"""
        stock = self._get_stock(item_id, db)
        stock.projected_end_at = to_naive_utc(projected_end_at)
        db.commit()
        db.refresh(stock)
        return stock

    async def get_stock_projection(
        self,
        user_id: int,
        db: Session,
        item_id: Optional[int] = None
    ) -> List[StockProjection]:
        """
        Projections for one item or every active item of the user,
        sorted critical first.
        """
        now = self.clock()
        window_days = engine_config.CONSUMPTION_WINDOW_DAYS
        since = now - timedelta(days=window_days)

        query = db.query(models.StockRecord, models.Item).join(
            models.Item, models.Item.id == models.StockRecord.item_id
        ).filter(
            and_(
                models.Item.user_id == user_id,
                models.Item.is_active == True  # noqa: E712
            )
        )
        if item_id is not None:
            query = query.filter(models.Item.id == item_id)

        rows = query.all()
        if item_id is not None and not rows:
            raise NotFound(f"No stock record for item {item_id}")
        if not rows:
            return []

        item_ids = [item.id for _, item in rows]
        doses = db.query(models.DoseInstance).filter(
            and_(
                models.DoseInstance.item_id.in_(item_ids),
                or_(
                    models.DoseInstance.due_at >= since,
                    models.DoseInstance.taken_at >= since
                )
            )
        ).all()

        doses_by_item: Dict[int, List[models.DoseInstance]] = {}
        for dose in doses:
            doses_by_item.setdefault(dose.item_id, []).append(dose)

        projections = []
        for stock, item in rows:
            item_doses = doses_by_item.get(item.id, [])
            taken_times = [
                d.taken_at or d.due_at
                for d in item_doses
                if d.status == DoseStatus.TAKEN
            ]
            in_window = [d for d in item_doses if d.due_at >= since]
            taken_count = sum(1 for d in in_window if d.status == DoseStatus.TAKEN)
            scheduled_count = sum(
                1 for d in in_window
                if d.status in (DoseStatus.TAKEN, DoseStatus.SCHEDULED)
            )

            average = daily_consumption_avg(taken_times, now, window_days)
            projections.append(StockProjection(
                item_id=item.id,
                item_name=item.name,
                units_left=stock.units_left or 0,
                units_total=stock.units_total or 0,
                projected_end_at=stock.projected_end_at,
                last_refill_at=stock.last_refill_at,
                daily_consumption_avg=average,
                days_remaining=days_remaining(
                    stock.units_left or 0, average, now, stock.projected_end_at
                ),
                consumption_trend=consumption_trend(taken_times, now, window_days),
                taken_count_7d=taken_count,
                scheduled_count_7d=scheduled_count,
                adherence_7d=round(taken_count / scheduled_count * 100) if scheduled_count else 0,
                consumption_history=list(stock.consumption_history or []),
            ))

        return sort_critical_first(projections)


# Singleton instance
stock_service = StockService()
