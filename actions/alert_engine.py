"""
Alert Engine
Derives safety-critical alerts from the dose ledger, stock and profile
"""

import logging
from typing import List, Dict, Any, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from collections import defaultdict
from sqlalchemy.orm import Session
from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError

from config import engine_config
from exceptions import NotFound
import models
from models import DoseStatus, ItemCategory
from services.profile_service import ProfileSnapshot, profile_service
from services.time_utils import Clock, hours_between, local_date, utcnow


logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels"""
    CRITICAL = "critical"
    URGENT = "urgent"
    WARNING = "warning"


class AlertType(str, Enum):
    """Types of alerts"""
    ZERO_STOCK = "zero_stock"
    MISSED_ESSENTIAL = "missed_essential"
    DUPLICATE_DOSE = "duplicate_dose"
    DRUG_INTERACTION = "drug_interaction"
    BMI_ADVISORY = "bmi_advisory"


SEVERITY_ORDER = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.URGENT: 1,
    AlertSeverity.WARNING: 2,
}


@dataclass
class CriticalAlert:
    """Alert data structure; recomputed on every evaluation, never stored"""
    id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    item_id: Optional[int] = None
    item_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "metadata": self.metadata,
        }


def missed_dose_severity(hours_missed: int) -> AlertSeverity:
    """
    Urgent once overdue, critical from two hours.

    Elderly users escalate at the same two hours, so age needs no branch here.
    """
    if hours_missed >= engine_config.MISSED_CRITICAL_AFTER_HOURS:
        return AlertSeverity.CRITICAL
    return AlertSeverity.URGENT


def episode_stamp(moment: datetime) -> str:
    return moment.strftime("%Y%m%d%H%M%S")


def find_duplicate_takes(taken_times: List[datetime]) -> Optional[tuple]:
    """Latest pair of takes closer together than the duplicate window"""
    ordered = sorted(taken_times)
    window = timedelta(hours=engine_config.DUPLICATE_WINDOW_HOURS)
    for later_idx in range(len(ordered) - 1, 0, -1):
        earlier, later = ordered[later_idx - 1], ordered[later_idx]
        if later - earlier < window:
            return earlier, later
    return None


class AlertEngine:
    """
    Engine for evaluating critical alerts

    Responsibilities:
    - Zero stock on active items
    - Overdue medication doses, escalated by elapsed time and age
    - Doses taken twice in a short window
    - Profile advisories (polypharmacy, BMI)
    - Per-user dismissals
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    def _zero_stock_alerts(self, user_id: int, db: Session) -> List[CriticalAlert]:
        rows = db.query(models.Item, models.StockRecord).join(
            models.StockRecord, models.StockRecord.item_id == models.Item.id
        ).filter(
            and_(
                models.Item.user_id == user_id,
                models.Item.is_active == True,  # noqa: E712
                models.StockRecord.units_left <= 0
            )
        ).all()

        alerts = []
        for item, stock in rows:
            # Each depletion is its own episode; a dismissal does not outlive a refill
            alert_id = f"stock_{item.id}"
            if stock.depleted_at is not None:
                alert_id = f"{alert_id}_{episode_stamp(stock.depleted_at)}"
            alerts.append(CriticalAlert(
                id=alert_id,
                alert_type=AlertType.ZERO_STOCK,
                severity=AlertSeverity.CRITICAL,
                title="Out of stock",
                message=f"{item.name} has no units left. Refill before the next dose.",
                item_id=item.id,
                item_name=item.name,
                metadata={
                    "depleted_at": stock.depleted_at.isoformat() if stock.depleted_at else None,
                },
            ))
        return alerts

    def _missed_alerts(self, user_id: int, now: datetime, db: Session) -> List[CriticalAlert]:
        since = now - timedelta(hours=engine_config.MISSED_ALERT_WINDOW_HOURS)
        rows = db.query(models.DoseInstance, models.Item).join(
            models.Item, models.Item.id == models.DoseInstance.item_id
        ).filter(
            and_(
                models.Item.user_id == user_id,
                models.Item.category == ItemCategory.MEDICATION,
                models.DoseInstance.status == DoseStatus.SCHEDULED,
                models.DoseInstance.due_at < now,
                models.DoseInstance.due_at >= since
            )
        ).order_by(models.DoseInstance.due_at).all()

        alerts = []
        for dose, item in rows:
            hours_missed = int(hours_between(dose.due_at, now))
            severity = missed_dose_severity(hours_missed)
            alerts.append(CriticalAlert(
                id=f"missed_{dose.id}",
                alert_type=AlertType.MISSED_ESSENTIAL,
                severity=severity,
                title="Dose overdue",
                message=f"{item.name} is {hours_missed}h late. Take it as soon as possible.",
                item_id=item.id,
                item_name=item.name,
                metadata={
                    "dose_id": dose.id,
                    "due_at": dose.due_at.isoformat(),
                    "hours_missed": hours_missed,
                },
            ))
        return alerts

    def _duplicate_alerts(self, user_id: int, now: datetime, db: Session) -> List[CriticalAlert]:
        since = now - timedelta(hours=engine_config.DUPLICATE_WINDOW_HOURS)
        rows = db.query(models.DoseInstance, models.Item).join(
            models.Item, models.Item.id == models.DoseInstance.item_id
        ).filter(
            and_(
                models.Item.user_id == user_id,
                models.DoseInstance.status == DoseStatus.TAKEN,
                models.DoseInstance.taken_at >= since,
                models.DoseInstance.taken_at <= now
            )
        ).all()

        takes = defaultdict(list)
        items = {}
        for dose, item in rows:
            takes[item.id].append(dose.taken_at)
            items[item.id] = item

        alerts = []
        for item_id, taken_times in takes.items():
            pair = find_duplicate_takes(taken_times)
            if pair is None:
                continue
            earlier, later = pair
            item = items[item_id]
            alerts.append(CriticalAlert(
                id=f"duplicate_{item_id}_{episode_stamp(later)}",
                alert_type=AlertType.DUPLICATE_DOSE,
                severity=AlertSeverity.WARNING,
                title="Possible duplicate dose",
                message=(
                    f"{item.name} was recorded twice within "
                    f"{engine_config.DUPLICATE_WINDOW_HOURS} hours. Check that this is correct."
                ),
                item_id=item_id,
                item_name=item.name,
                metadata={
                    "first_taken_at": earlier.isoformat(),
                    "second_taken_at": later.isoformat(),
                    "hours_apart": round(hours_between(earlier, later), 2),
                },
            ))
        return alerts

    def _profile_alerts(self, user_id: int, profile: ProfileSnapshot, db: Session) -> List[CriticalAlert]:
        alerts = []

        if profile.age is not None and profile.age >= engine_config.ELDERLY_AGE:
            active_items = db.query(models.Item).filter(
                and_(
                    models.Item.user_id == user_id,
                    models.Item.is_active == True  # noqa: E712
                )
            ).count()
            if active_items >= engine_config.POLYPHARMACY_MIN_ITEMS:
                alerts.append(CriticalAlert(
                    id="polypharmacy",
                    alert_type=AlertType.DRUG_INTERACTION,
                    severity=AlertSeverity.WARNING,
                    title="Review your medications",
                    message=(
                        f"{active_items} active items at age {profile.age}. "
                        "Ask your doctor or pharmacist to review them for interactions."
                    ),
                    metadata={"age": profile.age, "active_items": active_items},
                ))

        if profile.bmi is not None:
            if profile.bmi < engine_config.BMI_LOW:
                alerts.append(CriticalAlert(
                    id="bmi_low",
                    alert_type=AlertType.BMI_ADVISORY,
                    severity=AlertSeverity.WARNING,
                    title="Low BMI",
                    message=f"BMI {profile.bmi} is below {engine_config.BMI_LOW}; some doses may need review.",
                    metadata={"bmi": profile.bmi},
                ))
            elif profile.bmi > engine_config.BMI_HIGH:
                alerts.append(CriticalAlert(
                    id="bmi_high",
                    alert_type=AlertType.BMI_ADVISORY,
                    severity=AlertSeverity.WARNING,
                    title="High BMI",
                    message=f"BMI {profile.bmi} is above {engine_config.BMI_HIGH}; some doses may need review.",
                    metadata={"bmi": profile.bmi},
                ))

        return alerts

    def _dismissed_ids(self, user_id: int, db: Session) -> set:
        return {
            row.alert_id for row in db.query(models.DismissedAlert.alert_id).filter(
                models.DismissedAlert.user_id == user_id
            )
        }

    def evaluate(self, user_id: int, db: Session) -> List[CriticalAlert]:
        """All current alerts, dismissed ones included, most severe first"""
        now = self.clock()
        user = db.query(models.User).filter(models.User.id == user_id).first()
        if not user:
            raise NotFound(f"User {user_id} not found")

        profile = profile_service.get_profile_snapshot(user_id, local_date(now, user.timezone), db)

        alerts = []
        alerts.extend(self._zero_stock_alerts(user_id, db))
        alerts.extend(self._missed_alerts(user_id, now, db))
        alerts.extend(self._duplicate_alerts(user_id, now, db))
        alerts.extend(self._profile_alerts(user_id, profile, db))

        return sorted(alerts, key=lambda a: (SEVERITY_ORDER[a.severity], a.id))

    def _expire_dismissals(self, user_id: int, active_ids: Set[str], db: Session) -> int:
        """Forget dismissals of alerts that have cleared so a recurrence shows again"""
        expired = db.query(models.DismissedAlert).filter(
            and_(
                models.DismissedAlert.user_id == user_id,
                models.DismissedAlert.alert_id.notin_(active_ids)
            )
        ).delete(synchronize_session="fetch")
        if expired:
            db.commit()
            logger.info(f"Expired {expired} dismissals for user {user_id}")
        return expired

    async def get_critical_alerts(self, user_id: int, db: Session) -> List[CriticalAlert]:
        """Current alerts the user has not dismissed"""
        alerts = self.evaluate(user_id, db)
        self._expire_dismissals(user_id, {a.id for a in alerts}, db)
        dismissed = self._dismissed_ids(user_id, db)
        return [a for a in alerts if a.id not in dismissed]

    async def dismiss_alert(self, user_id: int, alert_id: str, db: Session) -> models.DismissedAlert:
        """Hide an active alert; the dose ledger is not touched"""
        existing = db.query(models.DismissedAlert).filter(
            and_(
                models.DismissedAlert.user_id == user_id,
                models.DismissedAlert.alert_id == alert_id
            )
        ).first()
        if existing:
            return existing

        if alert_id not in {a.id for a in self.evaluate(user_id, db)}:
            raise NotFound(f"Alert {alert_id} is not active")

        dismissal = models.DismissedAlert(user_id=user_id, alert_id=alert_id, dismissed_at=self.clock())
        try:
            with db.begin_nested():
                db.add(dismissal)
        except IntegrityError:
            return db.query(models.DismissedAlert).filter(
                and_(
                    models.DismissedAlert.user_id == user_id,
                    models.DismissedAlert.alert_id == alert_id
                )
            ).one()
        db.commit()
        logger.info(f"User {user_id} dismissed alert {alert_id}")
        return dismissal


# Singleton instance
alert_engine = AlertEngine()
