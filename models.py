"""
Database Models
SQLAlchemy ORM models for DoseKeeper
"""

from sqlalchemy import Column, Integer, String, Boolean, Float, DateTime, ForeignKey, Text, Date, Enum, Index, UniqueConstraint, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timedelta
from enum import Enum as PyEnum

from config import TableNames, engine_config
from database import Base


# ==================== ENUMS ====================

class DoseStatus(str, PyEnum):
    """Lifecycle state of a dose instance"""
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    SKIPPED = "skipped"
    MISSED = "missed"


TERMINAL_DOSE_STATUSES = (DoseStatus.TAKEN, DoseStatus.SKIPPED, DoseStatus.MISSED)


class ScheduleFrequency(str, PyEnum):
    """How a schedule repeats"""
    DAILY = "daily"
    SPECIFIC_DAYS = "specific_days"
    INTERVAL = "interval"


class ItemCategory(str, PyEnum):
    """Kind of tracked item"""
    MEDICATION = "medication"
    SUPPLEMENT = "supplement"
    OTHER = "other"


class ConsumptionReason(str, PyEnum):
    """Reason attached to a stock movement"""
    TAKEN = "taken"
    ADJUSTED = "adjusted"
    REFILL = "refill"
    LOST = "lost"


class AlarmRecurrence(str, PyEnum):
    """Recurrence rule for a free-standing alarm"""
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NotificationChannel(str, PyEnum):
    """Notification delivery channels, in default priority order"""
    PUSH = "push"
    LOCAL = "local"
    WEB = "web"
    SOUND = "sound"


class DeliveryStatus(str, PyEnum):
    """Outcome of one notification attempt"""
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    FALLBACK = "fallback"


# ==================== MODELS ====================

class User(Base):
    """Account owning items, alarms and notification state"""
    __tablename__ = TableNames.USERS

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    api_token = Column(String(128), unique=True, index=True)
    timezone = Column(String(50), default="UTC")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    profile = relationship("Profile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    items = relationship("Item", back_populates="user", cascade="all, delete-orphan")
    alarms = relationship("Alarm", back_populates="user", cascade="all, delete-orphan")
    push_subscriptions = relationship("PushSubscription", back_populates="user", cascade="all, delete-orphan")


class Profile(Base):
    """Health attributes used for alert escalation"""
    __tablename__ = TableNames.PROFILES

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    birth_date = Column(Date)
    weight_kg = Column(Float)
    height_cm = Column(Float)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="profile")


class Item(Base):
    """A tracked medication or supplement"""
    __tablename__ = TableNames.ITEMS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(Enum(ItemCategory), default=ItemCategory.MEDICATION)
    dose_text = Column(String(100))  # e.g. "1 tablet", "500mg"
    with_food = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="items")
    schedules = relationship("Schedule", back_populates="item", cascade="all, delete-orphan")
    doses = relationship("DoseInstance", back_populates="item", cascade="all, delete-orphan")
    stock = relationship("StockRecord", back_populates="item", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_items_user_active", "user_id", "is_active"),
    )


class Schedule(Base):
    """Recurring dose definition; at most one active schedule per item"""
    __tablename__ = TableNames.SCHEDULES

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)

    frequency = Column(Enum(ScheduleFrequency), nullable=False, default=ScheduleFrequency.DAILY)
    times = Column(JSON, nullable=False, default=list)  # ["08:00", "20:00"], user-local
    days_of_week = Column(JSON)  # [0..6], Monday=0, for specific_days
    interval_days = Column(Integer, default=1)  # for interval, anchored at start_date
    start_date = Column(Date)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    item = relationship("Item", back_populates="schedules")


class DoseInstance(Base):
    """One expected administration; unique per (item, due_at)"""
    __tablename__ = TableNames.DOSE_INSTANCES

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    schedule_id = Column(Integer, ForeignKey("schedules.id"))

    due_at = Column(DateTime, nullable=False)  # naive UTC
    status = Column(Enum(DoseStatus), nullable=False, default=DoseStatus.SCHEDULED)
    taken_at = Column(DateTime)
    delay_minutes = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    item = relationship("Item", back_populates="doses")

    __table_args__ = (
        UniqueConstraint("item_id", "due_at", name="uq_dose_item_due"),
        Index("ix_dose_instances_status_due", "status", "due_at"),
    )

    def status_at(self, now, grace_hours=None):
        """Status observed at `now`; open doses past the grace window read as missed"""
        if grace_hours is None:
            grace_hours = engine_config.MISSED_GRACE_HOURS
        if self.status == DoseStatus.SCHEDULED and now > self.due_at + timedelta(hours=grace_hours):
            return DoseStatus.MISSED
        return self.status


class StockRecord(Base):
    """Inventory for one item"""
    __tablename__ = TableNames.STOCK_RECORDS

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), unique=True, nullable=False)

    units_left = Column(Integer, nullable=False, default=0)
    units_total = Column(Integer, nullable=False, default=0)
    consumption_history = Column(JSON, default=list)  # [{date, amount, reason}]
    projected_end_at = Column(DateTime)
    last_refill_at = Column(DateTime)
    depleted_at = Column(DateTime)  # set when units_left reaches 0, cleared on restock

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    item = relationship("Item", back_populates="stock")


class Alarm(Base):
    """User-facing recurring reminder not tied to a dose"""
    __tablename__ = TableNames.ALARMS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text)
    category = Column(String(50), default="check_in")

    scheduled_at = Column(DateTime, nullable=False)  # naive UTC
    recurrence = Column(Enum(AlarmRecurrence), nullable=False, default=AlarmRecurrence.ONCE)
    anchor_at = Column(DateTime)  # first occurrence; month steps keep its day
    enabled = Column(Boolean, default=True)
    last_triggered = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="alarms")

    __table_args__ = (
        Index("ix_alarms_enabled_scheduled", "enabled", "scheduled_at"),
    )


class PushSubscription(Base):
    """Registered push endpoint; keys are managed outside the engine"""
    __tablename__ = TableNames.PUSH_SUBSCRIPTIONS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    endpoint = Column(String(500), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="push_subscriptions")


class NotificationAttempt(Base):
    """
    Append-only notification audit trail.

    Rows with delivery_status=scheduled are reminder intents keyed by
    intent_key; delivery tries reference their intent through intent_id.
    """
    __tablename__ = TableNames.NOTIFICATION_ATTEMPTS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    intent_key = Column(String(120), unique=True)  # "dose:<id>:<due iso>:<offset>" / "alarm:<id>:<iso>"
    intent_id = Column(Integer, ForeignKey("notification_attempts.id"))
    dose_id = Column(Integer, ForeignKey("dose_instances.id", ondelete="SET NULL"))
    alarm_id = Column(Integer, ForeignKey("alarms.id", ondelete="SET NULL"))

    channel = Column(Enum(NotificationChannel), nullable=False)
    delivery_status = Column(Enum(DeliveryStatus), nullable=False, default=DeliveryStatus.SCHEDULED)
    category = Column(String(50), default="dose_reminder")
    title = Column(String(200))
    body = Column(Text)

    scheduled_at = Column(DateTime, nullable=False)
    attempted_at = Column(DateTime)
    dispatched_at = Column(DateTime)  # set on intents once handed to the dispatcher
    retry_count = Column(Integer, default=0)
    error_message = Column(Text)
    attempt_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_notification_attempts_due", "delivery_status", "scheduled_at"),
        Index("ix_notification_attempts_user", "user_id", "created_at"),
    )


class StreakProtectionState(Base):
    """Per-user streak freeze and recovery bookkeeping"""
    __tablename__ = TableNames.STREAK_PROTECTION_STATES

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    week_start = Column(Date)
    freezes_used_this_week = Column(Integer, default=0)
    last_freeze_date = Column(Date)
    protected_dates = Column(JSON, default=list)  # ISO dates converted into counting days

    recovery_target_date = Column(Date)  # broken day a recovery mission would restore
    recovery_doses_completed = Column(Integer, default=0)
    recovered_at = Column(DateTime)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DismissedAlert(Base):
    """Alerts the user chose to hide; never touches the dose ledger"""
    __tablename__ = TableNames.DISMISSED_ALERTS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    alert_id = Column(String(100), nullable=False)
    dismissed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "alert_id", name="uq_dismissed_alert"),
    )
