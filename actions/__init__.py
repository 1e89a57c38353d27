"""
Actions Module
Engines for reminders, delivery, and critical alerts
"""

from .reminder_scheduler import (
    GenerationSummary,
    ReminderScheduler,
    next_occurrence,
    reminder_scheduler
)

from .notification_dispatcher import (
    DispatchOutcome,
    NotificationDispatcher,
    notification_dispatcher
)

from .alert_engine import (
    CriticalAlert,
    AlertSeverity,
    AlertType,
    AlertEngine,
    alert_engine
)


__all__ = [
    # Reminder Scheduler
    "GenerationSummary",
    "ReminderScheduler",
    "next_occurrence",
    "reminder_scheduler",

    # Notification Dispatcher
    "DispatchOutcome",
    "NotificationDispatcher",
    "notification_dispatcher",

    # Alert Engine
    "CriticalAlert",
    "AlertSeverity",
    "AlertType",
    "AlertEngine",
    "alert_engine"
]
