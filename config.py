"""
Configuration management for DoseKeeper
"""

from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "DoseKeeper"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./dosekeeper.db"
    DATABASE_ECHO: bool = False

    # Automation triggers (cron-style jobs must present this secret)
    CRON_SECRET: Optional[str] = None

    # Notifications
    PUSH_GATEWAY_URL: Optional[str] = None
    PUSH_GATEWAY_TOKEN: Optional[str] = None

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class EngineConfig:
    """Tunables for the scheduling and forecasting engine"""

    # Dose ledger
    MISSED_GRACE_HOURS: int = 4
    MATERIALIZE_DEFAULT_DAYS: int = 7
    SNOOZE_MINUTES: int = 15
    ON_TIME_TOLERANCE_MINUTES: int = 30

    # Reminder scheduler
    REMINDER_OFFSETS_MINUTES: list[int] = [15, 5, 0]
    REMINDER_HORIZON_HOURS: int = 24

    # Notification dispatcher
    CHANNEL_PRIORITY: list[str] = ["push", "local", "web", "sound"]
    DELIVERY_MAX_RETRIES: int = 3
    DELIVERY_BACKOFF_SECONDS: float = 1.0
    DELIVERY_TIMEOUT_SECONDS: float = 10.0

    # Stock forecaster
    CONSUMPTION_WINDOW_DAYS: int = 7
    TREND_UP_FACTOR: float = 1.2
    TREND_DOWN_FACTOR: float = 0.8

    # Streaks
    STREAK_THRESHOLD: float = 0.8
    STREAK_WINDOW_DAYS: int = 90
    STREAK_FREEZES_PER_WEEK: int = 1
    STREAK_RECOVERY_DOSES: int = 3

    # Critical alerts
    DUPLICATE_WINDOW_HOURS: int = 4
    MISSED_ALERT_WINDOW_HOURS: int = 4
    MISSED_CRITICAL_AFTER_HOURS: int = 2
    ELDERLY_AGE: int = 65
    POLYPHARMACY_MIN_ITEMS: int = 3
    BMI_LOW: float = 18.5
    BMI_HIGH: float = 30.0


# Database table names
class TableNames:
    USERS = "users"
    PROFILES = "profiles"
    ITEMS = "items"
    SCHEDULES = "schedules"
    DOSE_INSTANCES = "dose_instances"
    STOCK_RECORDS = "stock_records"
    ALARMS = "alarms"
    PUSH_SUBSCRIPTIONS = "push_subscriptions"
    NOTIFICATION_ATTEMPTS = "notification_attempts"
    STREAK_PROTECTION_STATES = "streak_protection_states"
    DISMISSED_ALERTS = "dismissed_alerts"


settings = get_settings()
engine_config = EngineConfig()
