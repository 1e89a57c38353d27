"""
Time helpers shared by the engine services.

All persisted timestamps are naive UTC. Schedule clock times and calendar
days are interpreted in the owning user's IANA timezone.
"""

from datetime import datetime, date, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_time(val) -> Optional[time]:
    """Ensure the provided value is a datetime.time.

    Accepts a time object or a string like 'HH:MM' or 'HH:MM:SS'.
    Raises ValueError for malformed strings and TypeError for other types.
    """
    if val is None:
        return None
    if isinstance(val, time):
        return val
    if isinstance(val, str):
        for fmt in ("%H:%M", "%H:%M:%S"):
            try:
                return datetime.strptime(val, fmt).time()
            except ValueError:
                continue
        raise ValueError(f"Cannot parse scheduled time string: {val}")
    raise TypeError(f"Unsupported scheduled time type: {type(val)}")


def local_to_utc(day: date, clock_time: time, tz_name: Optional[str]) -> datetime:
    """Combine a local date and clock time and convert to naive UTC"""
    tz = ZoneInfo(tz_name or "UTC")
    local = datetime.combine(day, clock_time).replace(tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(moment: datetime, tz_name: Optional[str]) -> datetime:
    tz = ZoneInfo(tz_name or "UTC")
    return moment.replace(tzinfo=timezone.utc).astimezone(tz)


def local_date(moment: datetime, tz_name: Optional[str]) -> date:
    """Calendar date of a naive UTC timestamp in the given timezone"""
    return utc_to_local(moment, tz_name).date()


def start_of_local_day_utc(day: date, tz_name: Optional[str]) -> datetime:
    return local_to_utc(day, time.min, tz_name)


def week_start(day: date) -> date:
    """Sunday that opens the calendar week containing day"""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def to_naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Normalize caller-supplied timestamps; naive values are taken as UTC"""
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
