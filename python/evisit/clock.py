"""
Time helpers. All stored and compared timestamps are timezone-aware UTC.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Union

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        value = ensure_utc(value).date()
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of_day(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        value = ensure_utc(value).date()
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Number of complete 24h periods from earlier to later (floor)."""
    return (ensure_utc(later) - ensure_utc(earlier)) // timedelta(days=1)
