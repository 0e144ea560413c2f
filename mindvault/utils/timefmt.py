"""
Time Utilities

Timestamps inside MindVault are timezone-aware UTC datetimes. The repository
persists them as integer microseconds since the Unix epoch so that range
comparisons in SQL are exact.
"""

from datetime import datetime, timedelta, timezone
from typing import Tuple

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def utcnow() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive values are interpreted as local time, matching datetime.timestamp().
    """
    return value.astimezone(timezone.utc)


def to_epoch_micros(value: datetime) -> int:
    """Convert a datetime to integer microseconds since the epoch."""
    return (ensure_utc(value) - EPOCH) // _MICROSECOND


def from_epoch_micros(micros: int) -> datetime:
    """Convert integer microseconds since the epoch to an aware UTC datetime."""
    return EPOCH + timedelta(microseconds=micros)


def time_remaining(now: datetime, target: datetime) -> Tuple[int, int, int]:
    """
    Split the interval from now to target into whole days, hours and minutes.

    Returns (0, 0, 0) when the target is not in the future.
    """
    seconds = int((ensure_utc(target) - ensure_utc(now)).total_seconds())
    if seconds <= 0:
        return 0, 0, 0

    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    return days, hours, minutes


def format_time_remaining(now: datetime, target: datetime) -> str:
    """
    Countdown label for a locked item.

    "2d 5h" while days remain, "5h 12m" while hours remain, "12m" in the last
    hour, and "Unlocked" once the target time has passed.
    """
    if ensure_utc(target) <= ensure_utc(now):
        return "Unlocked"

    days, hours, minutes = time_remaining(now, target)
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
