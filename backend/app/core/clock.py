"""
Clock helpers.

Every timestamp in the core is naive UTC so that SQL comparisons behave the
same on PostgreSQL and SQLite.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_now(now: Optional[datetime]) -> datetime:
    """Return `now` normalized to naive UTC, defaulting to the wall clock."""
    if now is None:
        return utcnow()
    if now.tzinfo is not None:
        return now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Half-open [start, end) UTC bounds of a calendar day."""
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)
