"""
Time helpers shared by the scoring and deck modules.
All stored timestamps are timezone-aware UTC; naive values are read as UTC.
"""

import math
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def days_since(ts: datetime, now: Optional[datetime] = None) -> float:
    """Fractional days from ts to now. Negative when ts lies in the future."""
    now = now or utcnow()
    return (as_utc(now) - as_utc(ts)).total_seconds() / SECONDS_PER_DAY


def whole_days_since(ts: datetime, now: Optional[datetime] = None) -> int:
    return math.floor(days_since(ts, now))


def hours_since(ts: datetime, now: Optional[datetime] = None) -> float:
    return days_since(ts, now) * 24


def local_today(tz_name: str = 'UTC', now: Optional[datetime] = None) -> date:
    """Calendar date in the user's timezone; decks roll over at local midnight."""
    now = now or utcnow()
    return as_utc(now).astimezone(ZoneInfo(tz_name)).date()
