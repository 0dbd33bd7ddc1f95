# kbase/core/utils/time_utils.py
"""Naive-UTC time helpers. All persisted timestamps are naive UTC."""

from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def add_one_month(value: datetime, day: Optional[int] = None) -> datetime:
    """
    Same day next month, clamped to the month's last day (Jan 31 -> Feb 28/29).

    ``day`` pins the day of month instead of keeping ``value``'s, so a chain
    of windows that went through a short month returns to its anchor
    (Feb 28 -> Mar 31 with ``day=31``).
    """
    return value + relativedelta(months=1, day=day)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
