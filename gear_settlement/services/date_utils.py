"""
Timestamp helpers for the settlement engine.

Every timestamp is stored as naive UTC. Incoming values may be aware
(ISO strings with an offset) and are normalized before they reach a model.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

SECONDS_PER_DAY = 24 * 60 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_timestamp(value: datetime) -> datetime:
    """
    Convert an aware datetime to naive UTC; naive values are assumed UTC.

    Args:
        value: Timestamp received from a caller

    Returns:
        datetime: Naive UTC timestamp
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def rental_days(start: datetime, end: datetime) -> int:
    """
    Billable days between two timestamps, rounded up, minimum one day.

    Args:
        start: Rental start
        end: Rental end

    Returns:
        int: Whole days, at least 1
    """
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 1
    return max(1, math.ceil(seconds / SECONDS_PER_DAY))


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)
