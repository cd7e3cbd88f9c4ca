"""
Timezone utilities.

All database timestamps are stored as naive UTC. Device clocks report
ISO-8601 timestamps with arbitrary offsets; these helpers normalise them
before they are compared or persisted.
"""

from datetime import datetime

import pytz

UTC_TZ = pytz.UTC


def utc_now() -> datetime:
    """Get current time in UTC (timezone-naive, for database storage)."""
    return datetime.now(UTC_TZ).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    Normalise a datetime to naive UTC.

    Args:
        dt: Aware datetime in any timezone, or naive datetime assumed UTC

    Returns:
        Timezone-naive datetime in UTC
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC_TZ).replace(tzinfo=None)
