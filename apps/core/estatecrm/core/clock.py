from __future__ import annotations

import math
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from ``start`` to ``end``, rounded up; never negative."""

    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def months_between(start: datetime, end: datetime) -> int:
    start_utc = as_utc(start)
    end_utc = as_utc(end)
    return (end_utc.year - start_utc.year) * 12 + (end_utc.month - start_utc.month)
