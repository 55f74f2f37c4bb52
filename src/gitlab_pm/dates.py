"""Date and number helpers shared by the analytics modules."""

import math
from datetime import date, datetime, time, timedelta, timezone

from dateutil import parser as dtparser


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def parse_date(value) -> date | None:
    """Parse a GitLab date value ("YYYY-MM-DD" or a timestamp) to a date."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except (ValueError, TypeError):
        return None


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 timestamp to an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return start_of_day(value)
    try:
        return as_utc(dtparser.isoparse(str(value)))
    except (ValueError, TypeError, OverflowError):
        return None


def days_until(day: date, now: datetime) -> int:
    """Whole calendar days from ``now`` to ``day``; negative when past."""
    return (day - now.date()).days


def working_days(start: date, end: date) -> int:
    """Count Monday to Friday days in the inclusive range [start, end]."""
    if end < start:
        return 0
    count = 0
    current = start
    while current <= end:
        if current.weekday() < 5:
            count += 1
        current += timedelta(days=1)
    return count


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero for non-negative values (0.5 -> 1).

    Noise below nine decimals is discarded first so that 77.49999999999999
    from float arithmetic rounds like 77.5.
    """
    factor = 10 ** digits
    scaled = round(value * factor, 9)
    result = math.floor(scaled + 0.5) / factor
    return result if digits else int(result)
