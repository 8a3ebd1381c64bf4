from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from typing import Any

Clock = Callable[[], datetime]

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_hhmm(value: str) -> time:
    match = _HHMM.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid time of day: {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:  # noqa: PLR2004
        raise ValueError(f"Invalid time of day: {value!r}")
    return time(hours, minutes)


def to_datetime(value: Any, tz: tzinfo = UTC) -> datetime:
    """Normalize a submitted or stored timestamp to an aware ``datetime``.

    Accepts datetimes, dates (midnight), ISO-8601 strings and epoch seconds
    (DynamoDB hands numbers back as ``Decimal``). Naive values are read in ``tz``.
    """
    if isinstance(value, bool):
        raise TypeError(f"Not a timestamp: {value!r}")
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    elif isinstance(value, (int, float, Decimal)):
        return datetime.fromtimestamp(float(value), tz=UTC)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.strip())
    else:
        raise TypeError(f"Not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def to_date(value: Any, tz: tzinfo = UTC) -> date:
    """Calendar day of ``value`` as seen in ``tz``."""
    if isinstance(value, datetime):
        return to_datetime(value, tz).astimezone(tz).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value.strip()) == 10:  # noqa: PLR2004
        return date.fromisoformat(value.strip())
    return to_datetime(value, tz).astimezone(tz).date()


def combine(day: date | datetime, hhmm: str, tz: tzinfo = UTC) -> datetime:
    """Apply an ``HH:mm`` time of day to ``day``; seconds and microseconds are zero."""
    return datetime.combine(to_date(day, tz), parse_hhmm(hhmm), tzinfo=tz)


def duration_minutes(start: datetime, end: datetime) -> int:
    # negative when end precedes start; callers decide what that means
    return int((end - start).total_seconds() // 60)


def start_of_day(day: date | datetime, tz: tzinfo = UTC) -> datetime:
    return datetime.combine(to_date(day, tz), time.min, tzinfo=tz)


def end_of_day(day: date | datetime, tz: tzinfo = UTC) -> datetime:
    return start_of_day(day, tz) + timedelta(days=1) - timedelta(microseconds=1)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()
