"""Timestamp coercion shared by the store validators and the Firestore adapter.

Stores and the billing relay report instants as epoch milliseconds (numbers or
numeric strings); Firestore hands back ``DatetimeWithNanoseconds`` or, in
exported JSON, ``{"_seconds", "_nanoseconds"}`` maps. Everything is normalized
to timezone-aware UTC ``datetime``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_epoch_millis(value: Any) -> Optional[int]:
    """Return epoch milliseconds from an int/float/numeric string, else None.

    Values that look like epoch seconds are scaled up.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        as_int = int(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            as_int = int(float(stripped))
        except ValueError:
            return None
    else:
        return None
    if as_int <= 0:
        return None
    return as_int if as_int > 100_000_000_000 else as_int * 1000


def datetime_from_millis(value: Any) -> Optional[datetime]:
    millis = parse_epoch_millis(value)
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def to_epoch_millis(value: Any) -> Optional[int]:
    dt = to_datetime(value)
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce Firestore/JSON timestamp representations to aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", value.get("nanos", 0))) or 0
        if seconds is None:
            return None
        try:
            return datetime.fromtimestamp(float(seconds) + float(nanos) / 1_000_000_000, tz=timezone.utc)
        except (TypeError, ValueError):
            return None
    if hasattr(value, "timestamp") and callable(value.timestamp):
        try:
            return datetime.fromtimestamp(float(value.timestamp()), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None
    return datetime_from_millis(value)


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)


def add_years(value: datetime, years: int) -> datetime:
    """Calendar-year offset; Feb 29 rolls back to Feb 28 in non-leap years."""
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, day=28)
