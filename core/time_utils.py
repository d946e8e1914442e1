"""
core/time_utils.py -- UTC clock and ISO-8601 helpers shared by every store.

Timestamps are persisted as ISO-8601 text with a fixed microsecond width and
an explicit +00:00 offset, so lexical ordering in SQL equals chronological
ordering. Always go through to_iso() when writing a timestamp column.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp. Naive values are treated as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Number of complete 24-hour periods from earlier to later (floored)."""
    return (later - earlier).days
