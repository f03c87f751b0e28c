"""
core/clock.py -- UTC time helpers shared by every store.

Timestamps are persisted as fixed-width ISO 8601 strings (always with
microseconds and an explicit +00:00 offset). Fixed width means string order
equals time order, so range filters like ``created_at >= :since`` work as
plain text comparisons in SQLite.

Stores take a ``clock`` callable instead of calling datetime.now() directly
so tests can move time forward without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO 8601.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
