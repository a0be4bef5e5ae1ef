"""
UTC time helpers.

Timestamps are stored as naive UTC (``TIMESTAMP WITHOUT TIME ZONE``) so that
comparisons behave the same on PostgreSQL and SQLite.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime:
    """Normalise a caller-supplied ``now`` (aware or naive UTC) to naive UTC."""
    if value is None:
        return utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
