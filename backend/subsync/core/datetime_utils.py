"""Datetime utilities for consistent timezone handling across the application."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time - standardized across the application.

    Returns:
        Current datetime in UTC timezone.
    """
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """Get current UTC time as naive datetime for database operations.

    Returns:
        Current datetime in UTC as naive datetime (no timezone info).

    Note:
        This is specifically for SQLAlchemy models that use TIMESTAMP WITHOUT TIME ZONE
        columns. For application logic, use utc_now() instead.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(value: Optional[int | str]) -> Optional[datetime]:
    """Convert a unix timestamp (seconds) as sent by Stripe to an aware UTC datetime.

    Stripe metadata values are always strings, so numeric strings are accepted too.
    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def to_unix(value: datetime) -> int:
    """Convert a datetime to unix seconds, treating naive values as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())
