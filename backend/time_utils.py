"""
Time utilities for the Task Manager application.

This module provides a single source of truth for time operations.
All instants are handled as timezone-aware UTC datetimes; naive values
arriving from clients or from SQLite are interpreted as UTC.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive datetimes are assumed to already be in UTC (SQLite drops tzinfo
    on round-trip, and the API documents UTC for naive input).

    Args:
        value: datetime to normalize, or None

    Returns:
        timezone-aware UTC datetime, or None if value was None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def max_process_until(now: Optional[datetime] = None) -> datetime:
    """Latest instant a processing pass may be asked to run up to (one year ahead)."""
    return (now or utc_now()) + timedelta(days=365)
