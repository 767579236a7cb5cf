"""
Datetime helper utilities to ensure consistent timezone handling across the application.

CRITICAL: Every settlement table stores timezone-naive UTC datetimes (DateTime(timezone=False)).
Timezone-aware values coming from callers are normalised here before they are
compared with, or written to, persisted timestamps.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    Returns:
        Current UTC time without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_now(now: Optional[datetime] = None) -> datetime:
    """Use the caller-supplied clock reading if any, otherwise the current UTC time"""
    if now is None:
        return get_naive_utc_now()
    return ensure_naive_datetime(now)


def start_of_month(dt: datetime) -> datetime:
    """Midnight on the first day of dt's calendar month"""
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
