"""Weekday-only date arithmetic for the pending balance hold schedule"""

from datetime import datetime, timedelta

from config import Config

SATURDAY = 5


def is_business_day(dt: datetime) -> bool:
    return dt.weekday() < SATURDAY


def add_business_days(start: datetime, business_days: int) -> datetime:
    """
    Walk forward from start one calendar day at a time, counting only weekdays.

    The time of day is preserved. A credit received on Friday with a 2-day
    schedule becomes available on Tuesday at the same time.
    """
    if business_days < 0:
        raise ValueError("business_days cannot be negative")

    current = start
    remaining = business_days
    while remaining > 0:
        current += timedelta(days=1)
        if is_business_day(current):
            remaining -= 1
    return current


def compute_available_at(received_at: datetime, payment_method: str) -> datetime:
    """When a credit received via payment_method becomes spendable"""
    return add_business_days(received_at, Config.hold_business_days_for(payment_method))
