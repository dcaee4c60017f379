"""Time helpers shared by the ledger and the rate limiter."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def reference_timezone() -> ZoneInfo:
    return ZoneInfo(settings.CREDIT_RESET_TIMEZONE)


def reference_date(now: Optional[datetime] = None) -> date:
    """Calendar date in the fixed reference timezone used for daily resets."""
    current = as_utc(now) if now else utc_now()
    return current.astimezone(reference_timezone()).date()


def next_reference_midnight(now: Optional[datetime] = None) -> datetime:
    """Start of the next reference-timezone day, in UTC."""
    tz = reference_timezone()
    tomorrow = reference_date(now) + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=tz).astimezone(timezone.utc)


def next_top_of_hour(now: Optional[datetime] = None) -> datetime:
    current = as_utc(now) if now else utc_now()
    return current.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
