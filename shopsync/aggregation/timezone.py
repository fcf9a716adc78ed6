"""
Local calendar days as UTC windows

Daily metrics are reported per local calendar day in a Central European
style zone: standard offset outside summer time and one hour more in summer.
Summer time starts early on the last Sunday of March and ends early on the
last Sunday of October, so local midnight of either Sunday still carries the
previous offset.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from shopsync.config import get_settings

settings = get_settings()


def last_sunday(year: int, month: int) -> date:
    """Last Sunday of a month"""
    last_day = calendar.monthrange(year, month)[1]
    day = date(year, month, last_day)
    # Monday is 0, Sunday is 6
    return day - timedelta(days=(day.weekday() + 1) % 7)


def is_summer_time(day: date) -> bool:
    """True when local midnight starting ``day`` falls within summer time"""
    return last_sunday(day.year, 3) < day <= last_sunday(day.year, 10)


def utc_offset_hours(day: date, standard_offset: Optional[int] = None) -> int:
    """Local UTC offset in hours at the start of a local day"""
    base = settings.aggregation.standard_offset_hours if standard_offset is None else standard_offset
    return base + 1 if is_summer_time(day) else base


def local_midnight_utc(day: date, standard_offset: Optional[int] = None) -> datetime:
    """UTC instant of local midnight starting ``day``"""
    midnight = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return midnight - timedelta(hours=utc_offset_hours(day, standard_offset))


def local_day_window(day: date, standard_offset: Optional[int] = None) -> Tuple[datetime, datetime]:
    """
    Half-open UTC range [start, end) covering one local calendar day.
    
    The end is the next local midnight, so the two transition days are
    23 and 25 hours long.
    """
    start = local_midnight_utc(day, standard_offset)
    end = local_midnight_utc(day + timedelta(days=1), standard_offset)
    return start, end


def local_range_window(
    start_day: date,
    end_day: date,
    standard_offset: Optional[int] = None,
) -> Tuple[datetime, datetime]:
    """Half-open UTC range covering local days ``start_day``..``end_day`` inclusive"""
    return (
        local_midnight_utc(start_day, standard_offset),
        local_midnight_utc(end_day + timedelta(days=1), standard_offset),
    )


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them naive)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_date_of(instant: datetime, standard_offset: Optional[int] = None) -> date:
    """Local calendar day containing a UTC instant"""
    instant = ensure_utc(instant)
    base = settings.aggregation.standard_offset_hours if standard_offset is None else standard_offset
    guess = (instant + timedelta(hours=base)).date()
    for candidate in (guess, guess + timedelta(days=1), guess - timedelta(days=1)):
        start, end = local_day_window(candidate, standard_offset)
        if start <= instant < end:
            return candidate
    return guess


def yesterday(now: Optional[datetime] = None) -> date:
    """Previous local calendar day"""
    now = now or datetime.now(timezone.utc)
    return local_date_of(now) - timedelta(days=1)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by the upstream API"""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))
