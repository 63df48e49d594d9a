"""Calendar arithmetic on naive local datetimes.

Day/month/year shifts keep the wall-clock time of day. Month and year shifts
clamp the day to the target month's length (Jan 31 + 1 month -> Feb 28/29,
Feb 29 + 1 year -> Feb 28). Weekdays use the 0 = Sunday convention.
"""
from __future__ import annotations

import calendar as _calendar
import datetime as _dt
from typing import Any, List, Optional

from .constants import FMT_DATE, FMT_DISPLAY, FMT_TIME

__all__ = [
    "DAY_MAP",
    "add_days",
    "add_months",
    "add_years",
    "ceil_to_step",
    "days_in_month",
    "end_of_day",
    "format_display_datetime",
    "format_local_date",
    "format_local_time",
    "make_time_slots",
    "parse_local_date",
    "parse_local_datetime",
    "parse_weekday",
    "weekday_of",
]

# Day-of-week name/abbreviation/RRULE code to index (Sunday = 0)
DAY_MAP = {
    "sunday": 0,
    "sun": 0,
    "su": 0,
    "monday": 1,
    "mon": 1,
    "mo": 1,
    "tuesday": 2,
    "tue": 2,
    "tues": 2,
    "tu": 2,
    "wednesday": 3,
    "wed": 3,
    "we": 3,
    "thursday": 4,
    "thu": 4,
    "thur": 4,
    "thurs": 4,
    "th": 4,
    "friday": 5,
    "fri": 5,
    "fr": 5,
    "saturday": 6,
    "sat": 6,
    "sa": 6,
}


def days_in_month(year: int, month: int) -> int:
    return _calendar.monthrange(year, month)[1]


def add_days(dt: _dt.datetime, n: int) -> _dt.datetime:
    """Shift by n whole days of wall time (no DST correction)."""
    return dt + _dt.timedelta(days=n)


def add_months(dt: _dt.datetime, n: int) -> _dt.datetime:
    """Shift the month field by n, clamping the day to the target month."""
    idx = dt.year * 12 + (dt.month - 1) + n
    year, month0 = divmod(idx, 12)
    month = month0 + 1
    day = min(dt.day, days_in_month(year, month))
    return dt.replace(year=year, month=month, day=day)


def add_years(dt: _dt.datetime, n: int) -> _dt.datetime:
    """Shift the year field by n, clamping Feb 29 in non-leap years."""
    year = dt.year + n
    day = min(dt.day, days_in_month(year, dt.month))
    return dt.replace(year=year, day=day)


def ceil_to_step(dt: _dt.datetime, step_minutes: int) -> _dt.datetime:
    """Round forward to the next multiple of step_minutes past the hour.

    Seconds and microseconds are zeroed. Values already on a boundary with
    no sub-minute part are returned unchanged.
    """
    if step_minutes <= 1:
        if dt.second == 0 and dt.microsecond == 0:
            return dt
        return dt.replace(second=0, microsecond=0) + _dt.timedelta(minutes=1)
    discard = dt.minute % step_minutes
    if discard == 0 and dt.second == 0 and dt.microsecond == 0:
        return dt
    base = dt.replace(second=0, microsecond=0)
    return base + _dt.timedelta(minutes=step_minutes - discard)


def weekday_of(dt: _dt.date) -> int:
    """Return 0..6 with Sunday = 0 (Python's weekday() has Monday = 0)."""
    return (dt.weekday() + 1) % 7


def end_of_day(d: _dt.date) -> _dt.datetime:
    return _dt.datetime.combine(d, _dt.time.max)


def parse_local_date(s: Any) -> _dt.date:
    """Parse 'YYYY-MM-DD' (a datetime's date part is accepted too)."""
    if isinstance(s, _dt.datetime):
        return s.date()
    if isinstance(s, _dt.date):
        return s
    text = str(s).strip()
    if "T" in text:
        text = text.split("T", 1)[0]
    return _dt.date.fromisoformat(text)


def parse_local_datetime(date_str: Any, time_str: Optional[str] = None) -> _dt.datetime:
    """Build a naive local datetime.

    Accepts either ('YYYY-MM-DD', 'HH:MM') or a single ISO string such as
    '2024-01-01T09:00'. A trailing 'Z' is ignored.
    """
    if isinstance(date_str, _dt.datetime):
        return date_str
    if time_str is None:
        text = str(date_str).replace("Z", "").strip()
        if "T" not in text and " " not in text:
            text = text + "T00:00"
        return _dt.datetime.fromisoformat(text.replace(" ", "T", 1)).replace(tzinfo=None)
    d = parse_local_date(date_str)
    hh, _, mm = (time_str or "00:00").partition(":")
    return _dt.datetime(d.year, d.month, d.day, int(hh or 0), int(mm or 0))


def format_local_date(d: _dt.date) -> str:
    return d.strftime(FMT_DATE)


def format_local_time(dt: _dt.datetime) -> str:
    return dt.strftime(FMT_TIME)


def format_display_datetime(dt: _dt.datetime) -> str:
    """Render as 'YYYY-MM-DD • HH:MM' for user-facing messages."""
    return dt.strftime(FMT_DISPLAY)


def make_time_slots(step_minutes: int = 5) -> List[str]:
    """Return 'HH:MM' labels covering one day at the given step."""
    step = max(1, int(step_minutes))
    return [f"{h:02d}:{m:02d}" for h in range(24) for m in range(0, 60, step)]


def parse_weekday(value: Any) -> Optional[int]:
    """Convert an index or day name to 0..6 (Sunday = 0).

    Examples:
        1 -> 1
        'Monday' -> 1
        'sun' -> 0
        'FR' -> 5
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return int(text)
    return DAY_MAP.get(text)
