"""Recurrence rule validation and occurrence generation.

Generation is a pure function of (start, rule, instance_cap): the same inputs
always give the same strictly increasing list of start datetimes, never longer
than the cap.
"""
from __future__ import annotations

import datetime as _dt
from typing import Callable, Iterator, List, Optional, Tuple, Union

from core.constants import (
    DEFAULT_INSTANCE_CAP,
    MAX_INTERVAL,
    MAX_MONTH_DAY,
    MAX_WEEKDAY,
    MIN_INTERVAL,
    MIN_MONTH_DAY,
    MIN_WEEKDAY,
)
from core.date_utils import add_days, add_months, add_years, end_of_day, weekday_of

from .errors import EmptyGenerationError, InvalidRuleError
from .model import AfterCount, Never, OnDate, RecurrenceRule, RepeatUnit

__all__ = [
    "expand_series",
    "generate_occurrences",
    "validate_rule",
]


def _clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))


def validate_rule(rule: RecurrenceRule, start_date: Optional[_dt.date] = None) -> None:
    """Raise InvalidRuleError when the rule cannot be generated as given.

    Disabled rules are always valid (they describe a one-off appointment).
    """
    if not rule.enabled:
        return
    if not isinstance(rule.interval, int) or rule.interval < MIN_INTERVAL:
        raise InvalidRuleError("Repeat interval must be at least 1", field="interval")
    if rule.unit is RepeatUnit.WEEK and rule.weekday is not None:
        if not MIN_WEEKDAY <= rule.weekday <= MAX_WEEKDAY:
            raise InvalidRuleError(
                f"Weekday must be between {MIN_WEEKDAY} (Sunday) and {MAX_WEEKDAY} (Saturday)",
                field="weekday",
            )
    if rule.unit is RepeatUnit.MONTH and rule.month_day is not None:
        if not MIN_MONTH_DAY <= rule.month_day <= MAX_MONTH_DAY:
            raise InvalidRuleError(
                f"Day of month must be between {MIN_MONTH_DAY} and {MAX_MONTH_DAY}",
                field="monthDay",
            )
    end = rule.end
    if isinstance(end, OnDate):
        if end.date is None:
            raise InvalidRuleError("An end date is required when the series ends on a date", field="endOnDate")
        if start_date is not None and end.date < start_date:
            raise InvalidRuleError("End date must not be before the start date", field="endOnDate")
    elif isinstance(end, AfterCount):
        if end.count < 1:
            raise InvalidRuleError("Occurrence count must be at least 1", field="endAfterCount")
    elif not isinstance(end, Never):
        raise InvalidRuleError(f"Unknown end condition: {end!r}", field="endMode")


Step = Callable[[_dt.datetime], _dt.datetime]


def _first_and_step(start: _dt.datetime, rule: RecurrenceRule, interval: int) -> Tuple[_dt.datetime, Step]:
    """Return the first candidate and the function that moves to the next one."""
    unit = rule.unit
    if unit is RepeatUnit.DAY:
        return start, lambda cur: add_days(cur, interval)

    if unit is RepeatUnit.WEEK:
        wd = rule.weekday if rule.weekday is not None else weekday_of(start)
        first = add_days(start, (wd - weekday_of(start) + 7) % 7)
        return first, lambda cur: add_days(cur, interval * 7)

    if unit is RepeatUnit.MONTH:
        md = _clamp(rule.month_day if rule.month_day is not None else start.day, MIN_MONTH_DAY, MAX_MONTH_DAY)
        first = start.replace(day=md, second=0, microsecond=0)
        if first < start:
            first = add_months(first, interval)
        # md <= 27 exists in every month, so add_months never clamps here
        return first, lambda cur: add_months(cur, interval)

    # Each year step starts from the previous occurrence: Feb 29 stays on Feb 28
    return start, lambda cur: add_years(cur, interval)


def _candidates(start: _dt.datetime, rule: RecurrenceRule, interval: int) -> Iterator[_dt.datetime]:
    """Yield candidates until the next one would fall past year 9999."""
    try:
        cur, step = _first_and_step(start, rule, interval)
    except (OverflowError, ValueError):
        return
    while True:
        yield cur
        try:
            cur = step(cur)
        except (OverflowError, ValueError):
            return


def generate_occurrences(
    start: _dt.datetime,
    rule: RecurrenceRule,
    instance_cap: int = DEFAULT_INSTANCE_CAP,
    *,
    strict: bool = False,
) -> List[_dt.datetime]:
    """Expand a rule into occurrence start datetimes.

    Stop conditions, checked before each candidate is appended:
      - OnDate(d): candidate later than the end of day d (d itself included)
      - AfterCount(n): min(n, instance_cap) occurrences collected
      - Never: instance_cap occurrences collected
    The cap bounds every rule, OnDate included. A series also ends at the
    last candidate representable as a datetime (year 9999).

    An OnDate rule whose first candidate already lies past the end date
    returns just [start]; with strict=True it raises EmptyGenerationError
    instead. A disabled rule returns [start].
    """
    cap = max(1, int(instance_cap))
    if not rule.enabled:
        return [start]

    end = rule.end
    end_on: Optional[_dt.datetime] = None
    target = cap
    if isinstance(end, AfterCount):
        target = _clamp(int(end.count or 1), 1, cap)
    elif isinstance(end, OnDate):
        if end.date is None:
            return [start]
        end_on = end_of_day(end.date)

    interval = _clamp(int(rule.interval or 1), MIN_INTERVAL, MAX_INTERVAL)
    out: List[_dt.datetime] = []
    for candidate in _candidates(start, rule, interval):
        if end_on is not None and candidate > end_on:
            break
        if len(out) >= target:
            break
        out.append(candidate)

    if not out:
        if strict:
            raise EmptyGenerationError("The series ends before its first occurrence.")
        return [start]
    return out


def expand_series(
    start: _dt.datetime,
    rule: RecurrenceRule,
    duration: Union[_dt.timedelta, int],
    instance_cap: int = DEFAULT_INSTANCE_CAP,
) -> List[Tuple[_dt.datetime, _dt.datetime]]:
    """Pair each generated start with its end (start + duration)."""
    delta = duration if isinstance(duration, _dt.timedelta) else _dt.timedelta(minutes=int(duration))
    return [(s, s + delta) for s in generate_occurrences(start, rule, instance_cap)]
