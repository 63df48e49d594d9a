"""Scheduling value objects and dict normalization.

Rules, appointments, and series metadata are plain dataclasses. Rule dicts
coming from YAML or JSON may use camelCase or snake_case keys, weekday names,
or a one-element ``weekdays`` list; ``rule_from_dict`` folds them into a
canonical RecurrenceRule and ``rule_to_dict`` writes the camelCase form back.
"""
from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from core.constants import STATUS_DELETED, STATUS_OPEN, SERIES_ACTIVE
from core.date_utils import (
    format_display_datetime,
    format_local_date,
    format_local_time,
    parse_local_date,
    parse_local_datetime,
    parse_weekday,
)

from .errors import InvalidRuleError


class RepeatUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True)
class Never:
    mode = "never"


@dataclass(frozen=True)
class OnDate:
    date: Optional[_dt.date]
    mode = "onDate"


@dataclass(frozen=True)
class AfterCount:
    count: int
    mode = "afterCount"


EndCondition = Union[Never, OnDate, AfterCount]


@dataclass(frozen=True)
class RecurrenceRule:
    """How a series repeats. Never mutated once attached to a series."""

    enabled: bool = True
    interval: int = 1
    unit: RepeatUnit = RepeatUnit.WEEK
    weekday: Optional[int] = None  # 0 = Sunday; week unit only
    month_day: Optional[int] = None  # 1..27; month unit only
    end: EndCondition = field(default_factory=Never)

    def __post_init__(self) -> None:
        if not isinstance(self.unit, RepeatUnit):
            try:
                object.__setattr__(self, "unit", RepeatUnit(str(self.unit).lower()))
            except ValueError:
                raise InvalidRuleError(f"Unknown repeat unit: {self.unit!r}", field="unit") from None

    def with_end(self, end: EndCondition) -> "RecurrenceRule":
        return replace(self, end=end)


@dataclass
class Appointment:
    id: str
    owner_id: str
    start: _dt.datetime
    end: _dt.datetime
    title: str = ""
    description: str = ""
    status: str = STATUS_OPEN
    deleted_at: Optional[_dt.datetime] = None
    deleted_by: Optional[str] = None
    series_id: Optional[str] = None
    series_index: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.status != STATUS_DELETED

    @property
    def interval(self) -> Tuple[_dt.datetime, _dt.datetime]:
        return (self.start, self.end)


@dataclass
class SeriesMetadata:
    id: str
    owner_id: str
    rule: RecurrenceRule
    duration_minutes: int
    start: _dt.datetime
    end: _dt.datetime
    title: str = ""
    description: str = ""
    instance_count: int = 0
    first_appointment_id: Optional[str] = None
    status: str = SERIES_ACTIVE
    deleted_at: Optional[_dt.datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.status != STATUS_DELETED


@dataclass(frozen=True)
class Conflict:
    """An existing active appointment that overlaps a candidate interval."""

    appointment: Appointment
    candidate_start: _dt.datetime
    candidate_end: _dt.datetime

    def describe(self) -> str:
        appt = self.appointment
        title = appt.title or "Appointment"
        return f"Collision: {title} ({format_display_datetime(appt.start)}–{format_local_time(appt.end)})"


# -----------------------------------------------------------------------------
# Dict normalization
# -----------------------------------------------------------------------------

_END_MODES = {
    "never": "never",
    "ondate": "onDate",
    "on_date": "onDate",
    "until": "onDate",
    "aftercount": "afterCount",
    "after_count": "afterCount",
    "count": "afterCount",
}


def _pick(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _to_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _coerce_bool(v: Any, default: bool = True) -> bool:
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _parse_end(d: Dict[str, Any]) -> EndCondition:
    raw = _pick(d, "endMode", "end_mode")
    mode = None
    if raw is not None:
        mode = _END_MODES.get(str(raw).strip().lower())
        if mode is None:
            raise InvalidRuleError(f"Unknown end mode: {raw!r}", field="endMode")
    end_on = _pick(d, "endOnDate", "end_on_date", "until")
    count = _to_int(_pick(d, "endAfterCount", "end_after_count", "count"))
    if mode is None:
        if end_on is not None:
            mode = "onDate"
        elif count is not None:
            mode = "afterCount"
        else:
            mode = "never"
    if mode == "onDate":
        if not end_on:
            return OnDate(None)
        try:
            return OnDate(parse_local_date(end_on))
        except ValueError:
            raise InvalidRuleError(f"Invalid end date: {end_on!r}", field="endOnDate") from None
    if mode == "afterCount":
        # Missing count is left for validate_rule to reject
        return AfterCount(count if count is not None else 0)
    return Never()


def rule_from_dict(d: Optional[Dict[str, Any]]) -> RecurrenceRule:
    """Build a RecurrenceRule from a loose dict.

    Unknown units and unreadable weekdays raise InvalidRuleError; numeric
    range checks are left to validate_rule.
    """
    d = d or {}
    unit_raw = str(_pick(d, "unit", "repeatUnit", "repeat_unit", "repeat") or "week").strip().lower()
    aliases = {"daily": "day", "weekly": "week", "monthly": "month", "yearly": "year"}
    try:
        unit = RepeatUnit(aliases.get(unit_raw, unit_raw))
    except ValueError:
        raise InvalidRuleError(f"Unknown repeat unit: {unit_raw!r}", field="unit") from None

    weekday_raw = _pick(d, "weekday", "weekdaySingle", "weekday_single")
    if weekday_raw is None:
        days = _pick(d, "weekdays", "byday")
        if isinstance(days, (list, tuple)) and days:
            weekday_raw = days[0]
        elif days is not None and not isinstance(days, (list, tuple)):
            weekday_raw = days
    weekday = parse_weekday(weekday_raw)
    if weekday_raw is not None and weekday is None:
        raise InvalidRuleError(f"Unknown weekday: {weekday_raw!r}", field="weekday")

    interval = _to_int(_pick(d, "interval", "repeatEvery", "repeat_every"))
    return RecurrenceRule(
        enabled=_coerce_bool(d.get("enabled"), True),
        interval=interval if interval is not None else 1,
        unit=unit,
        weekday=weekday,
        month_day=_to_int(_pick(d, "monthDay", "month_day")),
        end=_parse_end(d),
    )


def rule_to_dict(rule: RecurrenceRule) -> Dict[str, Any]:
    """Return the canonical camelCase dict for a rule."""
    out: Dict[str, Any] = {
        "enabled": rule.enabled,
        "interval": rule.interval,
        "unit": rule.unit.value,
    }
    if rule.unit is RepeatUnit.WEEK and rule.weekday is not None:
        out["weekday"] = rule.weekday
    if rule.unit is RepeatUnit.MONTH and rule.month_day is not None:
        out["monthDay"] = rule.month_day
    out["endMode"] = rule.end.mode
    if isinstance(rule.end, OnDate) and rule.end.date is not None:
        out["endOnDate"] = format_local_date(rule.end.date)
    if isinstance(rule.end, AfterCount):
        out["endAfterCount"] = rule.end.count
    return out


def _dt_or_none(v: Any) -> Optional[_dt.datetime]:
    if v is None or v == "":
        return None
    return parse_local_datetime(v)


def appointment_to_dict(appt: Appointment) -> Dict[str, Any]:
    return {
        "id": appt.id,
        "ownerId": appt.owner_id,
        "title": appt.title,
        "description": appt.description,
        "startDate": appt.start.isoformat(),
        "endDate": appt.end.isoformat(),
        "status": appt.status,
        "deletedAt": appt.deleted_at.isoformat() if appt.deleted_at else None,
        "deletedByUserId": appt.deleted_by,
        "seriesId": appt.series_id,
        "seriesIndex": appt.series_index,
    }


def appointment_from_dict(d: Dict[str, Any]) -> Appointment:
    return Appointment(
        id=str(d.get("id") or ""),
        owner_id=str(_pick(d, "ownerId", "owner_id", "createdByUserId") or ""),
        title=str(d.get("title") or ""),
        description=str(d.get("description") or ""),
        start=parse_local_datetime(_pick(d, "startDate", "start")),
        end=parse_local_datetime(_pick(d, "endDate", "end")),
        status=str(d.get("status") or STATUS_OPEN),
        deleted_at=_dt_or_none(_pick(d, "deletedAt", "deleted_at")),
        deleted_by=_pick(d, "deletedByUserId", "deleted_by"),
        series_id=_pick(d, "seriesId", "series_id"),
        series_index=_to_int(_pick(d, "seriesIndex", "series_index")),
    )


def series_to_dict(series: SeriesMetadata) -> Dict[str, Any]:
    return {
        "id": series.id,
        "ownerId": series.owner_id,
        "title": series.title,
        "description": series.description,
        "startDate": series.start.isoformat(),
        "endDate": series.end.isoformat(),
        "durationMinutes": series.duration_minutes,
        "recurrence": rule_to_dict(series.rule),
        "instanceCount": series.instance_count,
        "firstAppointmentId": series.first_appointment_id,
        "status": series.status,
        "deletedAt": series.deleted_at.isoformat() if series.deleted_at else None,
        "deletedByUserId": series.deleted_by,
    }


def series_from_dict(d: Dict[str, Any]) -> SeriesMetadata:
    return SeriesMetadata(
        id=str(d.get("id") or ""),
        owner_id=str(_pick(d, "ownerId", "owner_id", "createdForUserId") or ""),
        title=str(d.get("title") or ""),
        description=str(d.get("description") or ""),
        start=parse_local_datetime(_pick(d, "startDate", "start")),
        end=parse_local_datetime(_pick(d, "endDate", "end")),
        duration_minutes=_to_int(_pick(d, "durationMinutes", "duration_minutes")) or 0,
        rule=rule_from_dict(_pick(d, "recurrence", "rule")),
        instance_count=_to_int(_pick(d, "instanceCount", "instance_count")) or 0,
        first_appointment_id=_pick(d, "firstAppointmentId", "first_appointment_id"),
        status=str(d.get("status") or SERIES_ACTIVE),
        deleted_at=_dt_or_none(_pick(d, "deletedAt", "deleted_at")),
        deleted_by=_pick(d, "deletedByUserId", "deleted_by"),
    )
