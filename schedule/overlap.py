"""Half-open interval overlap and collision scanning.

Intervals are [start, end): back-to-back appointments do not collide. All
functions here are read-only over the appointment snapshot they are given.
"""
from __future__ import annotations

import datetime as _dt
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from core.constants import DEFAULT_SLOT_STEP_MINUTES
from core.date_utils import make_time_slots, parse_local_date, parse_local_datetime

from .model import Appointment, Conflict

__all__ = [
    "ConflictFinder",
    "day_slot_conflicts",
    "find_conflict",
    "overlaps",
    "scan_for_first_collision",
    "to_timedelta",
]

Duration = Union[_dt.timedelta, int]


def overlaps(a_start: _dt.datetime, a_end: _dt.datetime, b_start: _dt.datetime, b_end: _dt.datetime) -> bool:
    """True iff [a_start, a_end) and [b_start, b_end) share any instant."""
    return a_start < b_end and a_end > b_start


def to_timedelta(duration: Duration) -> _dt.timedelta:
    """Accept a timedelta or a number of minutes."""
    if isinstance(duration, _dt.timedelta):
        return duration
    return _dt.timedelta(minutes=int(duration))


def _candidates_for(
    owner_id: str,
    existing: Iterable[Appointment],
    exclude_id: Optional[str],
    exclude_series_id: Optional[str],
) -> List[Appointment]:
    out: List[Appointment] = []
    for appt in existing:
        if appt.owner_id != owner_id or not appt.is_active:
            continue
        if exclude_id is not None and appt.id == exclude_id:
            continue
        if exclude_series_id is not None and appt.series_id == exclude_series_id:
            continue
        out.append(appt)
    return out


def find_conflict(
    owner_id: str,
    start: _dt.datetime,
    end: _dt.datetime,
    existing: Iterable[Appointment],
    exclude_id: Optional[str] = None,
    exclude_series_id: Optional[str] = None,
) -> Optional[Conflict]:
    """Return the earliest-starting active appointment overlapping [start, end).

    Only appointments of the same owner count. ``exclude_id`` skips the
    appointment being edited; ``exclude_series_id`` skips every instance of a
    series that is about to be replaced. Equal starts resolve to the first in
    snapshot order (sorted() is stable).
    """
    hits = [
        a for a in _candidates_for(owner_id, existing, exclude_id, exclude_series_id)
        if overlaps(start, end, a.start, a.end)
    ]
    if not hits:
        return None
    first = sorted(hits, key=lambda a: a.start)[0]
    return Conflict(appointment=first, candidate_start=start, candidate_end=end)


ConflictFinder = Callable[..., Optional[Conflict]]


def scan_for_first_collision(
    owner_id: str,
    starts: Sequence[_dt.datetime],
    duration: Duration,
    existing: Iterable[Appointment],
    exclude_id: Optional[str] = None,
    exclude_series_id: Optional[str] = None,
    finder: ConflictFinder = find_conflict,
) -> Optional[Conflict]:
    """Check candidates in order and return the first conflict found.

    Stops at the first hit; later candidates are not examined. Returns None
    only when every candidate is free.
    """
    delta = to_timedelta(duration)
    snapshot = list(existing)
    for start in starts:
        conflict = finder(
            owner_id,
            start,
            start + delta,
            snapshot,
            exclude_id=exclude_id,
            exclude_series_id=exclude_series_id,
        )
        if conflict is not None:
            return conflict
    return None


def day_slot_conflicts(
    owner_id: str,
    day: Union[_dt.date, str],
    duration: Duration,
    existing: Iterable[Appointment],
    exclude_id: Optional[str] = None,
    step_minutes: int = DEFAULT_SLOT_STEP_MINUTES,
) -> Dict[str, Appointment]:
    """Map each blocked 'HH:MM' start slot of a day to the appointment blocking it.

    A slot is blocked when [slot, slot + duration) overlaps an active
    appointment of the owner; the earliest-starting such appointment is
    reported. Free slots are absent from the result.
    """
    d = parse_local_date(day)
    delta = to_timedelta(duration)
    day_start = _dt.datetime(d.year, d.month, d.day)
    day_end = day_start + _dt.timedelta(days=1)
    # Only appointments touching the window [day_start, day_end + duration) matter
    relevant = sorted(
        (
            a for a in _candidates_for(owner_id, existing, exclude_id, None)
            if overlaps(day_start, day_end + delta, a.start, a.end)
        ),
        key=lambda a: a.start,
    )
    blocked: Dict[str, Appointment] = {}
    if not relevant:
        return blocked
    for label in make_time_slots(step_minutes):
        slot_start = parse_local_datetime(d, label)
        slot_end = slot_start + delta
        hit = next((a for a in relevant if overlaps(slot_start, slot_end, a.start, a.end)), None)
        if hit is not None:
            blocked[label] = hit
    return blocked
