"""Storage collaborator for the scheduling engine.

The planner talks to storage only through AppointmentStore. Writes are
expressed as small operation dataclasses so a whole commit can be handed to
run_atomic_batch in one call. Stores that cannot apply an arbitrary number of
operations atomically advertise ``max_batch_ops``; the planner then splits the
commit into chunks and reports a PartialFailureError if a later chunk fails.

Two implementations live here:
  - InMemoryStore: dict-backed, atomic (snapshot/restore), used by tests
  - YamlStore: InMemoryStore persisted to a YAML file, used by the CLI
"""
from __future__ import annotations

import copy
import dataclasses
import datetime as _dt
import itertools
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from core.constants import STATUS_DELETED
from core.yamlio import dump_config, load_config

from .errors import NotFoundError
from .model import (
    Appointment,
    SeriesMetadata,
    appointment_from_dict,
    appointment_to_dict,
    series_from_dict,
    series_to_dict,
)
from .overlap import overlaps

Clock = Callable[[], _dt.datetime]
Window = Tuple[_dt.datetime, _dt.datetime]


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SoftDeleteAppointment:
    appointment_id: str
    by_user_id: Optional[str] = None


@dataclass(frozen=True)
class SoftDeleteSeries:
    series_id: str
    by_user_id: Optional[str] = None


@dataclass(frozen=True)
class CreateAppointment:
    appointment: Appointment


@dataclass(frozen=True)
class CreateSeries:
    series: SeriesMetadata


@dataclass(frozen=True)
class UpdateSeries:
    series_id: str
    patch: Dict[str, Any]


@dataclass(frozen=True)
class UpdateAppointment:
    appointment_id: str
    patch: Dict[str, Any]


Operation = Union[
    SoftDeleteAppointment,
    SoftDeleteSeries,
    CreateAppointment,
    CreateSeries,
    UpdateSeries,
    UpdateAppointment,
]


def _apply_patch(obj: Any, patch: Dict[str, Any]) -> None:
    names = {f.name for f in dataclasses.fields(obj)}
    unknown = sorted(k for k in patch if k not in names or k == "id")
    if unknown:
        raise ValueError(f"Cannot patch fields: {', '.join(unknown)}")
    for key, value in patch.items():
        setattr(obj, key, value)


# -----------------------------------------------------------------------------
# Store interface
# -----------------------------------------------------------------------------


class AppointmentStore(ABC):
    """Persistence/identity collaborator consumed by the planner."""

    # None means run_atomic_batch accepts any number of operations
    max_batch_ops: Optional[int] = None

    @property
    def supports_atomic_batch(self) -> bool:
        return self.max_batch_ops is None

    @abstractmethod
    def new_id(self, kind: str) -> str:
        """Allocate an id for a document that will be created later."""

    @abstractmethod
    def fetch_active_appointments(self, owner_id: str, window: Optional[Window] = None) -> List[Appointment]:
        """Active appointments of an owner, optionally only those overlapping window."""

    @abstractmethod
    def list_series_instances(self, series_id: str) -> List[Appointment]:
        """Every appointment of a series, soft-deleted ones included."""

    @abstractmethod
    def get_appointment(self, appointment_id: str) -> Appointment:
        ...

    @abstractmethod
    def get_series(self, series_id: str) -> SeriesMetadata:
        ...

    @abstractmethod
    def soft_delete(self, appointment_id: str, by_user_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def soft_delete_series(self, series_id: str, by_user_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def create_appointment(self, appointment: Appointment) -> str:
        ...

    @abstractmethod
    def create_series_metadata(self, series: SeriesMetadata) -> str:
        ...

    @abstractmethod
    def update_series_metadata(self, series_id: str, patch: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update_appointment(self, appointment_id: str, patch: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def run_atomic_batch(self, operations: Sequence[Operation]) -> None:
        """Apply all operations or none of them."""

    def apply(self, op: Operation) -> None:
        """Dispatch a single operation to the matching primitive."""
        if isinstance(op, SoftDeleteAppointment):
            self.soft_delete(op.appointment_id, op.by_user_id)
        elif isinstance(op, SoftDeleteSeries):
            self.soft_delete_series(op.series_id, op.by_user_id)
        elif isinstance(op, CreateAppointment):
            self.create_appointment(op.appointment)
        elif isinstance(op, CreateSeries):
            self.create_series_metadata(op.series)
        elif isinstance(op, UpdateSeries):
            self.update_series_metadata(op.series_id, op.patch)
        elif isinstance(op, UpdateAppointment):
            self.update_appointment(op.appointment_id, op.patch)
        else:
            raise TypeError(f"Unsupported operation: {op!r}")


# -----------------------------------------------------------------------------
# In-memory store
# -----------------------------------------------------------------------------


class InMemoryStore(AppointmentStore):
    """Dict-backed store. Creates use set semantics so keyed retries are idempotent."""

    def __init__(
        self,
        appointments: Optional[Sequence[Appointment]] = None,
        series: Optional[Sequence[SeriesMetadata]] = None,
        *,
        clock: Optional[Clock] = None,
        max_batch_ops: Optional[int] = None,
    ) -> None:
        self._appointments: Dict[str, Appointment] = {}
        self._series: Dict[str, SeriesMetadata] = {}
        self._clock: Clock = clock or _dt.datetime.now
        self._counter = itertools.count(1)
        self._in_batch = False
        self.max_batch_ops = max_batch_ops
        for a in appointments or []:
            self._appointments[a.id] = a
        for s in series or []:
            self._series[s.id] = s

    # Persistence hook; YamlStore writes the file here
    def _flush(self) -> None:
        return None

    def _changed(self) -> None:
        if not self._in_batch:
            self._flush()

    @property
    def appointments(self) -> List[Appointment]:
        return list(self._appointments.values())

    @property
    def series(self) -> List[SeriesMetadata]:
        return list(self._series.values())

    def new_id(self, kind: str) -> str:
        while True:
            ident = f"{kind}-{next(self._counter)}"
            if ident not in self._appointments and ident not in self._series:
                return ident

    def fetch_active_appointments(self, owner_id: str, window: Optional[Window] = None) -> List[Appointment]:
        out = [a for a in self._appointments.values() if a.owner_id == owner_id and a.is_active]
        if window is not None:
            w_start, w_end = window
            out = [a for a in out if overlaps(w_start, w_end, a.start, a.end)]
        return out

    def list_series_instances(self, series_id: str) -> List[Appointment]:
        return [a for a in self._appointments.values() if a.series_id == series_id]

    def get_appointment(self, appointment_id: str) -> Appointment:
        try:
            return self._appointments[appointment_id]
        except KeyError:
            raise NotFoundError("Appointment", appointment_id) from None

    def get_series(self, series_id: str) -> SeriesMetadata:
        try:
            return self._series[series_id]
        except KeyError:
            raise NotFoundError("Series", series_id) from None

    def soft_delete(self, appointment_id: str, by_user_id: Optional[str] = None) -> None:
        appt = self.get_appointment(appointment_id)
        if appt.deleted_at is None:
            appt.deleted_at = self._clock()
            appt.deleted_by = by_user_id
        appt.status = STATUS_DELETED
        self._changed()

    def soft_delete_series(self, series_id: str, by_user_id: Optional[str] = None) -> None:
        series = self.get_series(series_id)
        if series.deleted_at is None:
            series.deleted_at = self._clock()
            series.deleted_by = by_user_id
        series.status = STATUS_DELETED
        self._changed()

    def create_appointment(self, appointment: Appointment) -> str:
        if not appointment.id:
            appointment = dataclasses.replace(appointment, id=self.new_id("appointment"))
        self._appointments[appointment.id] = copy.deepcopy(appointment)
        self._changed()
        return appointment.id

    def create_series_metadata(self, series: SeriesMetadata) -> str:
        if not series.id:
            series = dataclasses.replace(series, id=self.new_id("series"))
        self._series[series.id] = copy.deepcopy(series)
        self._changed()
        return series.id

    def update_series_metadata(self, series_id: str, patch: Dict[str, Any]) -> None:
        _apply_patch(self.get_series(series_id), patch)
        self._changed()

    def update_appointment(self, appointment_id: str, patch: Dict[str, Any]) -> None:
        _apply_patch(self.get_appointment(appointment_id), patch)
        self._changed()

    def run_atomic_batch(self, operations: Sequence[Operation]) -> None:
        if self.max_batch_ops is not None and len(operations) > self.max_batch_ops:
            raise ValueError(f"Batch of {len(operations)} operations exceeds limit {self.max_batch_ops}")
        snapshot = (copy.deepcopy(self._appointments), copy.deepcopy(self._series))
        self._in_batch = True
        try:
            for op in operations:
                self.apply(op)
        except Exception:
            self._appointments, self._series = snapshot
            raise
        finally:
            self._in_batch = False
        self._flush()


# -----------------------------------------------------------------------------
# YAML file store
# -----------------------------------------------------------------------------


class YamlStore(InMemoryStore):
    """InMemoryStore persisted as a YAML document.

    Layout::

        appointments: [{id, ownerId, title, startDate, endDate, ...}]
        series: [{id, ownerId, recurrence: {...}, ...}]

    Every mutation rewrites the file; a batch writes once after all of its
    operations succeeded.
    """

    def __init__(self, path: str, *, clock: Optional[Clock] = None) -> None:
        data = load_config(path)
        appointments = [appointment_from_dict(d) for d in (data.get("appointments") or [])]
        series = [series_from_dict(d) for d in (data.get("series") or [])]
        super().__init__(appointments, series, clock=clock)
        self.path = path

    def new_id(self, kind: str) -> str:
        return f"{kind}-{uuid.uuid4().hex[:12]}"

    def _flush(self) -> None:
        dump_config(self.path, {
            "appointments": [appointment_to_dict(a) for a in self._appointments.values()],
            "series": [series_to_dict(s) for s in self._series.values()],
        })
