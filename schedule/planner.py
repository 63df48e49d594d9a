"""Series mutation planner.

Turns a draft (start, duration, recurrence rule) into a set of store writes:
validate the rule, generate occurrences, scan them against the owner's active
appointments, then commit. Nothing is written unless validation and the scan
both pass.

Every run walks the same state machine::

    IDLE -> VALIDATING -> SCANNING_COLLISIONS -> COMMITTING -> DONE
                 |                 |                  |
                 +-----------------+------------------+--> FAILED

``planner.history`` holds the states visited by the most recent run.
"""
from __future__ import annotations

import datetime as _dt
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional

from core.constants import BATCH_OP_LIMIT, DEFAULT_INSTANCE_CAP, SERIES_ACTIVE, STATUS_OPEN

from .errors import CollisionError, EmptyGenerationError, InvalidRuleError, NotFoundError, PartialFailureError
from .model import Appointment, Conflict, RecurrenceRule, SeriesMetadata
from .overlap import ConflictFinder, find_conflict, scan_for_first_collision
from .recurrence import generate_occurrences, validate_rule
from .store import (
    AppointmentStore,
    CreateAppointment,
    CreateSeries,
    Operation,
    SoftDeleteAppointment,
    SoftDeleteSeries,
    UpdateAppointment,
    UpdateSeries,
)


class PlannerState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SCANNING_COLLISIONS = "scanning_collisions"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SeriesDraft:
    owner_id: str
    title: str
    start: _dt.datetime
    duration_minutes: int
    rule: RecurrenceRule
    description: str = ""


@dataclass
class SeriesPlan:
    """What a planner run decided and wrote."""

    action: str  # create | edit | delete | reschedule
    owner_id: str
    series_id: Optional[str] = None
    starts: List[_dt.datetime] = field(default_factory=list)
    duration_minutes: int = 0
    appointment_ids: List[str] = field(default_factory=list)
    removed_ids: List[str] = field(default_factory=list)
    exclude_id: Optional[str] = None
    exclude_series_id: Optional[str] = None
    operations: List[Operation] = field(default_factory=list)

    @property
    def instance_count(self) -> int:
        return len(self.starts)


class SeriesPlanner:
    def __init__(
        self,
        store: AppointmentStore,
        instance_cap: int = DEFAULT_INSTANCE_CAP,
        batch_limit: int = BATCH_OP_LIMIT,
        finder: ConflictFinder = find_conflict,
    ) -> None:
        if batch_limit < 1:
            raise ValueError("batch_limit must be at least 1")
        self.store = store
        self.instance_cap = instance_cap
        self.batch_limit = batch_limit
        self.finder = finder
        self.state = PlannerState.IDLE
        self.history: List[PlannerState] = [PlannerState.IDLE]

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _to(self, state: PlannerState) -> None:
        self.state = state
        self.history.append(state)

    @contextmanager
    def _run(self) -> Iterator[None]:
        self.state = PlannerState.IDLE
        self.history = [PlannerState.IDLE]
        self._to(PlannerState.VALIDATING)
        try:
            yield
        except BaseException:
            self._to(PlannerState.FAILED)
            raise
        self._to(PlannerState.DONE)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _generate(self, draft: SeriesDraft) -> List[_dt.datetime]:
        if int(draft.duration_minutes or 0) < 1:
            raise InvalidRuleError("Duration must be at least 1 minute", field="durationMinutes")
        validate_rule(draft.rule, draft.start.date())
        starts = generate_occurrences(draft.start, draft.rule, self.instance_cap)
        if not starts:
            raise EmptyGenerationError()
        return starts

    def _scan(
        self,
        owner_id: str,
        starts: List[_dt.datetime],
        duration_minutes: int,
        exclude_id: Optional[str] = None,
        exclude_series_id: Optional[str] = None,
    ) -> Optional[Conflict]:
        existing = self.store.fetch_active_appointments(owner_id)
        return scan_for_first_collision(
            owner_id,
            starts,
            duration_minutes,
            existing,
            exclude_id=exclude_id,
            exclude_series_id=exclude_series_id,
            finder=self.finder,
        )

    def _check_free(self, plan: SeriesPlan) -> None:
        self._to(PlannerState.SCANNING_COLLISIONS)
        conflict = self._scan(
            plan.owner_id,
            plan.starts,
            plan.duration_minutes,
            exclude_id=plan.exclude_id,
            exclude_series_id=plan.exclude_series_id,
        )
        if conflict is not None:
            raise CollisionError(conflict)

    def _commit(self, operations: List[Operation]) -> None:
        self._to(PlannerState.COMMITTING)
        if not operations:
            return
        if self.store.supports_atomic_batch:
            self.store.run_atomic_batch(operations)
            return
        limit = self.batch_limit
        if self.store.max_batch_ops is not None:
            limit = min(limit, self.store.max_batch_ops)
        chunks = [operations[i:i + limit] for i in range(0, len(operations), limit)]
        for applied, chunk in enumerate(chunks):
            try:
                self.store.run_atomic_batch(chunk)
            except Exception as exc:
                if applied == 0:
                    raise
                raise PartialFailureError(
                    f"Commit failed after {applied} of {len(chunks)} batches: {exc}",
                    applied=applied,
                    total=len(chunks),
                ) from exc

    def _instances(
        self,
        draft: SeriesDraft,
        starts: List[_dt.datetime],
        series_id: Optional[str],
    ) -> List[Appointment]:
        delta = _dt.timedelta(minutes=int(draft.duration_minutes))
        out: List[Appointment] = []
        for i, start in enumerate(starts):
            out.append(Appointment(
                id=self.store.new_id("appointment"),
                owner_id=draft.owner_id,
                start=start,
                end=start + delta,
                title=draft.title.strip(),
                description=draft.description.strip(),
                status=STATUS_OPEN,
                series_id=series_id,
                series_index=i + 1 if series_id else None,
            ))
        return out

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_series(self, draft: SeriesDraft, commit: bool = True) -> SeriesPlan:
        """Create a series (or a single appointment when the rule is disabled).

        The scan runs against every active appointment of the owner.
        """
        plan = SeriesPlan(action="create", owner_id=draft.owner_id, duration_minutes=int(draft.duration_minutes))
        with self._run():
            plan.starts = self._generate(draft)
            self._check_free(plan)

            series_id = self.store.new_id("series") if draft.rule.enabled else None
            instances = self._instances(draft, plan.starts, series_id)
            ops: List[Operation] = []
            if series_id is not None:
                ops.append(CreateSeries(self._series_metadata(series_id, draft, plan.starts, instances)))
            ops.extend(CreateAppointment(a) for a in instances)

            plan.series_id = series_id
            plan.appointment_ids = [a.id for a in instances]
            plan.operations = ops
            if commit:
                self._commit(ops)
        return plan

    def edit_series(
        self,
        series_id: str,
        draft: SeriesDraft,
        acting_user_id: Optional[str] = None,
        commit: bool = True,
    ) -> SeriesPlan:
        """Replace every instance of a series with a freshly generated set.

        The old instances are excluded from the scan by series id, so the new
        set may reuse their slots. Old instances are soft-deleted, never
        removed. A deleted series counts as missing.
        """
        plan = SeriesPlan(
            action="edit",
            owner_id=draft.owner_id,
            series_id=series_id,
            duration_minutes=int(draft.duration_minutes),
            exclude_series_id=series_id,
        )
        with self._run():
            if not self.store.get_series(series_id).is_active:
                raise NotFoundError("Series", series_id)
            plan.starts = self._generate(draft)
            self._check_free(plan)

            old = [a for a in self.store.list_series_instances(series_id) if a.is_active]
            instances = self._instances(draft, plan.starts, series_id)
            ops: List[Operation] = [SoftDeleteAppointment(a.id, acting_user_id) for a in old]
            ops.append(UpdateSeries(series_id, {
                "owner_id": draft.owner_id,
                "title": draft.title.strip(),
                "description": draft.description.strip(),
                "start": plan.starts[0],
                "end": instances[0].end,
                "duration_minutes": int(draft.duration_minutes),
                "rule": draft.rule,
                "instance_count": len(instances),
                "first_appointment_id": instances[0].id,
            }))
            ops.extend(CreateAppointment(a) for a in instances)

            plan.removed_ids = [a.id for a in old]
            plan.appointment_ids = [a.id for a in instances]
            plan.operations = ops
            if commit:
                self._commit(ops)
        return plan

    def delete_series(
        self,
        series_id: str,
        acting_user_id: Optional[str] = None,
        commit: bool = True,
    ) -> SeriesPlan:
        """Soft-delete every active instance of a series and its metadata."""
        with self._run():
            series = self.store.get_series(series_id)
            plan = SeriesPlan(action="delete", owner_id=series.owner_id, series_id=series_id)
            old = [a for a in self.store.list_series_instances(series_id) if a.is_active]
            ops: List[Operation] = [SoftDeleteAppointment(a.id, acting_user_id) for a in old]
            ops.append(SoftDeleteSeries(series_id, acting_user_id))
            plan.removed_ids = [a.id for a in old]
            plan.operations = ops
            if commit:
                self._commit(ops)
        return plan

    def reschedule(
        self,
        appointment_id: str,
        start: _dt.datetime,
        end: _dt.datetime,
        commit: bool = True,
    ) -> SeriesPlan:
        """Move one appointment; it never collides with its own old slot."""
        with self._run():
            appt = self.store.get_appointment(appointment_id)
            if not appt.is_active:
                raise NotFoundError("Appointment", appointment_id)
            if end <= start:
                raise InvalidRuleError("End must be after start", field="endDate")
            minutes = int((end - start).total_seconds() // 60)
            plan = SeriesPlan(
                action="reschedule",
                owner_id=appt.owner_id,
                series_id=appt.series_id,
                starts=[start],
                duration_minutes=minutes,
                appointment_ids=[appointment_id],
                exclude_id=appointment_id,
            )
            self._to(PlannerState.SCANNING_COLLISIONS)
            existing = self.store.fetch_active_appointments(appt.owner_id)
            conflict = self.finder(appt.owner_id, start, end, existing, exclude_id=appointment_id)
            if conflict is not None:
                raise CollisionError(conflict)
            ops: List[Operation] = [UpdateAppointment(appointment_id, {"start": start, "end": end})]
            plan.operations = ops
            if commit:
                self._commit(ops)
        return plan

    def apply(self, plan: SeriesPlan) -> SeriesPlan:
        """Commit a plan built with commit=False, re-scanning first."""
        with self._run():
            self._to(PlannerState.SCANNING_COLLISIONS)
            conflict = self.recheck(plan)
            if conflict is not None:
                raise CollisionError(conflict)
            self._commit(plan.operations)
        return plan

    def recheck(self, plan: SeriesPlan) -> Optional[Conflict]:
        """Re-run a plan's collision scan against a fresh snapshot.

        Appointments the plan itself created are ignored. Does not touch the
        planner state.
        """
        if not plan.starts:
            return None
        own = set(plan.appointment_ids)
        existing = [a for a in self.store.fetch_active_appointments(plan.owner_id) if a.id not in own]
        return scan_for_first_collision(
            plan.owner_id,
            plan.starts,
            plan.duration_minutes,
            existing,
            exclude_id=plan.exclude_id,
            exclude_series_id=plan.exclude_series_id,
            finder=self.finder,
        )

    # ------------------------------------------------------------------

    def _series_metadata(
        self,
        series_id: str,
        draft: SeriesDraft,
        starts: List[_dt.datetime],
        instances: List[Appointment],
    ) -> SeriesMetadata:
        return SeriesMetadata(
            id=series_id,
            owner_id=draft.owner_id,
            rule=draft.rule,
            duration_minutes=int(draft.duration_minutes),
            start=starts[0],
            end=instances[0].end,
            title=draft.title.strip(),
            description=draft.description.strip(),
            instance_count=len(instances),
            first_appointment_id=instances[0].id,
            status=SERIES_ACTIVE,
        )
