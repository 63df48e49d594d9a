"""Schedule engine pipeline components.

One request/processor/producer triple per CLI command. Processors open the
store through an injectable factory so tests can hand in an InMemoryStore;
mutating processors record a session in the AppLogger log when a log path is
given.
"""
from __future__ import annotations

import datetime as _dt
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

import yaml

from core.applog import AppLogger
from core.cli_errors import ConfigError, ExitCode
from core.cli_output import OutputWriter
from core.constants import DEFAULT_INSTANCE_CAP, DEFAULT_SLOT_STEP_MINUTES
from core.date_utils import format_display_datetime, format_local_date, format_local_time
from core.pipeline import BaseProducer, RequestConsumer, ResultEnvelope, SafeProcessor

from .errors import CollisionError, PartialFailureError
from .model import Appointment, Conflict, RecurrenceRule, appointment_to_dict, rule_to_dict
from .overlap import day_slot_conflicts, scan_for_first_collision
from .planner import SeriesDraft, SeriesPlan, SeriesPlanner
from .recurrence import generate_occurrences, validate_rule
from .store import AppointmentStore, YamlStore

StoreFactory = Callable[[str], AppointmentStore]
T = TypeVar("T")


def open_store(path: str) -> AppointmentStore:
    """Open the YAML file store, mapping unreadable files to ConfigError."""
    try:
        return YamlStore(path)
    except (yaml.YAMLError, ValueError, TypeError) as exc:
        raise ConfigError(
            f"Cannot read store {path}: {exc}",
            hint="Fix the YAML file or point --store at another path.",
        ) from exc


def _conflict_dict(conflict: Conflict) -> Dict[str, Any]:
    return {
        "message": conflict.describe(),
        "candidate_start": conflict.candidate_start,
        "candidate_end": conflict.candidate_end,
        "appointment": appointment_to_dict(conflict.appointment),
    }


# -----------------------------------------------------------------------------
# Requests and results
# -----------------------------------------------------------------------------


@dataclass
class ExpandRequest:
    start: _dt.datetime
    rule: RecurrenceRule
    duration_minutes: int
    instance_cap: int = DEFAULT_INSTANCE_CAP
    strict: bool = False


@dataclass
class ExpandResult:
    rule: RecurrenceRule
    starts: List[_dt.datetime]
    duration_minutes: int


@dataclass
class CheckRequest:
    store_path: str
    owner_id: str
    start: _dt.datetime
    duration_minutes: int
    rule: RecurrenceRule
    exclude_id: Optional[str] = None
    exclude_series_id: Optional[str] = None
    instance_cap: int = DEFAULT_INSTANCE_CAP


@dataclass
class CheckResult:
    starts: List[_dt.datetime]
    conflict: Optional[Conflict]


@dataclass
class SlotsRequest:
    store_path: str
    owner_id: str
    day: _dt.date
    duration_minutes: int
    step_minutes: int = DEFAULT_SLOT_STEP_MINUTES
    exclude_id: Optional[str] = None


@dataclass
class SlotsResult:
    day: _dt.date
    blocked: Dict[str, Appointment]


@dataclass
class CreateRequest:
    store_path: str
    draft: SeriesDraft
    dry_run: bool = False
    log_path: Optional[str] = None
    instance_cap: int = DEFAULT_INSTANCE_CAP


@dataclass
class EditSeriesRequest:
    """Fields left as None keep the series' current value."""

    store_path: str
    series_id: str
    start: Optional[_dt.datetime] = None
    duration_minutes: Optional[int] = None
    rule: Optional[RecurrenceRule] = None
    title: Optional[str] = None
    description: Optional[str] = None
    acting_user_id: Optional[str] = None
    dry_run: bool = False
    log_path: Optional[str] = None
    instance_cap: int = DEFAULT_INSTANCE_CAP


@dataclass
class DeleteSeriesRequest:
    store_path: str
    series_id: str
    acting_user_id: Optional[str] = None
    dry_run: bool = False
    log_path: Optional[str] = None


@dataclass
class RescheduleRequest:
    store_path: str
    appointment_id: str
    start: _dt.datetime
    end: _dt.datetime
    dry_run: bool = False
    log_path: Optional[str] = None


@dataclass
class MutationResult:
    plan: SeriesPlan
    dry_run: bool = False
    history: List[str] = field(default_factory=list)


ExpandRequestConsumer = RequestConsumer[ExpandRequest]
CheckRequestConsumer = RequestConsumer[CheckRequest]
SlotsRequestConsumer = RequestConsumer[SlotsRequest]
CreateRequestConsumer = RequestConsumer[CreateRequest]
EditSeriesRequestConsumer = RequestConsumer[EditSeriesRequest]
DeleteSeriesRequestConsumer = RequestConsumer[DeleteSeriesRequest]
RescheduleRequestConsumer = RequestConsumer[RescheduleRequest]


# -----------------------------------------------------------------------------
# Processors
# -----------------------------------------------------------------------------


class ExpandProcessor(SafeProcessor[ExpandRequest, ExpandResult]):
    """List the occurrences of a rule without touching any store."""

    def _process_safe(self, payload: ExpandRequest) -> ExpandResult:
        validate_rule(payload.rule, payload.start.date())
        starts = generate_occurrences(payload.start, payload.rule, payload.instance_cap, strict=payload.strict)
        return ExpandResult(rule=payload.rule, starts=starts, duration_minutes=payload.duration_minutes)


class _StoreProcessor(SafeProcessor[Any, Any]):
    def __init__(self, store_factory: StoreFactory = open_store) -> None:
        self._store_factory = store_factory


class CheckProcessor(_StoreProcessor):
    """Find the first collision of a prospective series."""

    def _process_safe(self, payload: CheckRequest) -> CheckResult:
        validate_rule(payload.rule, payload.start.date())
        starts = generate_occurrences(payload.start, payload.rule, payload.instance_cap)
        store = self._store_factory(payload.store_path)
        conflict = scan_for_first_collision(
            payload.owner_id,
            starts,
            payload.duration_minutes,
            store.fetch_active_appointments(payload.owner_id),
            exclude_id=payload.exclude_id,
            exclude_series_id=payload.exclude_series_id,
        )
        return CheckResult(starts=starts, conflict=conflict)


class SlotsProcessor(_StoreProcessor):
    """Blocked start slots of one day."""

    def _process_safe(self, payload: SlotsRequest) -> SlotsResult:
        store = self._store_factory(payload.store_path)
        blocked = day_slot_conflicts(
            payload.owner_id,
            payload.day,
            payload.duration_minutes,
            store.fetch_active_appointments(payload.owner_id),
            exclude_id=payload.exclude_id,
            step_minutes=payload.step_minutes,
        )
        return SlotsResult(day=payload.day, blocked=blocked)


class _PlannerProcessor(_StoreProcessor):
    """Runs a planner call inside an AppLogger session."""

    command = "planner"

    def _logged(self, log_path: Optional[str], args: Dict[str, Any], run: Callable[[], T]) -> T:
        if not log_path:
            return run()
        logger = AppLogger(log_path)
        sid = logger.start(self.command, args)
        t0 = time.time()
        try:
            result = run()
        except Exception as e:
            extra: Dict[str, Any] = {"error": type(e).__name__}
            if isinstance(e, CollisionError):
                extra["conflict_id"] = e.conflict.appointment.id
            if isinstance(e, PartialFailureError):
                extra["applied"] = e.applied
                extra["total"] = e.total
            logger.error(sid, f"{self.command} failed: {e}", extra)
            logger.end(sid, status="error", duration_ms=(time.time() - t0) * 1000, error=str(e))
            raise
        if isinstance(result, MutationResult):
            plan = result.plan
            logger.info(sid, {
                "action": plan.action,
                "series_id": plan.series_id,
                "created": len(plan.appointment_ids) if plan.action != "reschedule" else 0,
                "removed": len(plan.removed_ids),
                "dry_run": result.dry_run,
            })
        logger.end(sid, status="ok", duration_ms=(time.time() - t0) * 1000)
        return result

    @staticmethod
    def _result(planner: SeriesPlanner, plan: SeriesPlan, dry_run: bool) -> MutationResult:
        return MutationResult(plan=plan, dry_run=dry_run, history=[s.value for s in planner.history])


class CreateProcessor(_PlannerProcessor):
    command = "create"

    def _process_safe(self, payload: CreateRequest) -> MutationResult:
        draft = payload.draft
        args = {
            "owner": draft.owner_id,
            "start": draft.start,
            "duration": draft.duration_minutes,
            "rule": rule_to_dict(draft.rule),
            "dry_run": payload.dry_run,
        }

        def run() -> MutationResult:
            planner = SeriesPlanner(self._store_factory(payload.store_path), instance_cap=payload.instance_cap)
            plan = planner.create_series(draft, commit=not payload.dry_run)
            return self._result(planner, plan, payload.dry_run)

        return self._logged(payload.log_path, args, run)


class EditSeriesProcessor(_PlannerProcessor):
    command = "edit-series"

    def _process_safe(self, payload: EditSeriesRequest) -> MutationResult:
        args = {"series": payload.series_id, "dry_run": payload.dry_run}

        def run() -> MutationResult:
            store = self._store_factory(payload.store_path)
            series = store.get_series(payload.series_id)
            draft = SeriesDraft(
                owner_id=series.owner_id,
                title=payload.title if payload.title is not None else series.title,
                description=payload.description if payload.description is not None else series.description,
                start=payload.start if payload.start is not None else series.start,
                duration_minutes=(
                    payload.duration_minutes if payload.duration_minutes is not None else series.duration_minutes
                ),
                rule=payload.rule if payload.rule is not None else series.rule,
            )
            planner = SeriesPlanner(store, instance_cap=payload.instance_cap)
            plan = planner.edit_series(
                payload.series_id,
                draft,
                acting_user_id=payload.acting_user_id,
                commit=not payload.dry_run,
            )
            return self._result(planner, plan, payload.dry_run)

        return self._logged(payload.log_path, args, run)


class DeleteSeriesProcessor(_PlannerProcessor):
    command = "delete-series"

    def _process_safe(self, payload: DeleteSeriesRequest) -> MutationResult:
        args = {"series": payload.series_id, "dry_run": payload.dry_run}

        def run() -> MutationResult:
            planner = SeriesPlanner(self._store_factory(payload.store_path))
            plan = planner.delete_series(
                payload.series_id,
                acting_user_id=payload.acting_user_id,
                commit=not payload.dry_run,
            )
            return self._result(planner, plan, payload.dry_run)

        return self._logged(payload.log_path, args, run)


class RescheduleProcessor(_PlannerProcessor):
    command = "reschedule"

    def _process_safe(self, payload: RescheduleRequest) -> MutationResult:
        args = {"id": payload.appointment_id, "start": payload.start, "end": payload.end, "dry_run": payload.dry_run}

        def run() -> MutationResult:
            planner = SeriesPlanner(self._store_factory(payload.store_path))
            plan = planner.reschedule(payload.appointment_id, payload.start, payload.end, commit=not payload.dry_run)
            return self._result(planner, plan, payload.dry_run)

        return self._logged(payload.log_path, args, run)


# -----------------------------------------------------------------------------
# Producers
# -----------------------------------------------------------------------------


class _ScheduleProducer(BaseProducer):
    """Producer that prints through an OutputWriter, errors included."""

    def __init__(self, writer: Optional[OutputWriter] = None) -> None:
        self.out = writer or OutputWriter()

    def produce(self, result: ResultEnvelope) -> None:
        if result.ok():
            super().produce(result)
            return
        diag = result.diagnostics or {}
        if self.out.structured:
            self.out.print_data({"status": "error", **diag})
            return
        if diag.get("code") == int(ExitCode.PARTIAL_FAILURE):
            self.out.print("Warning: changes may have partially applied.")
        self.out.print(f"Error: {diag.get('message', 'unknown error')}")
        if diag.get("hint"):
            self.out.print(f"Hint: {diag['hint']}")


def _span(start: _dt.datetime, minutes: int) -> str:
    end = start + _dt.timedelta(minutes=minutes)
    return f"{format_display_datetime(start)}–{format_local_time(end)}"


class ExpandProducer(_ScheduleProducer):
    def _produce_success(self, payload: ExpandResult, diagnostics: Optional[Dict[str, Any]]) -> None:
        delta = _dt.timedelta(minutes=payload.duration_minutes)
        if self.out.structured:
            self.out.print_data({
                "rule": rule_to_dict(payload.rule),
                "count": len(payload.starts),
                "occurrences": [{"start": s, "end": s + delta} for s in payload.starts],
            })
            return
        for i, s in enumerate(payload.starts, start=1):
            self.out.print(f"{i:>3}. {_span(s, payload.duration_minutes)}")
        self.out.print(f"{len(payload.starts)} occurrence(s)")


class CheckProducer(_ScheduleProducer):
    def _produce_success(self, payload: CheckResult, diagnostics: Optional[Dict[str, Any]]) -> None:
        if self.out.structured:
            self.out.print_data({
                "checked": len(payload.starts),
                "conflict": _conflict_dict(payload.conflict) if payload.conflict else None,
            })
            return
        if payload.conflict is None:
            self.out.print(f"No collisions across {len(payload.starts)} occurrence(s).")
            return
        c = payload.conflict
        self.out.print(c.describe())
        self.out.print(f"  candidate: {format_display_datetime(c.candidate_start)}–{format_local_time(c.candidate_end)}")
        self.out.print(f"  blocking appointment id: {c.appointment.id}")


class SlotsProducer(_ScheduleProducer):
    def _produce_success(self, payload: SlotsResult, diagnostics: Optional[Dict[str, Any]]) -> None:
        if self.out.structured:
            self.out.print_data({
                "date": payload.day,
                "blocked": {slot: appointment_to_dict(a) for slot, a in payload.blocked.items()},
            })
            return
        if not payload.blocked:
            self.out.print(f"All slots free on {format_local_date(payload.day)}")
            return
        for slot, appt in payload.blocked.items():
            self.out.print(f"{slot}  {appt.title or 'Appointment'} ({appt.id})")
        self.out.print(f"{len(payload.blocked)} blocked slot(s) on {format_local_date(payload.day)}")


class MutationProducer(_ScheduleProducer):
    """Summary of a create/edit/delete/reschedule run."""

    _VERBS = {
        "create": ("Created", "Would create"),
        "edit": ("Replaced", "Would replace"),
        "delete": ("Deleted", "Would delete"),
        "reschedule": ("Rescheduled", "Would reschedule"),
    }

    def _produce_success(self, payload: MutationResult, diagnostics: Optional[Dict[str, Any]]) -> None:
        plan = payload.plan
        if self.out.structured:
            self.out.print_data({
                "action": plan.action,
                "dry_run": payload.dry_run,
                "series_id": plan.series_id,
                "appointment_ids": plan.appointment_ids,
                "removed_ids": plan.removed_ids,
                "starts": plan.starts,
                "operations": len(plan.operations),
                "states": payload.history,
            })
            return
        done, would = self._VERBS.get(plan.action, (plan.action, plan.action))
        verb = would if payload.dry_run else done
        if plan.action == "create":
            what = f"series {plan.series_id}" if plan.series_id else "single appointment"
            self.out.print(f"{verb} {what} with {len(plan.appointment_ids)} appointment(s)")
        elif plan.action == "edit":
            self.out.print(
                f"{verb} series {plan.series_id}: {len(plan.removed_ids)} removed, "
                f"{len(plan.appointment_ids)} created"
            )
        elif plan.action == "delete":
            self.out.print(f"{verb} series {plan.series_id} ({len(plan.removed_ids)} appointment(s))")
        else:
            self.out.print(f"{verb} {plan.appointment_ids[0]} to {_span(plan.starts[0], plan.duration_minutes)}")
        if plan.starts and plan.action in ("create", "edit"):
            self.out.print(f"  first: {format_display_datetime(plan.starts[0])}")
            self.out.print(f"  last:  {format_display_datetime(plan.starts[-1])}")
        self.out.print_verbose(f"  states: {' -> '.join(payload.history)}")
