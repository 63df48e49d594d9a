"""Schedule engine CLI

Expands recurrence rules, checks candidate series for collisions, and plans
series create/edit/delete and single-appointment reschedules against a YAML
file store.

Mutating commands accept --dry-run to stop after validation and the collision
scan without writing anything.
"""
from __future__ import annotations

import argparse
from typing import Any, Dict, List, Optional

import yaml

from core.cli_errors import ExitCode, UsageError
from core.cli_framework import CLIApp
from core.constants import (
    DEFAULT_DURATION_MINUTES,
    DEFAULT_INSTANCE_CAP,
    DEFAULT_SLOT_STEP_MINUTES,
    default_log_path,
    default_store_path,
)
from core.date_utils import parse_local_date, parse_local_datetime
from core.yamlio import load_config as _load_yaml

from .model import RecurrenceRule, rule_from_dict
from .pipeline import (
    CheckProcessor,
    CheckProducer,
    CheckRequest,
    CheckRequestConsumer,
    CreateProcessor,
    CreateRequest,
    CreateRequestConsumer,
    DeleteSeriesProcessor,
    DeleteSeriesRequest,
    DeleteSeriesRequestConsumer,
    EditSeriesProcessor,
    EditSeriesRequest,
    EditSeriesRequestConsumer,
    ExpandProcessor,
    ExpandProducer,
    ExpandRequest,
    ExpandRequestConsumer,
    MutationProducer,
    RescheduleProcessor,
    RescheduleRequest,
    RescheduleRequestConsumer,
    SlotsProcessor,
    SlotsProducer,
    SlotsRequest,
    SlotsRequestConsumer,
)
from .planner import SeriesDraft


def _global_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--store", default=None, help="Store YAML path (default $SCHEDULE_STORE or out/schedule.store.yaml)")
    parser.add_argument("--log", default=None, help="Session log path (default $SCHEDULE_LOG or logs/schedule.log)")


app = CLIApp(
    "schedule",
    "Recurring appointment planner with collision checks.",
    add_common_args=True,
    global_args=_global_args,
)


def _store_path(args: argparse.Namespace) -> str:
    return getattr(args, "store", None) or default_store_path()


def _log_path(args: argparse.Namespace) -> str:
    return getattr(args, "log", None) or default_log_path()


def _parse_dt(value: Optional[str], flag: str):
    if value is None:
        return None
    try:
        return parse_local_datetime(value)
    except ValueError:
        raise UsageError(f"Invalid {flag}: {value!r}", hint="Use YYYY-MM-DDTHH:MM") from None


# Rule flags shared by expand/check/create/edit-series
_RULE_FLAGS = [
    (("--rule",), {"help": "Rule YAML file (keys: unit, interval, weekday, monthDay, endMode, ...)"}),
    (("--unit",), {"help": "Repeat unit: day|week|month|year"}),
    (("--interval",), {"type": int, "help": "Repeat every N units"}),
    (("--weekday",), {"help": "Weekday for weekly rules (0=Sunday or a name)"}),
    (("--month-day",), {"type": int, "dest": "month_day", "help": "Day of month 1..27 for monthly rules"}),
    (("--until",), {"help": "Last date YYYY-MM-DD (inclusive)"}),
    (("--count",), {"type": int, "help": "Stop after N occurrences"}),
    (("--no-repeat",), {"action": "store_true", "dest": "no_repeat", "help": "Single appointment (no recurrence)"}),
    (("--cap",), {"type": int, "default": DEFAULT_INSTANCE_CAP, "help": f"Max occurrences (default {DEFAULT_INSTANCE_CAP})"}),
]


def _rule_args(func):
    for flags, kwargs in reversed(_RULE_FLAGS):
        func = app.argument(*flags, **kwargs)(func)
    return func


def _has_rule_flags(args: argparse.Namespace) -> bool:
    keys = ("rule", "unit", "interval", "weekday", "month_day", "until", "count")
    return any(getattr(args, k, None) is not None for k in keys) or bool(getattr(args, "no_repeat", False))


def _rule_from_args(args: argparse.Namespace) -> RecurrenceRule:
    """Merge --rule file contents with individual flags (flags win)."""
    data: Dict[str, Any] = {}
    rule_path = getattr(args, "rule", None)
    if rule_path:
        try:
            doc = _load_yaml(rule_path)
        except (yaml.YAMLError, ValueError) as exc:
            raise UsageError(f"Cannot read rule file {rule_path}: {exc}") from exc
        if not doc:
            raise UsageError(f"Rule file is missing or empty: {rule_path}")
        nested = doc.get("recurrence") or doc.get("rule")
        data.update(nested if isinstance(nested, dict) else doc)
    for key, attr in (("unit", "unit"), ("interval", "interval"), ("weekday", "weekday"), ("monthDay", "month_day")):
        value = getattr(args, attr, None)
        if value is not None:
            data[key] = value
    if getattr(args, "until", None) is not None:
        data["endMode"] = "onDate"
        data["endOnDate"] = args.until
    if getattr(args, "count", None) is not None:
        data["endMode"] = "afterCount"
        data["endAfterCount"] = args.count
    if getattr(args, "no_repeat", False):
        data["enabled"] = False
    return rule_from_dict(data)


@app.command("expand", help="List the occurrences of a recurrence rule")
@app.argument("--start", required=True, help="First start YYYY-MM-DDTHH:MM")
@app.argument("--duration", type=int, default=DEFAULT_DURATION_MINUTES, help="Minutes per occurrence")
@app.argument("--strict", action="store_true", help="Fail instead of falling back to the start when nothing is generated")
@_rule_args
def cmd_expand(args: argparse.Namespace) -> int:
    request = ExpandRequest(
        start=_parse_dt(args.start, "--start"),
        rule=_rule_from_args(args),
        duration_minutes=args.duration,
        instance_cap=args.cap,
        strict=bool(args.strict),
    )
    envelope = ExpandProcessor().process(ExpandRequestConsumer(request).consume())
    ExpandProducer(args._output).produce(envelope)
    return envelope.code


@app.command("check", help="Report the first collision of a prospective series")
@app.argument("--owner", required=True, help="Owner user id")
@app.argument("--start", required=True, help="First start YYYY-MM-DDTHH:MM")
@app.argument("--duration", type=int, default=DEFAULT_DURATION_MINUTES, help="Minutes per occurrence")
@app.argument("--exclude-id", dest="exclude_id", help="Appointment id to ignore")
@app.argument("--exclude-series", dest="exclude_series", help="Series id whose instances are ignored")
@_rule_args
def cmd_check(args: argparse.Namespace) -> int:
    rule = _rule_from_args(args) if _has_rule_flags(args) else RecurrenceRule(enabled=False)
    request = CheckRequest(
        store_path=_store_path(args),
        owner_id=args.owner,
        start=_parse_dt(args.start, "--start"),
        duration_minutes=args.duration,
        rule=rule,
        exclude_id=args.exclude_id,
        exclude_series_id=args.exclude_series,
        instance_cap=args.cap,
    )
    envelope = CheckProcessor().process(CheckRequestConsumer(request).consume())
    CheckProducer(args._output).produce(envelope)
    if envelope.ok() and envelope.unwrap().conflict is not None:
        return int(ExitCode.COLLISION)
    return envelope.code


@app.command("slots", help="Show blocked start slots for one day")
@app.argument("--owner", required=True, help="Owner user id")
@app.argument("--date", required=True, help="Day YYYY-MM-DD")
@app.argument("--duration", type=int, default=DEFAULT_DURATION_MINUTES, help="Minutes per appointment")
@app.argument("--step", type=int, default=DEFAULT_SLOT_STEP_MINUTES, help="Slot grid in minutes")
@app.argument("--exclude-id", dest="exclude_id", help="Appointment id to ignore")
def cmd_slots(args: argparse.Namespace) -> int:
    try:
        day = parse_local_date(args.date)
    except ValueError:
        raise UsageError(f"Invalid --date: {args.date!r}", hint="Use YYYY-MM-DD") from None
    request = SlotsRequest(
        store_path=_store_path(args),
        owner_id=args.owner,
        day=day,
        duration_minutes=args.duration,
        step_minutes=args.step,
        exclude_id=args.exclude_id,
    )
    envelope = SlotsProcessor().process(SlotsRequestConsumer(request).consume())
    SlotsProducer(args._output).produce(envelope)
    return envelope.code


@app.command("create", help="Create a series (or one appointment with --no-repeat)")
@app.argument("--owner", required=True, help="Owner user id")
@app.argument("--title", required=True, help="Appointment title")
@app.argument("--description", default="", help="Appointment description")
@app.argument("--start", required=True, help="First start YYYY-MM-DDTHH:MM")
@app.argument("--duration", type=int, default=DEFAULT_DURATION_MINUTES, help="Minutes per occurrence")
@app.argument("--dry-run", action="store_true", dest="dry_run", help="Validate and scan only")
@_rule_args
def cmd_create(args: argparse.Namespace) -> int:
    draft = SeriesDraft(
        owner_id=args.owner,
        title=args.title,
        description=args.description,
        start=_parse_dt(args.start, "--start"),
        duration_minutes=args.duration,
        rule=_rule_from_args(args),
    )
    request = CreateRequest(
        store_path=_store_path(args),
        draft=draft,
        dry_run=bool(args.dry_run),
        log_path=_log_path(args),
        instance_cap=args.cap,
    )
    envelope = CreateProcessor().process(CreateRequestConsumer(request).consume())
    MutationProducer(args._output).produce(envelope)
    return envelope.code


@app.command("edit-series", help="Regenerate every instance of a series")
@app.argument("--series", required=True, help="Series id")
@app.argument("--title", help="New title")
@app.argument("--description", help="New description")
@app.argument("--start", help="New first start YYYY-MM-DDTHH:MM")
@app.argument("--duration", type=int, help="New minutes per occurrence")
@app.argument("--user", help="Acting user id recorded on soft-deleted instances")
@app.argument("--dry-run", action="store_true", dest="dry_run", help="Validate and scan only")
@_rule_args
def cmd_edit_series(args: argparse.Namespace) -> int:
    request = EditSeriesRequest(
        store_path=_store_path(args),
        series_id=args.series,
        start=_parse_dt(args.start, "--start"),
        duration_minutes=args.duration,
        rule=_rule_from_args(args) if _has_rule_flags(args) else None,
        title=args.title,
        description=args.description,
        acting_user_id=args.user,
        dry_run=bool(args.dry_run),
        log_path=_log_path(args),
        instance_cap=args.cap,
    )
    envelope = EditSeriesProcessor().process(EditSeriesRequestConsumer(request).consume())
    MutationProducer(args._output).produce(envelope)
    return envelope.code


@app.command("delete-series", help="Soft-delete a series and all of its instances")
@app.argument("--series", required=True, help="Series id")
@app.argument("--user", help="Acting user id")
@app.argument("--dry-run", action="store_true", dest="dry_run", help="Show what would be deleted")
def cmd_delete_series(args: argparse.Namespace) -> int:
    request = DeleteSeriesRequest(
        store_path=_store_path(args),
        series_id=args.series,
        acting_user_id=args.user,
        dry_run=bool(args.dry_run),
        log_path=_log_path(args),
    )
    envelope = DeleteSeriesProcessor().process(DeleteSeriesRequestConsumer(request).consume())
    MutationProducer(args._output).produce(envelope)
    return envelope.code


@app.command("reschedule", help="Move a single appointment")
@app.argument("--id", required=True, dest="appointment_id", help="Appointment id")
@app.argument("--start", required=True, help="New start YYYY-MM-DDTHH:MM")
@app.argument("--end", required=True, help="New end YYYY-MM-DDTHH:MM")
@app.argument("--dry-run", action="store_true", dest="dry_run", help="Validate and scan only")
def cmd_reschedule(args: argparse.Namespace) -> int:
    request = RescheduleRequest(
        store_path=_store_path(args),
        appointment_id=args.appointment_id,
        start=_parse_dt(args.start, "--start"),
        end=_parse_dt(args.end, "--end"),
        dry_run=bool(args.dry_run),
        log_path=_log_path(args),
    )
    envelope = RescheduleProcessor().process(RescheduleRequestConsumer(request).consume())
    MutationProducer(args._output).produce(envelope)
    return envelope.code


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI."""
    return app.run(argv)


if __name__ == "__main__":
    raise SystemExit(main())
