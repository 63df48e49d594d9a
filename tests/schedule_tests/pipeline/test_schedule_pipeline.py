import datetime as dt
import io
import json
import os
from unittest import TestCase

from tests.fakes.store import FlakyStore, make_store
from tests.fixtures import TempDirMixin, at, make_appointment, make_series, write_yaml

from core.cli_output import OutputConfig, OutputFormat, OutputWriter
from core.pipeline import ResultEnvelope
from schedule.model import AfterCount, OnDate, RecurrenceRule, RepeatUnit
from schedule.pipeline import (
    CheckProcessor,
    CheckProducer,
    CheckRequest,
    CheckRequestConsumer,
    CreateProcessor,
    CreateRequest,
    CreateRequestConsumer,
    DeleteSeriesProcessor,
    DeleteSeriesRequest,
    EditSeriesProcessor,
    EditSeriesRequest,
    ExpandProcessor,
    ExpandProducer,
    ExpandRequest,
    ExpandRequestConsumer,
    MutationProducer,
    MutationResult,
    RescheduleProcessor,
    RescheduleRequest,
    SlotsProcessor,
    SlotsProducer,
    SlotsRequest,
    open_store,
)
from schedule.planner import SeriesDraft, SeriesPlan

WEEKLY_3 = RecurrenceRule(unit=RepeatUnit.WEEK, weekday=1, end=AfterCount(3))


def _writer(fmt: OutputFormat = OutputFormat.TEXT, verbose: bool = False):
    buf = io.StringIO()
    return OutputWriter(OutputConfig(format=fmt, verbose=verbose, file=buf)), buf


def _draft(start="2024-01-01 09:00", rule=WEEKLY_3, minutes=30):
    return SeriesDraft(owner_id="u1", title="Physio", start=at(start), duration_minutes=minutes, rule=rule)


class ExpandPipelineTests(TestCase):
    def test_expand_lists_occurrences(self):
        req = ExpandRequest(start=at("2024-01-01 09:00"), rule=WEEKLY_3, duration_minutes=30)
        env = ExpandProcessor().process(ExpandRequestConsumer(req).consume())
        self.assertTrue(env.ok())
        self.assertEqual(len(env.payload.starts), 3)

        writer, buf = _writer()
        ExpandProducer(writer).produce(env)
        lines = buf.getvalue().splitlines()
        self.assertEqual(lines[0], "  1. 2024-01-01 • 09:00–09:30")
        self.assertEqual(lines[-1], "3 occurrence(s)")

    def test_expand_invalid_rule_is_error_envelope(self):
        rule = RecurrenceRule(unit=RepeatUnit.MONTH, month_day=30)
        env = ExpandProcessor().process(ExpandRequest(start=at("2024-01-01 09:00"), rule=rule, duration_minutes=30))
        self.assertFalse(env.ok())
        self.assertEqual(env.code, 10)
        self.assertEqual(env.diagnostics["error"], "InvalidRuleError")

    def test_expand_strict_empty(self):
        # end date covers the start day but the first weekly candidate is later
        rule = RecurrenceRule(unit=RepeatUnit.WEEK, weekday=5, end=OnDate(dt.date(2024, 1, 2)))
        lenient = ExpandProcessor().process(ExpandRequest(start=at("2024-01-01 09:00"), rule=rule, duration_minutes=30))
        self.assertEqual(lenient.payload.starts, [at("2024-01-01 09:00")])
        strict = ExpandProcessor().process(
            ExpandRequest(start=at("2024-01-01 09:00"), rule=rule, duration_minutes=30, strict=True)
        )
        self.assertEqual(strict.code, 11)

    def test_expand_structured_output(self):
        env = ExpandProcessor().process(ExpandRequest(start=at("2024-01-01 09:00"), rule=WEEKLY_3, duration_minutes=45))
        writer, buf = _writer(OutputFormat.JSON)
        ExpandProducer(writer).produce(env)
        data = json.loads(buf.getvalue())
        self.assertEqual(data["count"], 3)
        self.assertEqual(data["occurrences"][0], {"start": "2024-01-01T09:00:00", "end": "2024-01-01T09:45:00"})
        self.assertEqual(data["rule"]["unit"], "week")


class CheckAndSlotsPipelineTests(TestCase):
    def setUp(self):
        self.store = make_store([make_appointment("busy", "2024-01-08 09:10", 30, title="Dentist")])
        self.factory = lambda path: self.store

    def test_check_reports_first_collision(self):
        req = CheckRequest(store_path="x", owner_id="u1", start=at("2024-01-01 09:00"), duration_minutes=30, rule=WEEKLY_3)
        env = CheckProcessor(store_factory=self.factory).process(CheckRequestConsumer(req).consume())
        self.assertTrue(env.ok())
        self.assertEqual(env.payload.conflict.appointment.id, "busy")

        writer, buf = _writer()
        CheckProducer(writer).produce(env)
        out = buf.getvalue()
        self.assertIn("Collision: Dentist (2024-01-08 • 09:10–09:40)", out)
        self.assertIn("blocking appointment id: busy", out)

    def test_check_free(self):
        req = CheckRequest(
            store_path="x",
            owner_id="u1",
            start=at("2024-01-01 11:00"),
            duration_minutes=30,
            rule=WEEKLY_3,
        )
        env = CheckProcessor(store_factory=self.factory).process(req)
        self.assertIsNone(env.payload.conflict)
        writer, buf = _writer()
        CheckProducer(writer).produce(env)
        self.assertEqual(buf.getvalue().strip(), "No collisions across 3 occurrence(s).")

    def test_check_structured_conflict(self):
        req = CheckRequest(store_path="x", owner_id="u1", start=at("2024-01-01 09:00"), duration_minutes=30, rule=WEEKLY_3)
        env = CheckProcessor(store_factory=self.factory).process(req)
        writer, buf = _writer(OutputFormat.JSON)
        CheckProducer(writer).produce(env)
        data = json.loads(buf.getvalue())
        self.assertEqual(data["checked"], 3)
        self.assertEqual(data["conflict"]["appointment"]["id"], "busy")
        self.assertEqual(data["conflict"]["candidate_start"], "2024-01-08T09:00:00")

    def test_slots(self):
        req = SlotsRequest(store_path="x", owner_id="u1", day=dt.date(2024, 1, 8), duration_minutes=10, step_minutes=10)
        env = SlotsProcessor(store_factory=self.factory).process(req)
        self.assertEqual(list(env.payload.blocked), ["09:10", "09:20", "09:30"])
        writer, buf = _writer()
        SlotsProducer(writer).produce(env)
        lines = buf.getvalue().splitlines()
        self.assertEqual(lines[0], "09:10  Dentist (busy)")
        self.assertEqual(lines[-1], "3 blocked slot(s) on 2024-01-08")

    def test_slots_free_day(self):
        req = SlotsRequest(store_path="x", owner_id="u1", day=dt.date(2024, 1, 9), duration_minutes=30)
        env = SlotsProcessor(store_factory=self.factory).process(req)
        writer, buf = _writer()
        SlotsProducer(writer).produce(env)
        self.assertEqual(buf.getvalue().strip(), "All slots free on 2024-01-09")


class MutationPipelineTests(TempDirMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.store = make_store()
        self.factory = lambda path: self.store
        self.log_path = os.path.join(self.tmpdir, "logs", "schedule.log")

    def _log_records(self):
        with open(self.log_path, encoding="utf-8") as fh:
            return [json.loads(line) for line in fh]

    def test_create_commits_and_logs(self):
        req = CreateRequest(store_path="x", draft=_draft(), log_path=self.log_path)
        env = CreateProcessor(store_factory=self.factory).process(CreateRequestConsumer(req).consume())
        self.assertTrue(env.ok())
        result = env.payload
        self.assertEqual(len(result.plan.appointment_ids), 3)
        self.assertEqual(result.history[-1], "done")
        self.assertEqual(len(self.store.fetch_active_appointments("u1")), 3)

        records = self._log_records()
        self.assertEqual([r["event"] for r in records], ["start", "info", "end"])
        self.assertEqual(records[0]["cmd"], "create")
        self.assertEqual(records[1]["data"]["created"], 3)
        self.assertEqual(records[2]["status"], "ok")

    def test_create_dry_run_writes_nothing(self):
        req = CreateRequest(store_path="x", draft=_draft(), dry_run=True)
        env = CreateProcessor(store_factory=self.factory).process(req)
        self.assertTrue(env.payload.dry_run)
        self.assertEqual(self.store.batches, [])
        writer, buf = _writer()
        MutationProducer(writer).produce(env)
        self.assertTrue(buf.getvalue().startswith(f"Would create series {env.payload.plan.series_id} with 3 appointment(s)"))

    def test_create_collision_logs_conflict(self):
        self.store.create_appointment(make_appointment("busy", "2024-01-15 09:00"))
        req = CreateRequest(store_path="x", draft=_draft(), log_path=self.log_path)
        env = CreateProcessor(store_factory=self.factory).process(req)
        self.assertEqual(env.code, 12)
        self.assertEqual(env.diagnostics["error"], "CollisionError")

        records = self._log_records()
        self.assertEqual([r["event"] for r in records], ["start", "error", "end"])
        self.assertEqual(records[1]["extra"]["conflict_id"], "busy")
        self.assertEqual(records[2]["status"], "error")

        writer, buf = _writer()
        MutationProducer(writer).produce(env)
        lines = buf.getvalue().splitlines()
        self.assertTrue(lines[0].startswith("Error: Collision: busy (2024-01-15 • 09:00"))
        self.assertTrue(lines[1].startswith("Hint: "))

    def test_partial_failure_reports_warning(self):
        flaky = FlakyStore(max_batch_ops=2, fail_on_batch=2)
        req = CreateRequest(store_path="x", draft=_draft(), log_path=self.log_path)
        env = CreateProcessor(store_factory=lambda p: flaky).process(req)
        self.assertEqual(env.code, 13)
        self.assertEqual(self._log_records()[1]["extra"]["applied"], 1)

        writer, buf = _writer()
        MutationProducer(writer).produce(env)
        self.assertEqual(buf.getvalue().splitlines()[0], "Warning: changes may have partially applied.")

    def test_error_structured_output(self):
        req = DeleteSeriesRequest(store_path="x", series_id="nope")
        env = DeleteSeriesProcessor(store_factory=self.factory).process(req)
        self.assertEqual(env.code, 6)
        writer, buf = _writer(OutputFormat.JSON)
        MutationProducer(writer).produce(env)
        data = json.loads(buf.getvalue())
        self.assertEqual(data["status"], "error")
        self.assertEqual(data["code"], 6)

    def test_edit_series_keeps_unset_fields(self):
        created = CreateProcessor(store_factory=self.factory).process(CreateRequest(store_path="x", draft=_draft()))
        series_id = created.payload.plan.series_id
        req = EditSeriesRequest(store_path="x", series_id=series_id, start=at("2024-01-01 09:15"), acting_user_id="admin")
        env = EditSeriesProcessor(store_factory=self.factory).process(req)
        self.assertTrue(env.ok(), env.diagnostics)
        series = self.store.get_series(series_id)
        self.assertEqual(series.title, "Physio")
        self.assertEqual(series.duration_minutes, 30)
        self.assertEqual(series.start, at("2024-01-01 09:15"))
        self.assertEqual(len(env.payload.plan.removed_ids), 3)

        writer, buf = _writer(verbose=True)
        MutationProducer(writer).produce(env)
        out = buf.getvalue()
        self.assertIn(f"Replaced series {series_id}: 3 removed, 3 created", out)
        self.assertIn("  first: 2024-01-01 • 09:15", out)
        self.assertIn("states: idle -> validating -> scanning_collisions -> committing -> done", out)

    def test_edit_series_zero_duration_is_rejected(self):
        created = CreateProcessor(store_factory=self.factory).process(CreateRequest(store_path="x", draft=_draft()))
        series_id = created.payload.plan.series_id
        self.store.batches.clear()
        req = EditSeriesRequest(store_path="x", series_id=series_id, duration_minutes=0)
        env = EditSeriesProcessor(store_factory=self.factory).process(req)
        self.assertEqual(env.code, 10)
        self.assertEqual(env.diagnostics["error"], "InvalidRuleError")
        self.assertEqual(self.store.batches, [])
        self.assertEqual(self.store.get_series(series_id).duration_minutes, 30)

    def test_delete_series(self):
        self.store.create_series_metadata(make_series("s1", "2024-01-01 09:00"))
        self.store.create_appointment(make_appointment("a1", "2024-01-01 09:00", series_id="s1", series_index=1))
        env = DeleteSeriesProcessor(store_factory=self.factory).process(
            DeleteSeriesRequest(store_path="x", series_id="s1", acting_user_id="admin")
        )
        self.assertTrue(env.ok())
        self.assertFalse(self.store.get_appointment("a1").is_active)
        writer, buf = _writer()
        MutationProducer(writer).produce(env)
        self.assertEqual(buf.getvalue().strip(), "Deleted series s1 (1 appointment(s))")

    def test_reschedule(self):
        self.store.create_appointment(make_appointment("a1", "2024-01-01 09:00"))
        req = RescheduleRequest(store_path="x", appointment_id="a1", start=at("2024-01-01 09:15"), end=at("2024-01-01 10:00"))
        env = RescheduleProcessor(store_factory=self.factory).process(req)
        self.assertTrue(env.ok())
        self.assertEqual(self.store.get_appointment("a1").end, at("2024-01-01 10:00"))
        writer, buf = _writer()
        MutationProducer(writer).produce(env)
        self.assertEqual(buf.getvalue().strip(), "Rescheduled a1 to 2024-01-01 • 09:15–10:00")

    def test_structured_mutation_output(self):
        plan = SeriesPlan(action="create", owner_id="u1", series_id="s1", starts=[at("2024-01-01 09:00")], appointment_ids=["a1"])
        env = ResultEnvelope(status="success", payload=MutationResult(plan=plan, history=["idle", "done"]))
        writer, buf = _writer(OutputFormat.JSON)
        MutationProducer(writer).produce(env)
        data = json.loads(buf.getvalue())
        self.assertEqual(data["series_id"], "s1")
        self.assertEqual(data["starts"], ["2024-01-01T09:00:00"])
        self.assertEqual(data["states"], ["idle", "done"])


class OpenStoreTests(TempDirMixin, TestCase):
    def test_bad_yaml_maps_to_config_error(self):
        path = os.path.join(self.tmpdir, "store.yaml")
        with open(path, "w", encoding="utf-8") as fh:
            fh.write("appointments: [unclosed\n")
        from core.cli_errors import ConfigError

        with self.assertRaises(ConfigError):
            open_store(path)

    def test_opens_existing_document(self):
        path = write_yaml({"appointments": [], "series": []}, dir=self.tmpdir, filename="store.yaml")
        self.assertEqual(open_store(path).appointments, [])
