"""End-to-end tests for the schedule CLI against a YAML store in a temp dir."""

from __future__ import annotations

import io
import json
import os
import unittest
from contextlib import redirect_stderr

from tests.fixtures import TempDirMixin, capture_stdout, read_yaml, write_yaml

from schedule.__main__ import main


class ScheduleCLITests(TempDirMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.store = os.path.join(self.tmpdir, "store.yaml")
        self.log = os.path.join(self.tmpdir, "schedule.log")

    def run_cli(self, *argv: str):
        err = io.StringIO()
        with capture_stdout() as buf, redirect_stderr(err):
            rc = main(["--store", self.store, "--log", self.log, *argv])
        return rc, buf.getvalue(), err.getvalue()

    def create_weekly(self, *extra: str):
        return self.run_cli(
            "--output", "json",
            "create",
            "--owner", "u1",
            "--title", "Physio",
            "--start", "2024-01-01T09:00",
            "--duration", "30",
            "--unit", "week",
            "--weekday", "1",
            "--count", "3",
            *extra,
        )

    def test_create_writes_store_and_log(self):
        rc, out, _ = self.run_cli(
            "create", "--owner", "u1", "--title", "Physio",
            "--start", "2024-01-01T09:00", "--duration", "30",
            "--unit", "week", "--count", "3",
        )
        self.assertEqual(rc, 0)
        self.assertIn("Created series ", out)
        self.assertIn("with 3 appointment(s)", out)
        self.assertIn("  last:  2024-01-15 • 09:00", out)

        doc = read_yaml(self.store)
        self.assertEqual(len(doc["appointments"]), 3)
        self.assertEqual(doc["series"][0]["instanceCount"], 3)
        self.assertEqual([a["seriesIndex"] for a in doc["appointments"]], [1, 2, 3])

        with open(self.log, encoding="utf-8") as fh:
            events = [json.loads(line)["event"] for line in fh]
        self.assertEqual(events, ["start", "info", "end"])

    def test_create_collision_exit_code(self):
        self.assertEqual(self.create_weekly()[0], 0)
        rc, out, _ = self.run_cli(
            "create", "--owner", "u1", "--title", "Dentist",
            "--start", "2024-01-08T09:15", "--no-repeat",
        )
        self.assertEqual(rc, 12)
        self.assertTrue(out.startswith("Error: Collision: Physio (2024-01-08 • 09:00–09:30)"))
        self.assertEqual(len(read_yaml(self.store)["appointments"]), 3)

    def test_dry_run_leaves_store_absent(self):
        rc, out, _ = self.create_weekly("--dry-run")
        self.assertEqual(rc, 0)
        data = json.loads(out)
        self.assertTrue(data["dry_run"])
        self.assertEqual(len(data["appointment_ids"]), 3)
        self.assertFalse(os.path.exists(self.store))

    def test_edit_series_replaces_instances(self):
        rc, out, _ = self.create_weekly()
        series_id = json.loads(out)["series_id"]
        rc, out, _ = self.run_cli(
            "edit-series", "--series", series_id,
            "--start", "2024-01-01T09:15", "--count", "2", "--unit", "week", "--user", "admin",
        )
        self.assertEqual(rc, 0)
        self.assertIn(f"Replaced series {series_id}: 3 removed, 2 created", out)
        doc = read_yaml(self.store)
        deleted = [a for a in doc["appointments"] if a.get("status") == "deleted"]
        self.assertEqual(len(deleted), 3)
        self.assertTrue(all(a["deletedByUserId"] == "admin" for a in deleted))

    def test_edit_missing_series(self):
        rc, out, _ = self.run_cli("edit-series", "--series", "nope")
        self.assertEqual(rc, 6)
        self.assertIn("Series not found: nope", out)

    def test_delete_series(self):
        series_id = json.loads(self.create_weekly()[1])["series_id"]
        rc, out, _ = self.run_cli("delete-series", "--series", series_id, "--user", "admin")
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), f"Deleted series {series_id} (3 appointment(s))")
        doc = read_yaml(self.store)
        self.assertEqual(doc["series"][0]["status"], "deleted")

    def test_reschedule_and_collision(self):
        ids = json.loads(self.create_weekly()[1])["appointment_ids"]
        rc, out, _ = self.run_cli("reschedule", "--id", ids[0], "--start", "2024-01-01T10:00", "--end", "2024-01-01T10:45")
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), f"Rescheduled {ids[0]} to 2024-01-01 • 10:00–10:45")

        rc, _, _ = self.run_cli("reschedule", "--id", ids[0], "--start", "2024-01-08T09:00", "--end", "2024-01-08T09:30")
        self.assertEqual(rc, 12)

        rc, _, _ = self.run_cli("reschedule", "--id", ids[0], "--start", "2024-01-01T10:00", "--end", "2024-01-01T09:00")
        self.assertEqual(rc, 10)

    def test_check_and_slots(self):
        self.create_weekly()
        rc, out, _ = self.run_cli("check", "--owner", "u1", "--start", "2024-01-15T09:20", "--duration", "15")
        self.assertEqual(rc, 12)
        self.assertIn("Collision: Physio (2024-01-15 • 09:00–09:30)", out)

        rc, out, _ = self.run_cli("check", "--owner", "u1", "--start", "2024-01-01T10:00", "--unit", "day", "--count", "5")
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), "No collisions across 5 occurrence(s).")

        rc, out, _ = self.run_cli("slots", "--owner", "u1", "--date", "2024-01-08", "--duration", "30", "--step", "15")
        self.assertEqual(rc, 0)
        self.assertTrue(out.splitlines()[0].startswith("08:45  Physio ("))
        self.assertTrue(out.strip().endswith("3 blocked slot(s) on 2024-01-08"))

    def test_expand_with_rule_file(self):
        rule_path = write_yaml(
            {"recurrence": {"unit": "month", "monthDay": 15, "endMode": "afterCount", "endAfterCount": 3}},
            dir=self.tmpdir,
            filename="rule.yaml",
        )
        rc, out, _ = self.run_cli("expand", "--start", "2024-01-20T08:00", "--rule", rule_path)
        self.assertEqual(rc, 0)
        lines = out.splitlines()
        self.assertEqual(lines[0], "  1. 2024-02-15 • 08:00–08:15")
        self.assertEqual(lines[-1], "3 occurrence(s)")

        # flags override the file
        rc, out, _ = self.run_cli("expand", "--start", "2024-01-20T08:00", "--rule", rule_path, "--count", "1")
        self.assertEqual(out.splitlines()[-1], "1 occurrence(s)")

    def test_expand_errors(self):
        rc, _, _ = self.run_cli("expand", "--start", "2024-01-01T09:00", "--unit", "month", "--month-day", "31")
        self.assertEqual(rc, 10)

        rc, _, _ = self.run_cli(
            "expand", "--start", "2024-01-01T09:00", "--unit", "week", "--weekday", "5",
            "--until", "2024-01-02", "--strict",
        )
        self.assertEqual(rc, 11)

        rc, _, err = self.run_cli("expand", "--start", "tomorrow", "--unit", "day")
        self.assertEqual(rc, 2)
        self.assertIn("Invalid --start", err)

    def test_missing_rule_file_is_usage_error(self):
        rc, _, err = self.run_cli("expand", "--start", "2024-01-01T09:00", "--rule", os.path.join(self.tmpdir, "none.yaml"))
        self.assertEqual(rc, 2)
        self.assertIn("missing or empty", err)

    def test_unreadable_store_is_config_error(self):
        with open(self.store, "w", encoding="utf-8") as fh:
            fh.write("- just\n- a list\n")
        rc, out, _ = self.run_cli("slots", "--owner", "u1", "--date", "2024-01-01")
        self.assertEqual(rc, 3)
        self.assertIn("Cannot read store", out)
