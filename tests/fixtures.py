"""Shared test fixtures and utilities.

Builders for appointments and series, YAML/tempdir helpers, and output
capture used across the schedule and core test suites.
"""

from __future__ import annotations

import datetime as dt
import io
import os
import tempfile
from contextlib import contextmanager, redirect_stdout
from typing import Optional

from schedule.model import Appointment, RecurrenceRule, SeriesMetadata

# -----------------------------------------------------------------------------
# YAML config helpers
# -----------------------------------------------------------------------------


def write_yaml(data: dict, dir: Optional[str] = None, filename: str = "config.yaml") -> str:
    """Write a dict to a temporary YAML file, return the path."""
    import yaml

    td = dir or tempfile.mkdtemp()
    p = os.path.join(td, filename)
    with open(p, "w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, sort_keys=False)
    return p


def read_yaml(path: str) -> dict:
    import yaml

    with open(path, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# -----------------------------------------------------------------------------
# Output capture helpers
# -----------------------------------------------------------------------------


@contextmanager
def capture_stdout():
    """Context manager that captures stdout and yields a StringIO buffer."""
    buf = io.StringIO()
    with redirect_stdout(buf):
        yield buf


# -----------------------------------------------------------------------------
# Domain builders
# -----------------------------------------------------------------------------


def at(s: str) -> dt.datetime:
    """Parse 'YYYY-MM-DD HH:MM' (or ISO with T) into a naive datetime."""
    return dt.datetime.fromisoformat(s.replace(" ", "T"))


def make_appointment(
    id: str,
    start: str,
    minutes: int = 30,
    owner_id: str = "u1",
    title: str = "",
    **kwargs,
) -> Appointment:
    """Create an active appointment starting at ``start`` lasting ``minutes``."""
    s = at(start)
    return Appointment(
        id=id,
        owner_id=owner_id,
        start=s,
        end=s + dt.timedelta(minutes=minutes),
        title=title or id,
        **kwargs,
    )


def make_series(
    id: str,
    start: str,
    minutes: int = 30,
    owner_id: str = "u1",
    rule: Optional[RecurrenceRule] = None,
    **kwargs,
) -> SeriesMetadata:
    s = at(start)
    return SeriesMetadata(
        id=id,
        owner_id=owner_id,
        rule=rule or RecurrenceRule(),
        duration_minutes=minutes,
        start=s,
        end=s + dt.timedelta(minutes=minutes),
        **kwargs,
    )


def fixed_clock(when: str = "2024-01-01 00:00"):
    moment = at(when)
    return lambda: moment


# -----------------------------------------------------------------------------
# Test mixins
# -----------------------------------------------------------------------------


class TempDirMixin:
    """Mixin providing a temporary directory that's cleaned up after each test.

    Usage:
        class MyTest(TempDirMixin, unittest.TestCase):
            def test_something(self):
                path = os.path.join(self.tmpdir, "file.txt")
                ...
    """

    tmpdir: str

    def setUp(self):
        super().setUp()
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        import shutil
        shutil.rmtree(self.tmpdir, ignore_errors=True)
        super().tearDown()
