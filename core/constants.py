"""Shared constants for the scheduling engine and its CLI.

Formats, generation caps, and default locations are collected here so the
recurrence, overlap, and planner modules agree on them.
"""

from __future__ import annotations

import os

# -----------------------------------------------------------------------------
# Date/time formats
# -----------------------------------------------------------------------------

FMT_DATE = "%Y-%m-%d"
FMT_TIME = "%H:%M"
FMT_DISPLAY = "%Y-%m-%d • %H:%M"


# -----------------------------------------------------------------------------
# Recurrence limits
# -----------------------------------------------------------------------------

# Hard upper bound on occurrences per rule application
DEFAULT_INSTANCE_CAP = 200

MIN_INTERVAL = 1
MAX_INTERVAL = 999

# Month days stop at 27 so every month has the selected day
MIN_MONTH_DAY = 1
MAX_MONTH_DAY = 27

# Sunday = 0 .. Saturday = 6
MIN_WEEKDAY = 0
MAX_WEEKDAY = 6


# -----------------------------------------------------------------------------
# Planner / storage
# -----------------------------------------------------------------------------

# Max write operations per non-atomic batch
BATCH_OP_LIMIT = 450

DEFAULT_SLOT_STEP_MINUTES = 5
DEFAULT_DURATION_MINUTES = 15

STATUS_OPEN = "open"
STATUS_DELETED = "deleted"
SERIES_ACTIVE = "active"


# -----------------------------------------------------------------------------
# CLI defaults
# -----------------------------------------------------------------------------

DEFAULT_STORE_PATH = "out/schedule.store.yaml"
DEFAULT_LOG_PATH = "logs/schedule.log"


def default_store_path() -> str:
    """Return the store path, honoring SCHEDULE_STORE."""
    return os.environ.get("SCHEDULE_STORE") or DEFAULT_STORE_PATH


def default_log_path() -> str:
    """Return the log path, honoring SCHEDULE_LOG."""
    return os.environ.get("SCHEDULE_LOG") or DEFAULT_LOG_PATH
