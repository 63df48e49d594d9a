"""Shared fake/mock objects for testing.

Modules:
    store - RecordingStore, FlakyStore, CountingFinder for planner testing
"""

from __future__ import annotations

from tests.fakes.store import CountingFinder, FlakyStore, RecordingStore, make_store

__all__ = [
    "CountingFinder",
    "FlakyStore",
    "RecordingStore",
    "make_store",
]
