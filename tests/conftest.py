"""
Shared test fixtures for kbstate.

Time-dependent components take a clock callable; FakeClock lets tests move
time forward without sleeping.
"""

import tempfile

import pytest

from kbstate.state.models import DAY_MS

# 2026-01-15T12:00:00Z
START_MS = 1_768_478_400_000


class FakeClock:
    """Controllable Unix-ms clock."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 0, days: int = 0) -> int:
        self.now += ms + days * DAY_MS
        return self.now


@pytest.fixture
def clock():
    """Clock starting at START_MS."""
    return FakeClock()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir
