"""Pytest configuration for GhostKey."""
import os
from typing import List

import pytest

from ghostkey.base.config import set_config


def pytest_configure():
    # Keep test runs quiet and away from the real home directory.
    os.environ.setdefault("GHOSTKEY_LOG_LEVEL", "WARNING")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _fresh_config():
    set_config(None)
    yield
    set_config(None)


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)

    @property
    def total(self) -> float:
        return sum(self.delays)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


class MutableClock:
    """Millisecond clock tests can move forward."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance_hours(self, hours: float) -> None:
        self.now += int(hours * 60 * 60 * 1000)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()
