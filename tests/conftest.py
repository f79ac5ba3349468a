"""Shared fixtures: a controllable clock and a sleep that advances it"""

import pytest

from src.core.clock import Clock


class FakeClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.current = start_ms

    def now_ms(self) -> int:
        return self.current

    def advance(self, ms: int):
        self.current += ms


class FakeSleep:
    """Records requested sleeps and advances the clock instead of waiting"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.advance(int(seconds * 1000))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)
