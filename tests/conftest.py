# tests/conftest.py
"""
Shared pytest fixtures for the collaboration layer tests.

Provides:
- A controllable clock for sweep and throttle timing
- In-process transports (working and failing)
- A channel registry wired to the in-process transport
"""
import asyncio
import os

# Force the in-process transport before settings are loaded
os.environ["REDIS_URL"] = ""

import pytest

from codesense.pubsub import LocalTransport
from codesense.services.channels import ChannelRegistry


class FakeClock:
    """Monotonic clock advanced by hand (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


class SlowTransport(LocalTransport):
    """Transport whose subscribe yields to the event loop before completing."""

    async def subscribe(self, channel_name, config=None):
        await asyncio.sleep(0)
        return await super().subscribe(channel_name, config)


class FailingTransport(LocalTransport):
    """Transport whose subscribe always fails."""

    async def subscribe(self, channel_name, config=None):
        self.subscribe_calls += 1
        await asyncio.sleep(0)
        raise ConnectionError("transport unreachable")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> LocalTransport:
    return LocalTransport()


@pytest.fixture
def registry(transport: LocalTransport, clock: FakeClock) -> ChannelRegistry:
    return ChannelRegistry(transport, sweep_interval=120, idle_threshold=60, clock=clock)


@pytest.fixture
def slow_transport() -> SlowTransport:
    return SlowTransport()


@pytest.fixture
def failing_transport() -> FailingTransport:
    return FailingTransport()
