"""Shared fixtures: manual timers, a fake clock and canonical probe frames."""

from __future__ import annotations

import pytest

from soilprobe.services.device.crc import append_crc
from soilprobe.services.device.transaction import TransactionController

# Registers [250, 500, 652, 50, 25, 40] -> 25.0C, 50.0%, pH 6.52, N50 P25 K40
CANONICAL_RESPONSE = append_crc(
    bytes.fromhex("01 03 0C 00 FA 01 F4 02 8C 00 32 00 19 00 28")
)


class ManualTimer:
    def __init__(self, delay: float, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        """Invoke the callback the way the loop would, even if cancelled late."""
        self.callback()


class ManualTimers:
    """Timer factory that never fires on its own."""

    def __init__(self) -> None:
        self.created: list[ManualTimer] = []

    def __call__(self, delay: float, callback) -> ManualTimer:
        timer = ManualTimer(delay, callback)
        self.created.append(timer)
        return timer

    @property
    def last(self) -> ManualTimer:
        return self.created[-1]


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Collector:
    """Listener that remembers what it was given."""

    def __init__(self) -> None:
        self.items: list = []

    def __call__(self, item) -> None:
        self.items.append(item)

    @property
    def last(self):
        return self.items[-1]


@pytest.fixture()
def timers() -> ManualTimers:
    return ManualTimers()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def readings() -> Collector:
    return Collector()


@pytest.fixture()
def records() -> Collector:
    return Collector()


@pytest.fixture()
def writes() -> Collector:
    return Collector()


@pytest.fixture()
def controller(timers, clock, readings, records, writes) -> TransactionController:
    ctrl = TransactionController(
        1.0,
        on_reading=readings,
        on_record=records,
        timer_factory=timers,
        clock=clock,
    )
    ctrl.attach(writes)
    return ctrl
