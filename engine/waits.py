"""
Quest Engine - Bounded Waits & Jitter

Every suspension point in the engine goes through here. A wait always
has a timeout, polls its condition on a short interval, and gives up
early when a cancellation check says the agent is no longer active.

The clock is injectable so tests run instantly with a fake clock.

Usage:
    from engine.waits import SystemClock, wait_until, jitter_seconds

    clock = SystemClock()
    outcome = wait_until(lambda: market.is_market_open(), timeout=10,
                         poll=0.6, clock=clock, active=orchestrator.is_active)
    if outcome is WaitOutcome.ABORTED:
        ...
"""

from __future__ import annotations

import enum
import random
import time
from typing import Callable, Protocol

# One game tick; the poll interval for short interface waits
TICK_S = 0.6


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Monotonic wall clock. If an abort flag is given, sleeps wake early when it trips."""

    def __init__(self, abort=None):
        self.abort = abort

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.abort is not None:
            self.abort.wait(seconds)
        else:
            time.sleep(seconds)


class WaitOutcome(str, enum.Enum):
    MET = "met"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


def wait_until(
    condition: Callable[[], bool],
    timeout: float,
    poll: float,
    clock: Clock,
    active: Callable[[], bool] | None = None,
) -> WaitOutcome:
    """
    Poll condition until it holds, timeout elapses, or active() turns false.

    The condition is checked at least once, even with a zero timeout.
    """
    start = clock.now()
    while True:
        if active is not None and not active():
            return WaitOutcome.ABORTED
        if condition():
            return WaitOutcome.MET
        remaining = timeout - (clock.now() - start)
        if remaining <= 0:
            return WaitOutcome.TIMED_OUT
        clock.sleep(min(poll, remaining))


def jitter_seconds(bounds_ms: tuple[int, int], rng: random.Random | None = None) -> float:
    """Uniform random delay in seconds from a [min, max] millisecond range."""
    low, high = bounds_ms
    r = rng or random
    return r.randint(low, high) / 1000.0
