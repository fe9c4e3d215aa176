"""
Quest Engine - Tick Driver

Owns the polling loop: calls orchestrator.tick() on a fixed cadence from
a single background thread. While no task is running it keeps polling
the monitor so signal baselines stay fresh.

Usage:
    driver = TickDriver(orchestrator, interval_s=0.6)
    driver.start()
    ...
    driver.stop()

    # Deterministic, same-thread use (tests, CLI):
    ticks = driver.run_until_idle(max_ticks=500)
"""

from __future__ import annotations

import logging
import threading

from orchestrator.runtime import Orchestrator
from orchestrator.types import ExecutorState

logger = logging.getLogger("quest_engine.driver")


class TickDriver:
    def __init__(self, orchestrator: Orchestrator, interval_s: float = 0.6):
        self.orchestrator = orchestrator
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="quest-engine-driver", daemon=True)
        self._thread.start()
        logger.info("Tick driver started (interval %.2fs)", self.interval_s)

    def stop(self, timeout: float | None = 10.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Tick driver stopped after %d ticks", self.ticks)

    def step(self):
        """One cycle: tick the active task, or poll the monitor when idle."""
        orch = self.orchestrator
        if orch.is_busy():
            orch.tick()
        elif orch.monitor is not None:
            orch.monitor.poll()
        self.ticks += 1

    def run_until_idle(self, max_ticks: int = 1000) -> int:
        """Tick on the calling thread until the orchestrator is idle again."""
        used = 0
        while used < max_ticks and self.orchestrator.state is not ExecutorState.IDLE:
            if self.orchestrator.state in (ExecutorState.ERROR, ExecutorState.PAUSED):
                break
            self.step()
            used += 1
        return used

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.step()
            except Exception:
                # tick() already resolves its own faults; this guards the monitor poll
                logger.exception("Driver cycle failed")
            self._stop.wait(self.interval_s)
