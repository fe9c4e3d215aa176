"""
Quest Engine - Progress Signal Monitor

Polls small integers exposed by the environment and reports changes.

Known-mapping mode: registered keys carry a task name, an optional
value-to-stage description table and an optional completion threshold.
Each poll compares the current value with the last one seen and emits
a SignalChange on difference. The first observation of a key is a
baseline and emits nothing.

Discovery mode: an opt-in candidate key set is read once at
start_discovery() as a baseline. Any candidate whose value later moves
is registered as discovered_<key> for the rest of the session.

A failed read skips that key for this cycle. poll() never retries a
read and never blocks beyond one pass.

Usage:
    from engine.monitor import ProgressSignalMonitor

    monitor = ProgressSignalMonitor(world.read_signal)
    monitor.register(29, "cooks_assistant", stages={0: "Not started", 1: "Started", 2: "Complete"})
    monitor.subscribe(lambda change: print(change.key, change.old, change.new))

    for change in monitor.poll():
        ...
    monitor.is_task_complete("cooks_assistant")
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable

from engine.errors import SignalReadError
from engine.settings import MonitorSettings
from engine.waits import Clock, SystemClock

logger = logging.getLogger("quest_engine.monitor")

SignalReader = Callable[[int], int]


class Direction(str, enum.Enum):
    ADVANCE = "advance"
    REGRESS = "regress"


@dataclass
class ProgressSignal:
    key: int
    name: str
    task_name: str | None = None
    stages: dict[int, str] = field(default_factory=dict)
    completion_threshold: int | None = None
    discovered: bool = False
    last_value: int | None = None

    def threshold(self) -> int | None:
        """Explicit threshold, else the highest declared stage."""
        if self.completion_threshold is not None:
            return self.completion_threshold
        if self.stages:
            return max(self.stages)
        return None


@dataclass(frozen=True)
class SignalChange:
    key: int
    name: str
    old: int
    new: int
    task_name: str | None
    direction: Direction
    significant: bool
    stage_description: str | None = None
    discovered: bool = False

    @property
    def delta(self) -> int:
        return self.new - self.old


class ProgressSignalMonitor:
    """
    Polls registered (and optionally candidate) keys on a fixed interval.

    Thread-safe: the driver thread polls while control threads query.
    """

    def __init__(
        self,
        reader: SignalReader,
        settings: MonitorSettings | None = None,
        clock: Clock | None = None,
    ):
        self.reader = reader
        self.settings = settings or MonitorSettings()
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._signals: dict[int, ProgressSignal] = {}
        self._candidates: frozenset[int] = frozenset(self.settings.discovery_keys)
        self._baseline: dict[int, int] = {}
        self._discovering = False
        self._last_poll: float | None = None
        self._subscribers: list[Callable[[SignalChange], None]] = []
        self.read_errors = 0

    # ── Registration ───────────────────────────────────────────

    def register(
        self,
        key: int,
        task_name: str | None = None,
        stages: dict[int, str] | None = None,
        completion_threshold: int | None = None,
        name: str | None = None,
    ) -> ProgressSignal:
        signal = ProgressSignal(
            key=key,
            name=name or task_name or f"signal_{key}",
            task_name=task_name,
            stages={int(k): v for k, v in (stages or {}).items()},
            completion_threshold=completion_threshold,
        )
        with self._lock:
            existing = self._signals.get(key)
            if existing is not None:
                signal.last_value = existing.last_value
            self._signals[key] = signal
        return signal

    def subscribe(self, callback: Callable[[SignalChange], None]):
        self._subscribers.append(callback)

    # ── Polling ────────────────────────────────────────────────

    def poll(self, force: bool = False) -> list[SignalChange]:
        """One pass over all keys. Rate-limited to the configured interval unless forced."""
        now = self.clock.now()
        interval_s = self.settings.poll_interval_ms / 1000.0
        if not force and self._last_poll is not None and now - self._last_poll < interval_s:
            return []
        self._last_poll = now

        changes: list[SignalChange] = []
        with self._lock:
            for signal in list(self._signals.values()):
                value = self._read(signal.key)
                if value is None:
                    continue
                if signal.last_value is None:
                    signal.last_value = value
                    continue
                if value != signal.last_value:
                    changes.append(self._change(signal, signal.last_value, value))
                    signal.last_value = value

            if self._discovering:
                changes.extend(self._scan_candidates())

        for change in changes:
            self._notify(change)
        return changes

    def start_discovery(self, keys: Iterable[int] | None = None) -> int:
        """Record the baseline for the candidate set. Returns the number of keys read."""
        if keys is not None:
            self._candidates = frozenset(int(k) for k in keys)
        with self._lock:
            self._baseline = {}
            for key in self._candidates:
                if key in self._signals:
                    continue
                value = self._read(key)
                if value is not None:
                    self._baseline[key] = value
            self._discovering = True
        logger.info("Discovery started: %d candidate keys, %d baselined",
                    len(self._candidates), len(self._baseline))
        return len(self._baseline)

    def stop_discovery(self):
        with self._lock:
            self._discovering = False
            self._baseline = {}

    @property
    def candidates(self) -> frozenset[int]:
        return self._candidates

    @property
    def discovering(self) -> bool:
        return self._discovering

    def _scan_candidates(self) -> list[SignalChange]:
        changes = []
        for key in sorted(self._candidates):
            if key in self._signals:
                continue
            value = self._read(key)
            if value is None:
                continue
            old = self._baseline.get(key)
            if old is None:
                # Unreadable at baseline time; baseline now
                self._baseline[key] = value
                continue
            if value == old:
                continue
            signal = ProgressSignal(key=key, name=f"discovered_{key}",
                                    discovered=True, last_value=value)
            self._signals[key] = signal
            self._baseline.pop(key, None)
            logger.info("Discovered progress signal %d: %d -> %d", key, old, value)
            changes.append(self._change(signal, old, value))
        return changes

    def _read(self, key: int) -> int | None:
        try:
            return int(self.reader(key))
        except Exception as e:
            error = SignalReadError(key, e)
            self.read_errors += 1
            logger.debug("%s", error)
            return None

    def _change(self, signal: ProgressSignal, old: int, new: int) -> SignalChange:
        return SignalChange(
            key=signal.key,
            name=signal.name,
            old=old,
            new=new,
            task_name=signal.task_name,
            direction=Direction.ADVANCE if new > old else Direction.REGRESS,
            significant=abs(new - old) > 1,
            stage_description=signal.stages.get(new),
            discovered=signal.discovered,
        )

    def _notify(self, change: SignalChange):
        logger.info("Signal %s (%d): %d -> %d%s", change.name, change.key, change.old,
                    change.new, " [significant]" if change.significant else "")
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as e:
                logger.warning("Signal subscriber failed: %s", e)

    # ── Queries ────────────────────────────────────────────────

    def value(self, key: int) -> int | None:
        with self._lock:
            signal = self._signals.get(key)
            return signal.last_value if signal else None

    def signal_for_task(self, task_name: str) -> ProgressSignal | None:
        with self._lock:
            for signal in self._signals.values():
                if signal.task_name == task_name:
                    return signal
        return None

    def stage_description(self, task_name: str, value: int | None = None) -> str | None:
        signal = self.signal_for_task(task_name)
        if signal is None:
            return None
        if value is None:
            value = signal.last_value
        return signal.stages.get(value) if value is not None else None

    def is_task_complete(self, task_name: str) -> bool:
        """
        True once the task's signal reaches its completion threshold.

        Without an explicit threshold the highest declared stage is used;
        with neither the task can never be judged complete here.
        """
        signal = self.signal_for_task(task_name)
        if signal is None or signal.last_value is None:
            return False
        threshold = signal.threshold()
        if threshold is None:
            return False
        return signal.last_value >= threshold

    def has_reached(self, task_name: str, value: int) -> bool:
        signal = self.signal_for_task(task_name)
        return bool(signal and signal.last_value is not None and signal.last_value >= value)

    def discovered(self) -> list[ProgressSignal]:
        with self._lock:
            return [s for s in self._signals.values() if s.discovered]

    def snapshot(self) -> dict[int, int | None]:
        with self._lock:
            return {key: s.last_value for key, s in self._signals.items()}
