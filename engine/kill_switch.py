"""
Quest Engine - Abort Flag

The shared cancellation switch for one orchestrator. emergency_stop()
trips it; every Action checks it before doing work and every blocking
wait in the acquisition coordinator polls it, so in-flight waits end
within one polling interval instead of running to their full timeout.

The flag is backed by a threading.Event so a sleeping driver thread
wakes as soon as the flag is set. AnyFlag combines several flags into
one read-only view (the orchestrator joins its abort flag with its
stop request so either one cancels the unit in flight).

Usage:
    from engine.kill_switch import AbortFlag, AnyFlag

    abort = AbortFlag()
    abort.trip("operator emergency stop", by="control")

    if abort.is_set():
        return ExecutionResult.failure("execution aborted")

    abort.wait(2.0)   # sleeps up to 2s, returns early if tripped
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("quest_engine.kill_switch")

# Longest a combined wait sleeps before re-checking its other flags
WAKE_SLICE_S = 0.05


@dataclass
class SwitchState:
    """Who tripped the flag, when and why."""
    enabled: bool = False
    reason: str = ""
    toggled_by: str = ""
    toggled_at: float = 0.0

    def activate(self, reason: str = "", by: str = "system"):
        self.enabled = True
        self.reason = reason
        self.toggled_by = by
        self.toggled_at = time.time()

    def deactivate(self, by: str = "system"):
        self.enabled = False
        self.reason = ""
        self.toggled_by = by
        self.toggled_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "reason": self.reason,
            "toggled_by": self.toggled_by,
            "toggled_at": self.toggled_at,
        }


class AbortFlag:
    """Thread-safe, waitable abort switch."""

    def __init__(self):
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._state = SwitchState()

    def trip(self, reason: str = "", by: str = "system"):
        with self._lock:
            self._state.activate(reason, by)
            self._event.set()
        logger.warning("ABORT: execution aborted - %s (by %s)", reason or "no reason", by)

    def clear(self, by: str = "system"):
        with self._lock:
            if not self._state.enabled:
                return
            self._state.deactivate(by)
            self._event.clear()
        logger.info("Abort flag cleared (by %s)", by)

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        with self._lock:
            return self._state.reason

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True if the flag was set."""
        return self._event.wait(max(0.0, timeout))

    def status(self) -> dict[str, Any]:
        with self._lock:
            return self._state.to_dict()


class AnyFlag:
    """Read-only union of flags: set while any member is set."""

    def __init__(self, *flags):
        if not flags:
            raise ValueError("AnyFlag needs at least one flag")
        self.flags = flags

    def is_set(self) -> bool:
        return any(f.is_set() for f in self.flags)

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True as soon as any member is set."""
        deadline = time.monotonic() + max(0.0, timeout)
        while not self.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.flags[0].wait(min(remaining, WAKE_SLICE_S))
        return True
