"""
Quest Engine - Error Taxonomy

Every failure the engine can report maps onto one of these classes.
Only ValidationError and FatalError ever cross a public API boundary as
raised exceptions; the others are carried as values:

  ValidationError   unknown task, already complete, bad definition/config
  ResourceError     acquisition exhausted (AcquisitionResult.raise_for_missing)
  ActionError       node retry budget exhausted or no decision branch
  SignalReadError   one signal read failed; absorbed by the monitor
  FatalError        uncaught fault during a tick; resolves to stop()

Usage:
    from engine.errors import ValidationError, ResourceError

    try:
        result.raise_for_missing()
    except ResourceError as e:
        logger.warning("Still missing: %s", e.missing)
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        self.message = message
        self.detail = detail or {}
        super().__init__(message)


class ValidationError(EngineError):
    """Input rejected before any work was done."""


class ResourceError(EngineError):
    """Requirements could not be satisfied after the full source chain."""

    def __init__(self, message: str, missing: dict[str, int] | None = None):
        self.missing = dict(missing or {})
        super().__init__(message, {"missing": self.missing})


class ActionError(EngineError):
    """A node gave up: retries exhausted or no branch to follow."""

    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"{node_id}: {reason}", {"node_id": node_id})


class SignalReadError(EngineError):
    """A single progress-signal read failed."""

    def __init__(self, key: int, cause: BaseException | None = None):
        self.key = key
        msg = f"Failed to read signal {key}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg, {"key": key})


class FatalError(EngineError):
    """Uncaught fault raised while ticking the active task."""
