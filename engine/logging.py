"""
Quest Engine - Structured Logging

JSON-lines logging for the engine, plus a per-task event emitter that
tags every entry with the task id and a session trace id so a run can
be followed end to end.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Text format available for interactive CLI runs
  - Level: DEBUG (every node result), INFO (steps, state changes), WARNING (errors)

Usage:
    from engine.logging import TaskTrace, configure_logging

    configure_logging(level="INFO")
    trace = TaskTrace(task_id="cooks_assistant")
    trace.on_task_start(display_name="Cook's Assistant")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "quest_engine"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as one JSON object per line."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("QE_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
    fmt: str = "json",
) -> logging.Logger:
    """
    Configure the quest_engine logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in JSON entries
        fmt: "json" or "text"

    Returns:
        The configured quest_engine logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "text":
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the quest_engine namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Task Trace
# ═══════════════════════════════════════════════════════════════════

class TaskTrace:
    """
    Structured event emitter bound to one task run.

    Every entry carries task_id and trace_id in its structured fields.
    """

    def __init__(self, task_id: str = "", trace_id: str | None = None):
        self.task_id = task_id
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("trace")

    def _emit(self, level: int, event: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "trace_id": self.trace_id,
            "task_id": self.task_id,
            "event": event,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=event,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Task lifecycle ──────────────────────────────────────────

    def on_task_start(self, display_name: str = "") -> None:
        self._emit(logging.INFO, "task_start", display_name=display_name)

    def on_task_end(self, status: str, elapsed_s: float, steps_completed: int = 0) -> None:
        self._emit(
            logging.INFO, "task_end",
            status=status,
            elapsed_s=round(elapsed_s, 2),
            steps_completed=steps_completed,
        )

    def on_step(self, outcome: str, description: str, progress: int) -> None:
        self._emit(
            logging.INFO, "step",
            outcome=outcome,
            description=description,
            progress=progress,
        )

    def on_retry(self, attempt: int, max_retries: int) -> None:
        self._emit(
            logging.WARNING, "retry",
            attempt=attempt,
            max_retries=max_retries,
        )

    # ── Engine internals ────────────────────────────────────────

    def on_node_result(self, node_id: str, status: str, message: str = "") -> None:
        self._emit(
            logging.DEBUG, "node_result",
            node_id=node_id,
            status=status,
            message=message[:500],
        )

    def on_signal_change(self, key: int, old: int, new: int, significant: bool) -> None:
        self._emit(
            logging.INFO, "signal_change",
            key=key, old=old, new=new,
            significant=significant,
        )

    def on_acquisition(self, success: bool, obtained: dict, missing: dict, last_action: str) -> None:
        self._emit(
            logging.INFO if success else logging.WARNING, "acquisition",
            success=success,
            obtained=obtained,
            missing=missing,
            last_action=last_action,
        )
