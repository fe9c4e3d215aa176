"""
Quest Engine - Session Audit Log

One append-only, human-readable text file per session:

    logs/session_20240101_120000.log

    [12:00:01] SESSION: Session started
    [12:00:03] TASK: Started cooks_assistant (Cook's Assistant)
    [12:00:09] STEP: Talk to the cook (12%)

Every line is flushed as soon as it is written. The file exists for
people reading it afterwards; nothing replays it. A failing write is
logged and dropped so auditing can never break task execution.

Usage:
    from engine.audit import SessionAuditLog, AuditLogHandler

    with SessionAuditLog("logs") as audit:
        audit.record("TASK", "Started cooks_assistant")
        logging.getLogger("quest_engine").addHandler(AuditLogHandler(audit))
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, TextIO

logger = logging.getLogger("quest_engine.audit")


class SessionAuditLog:
    """Thread-safe append-only session file."""

    def __init__(
        self,
        directory: str = "logs",
        now: Callable[[], datetime] = datetime.now,
    ):
        self._now = now
        self._lock = threading.Lock()
        started = now()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / f"session_{started:%Y%m%d_%H%M%S}.log"
        # Two sessions in the same second get a suffix instead of sharing a file
        n = 1
        while self.path.exists():
            self.path = self.directory / f"session_{started:%Y%m%d_%H%M%S}_{n}.log"
            n += 1
        self._file: TextIO | None = open(self.path, "a", encoding="utf-8")
        self.entries = 0
        self.dropped = 0
        self.record("SESSION", f"Session started ({started:%Y-%m-%d %H:%M:%S}, pid {os.getpid()})")

    def record(self, category: str, message: str) -> None:
        line = f"[{self._now():%H:%M:%S}] {category.upper()}: {message}\n"
        with self._lock:
            if self._file is None:
                return
            try:
                self._file.write(line)
                self._file.flush()
                self.entries += 1
                return
            except OSError as e:
                self.dropped += 1
                error = e
        # Outside the lock: a handler on this logger may call record() again
        logger.warning("Audit write failed: %s", error)

    def close(self) -> None:
        self.record("SESSION", f"Session ended ({self.entries} entries)")
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    @property
    def closed(self) -> bool:
        return self._file is None

    def __enter__(self) -> SessionAuditLog:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class AuditLogHandler(logging.Handler):
    """Copies WARNING and above from the engine loggers into the session file."""

    def __init__(self, audit: SessionAuditLog, level: int = logging.WARNING):
        super().__init__(level)
        self.audit = audit

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == logger.name:
            # A failing write must not feed its own warning back into the file
            return
        try:
            category = "ERROR" if record.levelno >= logging.ERROR else "WARNING"
            self.audit.record(category, f"{record.name}: {record.getMessage()}")
        except Exception:
            self.handleError(record)
