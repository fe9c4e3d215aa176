"""
Quest Engine - Task Registry

Catalogue of startable tasks. The orchestrator validates start(id)
against it and asks it to build a fresh Task for each run.

A task counts as complete when it has been recorded complete in this
session, or when an attached monitor reports that the task's progress
signal has reached its completion threshold.

Usage:
    registry = TaskRegistry(monitor=monitor)
    registry.register(TaskInfo("cooks_assistant", "Cook's Assistant", factory=build))
    registry.load_directory("tasks")          # declarative definitions

    registry.find_by_display_name("cook's assistant")  # -> "cooks_assistant"
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from engine.actions import ActionLibrary
from engine.composer import compose_task, load_yaml, parse_requirements
from engine.errors import ValidationError
from engine.task import Task, TaskRuntime
from engine.validate import validate_task_definition
from orchestrator.types import Difficulty, TaskInfo

logger = logging.getLogger("quest_engine.registry")


class TaskRegistry:
    """Thread-safe task catalogue plus the completed-task record."""

    def __init__(self, monitor=None):
        self.monitor = monitor
        self._lock = threading.Lock()
        self._tasks: dict[str, TaskInfo] = {}
        self._completed: set[str] = set()

    # ── Registration ───────────────────────────────────────────

    def register(self, info: TaskInfo) -> TaskInfo:
        with self._lock:
            if info.task_id in self._tasks:
                logger.warning("Task %s re-registered", info.task_id)
            self._tasks[info.task_id] = info
        if self.monitor is not None and info.signal_key is not None:
            self.monitor.register(info.signal_key, info.task_id, stages=info.stages,
                                  completion_threshold=info.completion_threshold)
        return info

    def register_definition(self, definition: dict[str, Any], source: str = "") -> TaskInfo:
        """Register a declarative definition; the tree is composed at start time."""
        result = validate_task_definition(definition, source)
        if not result.valid:
            raise ValidationError(f"Invalid task definition {source or definition.get('id')!r}:\n"
                                  f"{result.summary()}")

        def factory(runtime: TaskRuntime) -> Task:
            library = ActionLibrary(runtime.world, coordinator=runtime.coordinator,
                                    monitor=runtime.monitor, clock=runtime.clock)
            return compose_task(definition, library, source)

        signal = definition.get("signal") or {}
        info = TaskInfo(
            task_id=str(definition["id"]),
            display_name=str(definition.get("name", definition["id"])),
            factory=factory,
            difficulty=Difficulty(definition.get("difficulty", Difficulty.NOVICE.value)),
            estimated_minutes=int(definition.get("estimated_minutes", 0)),
            required_items=parse_requirements(definition.get("requirements")),
            signal_key=int(signal["key"]) if "key" in signal else None,
            completion_threshold=signal.get("completion"),
            stages=signal.get("stages"),
            source=source,
        )
        return self.register(info)

    def load_directory(self, directory: str | Path) -> list[TaskInfo]:
        loaded = []
        for path in sorted(Path(directory).glob("*.yaml")):
            loaded.append(self.register_definition(load_yaml(path), str(path)))
        logger.info("Loaded %d task definitions from %s", len(loaded), directory)
        return loaded

    # ── Lookup ─────────────────────────────────────────────────

    def get(self, task_id: str) -> TaskInfo | None:
        with self._lock:
            return self._tasks.get(task_id)

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)

    def all(self) -> list[TaskInfo]:
        with self._lock:
            return [self._tasks[k] for k in sorted(self._tasks)]

    def find_by_display_name(self, display_name: str) -> str | None:
        wanted = display_name.strip().lower()
        with self._lock:
            for info in self._tasks.values():
                if info.display_name.lower() == wanted:
                    return info.task_id
        return None

    def display_name(self, task_id: str) -> str:
        info = self.get(task_id)
        return info.display_name if info else task_id

    def create_task(self, task_id: str, runtime: TaskRuntime) -> Task:
        info = self.get(task_id)
        if info is None:
            raise ValidationError(f"Unknown task: {task_id}")
        return info.factory(runtime)

    # ── Completion record ──────────────────────────────────────

    def mark_complete(self, task_id: str):
        with self._lock:
            self._completed.add(task_id)

    def is_complete(self, task_id: str) -> bool:
        with self._lock:
            if task_id in self._completed:
                return True
        if self.monitor is not None:
            return self.monitor.is_task_complete(task_id)
        return False

    def completed(self) -> list[str]:
        with self._lock:
            return sorted(self._completed)
