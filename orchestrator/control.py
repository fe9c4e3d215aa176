"""
Quest Engine - Control Surface

The narrow interface a presentation layer (panel, CLI, remote shell)
uses to drive one orchestrator. Nothing here reaches into engine state
beyond the public operations of the orchestrator and its monitor.

Usage:
    control = ControlSurface(orchestrator)
    control.start_task("cooks_assistant")
    control.query_state()         # ExecutorState.EXECUTING
    control.query_progress()      # 0..100
    control.stop_task()
    control.start_discovery([500, 501])  # watch unregistered signal keys
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from orchestrator.runtime import Orchestrator
from orchestrator.types import ExecutorState

logger = logging.getLogger("quest_engine.control")


class ControlSurface:
    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator

    def start_task(self, task_id: str) -> bool:
        """Start by id, or by display name when no id matches."""
        registry = self.orchestrator.registry
        if registry.get(task_id) is None:
            resolved = registry.find_by_display_name(task_id)
            if resolved is not None:
                task_id = resolved
        return self.orchestrator.start(task_id)

    def stop_task(self):
        self.orchestrator.stop()

    def pause_task(self):
        self.orchestrator.pause()

    def resume_task(self):
        self.orchestrator.resume()

    def emergency_stop(self, reason: str = "operator emergency stop"):
        self.orchestrator.emergency_stop(reason)

    def query_state(self) -> ExecutorState:
        return self.orchestrator.state

    def query_progress(self) -> int:
        return max(0, min(100, self.orchestrator.progress()))

    def query_step_description(self) -> str:
        return self.orchestrator.step_description()

    # ── Signal discovery ──

    def start_discovery(self, keys: Iterable[int] | None = None) -> int:
        """Baseline the candidate keys (configured set when keys is None)."""
        monitor = self.orchestrator.monitor
        if monitor is None:
            logger.warning("No progress monitor attached; discovery unavailable")
            return 0
        return monitor.start_discovery(keys)

    def stop_discovery(self):
        if self.orchestrator.monitor is not None:
            self.orchestrator.monitor.stop_discovery()

    def discovered_signals(self) -> list[dict[str, Any]]:
        monitor = self.orchestrator.monitor
        if monitor is None:
            return []
        return [{"key": s.key, "name": s.name, "value": s.last_value} for s in monitor.discovered()]

    def list_tasks(self) -> list[dict[str, Any]]:
        registry = self.orchestrator.registry
        tasks = []
        for info in registry.all():
            entry = info.to_dict()
            entry["complete"] = registry.is_complete(info.task_id)
            tasks.append(entry)
        return tasks
