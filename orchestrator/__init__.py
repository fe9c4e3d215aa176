"""
Quest Engine - Orchestrator

Single-active-task state machine plus the pieces around it: task
registry, control surface, tick driver and CLI.

Usage:
    from orchestrator import Orchestrator, TaskRegistry, ControlSurface, TickDriver

    registry = TaskRegistry(monitor=monitor)
    registry.load_directory("tasks")
    orch = Orchestrator(registry, world, storage=world, market=world, monitor=monitor)
    TickDriver(orch).start()
"""

from orchestrator.types import ExecutorState, OrchestratorStats, TaskInfo, Difficulty
from orchestrator.registry import TaskRegistry
from orchestrator.runtime import Orchestrator
from orchestrator.control import ControlSurface
from orchestrator.driver import TickDriver

__all__ = [
    "ControlSurface",
    "Difficulty",
    "ExecutorState",
    "Orchestrator",
    "OrchestratorStats",
    "TaskInfo",
    "TaskRegistry",
    "TickDriver",
]
