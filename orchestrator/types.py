"""
Quest Engine - Orchestrator Type Definitions

Executor states, registry entries and the statistics snapshot.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from engine.acquisition import ResourceRequirement


# ─── Executor State ─────────────────────────────────────────────────

class ExecutorState(str, enum.Enum):
    """
    Orchestrator lifecycle. A task is held exactly when the state is
    not IDLE and not COMPLETED.
    """
    IDLE = "idle"
    PREPARING = "preparing"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def holds_task(self) -> bool:
        return self not in (ExecutorState.IDLE, ExecutorState.COMPLETED)


# ─── Registry Entries ───────────────────────────────────────────────

class Difficulty(str, enum.Enum):
    NOVICE = "novice"
    INTERMEDIATE = "intermediate"
    EXPERIENCED = "experienced"
    MASTER = "master"
    GRANDMASTER = "grandmaster"


@dataclass
class TaskInfo:
    """
    Registry entry for a startable task.

    factory(runtime) builds a fresh Task each time the task is started.
    """
    task_id: str
    display_name: str
    factory: Callable[..., Any] = field(repr=False)
    difficulty: Difficulty = Difficulty.NOVICE
    estimated_minutes: int = 0
    required_items: list[ResourceRequirement] = field(default_factory=list)
    signal_key: int | None = None
    completion_threshold: int | None = None
    stages: dict[int, str] | None = field(default=None, repr=False)
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "display_name": self.display_name,
            "difficulty": self.difficulty.value,
            "estimated_minutes": self.estimated_minutes,
            "required_items": [f"{r.quantity}x {r.name}" for r in self.required_items],
            "signal_key": self.signal_key,
        }


# ─── Statistics ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class OrchestratorStats:
    state: ExecutorState
    active_task: str | None
    tasks_completed: int
    steps_completed: int
    total_execution_time_s: float
    current_retries: int
    max_retries: int
    aborted: bool

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        d["total_execution_time_s"] = round(self.total_execution_time_s, 2)
        return d
