"""
Quest Engine - Task Contract

A task is one named multi-step workflow. Two shapes share one contract:

  TreeTask   a tree of Action/Decision nodes with a current-node pointer
  StepTask   an ordered list of step callables

The orchestrator only ever sees the contract:

  can_start()                  pre-flight check
  has_required_resources(rt)   resource check run by prepare()
  start()                      reset to the first unit of work
  execute_current_step()       one bounded unit -> StepOutcome
  is_complete() / is_failed()
  progress()                   0..100
  current_step_description()
  required_resources()
  on_start() / on_complete() / cleanup()

Tree semantics per unit:
  Success + CONTINUE          pointer moves to the next node
  Success + RETURN_TO_CALLER  pointer returns to the last decision taken
  Success + COMPLETE          task completed (terminal)
  Failed                      task failed (terminal, ActionError recorded)
  InProgress / Retry          pointer unchanged, re-executed next unit

No cycle detection is performed: a decision branch may wire back to an
earlier node and avoiding infinite loops is up to the tree's author.

Usage:
    from engine.task import TreeTask

    task = TreeTask("cooks_assistant", root, display_name="Cook's Assistant")
    task.start()
    while not task.is_complete() and not task.is_failed():
        task.execute_current_step()
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable

from engine.acquisition import AcquisitionResult, ResourceRequirement, SourcePolicy
from engine.errors import ActionError
from engine.nodes import DecisionNode, Node, Status, TaskContext, Transition, execute_node, iter_nodes

logger = logging.getLogger("quest_engine.task")

Hook = Callable[[TaskContext], None]


class StepOutcome(str, enum.Enum):
    CONTINUE = "continue"
    FAIL = "fail"
    COMPLETE = "complete"


class TaskPhase(str, enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskRuntime:
    """Collaborators a task may use while preparing. Supplied by the orchestrator."""
    world: object = None
    coordinator: object = None
    monitor: object = None
    clock: object = None


# ═══════════════════════════════════════════════════════════════════
# Base Task
# ═══════════════════════════════════════════════════════════════════

class Task:
    """Shared lifecycle, hooks and resource check for both task shapes."""

    def __init__(
        self,
        task_id: str,
        display_name: str = "",
        requirements: list[ResourceRequirement] | None = None,
        completion_check: Callable[[TaskContext], bool] | None = None,
        on_start: Hook | None = None,
        on_complete: Hook | None = None,
        cleanup: Hook | None = None,
        gather_on_prepare: bool = False,
    ):
        self.task_id = task_id
        self.display_name = display_name or task_id
        self.requirements = list(requirements or [])
        self.completion_check = completion_check
        self.gather_on_prepare = gather_on_prepare
        self._on_start = on_start
        self._on_complete = on_complete
        self._cleanup = cleanup
        self.context = TaskContext()
        self.phase = TaskPhase.NOT_STARTED
        self.error: ActionError | None = None
        self.steps_completed = 0
        self.last_acquisition: AcquisitionResult | None = None

    # ── Contract ───────────────────────────────────────────────

    def can_start(self) -> bool:
        return self.phase is not TaskPhase.RUNNING

    def has_required_resources(self, runtime: TaskRuntime) -> bool:
        """
        Resource check run during prepare.

        LOCAL_ONLY requirements must already be held. With
        gather_on_prepare the coordinator acquires everything up front
        and the check passes only if it succeeded. Other requirements
        are left for acquire actions inside the task.
        """
        if self.gather_on_prepare and self.requirements and runtime.coordinator is not None:
            self.last_acquisition = runtime.coordinator.gather_items(self.requirements)
            return self.last_acquisition.success

        if runtime.world is None:
            return True
        for req in self.requirements:
            if req.source is SourcePolicy.LOCAL_ONLY and not req.allow_partial:
                held = runtime.world.inventory_count(req.name)
                if held < req.quantity:
                    logger.warning("%s needs %dx %s, holding %d",
                                   self.task_id, req.quantity, req.name, held)
                    return False
        return True

    def required_resources(self) -> list[ResourceRequirement]:
        return list(self.requirements)

    def start(self) -> None:
        self.context.clear()
        self.phase = TaskPhase.RUNNING
        self.error = None
        self.steps_completed = 0
        self._reset()

    def execute_current_step(self) -> StepOutcome:
        raise NotImplementedError

    def is_complete(self) -> bool:
        if self.phase is TaskPhase.COMPLETED:
            return True
        if self.completion_check is not None and self.completion_check(self.context):
            self.phase = TaskPhase.COMPLETED
            return True
        return False

    def is_failed(self) -> bool:
        return self.phase is TaskPhase.FAILED

    def progress(self) -> int:
        raise NotImplementedError

    def current_step_description(self) -> str:
        raise NotImplementedError

    def on_start(self) -> None:
        if self._on_start is not None:
            self._on_start(self.context)

    def on_complete(self) -> None:
        if self._on_complete is not None:
            self._on_complete(self.context)

    def cleanup(self) -> None:
        if self._cleanup is not None:
            self._cleanup(self.context)

    # ── Internals ──────────────────────────────────────────────

    def _reset(self) -> None:
        pass

    def _fail(self, node_id: str, reason: str) -> StepOutcome:
        self.phase = TaskPhase.FAILED
        self.error = ActionError(node_id, reason)
        logger.warning("Task %s failed at %s: %s", self.task_id, node_id, reason)
        return StepOutcome.FAIL

    def _status_text(self) -> str | None:
        if self.phase is TaskPhase.COMPLETED:
            return "Completed"
        if self.phase is TaskPhase.FAILED:
            return f"Failed: {self.error.reason if self.error else 'unknown'}"
        if self.phase is TaskPhase.NOT_STARTED:
            return "Not started"
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.task_id} {self.phase.value}>"


# ═══════════════════════════════════════════════════════════════════
# Tree Task
# ═══════════════════════════════════════════════════════════════════

class TreeTask(Task):
    """Interprets a node tree one node per unit of work."""

    def __init__(
        self,
        task_id: str,
        root: Node,
        display_name: str = "",
        progress_fn: Callable[[TaskContext], int] | None = None,
        expected_steps: int | None = None,
        **kwargs,
    ):
        super().__init__(task_id, display_name, **kwargs)
        self.root = root
        self.current: Node = root
        self.progress_fn = progress_fn
        self.expected_steps = expected_steps
        self._last_decision: DecisionNode | None = None

    def _reset(self) -> None:
        self.current = self.root
        self._last_decision = None
        for node in iter_nodes(self.root):
            node.reset()
        self.context.values.setdefault("task_id", self.task_id)

    def execute_current_step(self) -> StepOutcome:
        if self.phase is TaskPhase.COMPLETED:
            return StepOutcome.COMPLETE
        if self.phase is TaskPhase.FAILED:
            return StepOutcome.FAIL
        if self.phase is TaskPhase.NOT_STARTED:
            self.start()

        node = self.current
        result = execute_node(node, self.context)

        match result.status:
            case Status.SUCCESS:
                if isinstance(node, DecisionNode):
                    self._last_decision = node
                self.steps_completed += 1
                match result.transition:
                    case Transition.CONTINUE:
                        self.current = result.next_node
                        return StepOutcome.CONTINUE
                    case Transition.RETURN_TO_CALLER:
                        self.current = self._last_decision or self.root
                        return StepOutcome.CONTINUE
                    case _:
                        self.phase = TaskPhase.COMPLETED
                        logger.info("Task %s completed: %s", self.task_id, result.message)
                        return StepOutcome.COMPLETE
            case Status.FAILED:
                return self._fail(node.node_id, result.failure_reason or result.message)
            case _:
                return StepOutcome.CONTINUE

    def progress(self) -> int:
        if self.phase is TaskPhase.COMPLETED:
            return 100
        if self.progress_fn is not None:
            return max(0, min(100, int(self.progress_fn(self.context))))
        if self.expected_steps:
            return min(99, self.steps_completed * 100 // self.expected_steps)
        return 0

    def current_step_description(self) -> str:
        return self._status_text() or self.current.description


# ═══════════════════════════════════════════════════════════════════
# Step Task
# ═══════════════════════════════════════════════════════════════════

@dataclass
class Step:
    description: str
    run: Callable[[TaskContext], bool]


class StepTask(Task):
    """
    Flat sequence of steps. A step returning False is a non-terminal
    failure: the step is retried on a later unit under the
    orchestrator's outer retry ceiling.
    """

    def __init__(self, task_id: str, steps: list[Step], display_name: str = "", **kwargs):
        super().__init__(task_id, display_name, **kwargs)
        self.steps = list(steps)
        self.index = 0

    def _reset(self) -> None:
        self.index = 0

    def execute_current_step(self) -> StepOutcome:
        if self.phase is TaskPhase.COMPLETED or self.index >= len(self.steps):
            self.phase = TaskPhase.COMPLETED
            return StepOutcome.COMPLETE
        if self.phase is TaskPhase.FAILED:
            return StepOutcome.FAIL
        if self.phase is TaskPhase.NOT_STARTED:
            self.start()
        if self.context.aborted:
            return self._fail(f"step_{self.index}", "execution aborted")

        step = self.steps[self.index]
        if not step.run(self.context):
            logger.info("Step %d of %s did not succeed: %s",
                        self.index + 1, self.task_id, step.description)
            return StepOutcome.FAIL

        self.index += 1
        self.steps_completed += 1
        if self.index >= len(self.steps):
            self.phase = TaskPhase.COMPLETED
            return StepOutcome.COMPLETE
        return StepOutcome.CONTINUE

    def progress(self) -> int:
        if not self.steps:
            return 100
        return self.index * 100 // len(self.steps)

    def current_step_description(self) -> str:
        status = self._status_text()
        if status:
            return status
        return self.steps[min(self.index, len(self.steps) - 1)].description if self.steps else "No steps"
