"""
Quest Engine - Orchestrator

Top-level state machine. Owns at most one active task and drives it
one bounded unit of work per tick.

    IDLE ──start()──▶ PREPARING ──prepare()──▶ EXECUTING ◀──resume()── PAUSED
                          │                        │   └──pause()──▶
                          ▼                        ▼
                        ERROR                  COMPLETED ──▶ IDLE

stop() and emergency_stop() return to IDLE from any state. Any fault
escaping a tick is wrapped in FatalError, logged, and resolved with
stop(), so the orchestrator never stays in an undefined active state.

Two locks: _run_lock serializes units of work (ticks and preparation),
_lock guards state and is only ever held briefly. A unit runs outside
_lock, so queries and stop() never wait on a market order. stop() marks
the run inactive before anything else; in-flight waits see is_active()
drop and unwind within one polling slice.

The instance is constructed explicitly and handed to whatever owns the
polling loop (TickDriver, ControlSurface, tests).

Usage:
    from orchestrator.runtime import Orchestrator

    orch = Orchestrator(registry, world, storage=world, market=world, monitor=monitor)
    if orch.start("cooks_assistant"):
        while orch.state is not ExecutorState.IDLE:
            orch.tick()
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Callable

from engine.acquisition import ResourceCoordinator
from engine.errors import FatalError, ValidationError
from engine.kill_switch import AbortFlag, AnyFlag
from engine.logging import TaskTrace
from engine.settings import Settings
from engine.task import StepOutcome, Task, TaskRuntime
from engine.waits import Clock, SystemClock, jitter_seconds
from orchestrator.registry import TaskRegistry
from orchestrator.types import ExecutorState, OrchestratorStats, TaskInfo

logger = logging.getLogger("quest_engine.orchestrator")

Observer = Callable[[str, dict[str, Any]], None]

_ACTIVE_STATES = (ExecutorState.PREPARING, ExecutorState.EXECUTING)


class Orchestrator:
    """Single-active-task state machine. Thread-safe."""

    def __init__(
        self,
        registry: TaskRegistry,
        world,
        storage=None,
        market=None,
        monitor=None,
        settings: Settings | None = None,
        clock: Clock | None = None,
        abort: AbortFlag | None = None,
        audit=None,
        observer: Observer | None = None,
        suspended: Callable[[], bool] | None = None,
        coordinator: ResourceCoordinator | None = None,
        rng: random.Random | None = None,
    ):
        self.registry = registry
        self.world = world
        self.monitor = monitor
        self.settings = settings or Settings()
        self.abort = abort or AbortFlag()
        self._stop_requested = threading.Event()
        # Set by emergency_stop() or stop(); what in-flight work watches
        self.halted = AnyFlag(self.abort, self._stop_requested)
        self.clock = clock or SystemClock(self.halted)
        self.audit = audit
        self.observer = observer
        self.rng = rng or random.Random()
        # Default suspension: never interrupt the agent while it is walking
        self.suspended = suspended or getattr(world, "is_moving", lambda: False)

        self.coordinator = coordinator or ResourceCoordinator(
            world,
            storage=storage,
            market=market,
            settings=self.settings.acquisition,
            clock=self.clock,
            active=self.is_active,
            audit=audit,
        )
        self.runtime = TaskRuntime(world=world, coordinator=self.coordinator,
                                   monitor=monitor, clock=self.clock)

        self._lock = threading.RLock()
        self._run_lock = threading.RLock()
        self._state = ExecutorState.IDLE
        self._task: Task | None = None
        self._info: TaskInfo | None = None
        self._trace: TaskTrace | None = None
        self._retries = 0
        self._steps = 0
        self._started_at: float | None = None
        self._tasks_completed = 0
        self._total_time = 0.0

        self.coordinator.subscribe(self._on_acquisition)
        if monitor is not None:
            monitor.subscribe(self._on_signal_change)
            # A configured candidate set is the opt-in
            if monitor.candidates and not monitor.discovering:
                monitor.start_discovery()

    # ═══════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════

    def start(self, task_id: str) -> bool:
        """Load and prepare a task. False (and no state change) if it cannot start."""
        if not self._idle_for_start(task_id):
            return False
        # A unit cancelled by stop() may still be unwinding; wait for it
        # before clearing the stop request it is watching
        with self._run_lock:
            with self._lock:
                if not self._idle_for_start(task_id):
                    return False

                try:
                    info = self.registry.get(task_id)
                    if info is None:
                        raise ValidationError(f"Unknown task: {task_id}")
                    if self.registry.is_complete(task_id):
                        raise ValidationError(f"Task already complete: {task_id}")
                    task = self.registry.create_task(task_id, self.runtime)
                except ValidationError as e:
                    logger.warning("Start rejected: %s", e)
                    self._audit("ERROR", f"Start rejected: {e}")
                    return False
                except Exception as e:
                    logger.error("Could not build task %s: %s", task_id, e, exc_info=True)
                    self._audit("ERROR", f"Could not build task {task_id}: {e}")
                    return False

                self.abort.clear()
                self._stop_requested.clear()
                self._retries = 0
                self._steps = 0
                task.context.clear()
                task.context.abort = self.halted
                self._task = task
                self._info = info
                self._trace = TaskTrace(task_id=task_id)
                self._trace.on_task_start(info.display_name)
                self._audit("TASK", f"Starting {task_id} ({info.display_name})")
                self._set_state(ExecutorState.PREPARING)

            return self.prepare()

    def _idle_for_start(self, task_id: str) -> bool:
        if self._state is ExecutorState.IDLE:
            return True
        logger.warning("Cannot start %s: orchestrator is %s", task_id, self._state.value)
        return False

    def prepare(self) -> bool:
        """Resource check and start hook. PREPARING -> EXECUTING, or ERROR on failure."""
        with self._run_lock:
            with self._lock:
                task = self._task
                if self._state is not ExecutorState.PREPARING or task is None:
                    return False

            try:
                if not task.can_start():
                    raise ValidationError(f"{task.task_id} cannot start")
                if not task.has_required_resources(self.runtime):
                    missing = task.last_acquisition.missing if task.last_acquisition else {}
                    raise ValidationError(f"{task.task_id}: required resources unavailable {missing}")
                task.start()
                task.on_start()
            except Exception as e:
                with self._lock:
                    if self._task is not task:
                        return False
                    logger.warning("Prepare failed for %s: %s", task.task_id, e)
                    self._audit("ERROR", f"Prepare failed: {e}")
                    self._set_state(ExecutorState.ERROR)
                return False

            with self._lock:
                if self._task is not task or self._state is not ExecutorState.PREPARING:
                    # Stopped while preparing
                    return False
                self._started_at = self.clock.now()
                self._set_state(ExecutorState.EXECUTING)
                return True

    def tick(self):
        """Run one unit of work if executing, then sleep a small jitter outside the locks."""
        delay = self._tick()
        if delay > 0:
            self.clock.sleep(delay)

    def _tick(self) -> float:
        with self._run_lock:
            with self._lock:
                task = self._task
                if self._state is not ExecutorState.EXECUTING or task is None:
                    return 0.0
            try:
                # Signals first so decisions see the freshest values
                if self.monitor is not None:
                    self.monitor.poll()

                if self.suspended():
                    logger.debug("Agent busy (in transit), deferring tick")
                    return 0.0

                if task.is_complete():
                    with self._lock:
                        if self._task is task:
                            self._complete(task)
                    return 0.0

                outcome = task.execute_current_step()

                with self._lock:
                    if self._task is not task:
                        logger.info("Unit of %s finished after stop (%s), discarded",
                                    task.task_id, outcome.value)
                        return 0.0
                    self._trace.on_step(outcome.value, task.current_step_description(),
                                        task.progress())
                    return self._handle(task, outcome)

            except Exception as e:
                fatal = FatalError(f"Unhandled fault while ticking {task.task_id}: {e}")
                fatal.__cause__ = e
                logger.error("%s", fatal, exc_info=True)
                self._audit("ERROR", str(fatal))
                self._emit("fatal_error", {"task_id": task.task_id, "error": str(e)})
                with self._lock:
                    if self._task is task:
                        self.stop()
                return 0.0

    def _handle(self, task: Task, outcome: StepOutcome) -> float:
        s = self.settings.orchestrator
        match outcome:
            case StepOutcome.COMPLETE:
                self._steps += 1
                self._retries = 0
                self._complete(task)
                return 0.0
            case StepOutcome.CONTINUE:
                self._steps += 1
                self._retries = 0
                self._audit("STEP", f"{task.current_step_description()} ({task.progress()}%)")
                return jitter_seconds(s.success_jitter_ms, self.rng)
            case _:
                if task.is_failed():
                    self._fail(task)
                    return 0.0
                self._retries += 1
                self._trace.on_retry(self._retries, s.max_retries)
                if self._retries >= s.max_retries:
                    logger.error("Task %s exceeded %d retries, stopping",
                                 task.task_id, s.max_retries)
                    self._audit("ERROR", f"{task.task_id} exceeded {s.max_retries} retries")
                    self._emit("task_failed", {"task_id": task.task_id,
                                               "reason": "retry ceiling reached"})
                    self.stop()
                    return 0.0
                logger.info("Step failed for %s (retry %d/%d)",
                            task.task_id, self._retries, s.max_retries)
                return jitter_seconds(s.failure_jitter_ms, self.rng)

    def _complete(self, task: Task):
        try:
            task.on_complete()
        except Exception as e:
            logger.warning("Completion hook for %s failed: %s", task.task_id, e)
        elapsed = self.clock.now() - (self._started_at or self.clock.now())
        self._tasks_completed += 1
        self._total_time += elapsed
        self.registry.mark_complete(task.task_id)
        self._trace.on_task_end("completed", elapsed, self._steps)
        self._audit("TASK", f"Completed {task.task_id} in {elapsed:.1f}s ({self._steps} steps)")
        self._set_state(ExecutorState.COMPLETED)
        self._emit("task_completed", {"task_id": task.task_id, "elapsed_s": elapsed,
                                      "steps": self._steps})
        self._reset()

    def _fail(self, task: Task):
        reason = task.error.reason if task.error else "unknown"
        logger.error("Task %s failed: %s", task.task_id, reason)
        self._audit("ERROR", f"{task.task_id} failed: {reason}")
        if self._trace is not None:
            self._trace.on_task_end("failed", self.clock.now() - (self._started_at or self.clock.now()),
                                    self._steps)
        self._emit("task_failed", {"task_id": task.task_id, "reason": reason})
        self.stop()

    # ═══════════════════════════════════════════════════════════════
    # Control
    # ═══════════════════════════════════════════════════════════════

    def pause(self):
        with self._lock:
            if self._state is ExecutorState.EXECUTING:
                self._set_state(ExecutorState.PAUSED)

    def resume(self):
        with self._lock:
            if self._state is ExecutorState.PAUSED:
                self._set_state(ExecutorState.EXECUTING)

    def stop(self):
        """Cancel the unit in flight, run cleanup (faults swallowed) and return to IDLE."""
        # Before taking the lock: a unit in flight sees is_active() drop now
        self._stop_requested.set()
        with self._lock:
            if self._task is None and self._state is ExecutorState.IDLE:
                return
            task = self._task
            if task is not None:
                try:
                    task.cleanup()
                except Exception as e:
                    logger.warning("Cleanup for %s failed: %s", task.task_id, e)
                self._audit("TASK", f"Stopped {task.task_id}")
            self._reset()

    def emergency_stop(self, reason: str = "emergency stop"):
        # Trip before taking the lock so in-flight waits unwind promptly
        self.abort.trip(reason, by="emergency_stop")
        self._audit("ERROR", f"Emergency stop: {reason}")
        self.stop()

    def _reset(self):
        if self._task is not None:
            self._task.context.clear()
        self._task = None
        self._info = None
        self._trace = None
        self._retries = 0
        self._steps = 0
        self._started_at = None
        self._set_state(ExecutorState.IDLE)

    # ═══════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════

    @property
    def state(self) -> ExecutorState:
        return self._state

    @property
    def active_task(self) -> Task | None:
        return self._task

    def is_active(self) -> bool:
        return not self.halted.is_set() and self._state in _ACTIVE_STATES

    def is_busy(self) -> bool:
        return self._state.holds_task

    def progress(self) -> int:
        with self._lock:
            return self._task.progress() if self._task is not None else 0

    def step_description(self) -> str:
        with self._lock:
            if self._task is None:
                return "Idle"
            if self._state is ExecutorState.ERROR:
                return f"Error preparing {self._task.task_id}"
            return self._task.current_step_description()

    def stats(self) -> OrchestratorStats:
        with self._lock:
            return OrchestratorStats(
                state=self._state,
                active_task=self._task.task_id if self._task else None,
                tasks_completed=self._tasks_completed,
                steps_completed=self._steps,
                total_execution_time_s=self._total_time,
                current_retries=self._retries,
                max_retries=self.settings.orchestrator.max_retries,
                aborted=self.abort.is_set(),
            )

    # ═══════════════════════════════════════════════════════════════
    # Notifications
    # ═══════════════════════════════════════════════════════════════

    def _set_state(self, state: ExecutorState):
        old = self._state
        self._state = state
        if old is not state:
            logger.info("State %s -> %s", old.value, state.value)
            self._audit("STATE", f"{old.value} -> {state.value}")
            self._emit("state_changed", {"old": old.value, "new": state.value})

    def _on_signal_change(self, change):
        trace = self._trace
        if trace is not None:
            trace.on_signal_change(change.key, change.old, change.new, change.significant)
        self._audit("SIGNAL", f"{change.name} ({change.key}): {change.old} -> {change.new}")
        self._emit("signal_changed", {"key": change.key, "old": change.old, "new": change.new,
                                      "task": change.task_name, "discovered": change.discovered})

    def _on_acquisition(self, result):
        trace = self._trace
        if trace is not None:
            trace.on_acquisition(result.success, result.obtained, result.missing, result.last_action)
        self._emit("acquisition", {"success": result.success, "obtained": dict(result.obtained),
                                   "missing": dict(result.missing)})

    def _emit(self, event: str, payload: dict[str, Any]):
        if self.observer is None:
            return
        try:
            self.observer(event, payload)
        except Exception as e:
            logger.warning("Observer failed on %s: %s", event, e)

    def _audit(self, category: str, message: str):
        if self.audit is not None:
            self.audit.record(category, message)
