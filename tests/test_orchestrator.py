"""
Quest Engine - Orchestrator Tests

Tests:
  - start() validation: unknown, already complete, busy
  - Idle -> Preparing -> Executing -> Completed -> Idle
  - outer retry ceiling and its reset on progress
  - terminal task failure and uncaught faults both resolve to stop()
  - stop() idempotence and cleanup fault isolation
  - pause / resume, emergency stop and the abort flag
  - prepare failure holds the task in Error until stop()
  - suspension while the agent is in transit
  - completion from the progress-signal monitor
  - configured discovery candidates are watched from construction
  - observer and audit notifications, acquisition trace events, statistics
  - end-to-end runs of the bundled task definitions
"""

import os
import random
import sys
import unittest
from unittest.mock import MagicMock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.acquisition import ResourceRequirement, SourcePolicy
from engine.capability import Coordinate
from engine.monitor import ProgressSignalMonitor
from engine.settings import MonitorSettings
from engine.task import Step, StepTask
from fixtures.world import FakeClock, SimulatedWorld, demo_world
from orchestrator.driver import TickDriver
from orchestrator.registry import TaskRegistry
from orchestrator.runtime import Orchestrator
from orchestrator.types import ExecutorState, TaskInfo

_TASKS_DIR = os.path.join(_base, "tasks")


class Harness:
    """World, monitor, registry and orchestrator on one fake clock."""

    def __init__(self, world=None, **orch_kwargs):
        self.clock = FakeClock()
        self.world = world or SimulatedWorld(clock=self.clock)
        self.world.clock = self.clock
        self.monitor = ProgressSignalMonitor(self.world.read_signal, clock=self.clock)
        self.registry = TaskRegistry(monitor=self.monitor)
        self.events = []
        self.orch = Orchestrator(
            self.registry, self.world, storage=self.world, market=self.world,
            monitor=self.monitor, clock=self.clock, rng=random.Random(7),
            observer=lambda event, payload: self.events.append((event, payload)),
            **orch_kwargs,
        )

    def add_steps(self, task_id, *runs, **task_kwargs):
        """Register a StepTask whose steps are the given callables."""
        info_kwargs = {k: task_kwargs.pop(k) for k in ("signal_key", "completion_threshold")
                       if k in task_kwargs}

        def factory(runtime):
            steps = [Step(f"step {i + 1}", run) for i, run in enumerate(runs)]
            return StepTask(task_id, steps, display_name=task_id.title(), **task_kwargs)

        self.registry.register(TaskInfo(task_id, task_id.title(), factory=factory, **info_kwargs))

    def event_names(self):
        return [e for e, _ in self.events]


def _scripted(*outcomes):
    seq = list(outcomes)
    return lambda ctx: seq.pop(0)


# ═══════════════════════════════════════════════════════════════════
# start()
# ═══════════════════════════════════════════════════════════════════

class TestStart(unittest.TestCase):

    def setUp(self):
        self.h = Harness()
        self.h.add_steps("walk", lambda ctx: True)

    def test_unknown_task_is_rejected(self):
        self.assertFalse(self.h.orch.start("nope"))
        self.assertIs(self.h.orch.state, ExecutorState.IDLE)
        self.assertEqual(self.h.events, [])

    def test_completed_task_is_rejected(self):
        self.h.registry.mark_complete("walk")
        self.assertFalse(self.h.orch.start("walk"))
        self.assertIs(self.h.orch.state, ExecutorState.IDLE)

    def test_start_enters_executing(self):
        self.assertTrue(self.h.orch.start("walk"))
        self.assertIs(self.h.orch.state, ExecutorState.EXECUTING)
        self.assertEqual(self.h.orch.active_task.task_id, "walk")
        self.assertTrue(self.h.orch.is_active())
        self.assertTrue(self.h.orch.is_busy())

    def test_cannot_start_while_busy(self):
        self.h.add_steps("other", lambda ctx: True)
        self.h.orch.start("walk")
        self.assertFalse(self.h.orch.start("other"))
        self.assertEqual(self.h.orch.active_task.task_id, "walk")

    def test_factory_fault_is_rejected(self):
        def factory(runtime):
            raise RuntimeError("broken definition")

        self.h.registry.register(TaskInfo("bad", "Bad", factory=factory))
        self.assertFalse(self.h.orch.start("bad"))
        self.assertIs(self.h.orch.state, ExecutorState.IDLE)


# ═══════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════

class TestLifecycle(unittest.TestCase):

    def test_completion_passes_through_completed_to_idle(self):
        h = Harness()
        h.add_steps("walk", lambda ctx: True)
        h.orch.start("walk")
        h.orch.tick()

        states = [p["new"] for e, p in h.events if e == "state_changed"]
        self.assertEqual(states, ["preparing", "executing", "completed", "idle"])
        self.assertIn("task_completed", h.event_names())
        self.assertIs(h.orch.state, ExecutorState.IDLE)
        self.assertIsNone(h.orch.active_task)
        self.assertTrue(h.registry.is_complete("walk"))

        stats = h.orch.stats()
        self.assertEqual(stats.tasks_completed, 1)
        self.assertEqual(stats.steps_completed, 0)

    def test_multi_step_run_sleeps_success_jitter(self):
        h = Harness()
        h.add_steps("walk", lambda ctx: True, lambda ctx: True)
        h.orch.start("walk")
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.EXECUTING)
        self.assertEqual(h.orch.stats().steps_completed, 1)
        self.assertTrue(1.0 <= h.clock.sleeps[-1] <= 2.0)
        self.assertEqual(h.orch.progress(), 50)
        self.assertEqual(h.orch.step_description(), "step 2")

    def test_idle_queries(self):
        h = Harness()
        self.assertEqual(h.orch.progress(), 0)
        self.assertEqual(h.orch.step_description(), "Idle")
        self.assertFalse(h.orch.is_busy())
        self.assertFalse(h.orch.is_active())

    def test_tick_when_idle_does_nothing(self):
        h = Harness()
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.IDLE)
        self.assertEqual(h.clock.sleeps, [])

    def test_stats_to_dict(self):
        h = Harness()
        d = h.orch.stats().to_dict()
        self.assertEqual(d["state"], "idle")
        self.assertEqual(d["max_retries"], 3)
        self.assertFalse(d["aborted"])


# ═══════════════════════════════════════════════════════════════════
# Retries & failures
# ═══════════════════════════════════════════════════════════════════

class TestRetryCeiling(unittest.TestCase):

    def test_stops_after_max_consecutive_failures(self):
        h = Harness()
        cleaned = []
        h.add_steps("dig", lambda ctx: False, cleanup=lambda ctx: cleaned.append(1))
        h.orch.start("dig")

        h.orch.tick()
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.EXECUTING)
        self.assertEqual(h.orch.stats().current_retries, 2)
        self.assertTrue(3.0 <= h.clock.sleeps[-1] <= 5.0)

        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.IDLE)
        self.assertEqual(cleaned, [1])
        failed = [p for e, p in h.events if e == "task_failed"]
        self.assertEqual(failed[0]["reason"], "retry ceiling reached")
        self.assertFalse(h.registry.is_complete("dig"))

    def test_progress_resets_retry_counter(self):
        h = Harness()
        h.add_steps("dig", _scripted(False, False, True), _scripted(False, False, True))
        h.orch.start("dig")

        for _ in range(5):
            h.orch.tick()

        self.assertIs(h.orch.state, ExecutorState.EXECUTING)
        self.assertEqual(h.orch.stats().current_retries, 2)
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.IDLE)
        self.assertEqual(h.orch.stats().tasks_completed, 1)

    def test_terminal_task_failure_stops(self):
        h = Harness()
        h.add_steps("dig", lambda ctx: False)
        h.orch.start("dig")
        h.orch.active_task._fail("step_0", "shovel broke")
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.IDLE)
        failed = [p for e, p in h.events if e == "task_failed"]
        self.assertEqual(failed[0]["reason"], "shovel broke")

    def test_uncaught_fault_becomes_stop(self):
        h = Harness()
        cleaned = []

        def explode(ctx):
            raise RuntimeError("null entity")

        h.add_steps("dig", explode, cleanup=lambda ctx: cleaned.append(1))
        h.orch.start("dig")
        with self.assertLogs("quest_engine.orchestrator", level="ERROR") as logs:
            h.orch.tick()

        self.assertIs(h.orch.state, ExecutorState.IDLE)
        self.assertEqual(cleaned, [1])
        self.assertIn("fatal_error", h.event_names())
        self.assertTrue(any("null entity" in line for line in logs.output))

    def test_retry_ceiling_from_settings(self):
        from engine.settings import OrchestratorSettings, Settings
        h = Harness(settings=Settings(orchestrator=OrchestratorSettings(max_retries=1)))
        h.add_steps("dig", lambda ctx: False)
        h.orch.start("dig")
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.IDLE)


# ═══════════════════════════════════════════════════════════════════
# Control
# ═══════════════════════════════════════════════════════════════════

class TestControl(unittest.TestCase):

    def setUp(self):
        self.h = Harness()
        self.runs = []
        self.h.add_steps("dig", lambda ctx: self.runs.append(1) or False)

    def test_stop_is_idempotent(self):
        self.h.orch.start("dig")
        self.h.orch.stop()
        events = len(self.h.events)
        self.h.orch.stop()
        self.assertIs(self.h.orch.state, ExecutorState.IDLE)
        self.assertEqual(len(self.h.events), events)

    def test_stop_when_idle_is_noop(self):
        self.h.orch.stop()
        self.assertEqual(self.h.events, [])

    def test_cleanup_fault_is_swallowed(self):
        def bad_cleanup(ctx):
            raise RuntimeError("cleanup failed")

        self.h.add_steps("x", lambda ctx: True, lambda ctx: True, cleanup=bad_cleanup)
        self.h.orch.start("x")
        self.h.orch.stop()
        self.assertIs(self.h.orch.state, ExecutorState.IDLE)

    def test_pause_and_resume(self):
        self.h.orch.start("dig")
        self.h.orch.pause()
        self.assertIs(self.h.orch.state, ExecutorState.PAUSED)
        self.assertFalse(self.h.orch.is_active())
        self.h.orch.tick()
        self.assertEqual(self.runs, [])
        self.h.orch.resume()
        self.h.orch.tick()
        self.assertEqual(self.runs, [1])

    def test_pause_when_idle_is_ignored(self):
        self.h.orch.pause()
        self.assertIs(self.h.orch.state, ExecutorState.IDLE)

    def test_emergency_stop(self):
        self.h.orch.start("dig")
        self.h.orch.emergency_stop("operator")

        self.assertIs(self.h.orch.state, ExecutorState.IDLE)
        self.assertTrue(self.h.orch.abort.is_set())
        self.assertTrue(self.h.orch.stats().aborted)
        self.assertFalse(self.h.orch.is_active())

        # A fresh start clears the flag
        self.assertTrue(self.h.orch.start("dig"))
        self.assertFalse(self.h.orch.abort.is_set())

    def test_suspended_while_in_transit(self):
        self.h.world.walk_seconds = 30
        self.h.world.navigate_to(Coordinate(0, 0))
        self.h.orch.start("dig")
        self.h.orch.tick()
        self.assertEqual(self.runs, [])
        self.h.clock.advance(31)
        self.h.orch.tick()
        self.assertEqual(self.runs, [1])


class TestPrepareFailure(unittest.TestCase):

    def test_missing_local_requirement_enters_error(self):
        h = Harness()
        h.add_steps("smith", lambda ctx: True,
                    requirements=[ResourceRequirement("Hammer", 1, source=SourcePolicy.LOCAL_ONLY)])

        self.assertFalse(h.orch.start("smith"))
        self.assertIs(h.orch.state, ExecutorState.ERROR)
        self.assertTrue(h.orch.is_busy())
        self.assertFalse(h.orch.is_active())
        self.assertEqual(h.orch.step_description(), "Error preparing smith")

        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.ERROR)
        self.assertFalse(h.orch.start("smith"))

        h.orch.stop()
        self.assertIs(h.orch.state, ExecutorState.IDLE)

    def test_start_hook_fault_enters_error(self):
        h = Harness()

        def hook(ctx):
            raise RuntimeError("no tab")

        h.add_steps("x", lambda ctx: True, on_start=hook)
        self.assertFalse(h.orch.start("x"))
        self.assertIs(h.orch.state, ExecutorState.ERROR)


# ═══════════════════════════════════════════════════════════════════
# Signals, observer, audit
# ═══════════════════════════════════════════════════════════════════

class TestSignalCompletion(unittest.TestCase):

    def test_monitor_threshold_completes_task(self):
        h = Harness()
        h.world.signals[50] = 0
        h.add_steps("q", lambda ctx: False,
                    completion_check=lambda ctx: h.monitor.is_task_complete("q"),
                    signal_key=50, completion_threshold=1)
        h.orch.start("q")
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.EXECUTING)

        h.world.signals[50] = 1
        h.orch.tick()

        self.assertIs(h.orch.state, ExecutorState.IDLE)
        self.assertIn("signal_changed", h.event_names())
        self.assertIn("task_completed", h.event_names())
        self.assertFalse(h.orch.start("q"))


class TestSignalDiscovery(unittest.TestCase):

    def _build(self, keys):
        clock = FakeClock()
        world = SimulatedWorld(clock=clock)
        world.signals[100] = 0
        monitor = ProgressSignalMonitor(world.read_signal, MonitorSettings(discovery_keys=keys), clock)
        events = []
        orch = Orchestrator(TaskRegistry(monitor=monitor), world, monitor=monitor, clock=clock,
                            observer=lambda event, payload: events.append((event, payload)))
        return world, monitor, orch, events

    def test_configured_candidates_are_watched(self):
        world, monitor, _, events = self._build(frozenset({100}))
        self.assertTrue(monitor.discovering)

        world.signals[100] = 4
        monitor.poll(force=True)

        self.assertEqual([s.key for s in monitor.discovered()], [100])
        changed = [p for e, p in events if e == "signal_changed"]
        self.assertEqual(len(changed), 1)
        self.assertEqual((changed[0]["key"], changed[0]["old"], changed[0]["new"]), (100, 0, 4))
        self.assertTrue(changed[0]["discovered"])

    def test_no_candidates_no_discovery(self):
        _, monitor, _, _ = self._build(frozenset())
        self.assertFalse(monitor.discovering)


class TestNotifications(unittest.TestCase):

    def test_observer_fault_is_isolated(self):
        h = Harness()

        def broken(event, payload):
            raise RuntimeError("panel gone")

        h.orch.observer = broken
        h.add_steps("walk", lambda ctx: True)
        h.orch.start("walk")
        h.orch.tick()
        self.assertIs(h.orch.state, ExecutorState.IDLE)

    def test_acquisition_is_traced(self):
        h = Harness()
        h.world.inventory["Egg"] = 1
        h.add_steps("fetch", lambda ctx: h.orch.coordinator.gather_items(
            [ResourceRequirement("Egg", 1)]).success, lambda ctx: True)
        h.orch.start("fetch")
        with self.assertLogs("quest_engine.trace", level="INFO") as logs:
            h.orch.tick()

        traced = [r.structured for r in logs.records
                  if getattr(r, "structured", {}).get("event") == "acquisition"]
        self.assertEqual(len(traced), 1)
        self.assertTrue(traced[0]["success"])
        self.assertEqual(traced[0]["task_id"], "fetch")
        self.assertEqual(traced[0]["obtained"], {"Egg": 1})
        self.assertIn("Already holding", traced[0]["last_action"])

        payload = dict(h.events)["acquisition"]
        self.assertEqual(payload, {"success": True, "obtained": {"Egg": 1}, "missing": {}})

    def test_audit_categories(self):
        audit = MagicMock()
        h = Harness(audit=audit)
        h.add_steps("walk", lambda ctx: True, lambda ctx: True)
        h.orch.start("walk")
        h.orch.tick()
        h.orch.tick()
        categories = {c.args[0] for c in audit.record.call_args_list}
        self.assertTrue({"TASK", "STATE", "STEP"} <= categories)


# ═══════════════════════════════════════════════════════════════════
# Bundled task definitions
# ═══════════════════════════════════════════════════════════════════

class TestBundledTasks(unittest.TestCase):

    def _run(self, task_id):
        h = Harness(world=demo_world())
        h.registry.load_directory(_TASKS_DIR)
        self.assertTrue(h.orch.start(task_id))
        ticks = TickDriver(h.orch).run_until_idle(max_ticks=200)
        return h, ticks

    def test_cooks_assistant(self):
        h, ticks = self._run("cooks_assistant")
        self.assertIs(h.orch.state, ExecutorState.IDLE)
        self.assertTrue(h.registry.is_complete("cooks_assistant"))
        self.assertEqual(h.world.signals[29], 2)
        self.assertEqual(h.world.storage["Pot of flour"], 0)
        self.assertEqual(len(h.world.calls_to("market.buy")), 2)
        self.assertLess(ticks, 200)

    def test_sheep_shearer(self):
        h, _ = self._run("sheep_shearer")
        self.assertTrue(h.registry.is_complete("sheep_shearer"))
        self.assertEqual(h.world.signals[179], 21)
        self.assertEqual(h.world.calls_to("storage"), [])

    def test_display_name_lookup(self):
        h = Harness(world=demo_world())
        h.registry.load_directory(_TASKS_DIR)
        self.assertEqual(h.registry.find_by_display_name("COOK'S ASSISTANT"), "cooks_assistant")


if __name__ == "__main__":
    unittest.main()
