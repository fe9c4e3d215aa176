"""
Quest Engine - Task Contract Tests

Tests:
  - tree walk: Action -> Decision -> terminal Action completes the task
  - return-to-caller goes back to the last decision taken
  - node failure is terminal and recorded as ActionError
  - retry / in-progress keep the pointer in place
  - start() resets pointer, retry counters and context
  - progress and step descriptions
  - StepTask sequencing and non-terminal step failure
  - resource check during prepare
"""

import os
import sys
import unittest
from unittest.mock import MagicMock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.acquisition import AcquisitionResult, ResourceRequirement, SourcePolicy
from engine.errors import ActionError
from engine.kill_switch import AbortFlag
from engine.nodes import ActionNode, DecisionNode
from engine.task import Step, StepOutcome, StepTask, TaskPhase, TaskRuntime, TreeTask
from fixtures.world import SimulatedWorld


def _ok(node_id, **kwargs):
    return ActionNode(node_id, f"do {node_id}", lambda ctx: True, **kwargs)


# ═══════════════════════════════════════════════════════════════════
# Tree walking
# ═══════════════════════════════════════════════════════════════════

class TestTreeWalk(unittest.TestCase):

    def test_action_then_decision_then_terminal_action(self):
        terminal = _ok("finish")
        decision = DecisionNode("stage", "Check stage", lambda ctx: "2", {"2": terminal})
        root = _ok("begin", then=decision)
        task = TreeTask("t", root)
        task.start()

        self.assertEqual(task.execute_current_step(), StepOutcome.CONTINUE)
        self.assertIs(task.current, decision)
        self.assertFalse(task.is_complete())

        self.assertEqual(task.execute_current_step(), StepOutcome.CONTINUE)
        self.assertIs(task.current, terminal)
        self.assertFalse(task.is_complete())

        self.assertEqual(task.execute_current_step(), StepOutcome.COMPLETE)
        self.assertTrue(task.is_complete())
        self.assertEqual(task.progress(), 100)
        self.assertEqual(task.current_step_description(), "Completed")

    def test_return_to_caller_goes_to_last_decision(self):
        seen = []
        sub = ActionNode("sub", "sub", lambda ctx: seen.append("sub") or True, return_to_caller=True)
        done = _ok("done")

        def decide(ctx):
            return "again" if not seen else "finish"

        decision = DecisionNode("d", "d", decide, {"again": sub, "finish": done})
        root = _ok("root", then=decision)
        task = TreeTask("t", root)
        task.start()

        task.execute_current_step()      # root -> d
        task.execute_current_step()      # d -> sub
        task.execute_current_step()      # sub returns
        self.assertIs(task.current, decision)
        task.execute_current_step()      # d -> done
        self.assertEqual(task.execute_current_step(), StepOutcome.COMPLETE)

    def test_return_without_decision_goes_to_root(self):
        root = ActionNode("r", "r", lambda ctx: True, return_to_caller=True)
        task = TreeTask("t", root)
        task.start()
        self.assertEqual(task.execute_current_step(), StepOutcome.CONTINUE)
        self.assertIs(task.current, root)

    def test_failure_is_terminal(self):
        root = ActionNode("r", "Open bank", lambda ctx: False, max_retries=2)
        task = TreeTask("t", root)
        task.start()

        self.assertEqual(task.execute_current_step(), StepOutcome.CONTINUE)
        self.assertIs(task.current, root)
        self.assertEqual(task.execute_current_step(), StepOutcome.FAIL)
        self.assertTrue(task.is_failed())
        self.assertIsInstance(task.error, ActionError)
        self.assertEqual(task.error.node_id, "r")
        # Stays failed
        self.assertEqual(task.execute_current_step(), StepOutcome.FAIL)
        self.assertTrue(task.current_step_description().startswith("Failed:"))

    def test_no_branch_fails_task(self):
        task = TreeTask("t", DecisionNode("d", "d", lambda ctx: "7"))
        task.start()
        self.assertEqual(task.execute_current_step(), StepOutcome.FAIL)
        self.assertIn("no valid branch found", task.error.reason)

    def test_start_resets_pointer_and_counters(self):
        failing = ActionNode("f", "f", lambda ctx: False, max_retries=5)
        root = _ok("root", then=failing)
        task = TreeTask("t", root)
        task.start()
        task.execute_current_step()
        task.execute_current_step()
        task.context.set("junk", 1)
        self.assertEqual(failing.retry_count, 1)

        task.start()
        self.assertIs(task.current, root)
        self.assertEqual(failing.retry_count, 0)
        self.assertIsNone(task.context.get("junk"))
        self.assertEqual(task.phase, TaskPhase.RUNNING)

    def test_unstarted_task_starts_itself(self):
        task = TreeTask("t", _ok("only"))
        self.assertEqual(task.execute_current_step(), StepOutcome.COMPLETE)

    def test_aborted_context_fails_tree(self):
        abort = AbortFlag()
        task = TreeTask("t", _ok("only"))
        task.start()
        task.context.abort = abort
        abort.trip("stop")
        self.assertEqual(task.execute_current_step(), StepOutcome.FAIL)


class TestTreeProgress(unittest.TestCase):

    def test_expected_steps_progress_capped_below_100(self):
        last = _ok("c")
        root = _ok("a", then=_ok("b", then=last))
        task = TreeTask("t", root, expected_steps=2)
        task.start()
        task.execute_current_step()
        self.assertEqual(task.progress(), 50)
        task.execute_current_step()
        self.assertEqual(task.progress(), 99)

    def test_progress_fn_is_clamped(self):
        task = TreeTask("t", _ok("a"), progress_fn=lambda ctx: 250)
        task.start()
        self.assertEqual(task.progress(), 100)

    def test_description_follows_pointer(self):
        task = TreeTask("t", _ok("a"))
        self.assertEqual(task.current_step_description(), "Not started")
        task.start()
        self.assertEqual(task.current_step_description(), "do a")

    def test_completion_check(self):
        flag = {"done": False}
        task = TreeTask("t", _ok("a"), completion_check=lambda ctx: flag["done"])
        task.start()
        self.assertFalse(task.is_complete())
        flag["done"] = True
        self.assertTrue(task.is_complete())


# ═══════════════════════════════════════════════════════════════════
# Step tasks
# ═══════════════════════════════════════════════════════════════════

class TestStepTask(unittest.TestCase):

    def test_runs_steps_in_order(self):
        order = []
        steps = [Step(f"step {i}", lambda ctx, i=i: order.append(i) or True) for i in range(3)]
        task = StepTask("s", steps)
        task.start()
        outcomes = [task.execute_current_step() for _ in range(3)]
        self.assertEqual(order, [0, 1, 2])
        self.assertEqual(outcomes[-1], StepOutcome.COMPLETE)
        self.assertTrue(task.is_complete())
        self.assertEqual(task.progress(), 100)

    def test_failed_step_is_not_terminal(self):
        results = [False, True]
        task = StepTask("s", [Step("flaky", lambda ctx: results.pop(0))])
        task.start()
        self.assertEqual(task.execute_current_step(), StepOutcome.FAIL)
        self.assertFalse(task.is_failed())
        self.assertEqual(task.current_step_description(), "flaky")
        self.assertEqual(task.execute_current_step(), StepOutcome.COMPLETE)

    def test_aborted_step_task_fails(self):
        abort = AbortFlag()
        task = StepTask("s", [Step("x", lambda ctx: True)])
        task.start()
        task.context.abort = abort
        abort.trip()
        self.assertEqual(task.execute_current_step(), StepOutcome.FAIL)
        self.assertTrue(task.is_failed())

    def test_empty_step_task_is_complete(self):
        task = StepTask("s", [])
        self.assertEqual(task.execute_current_step(), StepOutcome.COMPLETE)


# ═══════════════════════════════════════════════════════════════════
# Resource check
# ═══════════════════════════════════════════════════════════════════

class TestRequiredResources(unittest.TestCase):

    def test_local_only_requirement_must_be_held(self):
        world = SimulatedWorld()
        req = ResourceRequirement("Hammer", 1, source=SourcePolicy.LOCAL_ONLY)
        task = TreeTask("t", _ok("a"), requirements=[req])
        self.assertFalse(task.has_required_resources(TaskRuntime(world=world)))
        world.inventory["Hammer"] = 1
        self.assertTrue(task.has_required_resources(TaskRuntime(world=world)))

    def test_other_policies_are_left_to_actions(self):
        req = ResourceRequirement("Egg", 1)
        task = TreeTask("t", _ok("a"), requirements=[req])
        self.assertTrue(task.has_required_resources(TaskRuntime(world=SimulatedWorld())))

    def test_gather_on_prepare_uses_coordinator(self):
        coordinator = MagicMock()
        coordinator.gather_items.return_value = AcquisitionResult(False, {}, {"Egg": 1}, "none")
        req = ResourceRequirement("Egg", 1)
        task = TreeTask("t", _ok("a"), requirements=[req], gather_on_prepare=True)

        ok = task.has_required_resources(TaskRuntime(world=SimulatedWorld(), coordinator=coordinator))

        self.assertFalse(ok)
        coordinator.gather_items.assert_called_once_with([req])
        self.assertEqual(task.last_acquisition.missing, {"Egg": 1})

    def test_required_resources_is_a_copy(self):
        req = ResourceRequirement("Egg", 1)
        task = TreeTask("t", _ok("a"), requirements=[req])
        task.required_resources().clear()
        self.assertEqual(task.required_resources(), [req])


class TestHooks(unittest.TestCase):

    def test_hooks_receive_context(self):
        calls = []
        task = TreeTask("t", _ok("a"),
                        on_start=lambda ctx: calls.append("start"),
                        on_complete=lambda ctx: calls.append("complete"),
                        cleanup=lambda ctx: calls.append("cleanup"))
        task.on_start()
        task.on_complete()
        task.cleanup()
        self.assertEqual(calls, ["start", "complete", "cleanup"])


if __name__ == "__main__":
    unittest.main()
