"""
Quest Engine - Bounded Wait Tests

Tests:
  - condition met, timed out, aborted
  - the condition is checked at least once with a zero timeout
  - sleeps never overshoot the remaining timeout
  - jitter stays within its millisecond bounds
"""

import os
import random
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.waits import TICK_S, WaitOutcome, jitter_seconds, wait_until
from fixtures.world import FakeClock


class TestWaitUntil(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()

    def test_met_immediately(self):
        self.assertIs(wait_until(lambda: True, 5, TICK_S, self.clock), WaitOutcome.MET)
        self.assertEqual(self.clock.sleeps, [])

    def test_met_after_polling(self):
        outcome = wait_until(lambda: self.clock.now() >= 1.5, 10, 0.5, self.clock)
        self.assertIs(outcome, WaitOutcome.MET)
        self.assertEqual(self.clock.sleeps, [0.5, 0.5, 0.5])

    def test_times_out(self):
        outcome = wait_until(lambda: False, 1.25, 0.5, self.clock)
        self.assertIs(outcome, WaitOutcome.TIMED_OUT)
        self.assertEqual(self.clock.sleeps, [0.5, 0.5, 0.25])

    def test_zero_timeout_checks_once(self):
        calls = []
        outcome = wait_until(lambda: calls.append(1) or False, 0, 0.6, self.clock)
        self.assertIs(outcome, WaitOutcome.TIMED_OUT)
        self.assertEqual(calls, [1])

    def test_inactive_aborts_before_condition(self):
        calls = []
        outcome = wait_until(lambda: calls.append(1) or True, 5, 0.6, self.clock,
                             active=lambda: False)
        self.assertIs(outcome, WaitOutcome.ABORTED)
        self.assertEqual(calls, [])

    def test_abort_mid_wait(self):
        state = {"active": True}

        def condition():
            if self.clock.now() >= 1.0:
                state["active"] = False
            return False

        outcome = wait_until(condition, 60, 0.5, self.clock, active=lambda: state["active"])
        self.assertIs(outcome, WaitOutcome.ABORTED)
        self.assertLess(self.clock.now(), 2.0)


class TestJitter(unittest.TestCase):

    def test_within_bounds(self):
        rng = random.Random(3)
        for _ in range(50):
            value = jitter_seconds((1000, 2000), rng)
            self.assertTrue(1.0 <= value <= 2.0)

    def test_degenerate_range(self):
        self.assertEqual(jitter_seconds((0, 0)), 0.0)
        self.assertEqual(jitter_seconds((750, 750)), 0.75)


if __name__ == "__main__":
    unittest.main()
