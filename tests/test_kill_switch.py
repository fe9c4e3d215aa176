"""
Quest Engine - Abort Flag Tests
"""

import os
import sys
import threading
import time
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.kill_switch import AbortFlag, AnyFlag, SwitchState
from engine.waits import SystemClock


class TestAbortFlag(unittest.TestCase):

    def setUp(self):
        self.flag = AbortFlag()

    def test_starts_clear(self):
        self.assertFalse(self.flag.is_set())
        self.assertEqual(self.flag.reason, "")

    def test_trip_records_reason(self):
        self.flag.trip("operator", by="control")
        self.assertTrue(self.flag.is_set())
        self.assertEqual(self.flag.reason, "operator")
        status = self.flag.status()
        self.assertTrue(status["enabled"])
        self.assertEqual(status["toggled_by"], "control")

    def test_clear(self):
        self.flag.trip("x")
        self.flag.clear(by="start")
        self.assertFalse(self.flag.is_set())
        self.assertEqual(self.flag.status()["toggled_by"], "start")

    def test_clear_when_not_set_is_noop(self):
        self.flag.clear(by="someone")
        self.assertEqual(self.flag.status()["toggled_by"], "")

    def test_wait_returns_early_when_tripped(self):
        timer = threading.Timer(0.05, self.flag.trip, args=("late",))
        timer.start()
        started = time.monotonic()
        self.assertTrue(self.flag.wait(5.0))
        self.assertLess(time.monotonic() - started, 2.0)
        timer.join()

    def test_wait_times_out(self):
        self.assertFalse(self.flag.wait(0.01))

    def test_negative_wait_does_not_block(self):
        self.assertFalse(self.flag.wait(-1))


class TestSwitchState(unittest.TestCase):

    def test_activate_deactivate(self):
        state = SwitchState()
        state.activate("why", by="me")
        self.assertTrue(state.enabled)
        self.assertGreater(state.toggled_at, 0)
        state.deactivate(by="you")
        self.assertEqual(state.to_dict()["reason"], "")
        self.assertEqual(state.to_dict()["toggled_by"], "you")


class TestAnyFlag(unittest.TestCase):

    def test_set_when_any_member_set(self):
        abort, stop = AbortFlag(), threading.Event()
        either = AnyFlag(abort, stop)
        self.assertFalse(either.is_set())
        stop.set()
        self.assertTrue(either.is_set())
        stop.clear()
        abort.trip("x")
        self.assertTrue(either.is_set())

    def test_wait_wakes_on_second_member(self):
        abort, stop = AbortFlag(), threading.Event()
        either = AnyFlag(abort, stop)
        timer = threading.Timer(0.05, stop.set)
        timer.start()
        started = time.monotonic()
        self.assertTrue(either.wait(5.0))
        self.assertLess(time.monotonic() - started, 2.0)
        timer.join()

    def test_wait_times_out(self):
        self.assertFalse(AnyFlag(AbortFlag(), threading.Event()).wait(0.01))

    def test_needs_a_flag(self):
        with self.assertRaises(ValueError):
            AnyFlag()


class TestAbortableClock(unittest.TestCase):

    def test_system_clock_sleep_wakes_on_trip(self):
        flag = AbortFlag()
        clock = SystemClock(flag)
        timer = threading.Timer(0.05, flag.trip)
        timer.start()
        started = clock.now()
        clock.sleep(5.0)
        self.assertLess(clock.now() - started, 2.0)
        timer.join()


if __name__ == "__main__":
    unittest.main()
