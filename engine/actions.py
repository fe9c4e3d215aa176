"""
Quest Engine - Action Library

Stock node builders bound to the injected capabilities. Task authors
(and the composer) build trees from these instead of writing raw
callables:

  interact(entity, verb)            talk to / use / pick up something
  navigate(target, tolerance)       walk somewhere; skipped if already there
  acquire(requirements)             run the acquisition coordinator
  wait_for_signal(key, value)       bounded wait for a progress signal
  set_flag(key, value)              write to the task context

  branch_on_signal(key)             discriminant = current signal value
  branch_on_inventory(item, n)      "has" / "missing"
  branch_on_flag(key)               discriminant = str(context value)

engine.composer maps the primitive names used in declarative task
files (ACTIONS, DECISIONS) onto these builders.

Usage:
    library = ActionLibrary(world, coordinator=coordinator, monitor=monitor)
    walk = library.navigate("walk_kitchen", Coordinate(3208, 3214), description="Walk to the kitchen")
    talk = library.interact("talk_cook", "Cook", "Talk-to", then=None)
    walk.then = talk
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from engine.acquisition import ResourceCoordinator, ResourceRequirement
from engine.capability import Coordinate, World
from engine.nodes import ActionNode, DecisionNode, Node, TaskContext
from engine.waits import TICK_S, Clock, SystemClock, WaitOutcome, wait_until

logger = logging.getLogger("quest_engine.actions")

DEFAULT_WALK_TOLERANCE = 3
DEFAULT_WALK_TIMEOUT_S = 20.0
DEFAULT_SIGNAL_TIMEOUT_S = 10.0


class ActionLibrary:
    """Builds Action and Decision nodes against one World."""

    ACTIONS = ("interact", "navigate", "acquire", "wait_for_signal", "set_flag")
    DECISIONS = ("signal", "inventory", "flag")

    def __init__(
        self,
        world: World,
        coordinator: ResourceCoordinator | None = None,
        monitor=None,
        clock: Clock | None = None,
    ):
        self.world = world
        self.coordinator = coordinator
        self.monitor = monitor
        self.clock = clock or SystemClock()

    # ── Actions ────────────────────────────────────────────────

    def interact(self, node_id: str, entity: str, verb: str, description: str = "",
                 **node_kwargs) -> ActionNode:
        def perform(ctx: TaskContext) -> bool:
            ok = self.world.interact(entity, verb)
            if ok:
                ctx.set(f"interacted:{entity}", verb)
            return bool(ok)

        return ActionNode(node_id, description or f"{verb} {entity}", perform, **node_kwargs)

    def navigate(
        self,
        node_id: str,
        target: Coordinate,
        tolerance: int = DEFAULT_WALK_TOLERANCE,
        timeout_s: float = DEFAULT_WALK_TIMEOUT_S,
        description: str = "",
        **node_kwargs,
    ) -> ActionNode:
        def arrived() -> bool:
            return self.world.distance_to(target) <= tolerance

        def perform(ctx: TaskContext) -> bool:
            self.world.navigate_to(target, tolerance)

            def walking() -> bool:
                if arrived():
                    return True
                if not self.world.is_moving():
                    self.world.navigate_to(target, tolerance)
                return False

            outcome = wait_until(walking, timeout_s, TICK_S, self.clock,
                                 active=lambda: not ctx.aborted)
            return outcome is WaitOutcome.MET

        return ActionNode(node_id, description or f"Walk to {target.x},{target.y}",
                          perform, should_skip=lambda ctx: arrived(), **node_kwargs)

    def acquire(self, node_id: str, requirements: list[ResourceRequirement],
                description: str = "", **node_kwargs) -> ActionNode:
        if self.coordinator is None:
            raise ValueError(f"{node_id}: acquire needs a ResourceCoordinator")

        def satisfied(ctx: TaskContext) -> bool:
            return all(self.world.inventory_count(r.name) >= r.quantity for r in requirements)

        def perform(ctx: TaskContext) -> bool:
            result = self.coordinator.gather_items(requirements)
            ctx.set("last_acquisition", result)
            return result.success

        names = ", ".join(f"{r.quantity}x {r.name}" for r in requirements)
        return ActionNode(node_id, description or f"Acquire {names}", perform,
                          should_skip=satisfied, **node_kwargs)

    def wait_for_signal(self, node_id: str, key: int, value: int,
                        timeout_s: float = DEFAULT_SIGNAL_TIMEOUT_S,
                        description: str = "", **node_kwargs) -> ActionNode:
        def perform(ctx: TaskContext) -> bool:
            # Read the world directly: the monitor only refreshes between ticks
            outcome = wait_until(lambda: self.world.read_signal(key) >= value, timeout_s, TICK_S,
                                 self.clock, active=lambda: not ctx.aborted)
            return outcome is WaitOutcome.MET

        return ActionNode(node_id, description or f"Wait for signal {key} >= {value}",
                          perform, **node_kwargs)

    def set_flag(self, node_id: str, key: str, value: Any = True,
                 description: str = "", **node_kwargs) -> ActionNode:
        def perform(ctx: TaskContext) -> bool:
            ctx.set(key, value)
            return True

        return ActionNode(node_id, description or f"Set {key}", perform, **node_kwargs)

    # ── Decisions ──────────────────────────────────────────────

    def branch_on_signal(self, node_id: str, key: int, description: str = "",
                         branches: dict[str, Node] | None = None,
                         default: Node | None = None) -> DecisionNode:
        return DecisionNode(node_id, description or f"Branch on signal {key}",
                            lambda ctx: str(self._signal(key)),
                            dict(branches or {}), default)

    def branch_on_inventory(self, node_id: str, item: str, quantity: int = 1,
                            description: str = "",
                            branches: dict[str, Node] | None = None,
                            default: Node | None = None) -> DecisionNode:
        def decide(ctx: TaskContext) -> str:
            return "has" if self.world.inventory_count(item) >= quantity else "missing"

        return DecisionNode(node_id, description or f"Holding {quantity}x {item}?",
                            decide, dict(branches or {}), default)

    def branch_on_flag(self, node_id: str, key: str, description: str = "",
                       branches: dict[str, Node] | None = None,
                       default: Node | None = None) -> DecisionNode:
        return DecisionNode(node_id, description or f"Branch on {key}",
                            lambda ctx: str(ctx.get(key)), dict(branches or {}), default)

    # ── Helpers ────────────────────────────────────────────────

    def _signal(self, key: int) -> int:
        """Direct read; the monitor's last polled value if the read fails."""
        try:
            return self.world.read_signal(key)
        except Exception as e:
            cached = self.monitor.value(key) if self.monitor is not None else None
            if cached is None:
                raise
            logger.debug("Signal %d unreadable (%s), using last polled value %d", key, e, cached)
            return cached


def custom_action(node_id: str, description: str, fn: Callable[[TaskContext], bool],
                  **node_kwargs) -> ActionNode:
    """Wrap an arbitrary callable as an Action node."""
    return ActionNode(node_id, description, fn, **node_kwargs)
