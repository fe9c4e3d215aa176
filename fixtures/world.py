"""
Quest Engine - Simulated World

In-memory implementation of every capability protocol (World, Storage,
Market) plus a fake clock, so the engine can be driven end to end
without a live client.

Every capability call is appended to `calls`, which makes "no storage
or market calls happened" a one-line assertion.

Market model: each item has a reference price, a seller asking price
and a supply. A buy order at or above the asking price with enough
supply completes immediately and waits to be collected; anything else
stays pending until cancelled.

Usage:
    from fixtures.world import FakeClock, SimulatedWorld, demo_world

    clock = FakeClock()
    world = SimulatedWorld(clock=clock)
    world.storage["Widget"] = 2
    world.inventory["Coins"] = 1000
    world.list_item("Egg", reference=5, asking=6, supply=10)
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Callable

from engine.capability import Coordinate


class FakeClock:
    """Clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.sleeps.append(seconds)
            self.t += seconds

    def advance(self, seconds: float) -> None:
        self.t += seconds


@dataclass
class BuyOrder:
    item: str
    quantity: int
    price: int
    filled: bool = False
    collected: bool = False


@dataclass
class Listing:
    reference: int | None
    asking: int
    supply: int


Handler = Callable[["SimulatedWorld"], bool]


class SimulatedWorld:
    """World + Storage + Market in one object."""

    def __init__(
        self,
        clock: FakeClock | None = None,
        position: Coordinate = Coordinate(3222, 3218, 0),
        walk_seconds: float = 0.0,
    ):
        self.clock = clock or FakeClock()
        self.position = position
        self.walk_seconds = walk_seconds
        self.inventory: Counter = Counter()
        self.storage: Counter = Counter()
        self.signals: dict[int, int] = {}
        self.broken_signals: set[int] = set()
        self.handlers: dict[tuple[str, str], Handler] = {}
        self.listings: dict[str, Listing] = {}
        self.orders: list[BuyOrder] = []
        self.calls: list[str] = []
        self.storage_available = True
        self.market_available = True
        self._destination: Coordinate | None = None
        self._arrive_at = 0.0
        self._storage_open = False
        self._market_open = False

    # ── Setup helpers ──────────────────────────────────────────

    def on_interact(self, entity: str, verb: str, handler: Handler):
        self.handlers[(entity, verb)] = handler

    def list_item(self, item: str, reference: int | None, asking: int, supply: int):
        self.listings[item] = Listing(reference, asking, supply)

    def calls_to(self, prefix: str) -> list[str]:
        return [c for c in self.calls if c.startswith(prefix)]

    # ── World ──────────────────────────────────────────────────

    def interact(self, entity: str, verb: str) -> bool:
        self.calls.append(f"world.interact:{entity}:{verb}")
        handler = self.handlers.get((entity, verb))
        if handler is None:
            return True
        return bool(handler(self))

    def navigate_to(self, target: Coordinate, tolerance: int = 0) -> bool:
        self.calls.append(f"world.navigate_to:{target.x},{target.y}")
        if self.walk_seconds <= 0:
            self.position = target
            return True
        self._destination = target
        self._arrive_at = self.clock.now() + self.walk_seconds
        return True

    def _settle(self):
        if self._destination is not None and self.clock.now() >= self._arrive_at:
            self.position = self._destination
            self._destination = None

    def distance_to(self, target: Coordinate) -> float:
        self._settle()
        return self.position.distance(target)

    def is_moving(self) -> bool:
        self._settle()
        return self._destination is not None

    def read_signal(self, key: int) -> int:
        if key in self.broken_signals:
            raise RuntimeError(f"signal {key} unreadable")
        return self.signals.get(key, 0)

    def inventory_count(self, item: str) -> int:
        return self.inventory[item]

    # ── Storage ────────────────────────────────────────────────

    def open_storage(self) -> bool:
        self.calls.append("storage.open")
        if self.storage_available:
            self._storage_open = True
        return self._storage_open

    def is_storage_open(self) -> bool:
        return self._storage_open

    def storage_count(self, item: str) -> int:
        self.calls.append(f"storage.count:{item}")
        return self.storage[item]

    def withdraw(self, item: str, quantity: int) -> bool:
        self.calls.append(f"storage.withdraw:{item}:{quantity}")
        if not self._storage_open or self.storage[item] < quantity:
            return False
        self.storage[item] -= quantity
        self.inventory[item] += quantity
        return True

    def close_storage(self) -> None:
        self.calls.append("storage.close")
        self._storage_open = False

    # ── Market ─────────────────────────────────────────────────

    def open_market(self) -> bool:
        self.calls.append("market.open")
        if self.market_available:
            self._market_open = True
        return self._market_open

    def is_market_open(self) -> bool:
        return self._market_open

    def has_ready_orders(self) -> bool:
        return any(o.filled and not o.collected for o in self.orders)

    def collect(self) -> None:
        self.calls.append("market.collect")
        for order in self.orders:
            if order.filled and not order.collected:
                self.inventory[order.item] += order.quantity
                order.collected = True

    def reference_price(self, item: str) -> int | None:
        self.calls.append(f"market.price:{item}")
        listing = self.listings.get(item)
        return listing.reference if listing else None

    def place_buy(self, item: str, quantity: int, price: int) -> bool:
        self.calls.append(f"market.buy:{item}:{quantity}:{price}")
        cost = quantity * price
        if self.inventory["Coins"] < cost:
            return False
        self.inventory["Coins"] -= cost
        order = BuyOrder(item, quantity, price)
        listing = self.listings.get(item)
        if listing and price >= listing.asking and listing.supply >= quantity:
            listing.supply -= quantity
            order.filled = True
        self.orders.append(order)
        return True

    def cancel_all(self) -> None:
        self.calls.append("market.cancel_all")
        for order in self.orders:
            if not order.filled and not order.collected:
                self.inventory["Coins"] += order.quantity * order.price
                order.collected = True

    def close_market(self) -> None:
        self.calls.append("market.close")
        self._market_open = False


# ═══════════════════════════════════════════════════════════════════
# Demo world for the bundled task definitions
# ═══════════════════════════════════════════════════════════════════

COOK_STAGE_KEY = 29
SHEEP_STAGE_KEY = 179


def demo_world(clock: FakeClock | None = None) -> SimulatedWorld:
    """A world in which tasks/cooks_assistant.yaml and tasks/sheep_shearer.yaml can finish."""
    world = SimulatedWorld(clock=clock)
    world.inventory["Coins"] = 2000
    world.storage["Pot of flour"] = 1
    world.list_item("Egg", reference=5, asking=5, supply=20)
    world.list_item("Bucket of milk", reference=12, asking=13, supply=20)
    world.list_item("Ball of wool", reference=30, asking=30, supply=100)

    def talk_to_cook(w: SimulatedWorld) -> bool:
        stage = w.signals.get(COOK_STAGE_KEY, 0)
        if stage == 0:
            w.signals[COOK_STAGE_KEY] = 1
        elif stage == 1 and all(w.inventory[i] >= 1 for i in ("Egg", "Bucket of milk", "Pot of flour")):
            for item in ("Egg", "Bucket of milk", "Pot of flour"):
                w.inventory[item] -= 1
            w.signals[COOK_STAGE_KEY] = 2
        return True

    def talk_to_fred(w: SimulatedWorld) -> bool:
        stage = w.signals.get(SHEEP_STAGE_KEY, 0)
        if stage == 0:
            w.signals[SHEEP_STAGE_KEY] = 1
        elif w.inventory["Ball of wool"] >= 20:
            w.inventory["Ball of wool"] -= 20
            w.signals[SHEEP_STAGE_KEY] = 21
        return True

    world.on_interact("Cook", "Talk-to", talk_to_cook)
    world.on_interact("Fred the Farmer", "Talk-to", talk_to_fred)
    return world
