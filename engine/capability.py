"""
Quest Engine - Capability Protocols

The engine drives a world it does not implement. Everything that moves,
clicks, reads or trades is injected through these protocols:

  World    interact, navigate, distance, movement, signals, inventory
  Storage  durable item storage (location resolved by the environment)
  Market   priced order book with collectable completed orders

Implementations live outside the engine; fixtures.world.SimulatedWorld
implements all three for tests and the CLI.

Usage:
    from engine.capability import Coordinate, World

    home = Coordinate(3222, 3218, 0)
    if world.distance_to(home) > 3:
        world.navigate_to(home, tolerance=3)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class Coordinate:
    """A tile in the world. plane is the vertical level."""
    x: int
    y: int
    plane: int = 0

    def distance(self, other: Coordinate) -> float:
        if self.plane != other.plane:
            return float("inf")
        # Chebyshev: diagonal steps cost the same as straight ones
        return float(max(abs(self.x - other.x), abs(self.y - other.y)))

    @staticmethod
    def from_value(value: Any) -> Coordinate:
        """Accept a Coordinate, a [x, y(, plane)] sequence or a {x, y, plane} mapping."""
        if isinstance(value, Coordinate):
            return value
        if isinstance(value, dict):
            return Coordinate(int(value["x"]), int(value["y"]), int(value.get("plane", 0)))
        if isinstance(value, (list, tuple)) and len(value) in (2, 3):
            return Coordinate(*(int(v) for v in value))
        raise ValueError(f"Not a coordinate: {value!r}")

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "plane": self.plane}


@runtime_checkable
class World(Protocol):
    """In-world action capability."""

    def interact(self, entity: str, verb: str) -> bool: ...

    def navigate_to(self, target: Coordinate, tolerance: int = 0) -> bool: ...

    def distance_to(self, target: Coordinate) -> float: ...

    def is_moving(self) -> bool: ...

    def read_signal(self, key: int) -> int: ...

    def inventory_count(self, item: str) -> int: ...


@runtime_checkable
class Storage(Protocol):
    """Durable item storage."""

    def open_storage(self) -> bool: ...

    def is_storage_open(self) -> bool: ...

    def storage_count(self, item: str) -> int: ...

    def withdraw(self, item: str, quantity: int) -> bool: ...

    def close_storage(self) -> None: ...


@runtime_checkable
class Market(Protocol):
    """Priced market with buy orders that complete asynchronously."""

    def open_market(self) -> bool: ...

    def is_market_open(self) -> bool: ...

    def has_ready_orders(self) -> bool: ...

    def collect(self) -> None: ...

    def reference_price(self, item: str) -> int | None: ...

    def place_buy(self, item: str, quantity: int, price: int) -> bool: ...

    def cancel_all(self) -> None: ...

    def close_market(self) -> None: ...
