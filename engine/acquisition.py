"""
Quest Engine - Resource Acquisition Coordinator

Satisfies named-quantity requirements through an ordered source chain:

  1. local stock      already held, nothing to do
  2. storage          withdraw the shortfall if storage holds the item
  3. market           buy the shortfall with escalating offers

gather_items() never raises. Every fault degrades to an entry in the
missing map plus a human-readable last_action. Before every blocking
storage or market step the coordinator re-checks the `active` callable,
so an emergency stop cancels acquisition cooperatively.

Pricing:
  offer = floor(reference * (1 + markup) * 1.05 ** (attempt - 1)), see engine.pricing
  FIXED strategies offer the flat price on every attempt.

Usage:
    from engine.acquisition import ResourceCoordinator, ResourceRequirement, SourcePolicy

    coordinator = ResourceCoordinator(world, storage=world, market=world,
                                      active=orchestrator.is_active)
    result = coordinator.gather_items([
        ResourceRequirement("Egg", 1),
        ResourceRequirement("Pot of flour", 1, source=SourcePolicy.NO_MARKET),
    ])
    if not result.success:
        print(result.missing, result.last_action)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.capability import Market, Storage, World
from engine.errors import ResourceError
from engine.market import MarketBuyer
from engine.pricing import DEFAULT_FIXED_PRICE, PricingStrategy, offer_price
from engine.settings import AcquisitionSettings
from engine.waits import TICK_S, Clock, SystemClock, WaitOutcome, wait_until

logger = logging.getLogger("quest_engine.acquisition")

__all__ = [
    "AcquisitionResult", "PricingStrategy", "ResourceCoordinator",
    "ResourceRequirement", "SourcePolicy", "offer_price",
]


# ═══════════════════════════════════════════════════════════════════
# Source Policy
# ═══════════════════════════════════════════════════════════════════

class SourcePolicy(str, enum.Enum):
    """Which sources may be used for a requirement. Local stock is always checked."""
    ANY = "any"
    LOCAL_ONLY = "local_only"
    STORAGE_ONLY = "storage_only"
    MARKET_ONLY = "market_only"
    NO_MARKET = "no_market"

    @property
    def allows_storage(self) -> bool:
        return self in (SourcePolicy.ANY, SourcePolicy.STORAGE_ONLY, SourcePolicy.NO_MARKET)

    @property
    def allows_market(self) -> bool:
        return self in (SourcePolicy.ANY, SourcePolicy.MARKET_ONLY)


# ═══════════════════════════════════════════════════════════════════
# Requirement & Result
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ResourceRequirement:
    name: str
    quantity: int
    source: SourcePolicy = SourcePolicy.ANY
    pricing: PricingStrategy = PricingStrategy.MODERATE
    fixed_price: int = DEFAULT_FIXED_PRICE
    allow_partial: bool = False

    def __post_init__(self):
        if self.quantity < 1:
            raise ValueError(f"{self.name}: quantity must be >= 1, got {self.quantity}")

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ResourceRequirement:
        return ResourceRequirement(
            name=str(data["name"]),
            quantity=int(data.get("quantity", 1)),
            source=SourcePolicy(data.get("source", SourcePolicy.ANY.value)),
            pricing=PricingStrategy(data.get("pricing", PricingStrategy.MODERATE.value)),
            fixed_price=int(data.get("fixed_price", DEFAULT_FIXED_PRICE)),
            allow_partial=bool(data.get("allow_partial", False)),
        )


@dataclass
class AcquisitionResult:
    """
    Report for one gather_items() call.

    obtained maps name to the quantity now held toward each requirement
    (capped at the required quantity); missing holds any shortfall.
    success ignores shortfalls on allow_partial requirements.
    """
    success: bool
    obtained: dict[str, int] = field(default_factory=dict)
    missing: dict[str, int] = field(default_factory=dict)
    last_action: str = ""

    def raise_for_missing(self):
        """Raise ResourceError if anything is still missing."""
        if self.missing:
            raise ResourceError(
                f"Missing resources: {self.missing} ({self.last_action})",
                missing=self.missing,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "obtained": dict(self.obtained),
            "missing": dict(self.missing),
            "last_action": self.last_action,
        }


class _Aborted(Exception):
    pass


# ═══════════════════════════════════════════════════════════════════
# Coordinator
# ═══════════════════════════════════════════════════════════════════

class ResourceCoordinator:
    """Walks each requirement down the source chain."""

    def __init__(
        self,
        world: World,
        storage: Storage | None = None,
        market: Market | None = None,
        settings: AcquisitionSettings | None = None,
        clock: Clock | None = None,
        active: Callable[[], bool] | None = None,
        audit=None,
    ):
        self.world = world
        self.storage = storage
        self.market = market
        self.settings = settings or AcquisitionSettings()
        self.clock = clock or SystemClock()
        self.active = active or (lambda: True)
        self.audit = audit
        self._last_action = ""
        self._storage_open = False
        self._subscribers: list[Callable[[AcquisitionResult], None]] = []

    # ── Public ─────────────────────────────────────────────────

    def subscribe(self, callback: Callable[[AcquisitionResult], None]):
        """Call back with every gather_items() result."""
        self._subscribers.append(callback)

    def gather_items(self, requirements: list[ResourceRequirement]) -> AcquisitionResult:
        """Acquire every requirement in order. Never raises."""
        obtained: dict[str, int] = {}
        missing: dict[str, int] = {}
        self._last_action = "No requirements"
        self._storage_open = False

        pending = list(requirements)
        while pending:
            req = pending[0]
            try:
                self._satisfy(req)
            except _Aborted:
                self._note(f"Acquisition aborted: agent no longer active ({req.name})")
                break
            except Exception as e:
                logger.warning("Acquiring %s failed: %s", req.name, e, exc_info=True)
                self._note(f"Error acquiring {req.name}: {e}")
            self._tally(req, obtained, missing)
            pending.pop(0)

        # Whatever was not reached before an abort is reported as-is
        for req in pending:
            self._tally(req, obtained, missing)

        self._close_storage()

        success = not any(
            req.name in missing and not req.allow_partial for req in requirements
        )
        result = AcquisitionResult(success, obtained, missing, self._last_action)
        log = logger.info if success else logger.warning
        log("Acquisition %s: obtained=%s missing=%s (%s)",
            "succeeded" if success else "incomplete", obtained, missing, self._last_action)
        self._audit("ACQUIRE", f"{'OK' if success else 'INCOMPLETE'} obtained={obtained} "
                               f"missing={missing} ({self._last_action})")
        for callback in list(self._subscribers):
            try:
                callback(result)
            except Exception as e:
                logger.warning("Acquisition subscriber failed: %s", e)
        return result

    # ── Source chain ───────────────────────────────────────────

    def _satisfy(self, req: ResourceRequirement) -> None:
        have = self._held(req.name)
        if have >= req.quantity:
            self._note(f"Already holding {have}x {req.name}")
            return

        if req.source.allows_storage and self.storage is not None:
            have = self._from_storage(req, have)
            if have >= req.quantity:
                return

        if req.source.allows_market and self.market is not None:
            self._close_storage()
            self._from_market(req, have)
        elif not (req.source.allows_storage and self.storage is not None):
            self._note(f"{req.name}: {req.quantity - have} short, "
                       f"no source allowed by policy {req.source.value}")

    def _from_storage(self, req: ResourceRequirement, have: int) -> int:
        s = self.settings
        self._check_active()
        if not self.storage.is_storage_open():
            self.storage.open_storage()
            outcome = wait_until(self.storage.is_storage_open, s.storage_open_timeout_s,
                                 TICK_S, self.clock, self.active)
            if outcome is WaitOutcome.ABORTED:
                raise _Aborted()
            if outcome is WaitOutcome.TIMED_OUT:
                self._note("Storage could not be opened")
                return have
        self._storage_open = True

        available = self.storage.storage_count(req.name)
        if available <= 0:
            self._note(f"{req.name} not in storage")
            return have

        take = min(req.quantity - have, available)
        target = have + take
        self._check_active()
        if not self.storage.withdraw(req.name, take):
            self._note(f"Withdraw of {take}x {req.name} refused")
            return self._held(req.name)

        outcome = wait_until(lambda: self._held(req.name) >= target, s.withdraw_timeout_s,
                             TICK_S, self.clock, self.active)
        if outcome is WaitOutcome.ABORTED:
            raise _Aborted()
        have = self._held(req.name)
        self._note(f"Withdrew {take}x {req.name} from storage")
        return have

    def _from_market(self, req: ResourceRequirement, have: int) -> None:
        self._check_active()
        buyer = MarketBuyer(self.world, self.market, self.settings, self.clock,
                            self.active, audit=self.audit)
        outcome = buyer.buy(req.name, req.quantity - have, req.pricing, req.fixed_price)
        self._note(outcome.last_action)
        if outcome.aborted:
            raise _Aborted()

    # ── Helpers ────────────────────────────────────────────────

    def _tally(self, req: ResourceRequirement, obtained: dict, missing: dict):
        try:
            held = self._held(req.name)
        except Exception as e:
            logger.warning("Inventory read for %s failed: %s", req.name, e)
            held = 0
        obtained[req.name] = min(held, req.quantity)
        if held < req.quantity:
            missing[req.name] = req.quantity - held

    def _close_storage(self):
        if not self._storage_open:
            return
        self._storage_open = False
        try:
            self.storage.close_storage()
        except Exception as e:
            logger.warning("Closing storage failed: %s", e)

    def _held(self, name: str) -> int:
        return self.world.inventory_count(name)

    def _check_active(self):
        if not self.active():
            raise _Aborted()

    def _note(self, action: str):
        self._last_action = action
        logger.debug("acquisition: %s", action)

    def _audit(self, category: str, message: str):
        if self.audit is not None:
            self.audit.record(category, message)
