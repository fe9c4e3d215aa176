"""
Quest Engine - Market Purchase Protocol

Buys a shortfall on the open market in bounded, cancellable steps:

  1. Walk to the market (primary location, then the fallback), re-issuing
     the walk whenever the agent has stopped short of the target
  2. Open the trading interface and collect any finished orders
  3. Price the offer from the reference price (fallback constant if none)
  4. Check currency, place the order, poll for fulfilment
  5. On timeout cancel all orders and retry with a compounded offer
  6. After the last attempt make one final collection, then close

Every blocking step first re-checks `active`; a cleared flag ends the
purchase immediately with aborted=True.

Usage:
    from engine.market import MarketBuyer

    buyer = MarketBuyer(world, market, settings.acquisition, clock, active=is_active)
    outcome = buyer.buy("Bucket of milk", 1, PricingStrategy.AGGRESSIVE)
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable

from engine.capability import Coordinate, Market, World
from engine.pricing import DEFAULT_FIXED_PRICE, PricingStrategy, offer_price
from engine.settings import AcquisitionSettings
from engine.waits import TICK_S, Clock, WaitOutcome, jitter_seconds, wait_until

logger = logging.getLogger("quest_engine.market")


@dataclass(frozen=True)
class PurchaseOutcome:
    obtained: int
    last_action: str
    aborted: bool = False
    attempts: int = 0


class _Aborted(Exception):
    pass


class MarketBuyer:
    """One purchase run against a Market capability."""

    def __init__(
        self,
        world: World,
        market: Market,
        settings: AcquisitionSettings,
        clock: Clock,
        active: Callable[[], bool],
        audit=None,
        rng: random.Random | None = None,
    ):
        self.world = world
        self.market = market
        self.settings = settings
        self.clock = clock
        self.active = active
        self.audit = audit
        self.rng = rng or random.Random()
        self._last_action = ""

    def buy(
        self,
        item: str,
        quantity: int,
        pricing: PricingStrategy = PricingStrategy.MODERATE,
        fixed_price: int = DEFAULT_FIXED_PRICE,
    ) -> PurchaseOutcome:
        start_count = self.world.inventory_count(item)
        attempts = 0
        opened = False
        try:
            if not self._travel():
                return self._outcome(item, start_count, "Could not reach the market", attempts)
            if not self._open():
                return self._outcome(item, start_count, "Market interface did not open", attempts)
            opened = True
            self._collect_ready()

            attempts = self._purchase_loop(item, start_count + quantity, pricing, fixed_price)

            self._check_active()
            self._collect_ready()
        except _Aborted:
            logger.warning("Market purchase of %s aborted", item)
            return self._outcome(item, start_count, f"Market purchase of {item} aborted",
                                 attempts, aborted=True)
        finally:
            if opened:
                try:
                    self.market.close_market()
                except Exception as e:
                    logger.warning("Closing market failed: %s", e)

        return self._outcome(item, start_count, self._last_action, attempts)

    # ── Order loop ─────────────────────────────────────────────

    def _purchase_loop(self, item: str, target: int, pricing: PricingStrategy,
                       fixed_price: int) -> int:
        s = self.settings
        deadline = self.clock.now() + s.total_timeout_s

        try:
            reference = self.market.reference_price(item)
        except Exception as e:
            logger.warning("Reference price for %s unavailable: %s", item, e)
            reference = None
        if not reference or reference <= 0:
            logger.info("No reference price for %s, using fallback %d", item, s.fallback_price)
            reference = s.fallback_price

        attempt = 0
        while attempt < s.max_attempts:
            remaining = target - self.world.inventory_count(item)
            if remaining <= 0:
                break
            left = deadline - self.clock.now()
            if left <= 0:
                self._note(f"Gave up on {item}: overall market timeout")
                break

            attempt += 1
            price = offer_price(reference, pricing, attempt, fixed_price, s.retry_markup_pct)

            if item != s.currency_item:
                coins = self.world.inventory_count(s.currency_item)
                if coins < price * remaining:
                    self._note(f"Insufficient {s.currency_item} for {remaining}x {item} "
                               f"at {price} (have {coins})")
                    break

            self._check_active()
            if not self.market.place_buy(item, remaining, price):
                self._note(f"Order for {remaining}x {item} at {price} rejected")
                continue
            self._note(f"Placed order for {remaining}x {item} at {price} (attempt {attempt})")
            self._audit("MARKET", f"Buy {remaining}x {item} @ {price} (attempt {attempt}/{s.max_attempts})")

            def filled() -> bool:
                if self.market.has_ready_orders():
                    self.market.collect()
                return self.world.inventory_count(item) >= target

            outcome = wait_until(
                filled,
                min(s.order_timeout_s, left),
                jitter_seconds(s.poll_interval_ms, self.rng),
                self.clock,
                self.active,
            )
            if outcome is WaitOutcome.ABORTED:
                raise _Aborted()
            if outcome is WaitOutcome.MET:
                self._note(f"Bought {item} at {price}")
                break

            logger.info("Order for %s at %d timed out, cancelling", item, price)
            self._check_active()
            self.market.cancel_all()
            self._collect_ready()
            self._note(f"Order for {item} at {price} timed out after attempt {attempt}")
        else:
            if self.world.inventory_count(item) < target:
                self._note(f"Gave up on {item} after {attempt} attempts")

        return attempt

    # ── Travel & interface ─────────────────────────────────────

    def _travel(self) -> bool:
        s = self.settings
        primary = s.market_location
        for attempt in range(s.navigation_attempts):
            target = primary if attempt == 0 else s.market_fallback_location
            if self._near(target) or self._near(primary):
                return True
            self._check_active()
            logger.info("Walking to market at %s (attempt %d/%d)",
                        target, attempt + 1, s.navigation_attempts)
            self.world.navigate_to(target, s.navigation_tolerance)

            def arrived(dest: Coordinate = target) -> bool:
                if self._near(dest):
                    return True
                if not self.world.is_moving():
                    self.world.navigate_to(dest, s.navigation_tolerance)
                return False

            outcome = wait_until(arrived, s.navigation_timeout_s, TICK_S, self.clock, self.active)
            if outcome is WaitOutcome.ABORTED:
                raise _Aborted()
            if outcome is WaitOutcome.MET:
                return True
        return False

    def _near(self, target: Coordinate) -> bool:
        return self.world.distance_to(target) <= self.settings.navigation_tolerance

    def _open(self) -> bool:
        if self.market.is_market_open():
            return True
        self._check_active()
        self.market.open_market()
        outcome = wait_until(self.market.is_market_open, self.settings.open_timeout_s,
                             TICK_S, self.clock, self.active)
        if outcome is WaitOutcome.ABORTED:
            raise _Aborted()
        return outcome is WaitOutcome.MET

    def _collect_ready(self):
        if self.market.has_ready_orders():
            self.market.collect()

    # ── Helpers ────────────────────────────────────────────────

    def _outcome(self, item: str, start_count: int, action: str, attempts: int,
                 aborted: bool = False) -> PurchaseOutcome:
        try:
            gained = max(0, self.world.inventory_count(item) - start_count)
        except Exception:
            logger.warning("Inventory read for %s failed", item, exc_info=True)
            gained = 0
        return PurchaseOutcome(gained, action, aborted, attempts)

    def _check_active(self):
        if not self.active():
            raise _Aborted()

    def _note(self, action: str):
        self._last_action = action
        logger.debug("market: %s", action)

    def _audit(self, category: str, message: str):
        if self.audit is not None:
            self.audit.record(category, message)
