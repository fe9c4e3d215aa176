"""
Quest Engine - Market Pricing

Offer calculation for market buys:

  offer = floor(reference * (1 + markup) * (1 + retry_markup) ** (attempt - 1))

The markup comes from the requirement's strategy. FIXED offers the
same flat price on every attempt and never escalates. Arithmetic is
exact (fractions) and truncated once at the end, so moderate pricing
at a reference of 100 offers 110 and then 115.
"""

from __future__ import annotations

import enum
import math
from fractions import Fraction

DEFAULT_FIXED_PRICE = 500
DEFAULT_RETRY_MARKUP_PCT = 5


class PricingStrategy(str, enum.Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
    INSTANT = "instant"
    EXTREME = "extreme"
    FIXED = "fixed"

    @property
    def markup_pct(self) -> int | None:
        """Percentage over the reference price; None for flat pricing."""
        return _MARKUPS.get(self)


_MARKUPS = {
    PricingStrategy.CONSERVATIVE: 5,
    PricingStrategy.MODERATE: 10,
    PricingStrategy.AGGRESSIVE: 15,
    PricingStrategy.INSTANT: 50,
    PricingStrategy.EXTREME: 200,
}


def offer_price(
    reference: int,
    strategy: PricingStrategy,
    attempt: int = 1,
    fixed_price: int = DEFAULT_FIXED_PRICE,
    retry_markup_pct: int = DEFAULT_RETRY_MARKUP_PCT,
) -> int:
    """Price to offer on the given attempt (1-based)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if strategy is PricingStrategy.FIXED:
        return fixed_price
    base = Fraction(reference) * Fraction(100 + strategy.markup_pct, 100)
    escalation = Fraction(100 + retry_markup_pct, 100) ** (attempt - 1)
    return max(1, math.floor(base * escalation))
