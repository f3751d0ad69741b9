"""
Mispricing model for crypto threshold markets.

The fair YES price of "Will BTC be above $X" is read off a saturating curve of
the relative distance between the live spot price and X: above the threshold
it starts at 0.85 and climbs toward 0.98, at or below it starts at 0.50 and
falls toward 0.05. BELOW markets use the mirror image.

A market is mispriced when one side's observed ask trails its fair price by at
least the minimum relative gap. We only ever buy the underpriced side.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

from scanner.models import (
    AssetPrice,
    ContractSide,
    Direction,
    MispricingResult,
    Opportunity,
    ThresholdMarket,
)

logger = logging.getLogger(__name__)

PROXIMITY_WINDOW = 0.05
MOVE_TRIGGER = 0.01


@dataclass(frozen=True)
class PricingCurve:
    """Parameters of the expected-probability curve."""
    base_high: float = 0.85
    cap_high: float = 0.98
    k_high: float = 2.0
    bonus_cap: float = 0.13
    base_low: float = 0.50
    cap_low: float = 0.05
    k_low: float = 4.0
    penalty_cap: float = 0.45


DEFAULT_CURVE = PricingCurve()


def expected_probability(
    price: float,
    threshold: float,
    direction: Direction,
    curve: PricingCurve = DEFAULT_CURVE,
) -> float:
    """
    Fair YES price for a threshold market given the current spot price.

    The comparison is strict on both sides: a price exactly at the threshold
    is "not yet across" and gets `base_low`.
    """
    distance = (price - threshold) / threshold

    if direction == Direction.ABOVE:
        favorable = price > threshold
    else:
        favorable = price < threshold

    if favorable:
        bonus = min(curve.bonus_cap, abs(distance) * curve.k_high)
        return min(curve.cap_high, curve.base_high + bonus)
    penalty = min(curve.penalty_cap, abs(distance) * curve.k_low)
    return max(curve.cap_low, curve.base_low - penalty)


def detect_mispricing(
    market: ThresholdMarket,
    asset_price: AssetPrice,
    yes_price: float,
    no_price: float,
    min_gap: float = 0.20,
    curve: PricingCurve = DEFAULT_CURVE,
) -> MispricingResult:
    """
    Compare fair YES/NO prices with the observed asks.

    Gaps are relative: (expected - actual) / actual. The side with the larger
    absolute gap is chosen (YES on ties); it must clear `min_gap` and be
    positive, i.e. underpriced.
    """
    if yes_price <= 0 or no_price <= 0:
        return MispricingResult(
            has_opportunity=False,
            reason=f"Invalid observed prices: YES={yes_price} NO={no_price}",
        )

    expected_yes = expected_probability(asset_price.price, market.threshold, market.direction, curve)
    expected_no = 1.0 - expected_yes

    yes_gap = (expected_yes - yes_price) / yes_price
    no_gap = (expected_no - no_price) / no_price

    if abs(yes_gap) >= abs(no_gap):
        side, gap, expected, actual = ContractSide.YES, yes_gap, expected_yes, yes_price
    else:
        side, gap, expected, actual = ContractSide.NO, no_gap, expected_no, no_price

    if abs(gap) < min_gap:
        return MispricingResult(
            has_opportunity=False,
            reason=f"Gap too small: {abs(gap) * 100:.1f}% < {min_gap * 100:.0f}%",
            expected_yes=expected_yes,
            expected_no=expected_no,
        )
    if gap < 0:
        return MispricingResult(
            has_opportunity=False,
            reason=f"{side.value} is overpriced, not underpriced",
            expected_yes=expected_yes,
            expected_no=expected_no,
        )

    opportunity = Opportunity(
        market_id=market.market_id,
        asset=asset_price.asset,
        threshold=market.threshold,
        source_price=asset_price.price,
        expected_price=expected,
        actual_price=actual,
        gap_pct=gap,
        side=side,
        detected_at=time.time(),
    )
    logger.debug(
        "Mispricing %s %s: expected %.3f vs ask %.3f (gap %.1f%%)",
        market.market_id, side.value, expected, actual, gap * 100,
    )
    return MispricingResult(
        has_opportunity=True,
        opportunity=opportunity,
        expected_yes=expected_yes,
        expected_no=expected_no,
    )


def check_threshold_crossing(previous_price: float, current_price: float, threshold: float) -> str | None:
    """'UP' or 'DOWN' when the move crossed the threshold, else None."""
    if previous_price <= threshold < current_price:
        return "UP"
    if previous_price >= threshold > current_price:
        return "DOWN"
    return None


def threshold_proximity(price: float, threshold: float) -> float:
    """1.0 at the threshold, decaying exponentially with relative distance."""
    distance = abs(price - threshold) / threshold
    return math.exp(-distance * 10)


def might_create_opportunity(market: ThresholdMarket, previous_price: float, current_price: float) -> bool:
    """Cheap pre-filter: crossing, near the threshold, or a >1% move."""
    if check_threshold_crossing(previous_price, current_price, market.threshold):
        return True
    if abs(current_price - market.threshold) / market.threshold < PROXIMITY_WINDOW:
        return True
    if previous_price > 0 and abs(current_price - previous_price) / previous_price > MOVE_TRIGGER:
        return True
    return False
