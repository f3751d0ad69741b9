"""
Position sizing from gap and volume tiers with a hard cap.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

# (minimum, multiplier), highest tier first. Only the first matching tier applies.
GAP_TIERS: tuple[tuple[float, float], ...] = (
    (0.40, 1.5),
    (0.30, 1.25),
    (0.20, 1.0),
)
VOLUME_TIERS: tuple[tuple[float, float], ...] = (
    (200_000.0, 1.2),
    (100_000.0, 1.1),
    (50_000.0, 1.0),
)


def tier_multiplier(value: float, tiers: tuple[tuple[float, float], ...]) -> float:
    """Multiplier of the first tier whose minimum `value` reaches, else 1.0."""
    for minimum, multiplier in tiers:
        if value >= minimum:
            return multiplier
    return 1.0


def compute_position_size(
    gap_pct: float,
    market_volume: float,
    base_position_size: float,
    max_position_size: float,
) -> float:
    """
    Dollar size for a trade: base x gap tier x volume tier, capped at
    max_position_size. Gap is the absolute relative gap (0.35 = 35%).
    """
    gap_mult = tier_multiplier(abs(gap_pct), GAP_TIERS)
    volume_mult = tier_multiplier(market_volume, VOLUME_TIERS)
    size = min(max_position_size, base_position_size * gap_mult * volume_mult)
    logger.debug(
        "Sizing: gap=%.1f%% x%.2f volume=$%.0f x%.2f -> $%.2f",
        gap_pct * 100, gap_mult, market_volume, volume_mult, size,
    )
    return size
