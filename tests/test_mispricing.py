"""
Unit tests for scanner/mispricing.py -- fair-price curve, gap detection and
the scan pre-filters.
"""

import math

import pytest

from scanner.mispricing import (
    PricingCurve,
    check_threshold_crossing,
    detect_mispricing,
    expected_probability,
    might_create_opportunity,
    threshold_proximity,
)
from scanner.models import Asset, AssetPrice, ContractSide, Direction, OpportunityStatus, ThresholdMarket


def _make_market(threshold: float = 100_000.0, direction: Direction = Direction.ABOVE) -> ThresholdMarket:
    return ThresholdMarket(
        market_id="m1",
        question="Will Bitcoin be above $100,000?",
        asset=Asset.BTC,
        threshold=threshold,
        direction=direction,
        volume_24h=80_000.0,
    )


def _price(value: float) -> AssetPrice:
    return AssetPrice(asset=Asset.BTC, price=value, timestamp=0.0)


class TestExpectedProbability:
    def test_just_above_threshold(self):
        assert expected_probability(101_000, 100_000, Direction.ABOVE) == pytest.approx(0.87)

    def test_at_threshold_is_not_across(self):
        assert expected_probability(100_000, 100_000, Direction.ABOVE) == pytest.approx(0.50)
        assert expected_probability(100_000, 100_000, Direction.BELOW) == pytest.approx(0.50)

    def test_below_threshold(self):
        assert expected_probability(90_000, 100_000, Direction.ABOVE) == pytest.approx(0.10)

    def test_caps(self):
        assert expected_probability(200_000, 100_000, Direction.ABOVE) == pytest.approx(0.98)
        assert expected_probability(50_000, 100_000, Direction.ABOVE) == pytest.approx(0.05)

    def test_below_market_mirrors(self):
        assert expected_probability(95_000, 100_000, Direction.BELOW) == pytest.approx(0.95)
        assert expected_probability(105_000, 100_000, Direction.BELOW) == pytest.approx(0.30)

    def test_custom_curve(self):
        curve = PricingCurve(base_high=0.80)
        assert expected_probability(101_000, 100_000, Direction.ABOVE, curve) == pytest.approx(0.82)


class TestDetectMispricing:
    def test_yes_underpriced(self):
        result = detect_mispricing(_make_market(), _price(101_000), 0.55, 0.15)
        assert result.has_opportunity
        opp = result.opportunity
        assert opp.side == ContractSide.YES
        assert opp.expected_price == pytest.approx(0.87)
        assert opp.actual_price == 0.55
        assert opp.gap_pct == pytest.approx((0.87 - 0.55) / 0.55)
        assert opp.source_price == 101_000
        assert opp.threshold == 100_000
        assert opp.status == OpportunityStatus.DETECTED

    def test_larger_gap_on_overpriced_side_yields_nothing(self):
        # NO at 0.45 against a fair 0.13 dominates and is overpriced
        result = detect_mispricing(_make_market(), _price(101_000), 0.55, 0.45)
        assert not result.has_opportunity
        assert "NO is overpriced" in result.reason
        assert result.expected_yes == pytest.approx(0.87)
        assert result.expected_no == pytest.approx(0.13)

    def test_no_underpriced(self):
        result = detect_mispricing(_make_market(), _price(90_000), 0.10, 0.60)
        assert result.has_opportunity
        assert result.opportunity.side == ContractSide.NO
        assert result.opportunity.gap_pct == pytest.approx(0.5)

    def test_gap_too_small(self):
        result = detect_mispricing(_make_market(), _price(101_000), 0.80, 0.13)
        assert not result.has_opportunity
        assert result.reason.startswith("Gap too small")

    def test_min_gap_configurable(self):
        result = detect_mispricing(_make_market(), _price(101_000), 0.80, 0.13, min_gap=0.05)
        assert result.has_opportunity

    def test_tie_prefers_yes(self):
        result = detect_mispricing(_make_market(), _price(100_000), 0.40, 0.40)
        assert result.has_opportunity
        assert result.opportunity.side == ContractSide.YES

    def test_invalid_prices(self):
        result = detect_mispricing(_make_market(), _price(101_000), 0.0, 0.15)
        assert not result.has_opportunity
        assert "Invalid" in result.reason

    def test_below_market(self):
        market = _make_market(direction=Direction.BELOW)
        result = detect_mispricing(market, _price(95_000), 0.60, 0.05)
        assert result.has_opportunity
        assert result.opportunity.side == ContractSide.YES
        assert result.opportunity.expected_price == pytest.approx(0.95)


class TestPreFilters:
    def test_crossing(self):
        assert check_threshold_crossing(99_000, 101_000, 100_000) == "UP"
        assert check_threshold_crossing(101_000, 99_000, 100_000) == "DOWN"
        assert check_threshold_crossing(100_000, 100_500, 100_000) == "UP"
        assert check_threshold_crossing(101_000, 102_000, 100_000) is None

    def test_proximity(self):
        assert threshold_proximity(100_000, 100_000) == pytest.approx(1.0)
        assert threshold_proximity(110_000, 100_000) == pytest.approx(math.exp(-1))

    def test_might_create_opportunity(self):
        market = _make_market()
        assert might_create_opportunity(market, 99_000, 101_000)      # crossing
        assert might_create_opportunity(market, 97_000, 97_100)       # within 5%
        assert might_create_opportunity(market, 80_000, 81_000)       # >1% move
        assert not might_create_opportunity(market, 80_000, 80_100)


class TestCurveProperties:
    def test_monotonic_and_bounded(self):
        above = [expected_probability(p, 100_000, Direction.ABOVE) for p in range(100_500, 130_000, 2_500)]
        below = [expected_probability(p, 100_000, Direction.ABOVE) for p in range(70_000, 100_001, 2_500)]
        assert above == sorted(above)
        assert below == sorted(below)
        assert all(0.85 <= p <= 0.98 for p in above)
        assert all(0.05 <= p <= 0.50 for p in below)

    def test_above_below_mirror(self):
        for price in (90_000, 99_000, 101_000, 110_000):
            mirrored = 2 * 100_000 - price
            assert expected_probability(price, 100_000, Direction.ABOVE) == pytest.approx(
                expected_probability(mirrored, 100_000, Direction.BELOW)
            )

    def test_crossing_scenario(self):
        market = _make_market()
        assert expected_probability(99_500, 100_000, Direction.ABOVE) == pytest.approx(0.48)
        assert might_create_opportunity(market, 99_500, 101_000)
        result = detect_mispricing(market, _price(101_000), 0.55, 0.15)
        assert result.opportunity.side == ContractSide.YES
        assert result.expected_yes == pytest.approx(0.87)
