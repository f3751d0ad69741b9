"""
Unit tests for executor/exits.py -- exit rule ordering and sweeps.
"""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from executor.engine import Executor
from executor.exits import ExitMonitor, ExitRules
from executor.risk import RiskLedger
from scanner.models import (
    Asset,
    CloseOutcome,
    ContractSide,
    Direction,
    ExitReason,
    Opportunity,
    Position,
    PositionStatus,
    SidePrices,
    ThresholdMarket,
)
from state.store import SQLiteStore

ENTRY_TIME = 10_000.0


def _make_market(market_id: str = "m1") -> ThresholdMarket:
    return ThresholdMarket(
        market_id=market_id,
        question="Will Bitcoin be above $100,000?",
        asset=Asset.BTC,
        threshold=100_000.0,
        direction=Direction.ABOVE,
    )


def _make_position(side: ContractSide = ContractSide.YES, entry: float = 0.50) -> Position:
    return Position(
        market_id="m1",
        asset=Asset.BTC,
        side=side,
        entry_price=entry,
        quantity=400.0,
        asset_price_at_entry=101_000.0,
        entry_time=ENTRY_TIME,
    )


def _make_monitor(yes=None, no=0.5, spot=101_000.0, market=True, now=ENTRY_TIME + 10, store=None, executor=None):
    prices = SidePrices(yes, no) if yes is not None else None
    return ExitMonitor(
        store=store or MagicMock(),
        executor=executor or MagicMock(),
        side_prices=lambda market_id: prices,
        asset_price=lambda asset: spot,
        market_lookup=lambda market_id: _make_market(market_id) if market else None,
        rules=ExitRules(profit_target_pct=0.15, stop_loss_pct=0.05, max_hold_time_seconds=120.0),
        clock=lambda: now,
    )


class TestEvaluate:
    def test_profit(self):
        decision = _make_monitor(yes=0.58).evaluate(_make_position())
        assert decision.should_exit
        assert decision.reason == ExitReason.PROFIT
        assert decision.current_price == 0.58
        assert decision.pnl_pct == pytest.approx(0.16)

    def test_stop(self):
        decision = _make_monitor(yes=0.47).evaluate(_make_position())
        assert decision.reason == ExitReason.STOP

    def test_time(self):
        decision = _make_monitor(yes=0.51, now=ENTRY_TIME + 120).evaluate(_make_position())
        assert decision.reason == ExitReason.TIME

    def test_not_yet_time(self):
        decision = _make_monitor(yes=0.51, now=ENTRY_TIME + 119).evaluate(_make_position())
        assert not decision.should_exit

    def test_reversal(self):
        decision = _make_monitor(yes=0.51, spot=99_000.0).evaluate(_make_position())
        assert decision.reason == ExitReason.REVERSAL

    def test_no_reversal_without_market(self):
        decision = _make_monitor(yes=0.51, spot=99_000.0, market=False).evaluate(_make_position())
        assert not decision.should_exit

    def test_profit_beats_time(self):
        decision = _make_monitor(yes=0.60, now=ENTRY_TIME + 500).evaluate(_make_position())
        assert decision.reason == ExitReason.PROFIT

    def test_profit_beats_stop_when_both_match(self):
        # A negative stop distance makes any return below +50% a stop as well
        monitor = _make_monitor(yes=0.60)
        monitor.rules = ExitRules(profit_target_pct=0.10, stop_loss_pct=-0.5, max_hold_time_seconds=120.0)
        position = _make_position()
        reasons = {monitor.evaluate(position).reason for _ in range(5)}
        assert reasons == {ExitReason.PROFIT}

    def test_no_side_prices_uses_entry(self):
        decision = _make_monitor(yes=None).evaluate(_make_position())
        assert not decision.should_exit
        assert decision.current_price == 0.50
        assert decision.pnl_pct == 0.0

    def test_no_side_uses_no_price(self):
        decision = _make_monitor(yes=0.50, no=0.30).evaluate(_make_position(ContractSide.NO, entry=0.25))
        assert decision.reason == ExitReason.PROFIT
        assert decision.current_price == 0.30


class TestSweep:
    @pytest.mark.asyncio
    async def test_closes_only_triggered_positions(self, tmp_path: Path):
        store = SQLiteStore(tmp_path / "trader.db")
        try:
            executor = Executor(store, RiskLedger(store))
            positions = []
            for market_id, price in (("m1", 0.50), ("m2", 0.40)):
                opp = Opportunity(
                    market_id=market_id, asset=Asset.BTC, threshold=100_000.0,
                    source_price=101_000.0, expected_price=0.87, actual_price=price,
                    gap_pct=0.5, side=ContractSide.YES,
                )
                await store.insert_opportunity(opp)
                positions.append((await executor.execute_trade(opp)).position)

            quotes = {"m1": SidePrices(0.60, 0.40), "m2": SidePrices(0.41, 0.59)}
            monitor = ExitMonitor(
                store, executor,
                side_prices=quotes.get,
                asset_price=lambda asset: 101_000.0,
                market_lookup=_make_market,
            )

            result = await monitor.sweep()

            assert result.checked == 2
            assert result.closed == 1
            closed, reason, pnl = result.closed_positions[0]
            assert closed.market_id == "m1"
            assert reason == ExitReason.PROFIT
            assert pnl == pytest.approx(positions[0].quantity * 0.10)

            remaining = await store.get_open_positions()
            assert [p.market_id for p in remaining] == ["m2"]
            assert (await store.get_position(positions[0].position_id)).status == PositionStatus.CLOSED
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_failed_close_does_not_stop_sweep(self):
        store = MagicMock()

        async def open_positions():
            return [_make_position(), _make_position()]

        store.get_open_positions = open_positions
        executor = MagicMock()

        async def close(position, price, reason):
            return CloseOutcome(success=False, error="Persistence failure")

        executor.close_position = close
        result = await _make_monitor(yes=0.60, store=store, executor=executor).sweep()
        assert result.checked == 2
        assert result.closed == 0


class TestPositionSummary:
    @pytest.mark.asyncio
    async def test_near_limit_flags(self):
        store = MagicMock()

        async def open_positions():
            return [_make_position()]

        store.get_open_positions = open_positions
        monitor = _make_monitor(yes=0.565, now=ENTRY_TIME + 100, store=store)

        summary = await monitor.position_summary()

        assert len(summary) == 1
        entry = summary[0]
        assert entry["hold_time"] == pytest.approx(100.0)
        assert entry["near_profit"] is True
        assert entry["near_stop"] is False
        assert entry["near_timeout"] is True
