"""Tests for state/store.py -- SQLite repository for markets, opportunities and positions."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import pytest

from scanner.models import (
    Asset,
    ContractSide,
    Direction,
    ExitReason,
    MarketStatus,
    Opportunity,
    OpportunityStatus,
    Position,
    PositionStatus,
    ThresholdMarket,
)
from state.store import PersistenceError, Repository, SQLiteStore


@pytest.fixture
def store(tmp_path: Path):
    s = SQLiteStore(db_path=tmp_path / "trader.db")
    yield s
    s.close()


def _make_market(market_id: str = "m1", asset: Asset = Asset.BTC, volume: float = 80_000.0) -> ThresholdMarket:
    return ThresholdMarket(
        market_id=market_id,
        question="Will Bitcoin be above $100,000 by June 30?",
        asset=asset,
        threshold=100_000.0,
        direction=Direction.ABOVE,
        resolution_time=datetime(2026, 6, 30, 23, 59, 59, tzinfo=timezone.utc),
        volume_24h=volume,
        is_whitelisted=True,
        yes_token_id=f"{market_id}_yes",
        no_token_id=f"{market_id}_no",
        discovered_at=1_000.0,
    )


def _make_opportunity(market_id: str = "m1") -> Opportunity:
    return Opportunity(
        market_id=market_id,
        asset=Asset.BTC,
        threshold=100_000.0,
        source_price=101_000.0,
        expected_price=0.87,
        actual_price=0.55,
        gap_pct=0.58,
        side=ContractSide.YES,
        detected_at=2_000.0,
    )


def _make_position(opportunity_id: str = "", entry_time: float = 3_000.0, qty: float = 400.0) -> Position:
    return Position(
        market_id="m1",
        asset=Asset.BTC,
        side=ContractSide.YES,
        entry_price=0.50,
        quantity=qty,
        asset_price_at_entry=101_000.0,
        opportunity_id=opportunity_id,
        entry_time=entry_time,
    )


class TestProtocol:
    def test_is_repository(self, store: SQLiteStore) -> None:
        assert isinstance(store, Repository)


class TestMarkets:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store: SQLiteStore) -> None:
        await store.upsert_market(_make_market())
        market = await store.get_market("m1")
        assert market == _make_market()

    @pytest.mark.asyncio
    async def test_get_missing(self, store: SQLiteStore) -> None:
        assert await store.get_market("nope") is None

    @pytest.mark.asyncio
    async def test_upsert_keeps_discovered_at(self, store: SQLiteStore) -> None:
        await store.upsert_market(_make_market())
        await store.upsert_market(replace(_make_market(), volume_24h=99_000.0, discovered_at=5_000.0))
        market = await store.get_market("m1")
        assert market.volume_24h == 99_000.0
        assert market.discovered_at == 1_000.0

    @pytest.mark.asyncio
    async def test_active_and_by_asset(self, store: SQLiteStore) -> None:
        await store.upsert_market(_make_market("m1", volume=60_000.0))
        await store.upsert_market(_make_market("m2", volume=90_000.0))
        await store.upsert_market(_make_market("m3", asset=Asset.ETH))
        await store.set_market_status("m1", MarketStatus.RESOLVED)

        active = await store.get_active_markets()
        assert [m.market_id for m in active] == ["m2", "m3"]
        btc = await store.get_markets_by_asset(Asset.BTC)
        assert [m.market_id for m in btc] == ["m2"]

    @pytest.mark.asyncio
    async def test_mark_missing_inactive(self, store: SQLiteStore) -> None:
        for mid in ("m1", "m2", "m3"):
            await store.upsert_market(_make_market(mid))
        retired = await store.mark_missing_inactive({"m2"})
        assert retired == 2
        assert (await store.get_market("m1")).status == MarketStatus.INACTIVE
        assert (await store.get_market("m2")).status == MarketStatus.ACTIVE
        assert await store.mark_missing_inactive({"m2"}) == 0


class TestOpportunities:
    @pytest.mark.asyncio
    async def test_insert_and_update(self, store: SQLiteStore) -> None:
        opp = _make_opportunity()
        await store.insert_opportunity(opp)
        await store.update_opportunity_status(opp.opportunity_id, OpportunityStatus.SKIPPED, "cooldown")

        recent = await store.get_recent_opportunities()
        assert len(recent) == 1
        assert recent[0].opportunity_id == opp.opportunity_id
        assert recent[0].status == OpportunityStatus.SKIPPED
        assert recent[0].skip_reason == "cooldown"
        assert recent[0].side == ContractSide.YES

    @pytest.mark.asyncio
    async def test_recent_newest_first(self, store: SQLiteStore) -> None:
        older = replace(_make_opportunity(), opportunity_id="a", detected_at=1.0)
        newer = replace(_make_opportunity(), opportunity_id="b", detected_at=2.0)
        await store.insert_opportunity(older)
        await store.insert_opportunity(newer)
        assert [o.opportunity_id for o in await store.get_recent_opportunities(limit=1)] == ["b"]

    @pytest.mark.asyncio
    async def test_duplicate_raises_persistence_error(self, store: SQLiteStore) -> None:
        opp = _make_opportunity()
        await store.insert_opportunity(opp)
        with pytest.raises(PersistenceError):
            await store.insert_opportunity(opp)


class TestPositions:
    @pytest.mark.asyncio
    async def test_open_position_marks_opportunity_executed(self, store: SQLiteStore) -> None:
        opp = _make_opportunity()
        await store.insert_opportunity(opp)
        position = _make_position(opp.opportunity_id)
        await store.open_position(position, opp.opportunity_id)

        stored = await store.get_position(position.position_id)
        assert stored == position
        assert (await store.get_recent_opportunities())[0].status == OpportunityStatus.EXECUTED
        assert [p.position_id for p in await store.get_open_positions()] == [position.position_id]

    @pytest.mark.asyncio
    async def test_failed_open_rolls_back(self, store: SQLiteStore) -> None:
        first = _make_opportunity()
        second = _make_opportunity()
        await store.insert_opportunity(first)
        await store.insert_opportunity(second)
        position = _make_position(first.opportunity_id)
        await store.open_position(position, first.opportunity_id)

        with pytest.raises(PersistenceError):
            await store.open_position(position, second.opportunity_id)

        statuses = {o.opportunity_id: o.status for o in await store.get_recent_opportunities()}
        assert statuses[second.opportunity_id] == OpportunityStatus.DETECTED

    @pytest.mark.asyncio
    async def test_close_lifecycle(self, store: SQLiteStore) -> None:
        position = _make_position()
        await store.open_position(position, "")

        assert await store.close_position(position.position_id, 0.6, 3_100.0, ExitReason.PROFIT, 40.0) is False
        assert await store.claim_close(position.position_id) is True
        assert await store.claim_close(position.position_id) is False
        assert [p.position_id for p in await store.get_positions_by_status(PositionStatus.CLOSING)] == [
            position.position_id
        ]

        assert await store.close_position(position.position_id, 0.6, 3_100.0, ExitReason.PROFIT, 40.0) is True
        closed = await store.get_position(position.position_id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_reason == ExitReason.PROFIT
        assert closed.exit_price == 0.6
        assert closed.pnl == 40.0
        assert await store.get_open_positions() == []


class TestAggregates:
    @pytest.mark.asyncio
    async def test_position_stats(self, store: SQLiteStore) -> None:
        open_pos = _make_position(entry_time=3_000.0, qty=400.0)        # $200
        closing_pos = _make_position(entry_time=3_000.0, qty=200.0)     # $100
        closed_today = _make_position(entry_time=2_500.0, qty=100.0)
        closed_before = _make_position(entry_time=500.0, qty=100.0)
        for p in (open_pos, closing_pos, closed_today, closed_before):
            await store.open_position(p, "")

        await store.claim_close(closing_pos.position_id)
        await store.claim_close(closed_today.position_id)
        await store.close_position(closed_today.position_id, 0.4, 2_600.0, ExitReason.STOP, -10.0)
        await store.claim_close(closed_before.position_id)
        await store.close_position(closed_before.position_id, 0.7, 600.0, ExitReason.PROFIT, 20.0)

        stats = await store.get_position_stats(since=1_000.0)
        assert stats.open_positions == 2
        assert stats.total_exposure == pytest.approx(300.0)
        assert stats.today_pnl == pytest.approx(-10.0)
        assert stats.today_trades == 3

    @pytest.mark.asyncio
    async def test_all_time_stats(self, store: SQLiteStore) -> None:
        for pnl in (30.0, -10.0, 5.0):
            p = _make_position()
            await store.open_position(p, "")
            await store.claim_close(p.position_id)
            await store.close_position(p.position_id, 0.5, 3_100.0, ExitReason.TIME, pnl)

        stats = await store.get_all_time_stats()
        assert stats["total_trades"] == 3
        assert stats["winning_trades"] == 2
        assert stats["win_rate_pct"] == pytest.approx(66.7)
        assert stats["total_pnl"] == pytest.approx(25.0)
        assert stats["best_trade"] == pytest.approx(30.0)
        assert stats["worst_trade"] == pytest.approx(-10.0)

    @pytest.mark.asyncio
    async def test_all_time_stats_empty(self, store: SQLiteStore) -> None:
        stats = await store.get_all_time_stats()
        assert stats["total_trades"] == 0
        assert stats["win_rate_pct"] == 0.0
