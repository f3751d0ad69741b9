"""
Repository for markets, opportunities and positions. SQLite in WAL mode.

The trading core only sees the async `Repository` protocol. `SQLiteStore`
implements it on one shared connection guarded by a lock; every call runs in
a worker thread via asyncio.to_thread so the event loop never blocks on disk.
Writes that must land together (position open + opportunity EXECUTED) are a
single transaction.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from scanner.models import (
    Asset,
    ContractSide,
    Direction,
    ExitReason,
    MarketStatus,
    Opportunity,
    OpportunityStatus,
    Position,
    PositionStats,
    PositionStatus,
    ThresholdMarket,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("trader.db")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS threshold_markets (
    market_id TEXT PRIMARY KEY,
    question TEXT NOT NULL,
    asset TEXT NOT NULL,
    threshold REAL NOT NULL,
    direction TEXT NOT NULL,
    resolution_time TEXT,
    volume_24h REAL NOT NULL DEFAULT 0,
    is_whitelisted INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    yes_token_id TEXT NOT NULL DEFAULT '',
    no_token_id TEXT NOT NULL DEFAULT '',
    discovered_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_markets_asset_status ON threshold_markets(asset, status);

CREATE TABLE IF NOT EXISTS opportunities (
    opportunity_id TEXT PRIMARY KEY,
    market_id TEXT NOT NULL,
    asset TEXT NOT NULL,
    threshold REAL NOT NULL,
    source_price REAL NOT NULL,
    expected_price REAL NOT NULL,
    actual_price REAL NOT NULL,
    gap_pct REAL NOT NULL,
    side TEXT NOT NULL,
    detected_at REAL NOT NULL,
    status TEXT NOT NULL,
    skip_reason TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_opps_detected ON opportunities(detected_at);

CREATE TABLE IF NOT EXISTS positions (
    position_id TEXT PRIMARY KEY,
    opportunity_id TEXT NOT NULL DEFAULT '',
    market_id TEXT NOT NULL,
    asset TEXT NOT NULL,
    side TEXT NOT NULL,
    entry_price REAL NOT NULL,
    quantity REAL NOT NULL,
    entry_time REAL NOT NULL,
    asset_price_at_entry REAL NOT NULL,
    exit_price REAL,
    exit_time REAL,
    exit_reason TEXT,
    pnl REAL,
    status TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
CREATE INDEX IF NOT EXISTS idx_positions_exit_time ON positions(exit_time);
"""


class PersistenceError(Exception):
    """A repository read or write failed."""


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


@runtime_checkable
class Repository(Protocol):
    """What the trading core needs from persistence."""

    async def upsert_market(self, market: ThresholdMarket) -> None: ...
    async def get_market(self, market_id: str) -> ThresholdMarket | None: ...
    async def get_active_markets(self) -> list[ThresholdMarket]: ...
    async def get_markets_by_asset(self, asset: Asset) -> list[ThresholdMarket]: ...
    async def set_market_status(self, market_id: str, status: MarketStatus) -> None: ...
    async def mark_missing_inactive(self, seen_ids: set[str]) -> int: ...

    async def insert_opportunity(self, opportunity: Opportunity) -> None: ...
    async def update_opportunity_status(
        self, opportunity_id: str, status: OpportunityStatus, skip_reason: str = "",
    ) -> None: ...
    async def get_recent_opportunities(self, limit: int = 20) -> list[Opportunity]: ...

    async def open_position(self, position: Position, opportunity_id: str) -> None: ...
    async def get_open_positions(self) -> list[Position]: ...
    async def get_position(self, position_id: str) -> Position | None: ...
    async def get_positions_by_status(self, status: PositionStatus) -> list[Position]: ...
    async def claim_close(self, position_id: str) -> bool: ...
    async def close_position(
        self, position_id: str, exit_price: float, exit_time: float,
        exit_reason: ExitReason, pnl: float,
    ) -> bool: ...

    async def get_position_stats(self, since: float) -> PositionStats: ...
    async def get_all_time_stats(self) -> dict[str, float]: ...


def _market_from_row(row: dict[str, Any]) -> ThresholdMarket:
    resolution = row["resolution_time"]
    return ThresholdMarket(
        market_id=row["market_id"],
        question=row["question"],
        asset=Asset(row["asset"]),
        threshold=row["threshold"],
        direction=Direction(row["direction"]),
        resolution_time=datetime.fromisoformat(resolution) if resolution else None,
        volume_24h=row["volume_24h"],
        is_whitelisted=bool(row["is_whitelisted"]),
        status=MarketStatus(row["status"]),
        yes_token_id=row["yes_token_id"],
        no_token_id=row["no_token_id"],
        discovered_at=row["discovered_at"],
    )


def _opportunity_from_row(row: dict[str, Any]) -> Opportunity:
    return Opportunity(
        opportunity_id=row["opportunity_id"],
        market_id=row["market_id"],
        asset=Asset(row["asset"]),
        threshold=row["threshold"],
        source_price=row["source_price"],
        expected_price=row["expected_price"],
        actual_price=row["actual_price"],
        gap_pct=row["gap_pct"],
        side=ContractSide(row["side"]),
        detected_at=row["detected_at"],
        status=OpportunityStatus(row["status"]),
        skip_reason=row["skip_reason"],
    )


def _position_from_row(row: dict[str, Any]) -> Position:
    return Position(
        position_id=row["position_id"],
        opportunity_id=row["opportunity_id"],
        market_id=row["market_id"],
        asset=Asset(row["asset"]),
        side=ContractSide(row["side"]),
        entry_price=row["entry_price"],
        quantity=row["quantity"],
        entry_time=row["entry_time"],
        asset_price_at_entry=row["asset_price_at_entry"],
        exit_price=row["exit_price"],
        exit_time=row["exit_time"],
        exit_reason=ExitReason(row["exit_reason"]) if row["exit_reason"] else None,
        pnl=row["pnl"],
        status=PositionStatus(row["status"]),
    )


class SQLiteStore:
    """
    SQLite-backed Repository. Thread-safe for single-writer usage.

    Usage:
        store = SQLiteStore("trader.db")
        await store.upsert_market(market)
        stats = await store.get_position_stats(since=day_start)
        store.close()
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = _dict_factory
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call off the loop; sqlite errors become PersistenceError."""
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise PersistenceError(f"{fn.__name__}: {e}") from e

    def _write(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            conn = self._get_conn()
            try:
                cur = conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            return cur.rowcount

    def _read(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            return self._get_conn().execute(sql, params).fetchall()

    # ── Markets ──

    def _upsert_market(self, market: ThresholdMarket) -> None:
        resolution = market.resolution_time.isoformat() if market.resolution_time else None
        self._write(
            "INSERT INTO threshold_markets "
            "(market_id, question, asset, threshold, direction, resolution_time, volume_24h, "
            " is_whitelisted, status, yes_token_id, no_token_id, discovered_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(market_id) DO UPDATE SET "
            " question = excluded.question, asset = excluded.asset, "
            " threshold = excluded.threshold, direction = excluded.direction, "
            " resolution_time = excluded.resolution_time, volume_24h = excluded.volume_24h, "
            " is_whitelisted = excluded.is_whitelisted, status = excluded.status, "
            " yes_token_id = excluded.yes_token_id, no_token_id = excluded.no_token_id, "
            " updated_at = excluded.updated_at",
            (
                market.market_id, market.question, market.asset.value, market.threshold,
                market.direction.value, resolution, market.volume_24h,
                int(market.is_whitelisted), market.status.value, market.yes_token_id,
                market.no_token_id, market.discovered_at, time.time(),
            ),
        )

    async def upsert_market(self, market: ThresholdMarket) -> None:
        await self._run(self._upsert_market, market)

    def _get_market(self, market_id: str) -> ThresholdMarket | None:
        rows = self._read("SELECT * FROM threshold_markets WHERE market_id = ?", (market_id,))
        return _market_from_row(rows[0]) if rows else None

    async def get_market(self, market_id: str) -> ThresholdMarket | None:
        return await self._run(self._get_market, market_id)

    def _get_active_markets(self) -> list[ThresholdMarket]:
        rows = self._read(
            "SELECT * FROM threshold_markets WHERE status = ? ORDER BY volume_24h DESC",
            (MarketStatus.ACTIVE.value,),
        )
        return [_market_from_row(r) for r in rows]

    async def get_active_markets(self) -> list[ThresholdMarket]:
        return await self._run(self._get_active_markets)

    def _get_markets_by_asset(self, asset: Asset) -> list[ThresholdMarket]:
        rows = self._read(
            "SELECT * FROM threshold_markets WHERE asset = ? AND status = ? "
            "ORDER BY volume_24h DESC",
            (asset.value, MarketStatus.ACTIVE.value),
        )
        return [_market_from_row(r) for r in rows]

    async def get_markets_by_asset(self, asset: Asset) -> list[ThresholdMarket]:
        return await self._run(self._get_markets_by_asset, asset)

    def _set_market_status(self, market_id: str, status: MarketStatus) -> None:
        self._write(
            "UPDATE threshold_markets SET status = ?, updated_at = ? WHERE market_id = ?",
            (status.value, time.time(), market_id),
        )

    async def set_market_status(self, market_id: str, status: MarketStatus) -> None:
        await self._run(self._set_market_status, market_id, status)

    def _mark_missing_inactive(self, seen_ids: set[str]) -> int:
        with self._lock:
            conn = self._get_conn()
            active = conn.execute(
                "SELECT market_id FROM threshold_markets WHERE status = ?",
                (MarketStatus.ACTIVE.value,),
            ).fetchall()
            missing = [r["market_id"] for r in active if r["market_id"] not in seen_ids]
            if not missing:
                return 0
            now = time.time()
            try:
                conn.executemany(
                    "UPDATE threshold_markets SET status = ?, updated_at = ? WHERE market_id = ?",
                    [(MarketStatus.INACTIVE.value, now, mid) for mid in missing],
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            return len(missing)

    async def mark_missing_inactive(self, seen_ids: set[str]) -> int:
        return await self._run(self._mark_missing_inactive, set(seen_ids))

    # ── Opportunities ──

    def _insert_opportunity(self, opp: Opportunity) -> None:
        self._write(
            "INSERT INTO opportunities "
            "(opportunity_id, market_id, asset, threshold, source_price, expected_price, "
            " actual_price, gap_pct, side, detected_at, status, skip_reason) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                opp.opportunity_id, opp.market_id, opp.asset.value, opp.threshold,
                opp.source_price, opp.expected_price, opp.actual_price, opp.gap_pct,
                opp.side.value, opp.detected_at, opp.status.value, opp.skip_reason,
            ),
        )

    async def insert_opportunity(self, opportunity: Opportunity) -> None:
        await self._run(self._insert_opportunity, opportunity)

    def _update_opportunity_status(
        self, opportunity_id: str, status: OpportunityStatus, skip_reason: str,
    ) -> None:
        self._write(
            "UPDATE opportunities SET status = ?, skip_reason = ? WHERE opportunity_id = ?",
            (status.value, skip_reason, opportunity_id),
        )

    async def update_opportunity_status(
        self, opportunity_id: str, status: OpportunityStatus, skip_reason: str = "",
    ) -> None:
        await self._run(self._update_opportunity_status, opportunity_id, status, skip_reason)

    def _get_recent_opportunities(self, limit: int) -> list[Opportunity]:
        rows = self._read(
            "SELECT * FROM opportunities ORDER BY detected_at DESC LIMIT ?", (limit,),
        )
        return [_opportunity_from_row(r) for r in rows]

    async def get_recent_opportunities(self, limit: int = 20) -> list[Opportunity]:
        return await self._run(self._get_recent_opportunities, limit)

    # ── Positions ──

    def _open_position(self, position: Position, opportunity_id: str) -> None:
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute(
                    "INSERT INTO positions "
                    "(position_id, opportunity_id, market_id, asset, side, entry_price, "
                    " quantity, entry_time, asset_price_at_entry, status) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        position.position_id, opportunity_id, position.market_id,
                        position.asset.value, position.side.value, position.entry_price,
                        position.quantity, position.entry_time,
                        position.asset_price_at_entry, PositionStatus.OPEN.value,
                    ),
                )
                conn.execute(
                    "UPDATE opportunities SET status = ? WHERE opportunity_id = ?",
                    (OpportunityStatus.EXECUTED.value, opportunity_id),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

    async def open_position(self, position: Position, opportunity_id: str) -> None:
        await self._run(self._open_position, position, opportunity_id)

    def _get_positions_by_status(self, status: PositionStatus) -> list[Position]:
        rows = self._read(
            "SELECT * FROM positions WHERE status = ? ORDER BY entry_time", (status.value,),
        )
        return [_position_from_row(r) for r in rows]

    async def get_positions_by_status(self, status: PositionStatus) -> list[Position]:
        return await self._run(self._get_positions_by_status, status)

    async def get_open_positions(self) -> list[Position]:
        return await self._run(self._get_positions_by_status, PositionStatus.OPEN)

    def _get_position(self, position_id: str) -> Position | None:
        rows = self._read("SELECT * FROM positions WHERE position_id = ?", (position_id,))
        return _position_from_row(rows[0]) if rows else None

    async def get_position(self, position_id: str) -> Position | None:
        return await self._run(self._get_position, position_id)

    def _claim_close(self, position_id: str) -> bool:
        changed = self._write(
            "UPDATE positions SET status = ? WHERE position_id = ? AND status = ?",
            (PositionStatus.CLOSING.value, position_id, PositionStatus.OPEN.value),
        )
        return changed == 1

    async def claim_close(self, position_id: str) -> bool:
        """OPEN -> CLOSING. Only one caller ever gets True for a position."""
        return await self._run(self._claim_close, position_id)

    def _close_position(
        self, position_id: str, exit_price: float, exit_time: float,
        exit_reason: ExitReason, pnl: float,
    ) -> bool:
        changed = self._write(
            "UPDATE positions SET exit_price = ?, exit_time = ?, exit_reason = ?, pnl = ?, "
            "status = ? WHERE position_id = ? AND status = ?",
            (
                exit_price, exit_time, exit_reason.value, pnl,
                PositionStatus.CLOSED.value, position_id, PositionStatus.CLOSING.value,
            ),
        )
        return changed == 1

    async def close_position(
        self, position_id: str, exit_price: float, exit_time: float,
        exit_reason: ExitReason, pnl: float,
    ) -> bool:
        """CLOSING -> CLOSED with exit fields. False if the position was not CLOSING."""
        return await self._run(
            self._close_position, position_id, exit_price, exit_time, exit_reason, pnl,
        )

    # ── Aggregates ──

    def _get_position_stats(self, since: float) -> PositionStats:
        live = (PositionStatus.OPEN.value, PositionStatus.CLOSING.value)
        with self._lock:
            conn = self._get_conn()
            open_row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(quantity * entry_price), 0) AS exposure "
                "FROM positions WHERE status IN (?, ?)",
                live,
            ).fetchone()
            pnl_row = conn.execute(
                "SELECT COALESCE(SUM(pnl), 0) AS pnl FROM positions "
                "WHERE status = ? AND exit_time >= ?",
                (PositionStatus.CLOSED.value, since),
            ).fetchone()
            trades_row = conn.execute(
                "SELECT COUNT(*) AS n FROM positions WHERE entry_time >= ?", (since,),
            ).fetchone()
        return PositionStats(
            open_positions=open_row["n"],
            total_exposure=open_row["exposure"],
            today_pnl=pnl_row["pnl"],
            today_trades=trades_row["n"],
        )

    async def get_position_stats(self, since: float) -> PositionStats:
        """Open count/exposure (OPEN and CLOSING) plus realized P&L and trades since `since`."""
        return await self._run(self._get_position_stats, since)

    def _get_all_time_stats(self) -> dict[str, float]:
        row = self._read(
            "SELECT COUNT(*) AS total_trades, "
            " COALESCE(SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END), 0) AS winning_trades, "
            " COALESCE(SUM(pnl), 0) AS total_pnl, "
            " COALESCE(MAX(pnl), 0) AS best_trade, "
            " COALESCE(MIN(pnl), 0) AS worst_trade "
            "FROM positions WHERE status = ?",
            (PositionStatus.CLOSED.value,),
        )[0]
        total = row["total_trades"]
        return {
            "total_trades": total,
            "winning_trades": row["winning_trades"],
            "win_rate_pct": round(row["winning_trades"] / total * 100.0, 1) if total else 0.0,
            "total_pnl": round(row["total_pnl"], 2),
            "best_trade": round(row["best_trade"], 2),
            "worst_trade": round(row["worst_trade"], 2),
        }

    async def get_all_time_stats(self) -> dict[str, float]:
        return await self._run(self._get_all_time_stats)
