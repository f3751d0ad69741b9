"""
Session P&L tracking with append-only JSON ledger of closed positions.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, asdict

from scanner.models import Position

logger = logging.getLogger(__name__)

LEDGER_FILE = "pnl_ledger.json"


@dataclass
class PnLEntry:
    timestamp: float
    position_id: str
    market_id: str
    asset: str
    side: str
    entry_price: float
    exit_price: float
    quantity: float
    hold_sec: float
    exit_reason: str
    pnl: float


@dataclass
class PnLTracker:
    """Track aggregate P&L for this session and persist each close to disk."""

    ledger_path: str | None = LEDGER_FILE

    total_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_volume: float = 0.0

    _session_start: float = field(default_factory=time.time)

    def record(self, position: Position) -> None:
        """Record a closed position. Updates aggregates and appends to ledger."""
        pnl = position.pnl or 0.0
        self.total_trades += 1
        self.total_pnl += pnl
        if pnl >= 0:
            self.winning_trades += 1
        else:
            self.losing_trades += 1
        self.total_volume += position.cost_basis

        exit_time = position.exit_time or time.time()
        entry = PnLEntry(
            timestamp=exit_time,
            position_id=position.position_id,
            market_id=position.market_id,
            asset=position.asset.value,
            side=position.side.value,
            entry_price=position.entry_price,
            exit_price=position.exit_price or 0.0,
            quantity=position.quantity,
            hold_sec=round(exit_time - position.entry_time, 1),
            exit_reason=position.exit_reason.value if position.exit_reason else "",
            pnl=pnl,
        )
        if self.ledger_path:
            self._append_ledger(entry)

        logger.info(
            "PnL update: trade_pnl=$%.2f total_pnl=$%.2f trades=%d win_rate=%.1f%%",
            pnl, self.total_pnl, self.total_trades, self.win_rate,
        )

    def _append_ledger(self, entry: PnLEntry) -> None:
        """One JSON object per line."""
        with open(self.ledger_path, "a") as f:
            f.write(json.dumps(asdict(entry), separators=(",", ":")) + "\n")

    @property
    def win_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return (self.winning_trades / self.total_trades) * 100.0

    @property
    def avg_pnl(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.total_pnl / self.total_trades

    @property
    def session_duration_sec(self) -> float:
        return time.time() - self._session_start

    def summary(self) -> dict:
        return {
            "total_pnl": round(self.total_pnl, 2),
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate_pct": round(self.win_rate, 1),
            "avg_pnl": round(self.avg_pnl, 2),
            "total_volume": round(self.total_volume, 2),
            "session_duration_sec": round(self.session_duration_sec, 0),
        }
