"""
Exit monitor. Sweeps open positions and closes the ones that hit an exit rule.

Rules are checked in a fixed order and the first match wins:
  1. PROFIT   - unrealized return >= profit target
  2. STOP     - unrealized return <= -stop loss
  3. TIME     - held for at least the max hold time
  4. REVERSAL - the underlying crossed back over the market's threshold
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from executor.engine import Executor
from scanner.models import (
    Asset,
    ContractSide,
    ExitDecision,
    ExitReason,
    Position,
    SidePrices,
    ThresholdMarket,
)

logger = logging.getLogger(__name__)


class OpenPositionSource(Protocol):
    async def get_open_positions(self) -> list[Position]: ...


@dataclass(frozen=True)
class ExitRules:
    profit_target_pct: float = 0.15
    stop_loss_pct: float = 0.05
    max_hold_time_seconds: float = 120.0


@dataclass
class SweepResult:
    checked: int = 0
    closed: int = 0
    closed_positions: list[tuple[Position, ExitReason, float]] = field(default_factory=list)


class ExitMonitor:
    def __init__(
        self,
        store: OpenPositionSource,
        executor: Executor,
        side_prices: Callable[[str], SidePrices | None],
        asset_price: Callable[[Asset], float | None],
        market_lookup: Callable[[str], ThresholdMarket | None],
        rules: ExitRules | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._executor = executor
        self._side_prices = side_prices
        self._asset_price = asset_price
        self._market_lookup = market_lookup
        self.rules = rules or ExitRules()
        self._clock = clock

    def current_contract_price(self, position: Position) -> float:
        """Observed price of the position's side, or its entry price if unknown."""
        prices = self._side_prices(position.market_id)
        if prices is None:
            return position.entry_price
        return prices.yes_price if position.side == ContractSide.YES else prices.no_price

    def evaluate(self, position: Position) -> ExitDecision:
        current = self.current_contract_price(position)
        pnl_pct = (current - position.entry_price) / position.entry_price

        if pnl_pct >= self.rules.profit_target_pct:
            return ExitDecision(True, ExitReason.PROFIT, current, pnl_pct)

        if pnl_pct <= -self.rules.stop_loss_pct:
            return ExitDecision(True, ExitReason.STOP, current, pnl_pct)

        held = self._clock() - position.entry_time
        if held >= self.rules.max_hold_time_seconds:
            return ExitDecision(True, ExitReason.TIME, current, pnl_pct)

        market = self._market_lookup(position.market_id)
        spot = self._asset_price(position.asset)
        if market is not None and spot is not None and position.asset_price_at_entry:
            entry_above = position.asset_price_at_entry > market.threshold
            now_above = spot > market.threshold
            if entry_above != now_above:
                return ExitDecision(True, ExitReason.REVERSAL, current, pnl_pct)

        return ExitDecision(False, None, current, pnl_pct)

    async def sweep(self) -> SweepResult:
        """Evaluate every OPEN position once. One failed close never stops the sweep."""
        positions = await self._store.get_open_positions()
        result = SweepResult(checked=len(positions))

        for position in positions:
            decision = self.evaluate(position)
            if not decision.should_exit:
                continue
            outcome = await self._executor.close_position(position, decision.current_price, decision.reason)
            if outcome.success:
                result.closed += 1
                result.closed_positions.append((position, decision.reason, outcome.pnl))
            else:
                logger.warning(
                    "Exit %s for %s not completed: %s",
                    decision.reason.value, position.position_id, outcome.error,
                )

        for position, reason, pnl in result.closed_positions:
            logger.info(
                "Exit: closed %s %s | Reason: %s | P&L: $%.2f",
                position.side.value, position.asset.value, reason.value, pnl,
            )
        return result

    async def position_summary(self) -> list[dict]:
        """Open positions with hold time, return and near-limit flags."""
        positions = await self._store.get_open_positions()
        now = self._clock()
        summary = []
        for position in positions:
            decision = self.evaluate(position)
            hold_time = now - position.entry_time
            summary.append({
                "position": position,
                "hold_time": hold_time,
                "pnl_pct": decision.pnl_pct,
                "near_profit": decision.pnl_pct >= self.rules.profit_target_pct * 0.8,
                "near_stop": decision.pnl_pct <= -self.rules.stop_loss_pct * 0.8,
                "near_timeout": hold_time >= self.rules.max_hold_time_seconds * 0.8,
            })
        return summary
