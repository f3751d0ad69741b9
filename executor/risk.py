"""
Risk ledger. Gates every prospective trade against exposure, position, daily
loss/trade limits and per-market cooldowns.

Aggregates are re-read from the repository on every check. Cooldowns live only
in this process.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from scanner.models import Opportunity, PositionStats, RiskCheck, RiskRejection, RiskState

logger = logging.getLogger(__name__)


class StatsSource(Protocol):
    async def get_position_stats(self, since: float) -> PositionStats: ...


@dataclass(frozen=True)
class RiskLimits:
    max_total_exposure: float = 1500.0
    max_simultaneous_positions: int = 3
    daily_loss_limit: float = 100.0
    max_daily_trades: int = 20
    cooldown_minutes: float = 5.0


def utc_day_start(now: float) -> float:
    """Epoch seconds of the UTC midnight at or before `now`."""
    day = datetime.fromtimestamp(now, tz=timezone.utc).replace(
        hour=0, minute=0, second=0, microsecond=0,
    )
    return day.timestamp()


@dataclass
class RiskLedger:
    """
    Tracks exposure, open positions, daily P&L, daily trades and cooldowns.

    `can_trade` refreshes the aggregates first, then applies the checks in a
    fixed order and stops at the first failure.
    """
    store: StatsSource
    limits: RiskLimits = field(default_factory=RiskLimits)
    clock: Callable[[], float] = time.time

    _state: RiskState = field(default_factory=RiskState)
    _cooldowns: dict[str, float] = field(default_factory=dict)

    async def refresh(self) -> RiskState:
        stats = await self.store.get_position_stats(utc_day_start(self.clock()))
        self._state.total_exposure = stats.total_exposure
        self._state.open_positions = stats.open_positions
        self._state.daily_pnl = stats.today_pnl
        self._state.daily_trades = stats.today_trades
        self._prune_cooldowns()
        self._state.cooldowns = dict(self._cooldowns)
        return self._state

    async def can_trade(self, opportunity: Opportunity, position_size: float) -> RiskCheck:
        await self.refresh()
        state = self._state
        limits = self.limits

        if state.daily_pnl <= -limits.daily_loss_limit:
            return RiskCheck(
                allowed=False,
                reason=f"Daily loss limit reached: ${abs(state.daily_pnl):.2f} / ${limits.daily_loss_limit:.2f}",
                category=RiskRejection.DAILY_LOSS,
            )

        if state.daily_trades >= limits.max_daily_trades:
            return RiskCheck(
                allowed=False,
                reason=f"Daily trade limit reached: {state.daily_trades} / {limits.max_daily_trades}",
                category=RiskRejection.DAILY_TRADES,
            )

        if state.open_positions >= limits.max_simultaneous_positions:
            return RiskCheck(
                allowed=False,
                reason=f"Max positions reached: {state.open_positions} / {limits.max_simultaneous_positions}",
                category=RiskRejection.POSITIONS,
            )

        new_exposure = state.total_exposure + position_size
        if new_exposure > limits.max_total_exposure:
            return RiskCheck(
                allowed=False,
                reason=f"Max exposure exceeded: ${new_exposure:.2f} > ${limits.max_total_exposure:.2f}",
                category=RiskRejection.EXPOSURE,
            )

        expiry = self._cooldowns.get(opportunity.market_id)
        now = self.clock()
        if expiry is not None and expiry > now:
            remaining_min = math.ceil((expiry - now) / 60.0)
            return RiskCheck(
                allowed=False,
                reason=f"Market on cooldown: {remaining_min} min remaining",
                category=RiskRejection.COOLDOWN,
            )

        return RiskCheck(allowed=True)

    def start_cooldown(self, market_id: str) -> None:
        """Called after an executed trade. Also counts the trade for today."""
        self._cooldowns[market_id] = self.clock() + self.limits.cooldown_minutes * 60.0
        self._state.daily_trades += 1

    def clear_cooldown(self, market_id: str) -> None:
        self._cooldowns.pop(market_id, None)

    def in_cooldown(self, market_id: str) -> bool:
        expiry = self._cooldowns.get(market_id)
        return expiry is not None and expiry > self.clock()

    def _prune_cooldowns(self) -> None:
        now = self.clock()
        for market_id in [m for m, exp in self._cooldowns.items() if exp <= now]:
            del self._cooldowns[market_id]

    def state(self) -> RiskState:
        """Copy of the last refreshed state with live cooldowns."""
        return RiskState(
            total_exposure=self._state.total_exposure,
            open_positions=self._state.open_positions,
            daily_pnl=self._state.daily_pnl,
            daily_trades=self._state.daily_trades,
            cooldowns=dict(self._cooldowns),
        )

    def warnings(self) -> list[str]:
        """Near-limit conditions worth showing on a dashboard."""
        state = self._state
        limits = self.limits
        warnings: list[str] = []

        exposure_pct = state.total_exposure / limits.max_total_exposure
        if exposure_pct > 0.8:
            warnings.append(f"High exposure: {exposure_pct * 100:.0f}% of limit")

        loss_pct = abs(state.daily_pnl) / limits.daily_loss_limit
        if state.daily_pnl < 0 and loss_pct > 0.5:
            warnings.append(f"Daily loss: {loss_pct * 100:.0f}% of limit")

        trades_pct = state.daily_trades / limits.max_daily_trades
        if trades_pct > 0.8:
            warnings.append(f"Trade limit: {trades_pct * 100:.0f}% used")

        return warnings

    def should_pause(self) -> tuple[bool, str]:
        if self._state.daily_pnl <= -self.limits.daily_loss_limit:
            return True, "Daily loss limit reached"
        if self._state.daily_trades >= self.limits.max_daily_trades:
            return True, "Daily trade limit reached"
        return False, ""

    def available_exposure(self) -> float:
        return max(0.0, self.limits.max_total_exposure - self._state.total_exposure)

    def active_cooldown_count(self) -> int:
        now = self.clock()
        return sum(1 for exp in self._cooldowns.values() if exp > now)
