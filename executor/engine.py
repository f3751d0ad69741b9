"""
Execution engine. Sizes, risk-checks and opens simulated positions, and closes
them through the OPEN -> CLOSING -> CLOSED lifecycle. No orders are ever sent:
fills happen at the observed ask.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from executor.risk import RiskLedger
from executor.sizing import compute_position_size
from monitor.pnl import PnLTracker
from scanner.models import (
    CloseOutcome,
    ExitReason,
    Opportunity,
    OpportunityStatus,
    Position,
    PositionStatus,
    TradeOutcome,
)
from state.store import PersistenceError, Repository

logger = logging.getLogger(__name__)


class Executor:
    """
    Opens and closes positions against the repository.

    The risk check and the position commit share one lock, so two
    opportunities cannot both pass the exposure check before either is
    written. In-memory objects only change after their write succeeded;
    a failed write leaves them as they were and is returned as a failure.
    """

    def __init__(
        self,
        store: Repository,
        risk: RiskLedger,
        base_position_size: float = 200.0,
        max_position_size: float = 500.0,
        pnl_tracker: PnLTracker | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._risk = risk
        self._base_size = base_position_size
        self._max_size = max_position_size
        self._pnl = pnl_tracker
        self._clock = clock
        self._trade_lock = asyncio.Lock()
        self._closing: set[str] = set()

    def position_size(self, opportunity: Opportunity, market_volume: float) -> float:
        return compute_position_size(
            opportunity.gap_pct, market_volume, self._base_size, self._max_size,
        )

    async def execute_trade(self, opportunity: Opportunity, market_volume: float = 50_000.0) -> TradeOutcome:
        if opportunity.status != OpportunityStatus.DETECTED:
            return TradeOutcome(
                success=False,
                error=f"Opportunity already {opportunity.status.value}",
            )
        if opportunity.actual_price <= 0:
            return TradeOutcome(success=False, error="Invalid entry price")

        size = self.position_size(opportunity, market_volume)

        async with self._trade_lock:
            try:
                check = await self._risk.can_trade(opportunity, size)
            except PersistenceError as e:
                logger.error("Risk refresh failed for %s: %s", opportunity.market_id, e)
                return TradeOutcome(success=False, error=f"Risk state unavailable: {e}")

            if not check.allowed:
                try:
                    await self._store.update_opportunity_status(
                        opportunity.opportunity_id, OpportunityStatus.SKIPPED, check.reason,
                    )
                except PersistenceError as e:
                    logger.error("Failed to mark opportunity %s SKIPPED: %s", opportunity.opportunity_id, e)
                    return TradeOutcome(success=False, error=f"{check.reason} (not persisted: {e})")
                opportunity.transition(OpportunityStatus.SKIPPED)
                opportunity.skip_reason = check.reason
                logger.debug("Skipped %s: %s", opportunity.market_id, check.reason)
                return TradeOutcome(success=False, error=check.reason)

            position = Position(
                market_id=opportunity.market_id,
                asset=opportunity.asset,
                side=opportunity.side,
                entry_price=opportunity.actual_price,
                quantity=size / opportunity.actual_price,
                asset_price_at_entry=opportunity.source_price,
                opportunity_id=opportunity.opportunity_id,
                entry_time=self._clock(),
            )

            try:
                await self._store.update_opportunity_status(
                    opportunity.opportunity_id, OpportunityStatus.EXECUTING,
                )
                await self._store.open_position(position, opportunity.opportunity_id)
            except PersistenceError as e:
                logger.error(
                    "Trade persistence failed for %s, opportunity %s left unresolved: %s",
                    opportunity.market_id, opportunity.opportunity_id, e,
                )
                return TradeOutcome(success=False, error=f"Persistence failure: {e}")

            opportunity.transition(OpportunityStatus.EXECUTING)
            opportunity.transition(OpportunityStatus.EXECUTED)
            self._risk.start_cooldown(opportunity.market_id)

        logger.info(
            "Position opened: %s %s @ $%.4f | Size: $%.2f | Qty: %.2f | Gap: %.1f%%",
            position.side.value, position.asset.value, position.entry_price,
            size, position.quantity, opportunity.gap_pct * 100,
        )
        return TradeOutcome(success=True, position=position)

    async def close_position(self, position: Position, exit_price: float, reason: ExitReason) -> CloseOutcome:
        pid = position.position_id
        if position.status != PositionStatus.OPEN:
            return CloseOutcome(success=False, error=f"Position is {position.status.value}")
        if pid in self._closing:
            return CloseOutcome(success=False, error="Close already in progress")

        self._closing.add(pid)
        try:
            try:
                claimed = await self._store.claim_close(pid)
            except PersistenceError as e:
                logger.error("Failed to claim position %s for close: %s", pid, e)
                return CloseOutcome(success=False, error=f"Persistence failure: {e}")
            if not claimed:
                return CloseOutcome(success=False, error="Position no longer OPEN")

            exit_time = self._clock()
            pnl = position.quantity * exit_price - position.quantity * position.entry_price

            try:
                closed = await self._store.close_position(pid, exit_price, exit_time, reason, pnl)
            except PersistenceError as e:
                logger.error("Failed to close position %s, left CLOSING: %s", pid, e)
                return CloseOutcome(success=False, error=f"Persistence failure: {e}")
            if not closed:
                return CloseOutcome(success=False, error="Position no longer CLOSING")

            position.transition(PositionStatus.CLOSING)
            position.transition(PositionStatus.CLOSED)
            position.exit_price = exit_price
            position.exit_time = exit_time
            position.exit_reason = reason
            position.pnl = pnl
        finally:
            self._closing.discard(pid)

        self._risk.clear_cooldown(position.market_id)
        if self._pnl is not None:
            self._pnl.record(position)

        pnl_pct = (exit_price - position.entry_price) / position.entry_price * 100
        logger.info(
            "Position closed: %s %s | Entry: $%.4f -> Exit: $%.4f | P&L: $%.2f (%+.1f%%) | Reason: %s",
            position.side.value, position.asset.value, position.entry_price, exit_price,
            pnl, pnl_pct, reason.value,
        )
        return CloseOutcome(success=True, pnl=pnl)
