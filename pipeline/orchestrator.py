"""
Reactive trading loop.

Startup: discover markets, load the catalog, warm the side-price cache, then
connect the price feed. From there three tasks run side by side:

  intake   - consumes price updates and significant moves from the feed
             queues and scans the updated asset's markets for mispricing
  exits    - sweeps open positions every exit_check_interval_sec
  catalog  - re-runs discovery every discovery_interval_sec

Shutdown stops the feed and the timers, lets an in-flight iteration finish,
and leaves persisted positions as they are.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable

from client.cache import MarketPriceCache
from client.ws import PriceFeed
from executor.engine import Executor
from executor.exits import ExitMonitor
from executor.risk import RiskLedger
from scanner.discovery import MarketCatalog
from scanner.mispricing import (
    DEFAULT_CURVE,
    PricingCurve,
    detect_mispricing,
    might_create_opportunity,
    threshold_proximity,
)
from scanner.models import (
    AssetPrice,
    DiscoveryResult,
    Opportunity,
    PositionStatus,
    SidePrices,
    SignificantMove,
)
from state.store import PersistenceError, Repository

logger = logging.getLogger(__name__)

_RECENT_OPPORTUNITIES = 20
_SHUTDOWN_GRACE_SEC = 10.0


class ReactiveTrader:
    """Owns the component graph's runtime: tasks, intake loop and shutdown."""

    def __init__(
        self,
        store: Repository,
        catalog: MarketCatalog,
        feed: PriceFeed,
        price_cache: MarketPriceCache,
        executor: Executor,
        exit_monitor: ExitMonitor,
        risk: RiskLedger,
        min_gap: float = 0.20,
        discovery_interval_sec: float = 300.0,
        exit_check_interval_sec: float = 1.0,
        curve: PricingCurve = DEFAULT_CURVE,
    ):
        self._store = store
        self._catalog = catalog
        self._feed = feed
        self._price_cache = price_cache
        self._executor = executor
        self._exit_monitor = exit_monitor
        self._risk = risk
        self._min_gap = min_gap
        self._discovery_interval = discovery_interval_sec
        self._exit_interval = exit_check_interval_sec
        self._curve = curve

        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._started = False
        # market_id -> (side prices, spot) at the last evaluation
        self._last_eval: dict[str, tuple[SidePrices, float]] = {}
        # market_id -> side prices that last produced an opportunity
        self._last_hit: dict[str, SidePrices] = {}
        self._recent: deque[Opportunity] = deque(maxlen=_RECENT_OPPORTUNITIES)
        self.scans = 0
        self.opportunities_found = 0
        self.trades_opened = 0

    # ── Lifecycle ──

    async def start(self) -> DiscoveryResult:
        result = await self._catalog.discover()
        await self._catalog.load()
        if len(self._catalog) == 0:
            logger.warning("No threshold markets in catalog; waiting for the next discovery run")

        await self._price_cache.refresh(self._catalog.all(), force=True)
        logger.info("Side prices warmed for %d/%d markets", len(self._price_cache), len(self._catalog))

        await self._report_stuck_positions()
        await self._feed.start()

        self._tasks = [
            asyncio.create_task(self._intake_loop(), name="intake"),
            asyncio.create_task(
                self._every("exit sweep", self._exit_interval, self._sweep_exits), name="exits",
            ),
            asyncio.create_task(
                self._every("catalog refresh", self._discovery_interval, self._refresh_catalog),
                name="catalog",
            ),
        ]
        self._started = True
        return result

    async def run(self) -> bool:
        """
        Start and block until a stop is requested or the feed gives up.
        Returns False when the feed exhausted its reconnect attempts.
        """
        await self.start()
        stop_wait = asyncio.ensure_future(self._stopping.wait())
        exhausted_wait = asyncio.ensure_future(self._feed.exhausted.wait())
        try:
            await asyncio.wait({stop_wait, exhausted_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            exhausted_wait.cancel()
            await self.stop()
        return not self._feed.exhausted.is_set()

    def request_stop(self) -> None:
        if not self._stopping.is_set():
            logger.info("Stop requested")
        self._stopping.set()

    async def stop(self) -> None:
        self._stopping.set()
        await self._feed.stop()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=_SHUTDOWN_GRACE_SEC)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []
        self._started = False
        logger.info("Trader stopped")

    # ── Intake ──

    async def _intake_loop(self) -> None:
        """Single consumer of both feed queues. Moves are handled before ticks."""
        price_get: asyncio.Future | None = None
        move_get: asyncio.Future | None = None
        stop_wait = asyncio.ensure_future(self._stopping.wait())
        exhausted_wait = asyncio.ensure_future(self._feed.exhausted.wait())
        try:
            while True:
                if price_get is None:
                    price_get = asyncio.ensure_future(self._feed.price_queue.get())
                if move_get is None:
                    move_get = asyncio.ensure_future(self._feed.move_queue.get())

                done, _ = await asyncio.wait(
                    {price_get, move_get, stop_wait, exhausted_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if move_get in done:
                    move = move_get.result()
                    move_get = None
                    await self._guard("significant move", self.handle_significant_move(move))
                if price_get in done:
                    update = price_get.result()
                    price_get = None
                    await self._guard("price update", self.handle_price_update(update))

                if exhausted_wait in done:
                    logger.critical("Price feed exhausted its reconnect attempts; restart required")
                    return
                if stop_wait in done:
                    return
        finally:
            for fut in (price_get, move_get, stop_wait, exhausted_wait):
                if fut is not None and not fut.done():
                    fut.cancel()

    async def _guard(self, label: str, coro: Awaitable[object]) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Unhandled error in %s handler", label)

    async def handle_price_update(self, update: AssetPrice) -> list[Opportunity]:
        self._price_cache.refresh_in_background(self._catalog.all())
        return await self.scan(update)

    async def handle_significant_move(self, move: SignificantMove) -> list[Opportunity]:
        """Scan every market for the asset against cached side prices, bypassing dedup."""
        logger.info(
            "Forced scan: %s %+.2f%% ($%.2f -> $%.2f)",
            move.asset.value, move.change_pct * 100, move.previous_price, move.current_price,
        )
        self._price_cache.refresh_in_background(self._catalog.all())
        snapshot = self._feed.all_prices().get(move.asset)
        update = snapshot or AssetPrice(
            asset=move.asset,
            price=move.current_price,
            timestamp=move.timestamp,
            change_1m=move.change_pct,
        )
        return await self.scan(update, force=True)

    def _needs_evaluation(self, market_id: str, threshold_market, prices: SidePrices, spot: float) -> bool:
        last = self._last_eval.get(market_id)
        if last is None or self._price_cache.is_stale(market_id):
            return True
        last_prices, last_spot = last
        if prices != last_prices:
            return True
        return might_create_opportunity(threshold_market, last_spot, spot)

    async def scan(self, asset_price: AssetPrice, force: bool = False) -> list[Opportunity]:
        """
        Evaluate the asset's markets against cached side prices and try to
        execute every hit. Markets without cached prices are skipped.

        Unless forced, a market is only re-evaluated when its side prices
        changed or went stale, or the spot move could matter. A side-price
        snapshot that already produced an opportunity does not produce another.
        """
        self.scans += 1
        spot = asset_price.price
        markets = sorted(
            self._catalog.markets_for(asset_price.asset),
            key=lambda m: threshold_proximity(spot, m.threshold),
            reverse=True,
        )
        found: list[Opportunity] = []

        for market in markets:
            prices = self._price_cache.get(market.market_id)
            if prices is None:
                continue
            if not force and not self._needs_evaluation(market.market_id, market, prices, spot):
                continue
            self._last_eval[market.market_id] = (prices, spot)

            result = detect_mispricing(
                market, asset_price, prices.yes_price, prices.no_price, self._min_gap, self._curve,
            )
            if not result.has_opportunity:
                logger.debug("No trade %s: %s", market.market_id, result.reason)
                continue
            if not force and self._last_hit.get(market.market_id) == prices:
                continue
            self._last_hit[market.market_id] = prices

            opportunity = result.opportunity
            try:
                await self._store.insert_opportunity(opportunity)
            except PersistenceError as e:
                logger.error("Failed to record opportunity on %s: %s", market.market_id, e)
                continue

            self.opportunities_found += 1
            self._recent.appendleft(opportunity)
            found.append(opportunity)
            logger.info(
                "Opportunity: %s %s $%s | %s @ $%.4f -> expected $%.4f | Gap: %.1f%%",
                market.asset.value, market.direction.value, f"{market.threshold:,.0f}",
                opportunity.side.value, opportunity.actual_price, opportunity.expected_price,
                opportunity.gap_pct * 100,
            )

            outcome = await self._executor.execute_trade(opportunity, market.volume_24h)
            if outcome.success:
                self.trades_opened += 1
            else:
                logger.info("Not executed %s: %s", market.market_id, outcome.error)

        return found

    # ── Timers ──

    async def _every(self, name: str, interval: float, fn: Callable[[], Awaitable[object]]) -> None:
        """Run `fn` every `interval` seconds until stop; a started run always completes."""
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await fn()
            except Exception:
                logger.exception("%s failed", name)

    async def _sweep_exits(self) -> None:
        self._price_cache.refresh_in_background(self._catalog.all())
        await self._exit_monitor.sweep()

    async def _refresh_catalog(self) -> None:
        result = await self._catalog.refresh()
        if result.errors:
            logger.warning("Catalog refresh finished with %d errors", len(result.errors))
        self._price_cache.refresh_in_background(self._catalog.all())

    async def _report_stuck_positions(self) -> None:
        try:
            stuck = await self._store.get_positions_by_status(PositionStatus.CLOSING)
        except PersistenceError as e:
            logger.error("Could not check for positions stuck in CLOSING: %s", e)
            return
        for position in stuck:
            logger.warning(
                "Position %s (%s %s) left in CLOSING by a previous run; needs manual reconciliation",
                position.position_id, position.side.value, position.asset.value,
            )

    # ── Accessors ──

    @property
    def running(self) -> bool:
        return self._started and not self._stopping.is_set()

    def recent_opportunities(self) -> list[Opportunity]:
        return list(self._recent)

    def snapshot(self) -> dict:
        """Read-only view for dashboards and the shutdown summary."""
        return {
            "connected": self._feed.is_connected(),
            "feed_state": self._feed.state.value,
            "prices": {a.value: p for a, p in self._feed.all_prices().items()},
            "markets": len(self._catalog),
            "priced_markets": len(self._price_cache),
            "risk": self._risk.state(),
            "warnings": self._risk.warnings(),
            "recent_opportunities": self.recent_opportunities(),
            "scans": self.scans,
            "opportunities_found": self.opportunities_found,
            "trades_opened": self.trades_opened,
        }
