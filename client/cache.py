"""
Market side-price cache.

Implements a single-flight refresh of YES/NO prices with:
- At most one refresh in flight; extra refresh requests are skipped or joined
- Interval limiting (a refresh within the TTL of the last one is skipped)
- Graceful staleness: readers always get the last cached value, never block
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from scanner.models import SidePrices, ThresholdMarket

logger = logging.getLogger(__name__)

_PRICE_CACHE_TTL = 10.0

PriceFetcher = Callable[[list[ThresholdMarket]], Awaitable[dict[str, SidePrices]]]


class CachedValue:
    """Represents a cached value with its timestamp."""

    __slots__ = ("value", "timestamp")

    def __init__(self, value: Any, timestamp: float):
        self.value = value
        self.timestamp = timestamp

    def is_stale(self, ttl: float, now: float | None = None) -> bool:
        now = now if now is not None else time.time()
        return now - self.timestamp > ttl


class SingleFlight:
    """
    At most one in-flight run of a coroutine. Callers that arrive while one is
    running can join it (`run`) or just check `in_flight` and move on.
    """

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Return the running task, or start a new one from `factory`."""
        if not self.in_flight:
            self._task = asyncio.ensure_future(factory())
        return self._task

    async def run(self, factory: Callable[[], Awaitable[Any]]) -> Any:
        # Shield so a cancelled caller does not cancel the shared refresh.
        return await asyncio.shield(self.start(factory))

    async def join(self) -> Any:
        """Wait for the in-flight run, if any."""
        if self.in_flight:
            return await asyncio.shield(self._task)
        return None


class MarketPriceCache:
    """Observed YES/NO prices per market id, refreshed from an async fetcher."""

    def __init__(
        self,
        fetch: PriceFetcher,
        ttl_sec: float = _PRICE_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch = fetch
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._prices: dict[str, CachedValue] = {}
        self._last_refresh: float = 0.0
        self._flight = SingleFlight()
        self.refresh_count = 0

    def get(self, market_id: str) -> SidePrices | None:
        """Last known prices for a market, however old."""
        cached = self._prices.get(market_id)
        return cached.value if cached else None

    def is_stale(self, market_id: str) -> bool:
        cached = self._prices.get(market_id)
        return cached is None or cached.is_stale(self.ttl_sec, self._clock())

    @property
    def refreshing(self) -> bool:
        return self._flight.in_flight

    def __len__(self) -> int:
        return len(self._prices)

    async def refresh(self, markets: list[ThresholdMarket], force: bool = False) -> bool:
        """
        Refresh prices for `markets`. Returns True if a refresh ran or was joined.

        A normal call is skipped while a refresh is in flight or within the TTL
        of the last one. `force` ignores the TTL and waits on an in-flight
        refresh instead of starting a second one.
        """
        if self._flight.in_flight:
            if force:
                await self._flight.join()
                return True
            logger.debug("Side price refresh already in flight, skipping")
            return False
        if not force and self._clock() - self._last_refresh < self.ttl_sec:
            return False
        await self._flight.run(lambda: self._do_refresh(markets))
        return True

    def refresh_in_background(self, markets: list[ThresholdMarket]) -> None:
        """Kick off a refresh if one is due; never waits."""
        if self._flight.in_flight:
            return
        if self._clock() - self._last_refresh < self.ttl_sec:
            return
        self._flight.start(lambda: self._do_refresh(markets))

    async def _do_refresh(self, markets: list[ThresholdMarket]) -> None:
        # Stamp first so a failing source is still interval-limited.
        self._last_refresh = self._clock()
        try:
            prices = await self._fetch(markets)
        except Exception as e:
            logger.warning("Side price refresh failed, keeping cached values: %s", e)
            return
        now = self._clock()
        for market_id, side_prices in prices.items():
            self._prices[market_id] = CachedValue(side_prices, now)
        self.refresh_count += 1
        logger.debug("Side price cache refreshed: %d markets", len(prices))
