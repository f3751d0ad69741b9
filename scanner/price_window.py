"""
Rolling price windows for the tracked crypto assets.

Each asset keeps a throttled, bounded history of (price, timestamp) samples
from which short-horizon percentage changes are computed on every tick. The
window is pure state: the websocket client in client/ws.py feeds it, and
nothing here does I/O.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field

from scanner.models import Asset, AssetPrice, PriceSample, SignificantMove

logger = logging.getLogger(__name__)

SAMPLE_INTERVAL_SEC = 1.0
HISTORY_DURATION_SEC = 300.0
MAX_HISTORY_POINTS = 300


@dataclass
class RollingWindow:
    """Throttled rolling window of samples for a single asset."""
    sample_interval_sec: float = SAMPLE_INTERVAL_SEC
    max_age_sec: float = HISTORY_DURATION_SEC
    max_points: int = MAX_HISTORY_POINTS
    _samples: deque[PriceSample] = field(default_factory=deque)

    def record(self, price: float, timestamp: float) -> bool:
        """
        Append a sample unless it arrives within the sample interval of the
        last retained one (or out of order). Returns True if it was kept.
        """
        if self._samples:
            last = self._samples[-1].timestamp
            if timestamp - last < self.sample_interval_sec:
                return False

        self._samples.append(PriceSample(price=price, timestamp=timestamp))

        cutoff = timestamp - self.max_age_sec
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()
        while len(self._samples) > self.max_points:
            self._samples.popleft()
        return True

    def reference_price(self, as_of: float) -> float | None:
        """
        Last sample at or before `as_of`, falling back to the oldest sample
        when nothing is that old. None when the window is empty.
        """
        if not self._samples:
            return None
        ref = None
        for sample in self._samples:
            if sample.timestamp <= as_of:
                ref = sample.price
            else:
                break
        if ref is None:
            ref = self._samples[0].price
        return ref

    def change(self, current_price: float, now: float, minutes: float) -> float:
        old = self.reference_price(now - minutes * 60.0)
        if old is None or old == 0:
            return 0.0
        return (current_price - old) / old

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def last_timestamp(self) -> float | None:
        return self._samples[-1].timestamp if self._samples else None

    @property
    def samples(self) -> tuple[PriceSample, ...]:
        return tuple(self._samples)


@dataclass
class PriceTracker:
    """
    Live price and rolling window per asset.

    `on_tick` returns the price update to emit plus a SignificantMove when
    the 1-minute change crosses the configured threshold and a previous
    price existed. A tick older than the last retained sample is
    dropped entirely and yields (None, None).
    """
    assets: tuple[Asset, ...] = (Asset.BTC, Asset.ETH, Asset.SOL)
    significant_move_pct: float = 0.01
    _prices: dict[Asset, float] = field(default_factory=dict)
    _windows: dict[Asset, RollingWindow] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for asset in self.assets:
            self._windows.setdefault(asset, RollingWindow())

    def on_tick(
        self, asset: Asset, price: float, timestamp: float | None = None,
    ) -> tuple[AssetPrice | None, SignificantMove | None]:
        now = timestamp if timestamp is not None else time.time()
        window = self._windows.setdefault(asset, RollingWindow())
        previous = self._prices.get(asset)

        last = window.last_timestamp
        if last is not None and now < last:
            logger.debug("Out-of-order %s tick at %.3f (last sample %.3f), ignored", asset.value, now, last)
            return None, None

        self._prices[asset] = price
        window.record(price, now)

        change_1m = window.change(price, now, 1)
        change_5m = window.change(price, now, 5)
        update = AssetPrice(
            asset=asset, price=price, timestamp=now,
            change_1m=change_1m, change_5m=change_5m,
        )

        move = None
        if previous and abs(change_1m) >= self.significant_move_pct:
            move = SignificantMove(
                asset=asset,
                previous_price=previous,
                current_price=price,
                change_pct=change_1m,
                timestamp=now,
            )
            logger.info(
                "Significant move: %s %+.2f%% ($%.2f -> $%.2f)",
                asset.value, change_1m * 100, previous, price,
            )
        return update, move

    def current_price(self, asset: Asset) -> float | None:
        return self._prices.get(asset)

    def all_prices(self, now: float | None = None) -> dict[Asset, AssetPrice]:
        """Snapshot of every asset with a known price."""
        now = now if now is not None else time.time()
        result: dict[Asset, AssetPrice] = {}
        for asset, price in self._prices.items():
            window = self._windows[asset]
            result[asset] = AssetPrice(
                asset=asset,
                price=price,
                timestamp=now,
                change_1m=window.change(price, now, 1),
                change_5m=window.change(price, now, 5),
            )
        return result

    def window(self, asset: Asset) -> RollingWindow:
        return self._windows.setdefault(asset, RollingWindow())
