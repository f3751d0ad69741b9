"""
Binance ticker stream client. Reconnects with exponential backoff and gives up
(EXHAUSTED) after max attempts; the exhausted event is the only way out.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from scanner.models import Asset, AssetPrice
from scanner.price_window import PriceTracker

logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://stream.binance.com:9443"
MAX_RECONNECT_ATTEMPTS = 10
RECONNECT_DELAY = 5.0  # seconds
BACKOFF_FACTOR = 1.5
BACKOFF_MAX = 120.0
HEARTBEAT_INTERVAL = 30.0
OPEN_TIMEOUT = 10.0

SYMBOL_TO_ASSET = {
    "BTCUSDT": Asset.BTC,
    "ETHUSDT": Asset.ETH,
    "SOLUSDT": Asset.SOL,
}


class FeedState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    EXHAUSTED = "exhausted"


def stream_url(base_url: str, assets: tuple[Asset, ...] | list[Asset]) -> str:
    """Combined-stream URL for the 24h ticker of each asset."""
    streams = "/".join(f"{a.value.lower()}usdt@ticker" for a in assets)
    return f"{base_url.rstrip('/')}/stream?streams={streams}"


def _put_drop_oldest(q: asyncio.Queue, item: Any, label: str) -> None:
    try:
        q.put_nowait(item)
    except asyncio.QueueFull:
        try:
            q.get_nowait()
        except asyncio.QueueEmpty:
            pass
        q.put_nowait(item)
        logger.warning("%s queue full, dropped oldest", label)


@dataclass
class PriceFeed:
    """
    Push price feed for the tracked assets.

    Every tick goes through the PriceTracker and lands on `price_queue`;
    significant moves are additionally put on `move_queue`. Both queues are
    bounded and drop their oldest entry when full.

    Retry state (`state`, `attempt`, `next_delay`) is plain attributes so
    callers and tests can inspect it.
    """
    url: str
    tracker: PriceTracker
    reconnect_delay_sec: float = RECONNECT_DELAY
    backoff_factor: float = BACKOFF_FACTOR
    max_delay_sec: float = BACKOFF_MAX
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    heartbeat_interval_sec: float = HEARTBEAT_INTERVAL
    open_timeout_sec: float = OPEN_TIMEOUT
    connector: Callable[..., Any] = connect
    price_queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=1000))
    move_queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=100))
    exhausted: asyncio.Event = field(default_factory=asyncio.Event)

    state: FeedState = FeedState.DISCONNECTED
    attempt: int = 0
    next_delay: float = 0.0
    last_error: str = ""

    _running: bool = False
    _ws: Any = None
    _task: asyncio.Task | None = None
    _last_message_time: float = 0.0
    _connect_time: float = 0.0

    async def start(self) -> None:
        """Start the stream loop in a background task."""
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="price-feed")

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.state != FeedState.EXHAUSTED:
            self.state = FeedState.DISCONNECTED

    def is_connected(self) -> bool:
        return self.state == FeedState.CONNECTED

    def is_healthy(self, max_silence_sec: float = 30.0) -> bool:
        """Connected and a message arrived within `max_silence_sec`."""
        if not self.is_connected():
            return False
        now = time.time()
        if self._last_message_time == 0.0:
            return now - self._connect_time <= max_silence_sec
        return now - self._last_message_time <= max_silence_sec

    def current_price(self, asset: Asset) -> float | None:
        return self.tracker.current_price(asset)

    def all_prices(self) -> dict[Asset, AssetPrice]:
        return self.tracker.all_prices()

    def _on_connected(self) -> None:
        self.state = FeedState.CONNECTED
        self.attempt = 0
        self.next_delay = 0.0
        self._connect_time = time.time()
        self._last_message_time = 0.0
        logger.info("Price stream connected to %s", self.url)

    def _next_backoff(self) -> float | None:
        """
        Advance the retry state after a lost connection. Returns the delay
        before the next attempt, or None once attempts are used up.
        """
        if self.attempt >= self.max_reconnect_attempts:
            self.state = FeedState.EXHAUSTED
            self.exhausted.set()
            logger.error(
                "Price stream max reconnect attempts (%d) reached. Last error: %s",
                self.max_reconnect_attempts, self.last_error,
            )
            return None

        delay = min(
            self.reconnect_delay_sec * (self.backoff_factor ** self.attempt),
            self.max_delay_sec,
        )
        self.attempt += 1
        self.next_delay = delay
        self.state = FeedState.BACKOFF
        logger.warning(
            "Price stream disconnected (attempt %d/%d), reconnecting in %.1fs: %s",
            self.attempt, self.max_reconnect_attempts, delay, self.last_error,
        )
        return delay

    async def _run_loop(self) -> None:
        while self._running:
            self.state = FeedState.CONNECTING
            try:
                async with self.connector(
                    self.url,
                    open_timeout=self.open_timeout_sec,
                    ping_interval=None,
                ) as ws:
                    self._ws = ws
                    self._on_connected()
                    keepalive = asyncio.create_task(self._keepalive(ws))
                    try:
                        async for raw_msg in ws:
                            if not self._running:
                                break
                            self._last_message_time = time.time()
                            self.handle_message(raw_msg)
                    finally:
                        keepalive.cancel()
                        self._ws = None
                self.last_error = "stream closed by server"
            except (WebSocketException, OSError, TimeoutError) as e:
                self._ws = None
                self.last_error = str(e) or type(e).__name__
            except Exception as e:
                self._ws = None
                self.last_error = f"{type(e).__name__}: {e}"
                logger.exception("Price stream loop error")

            if not self._running:
                break
            delay = self._next_backoff()
            if delay is None:
                return
            await asyncio.sleep(delay)

        self.state = FeedState.DISCONNECTED

    async def _keepalive(self, ws: Any) -> None:
        """Ping on a fixed interval while the connection is open."""
        while True:
            await asyncio.sleep(self.heartbeat_interval_sec)
            try:
                await ws.ping()
            except ConnectionClosed:
                return
            logger.debug("Price stream keepalive ping sent")

    def handle_message(self, raw_msg: str | bytes, timestamp: float | None = None) -> None:
        """Parse one stream message and enqueue the resulting events."""
        try:
            message = json.loads(raw_msg)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unparseable price stream message: %s", str(raw_msg)[:200])
            return
        if not isinstance(message, dict):
            return

        if "stream" in message and "data" in message:
            ticker = message["data"]
        elif message.get("e") == "24hrTicker":
            ticker = message
        else:
            return
        if not isinstance(ticker, dict):
            logger.warning("Malformed ticker payload: %s", str(raw_msg)[:200])
            return

        asset = SYMBOL_TO_ASSET.get(str(ticker.get("s", "")).upper())
        if asset is None:
            return
        try:
            price = float(ticker["c"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Bad ticker message for %s: %s", asset.value, e)
            return

        update, move = self.tracker.on_tick(asset, price, timestamp)
        if update is None:
            return
        _put_drop_oldest(self.price_queue, update, "Price")
        if move is not None:
            _put_drop_oldest(self.move_queue, move, "Move")
