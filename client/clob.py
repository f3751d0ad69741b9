"""
CLOB REST client wrapper. Reads order books and turns them into observed
YES/NO side prices. Read-only: fills are simulated, nothing is ever posted.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx as _httpx
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import BookParams
from py_clob_client.http_helpers import helpers as _clob_helpers

from scanner.models import OrderBook, PriceLevel, SidePrices, ThresholdMarket

logger = logging.getLogger(__name__)

# Retry config for flaky CLOB API (HTTP/2 connection resets, SSL errors)
_MAX_RETRIES = 3
_RETRY_BACKOFF_SEC = 1.0

BOOK_BATCH_SIZE = 50  # Max token IDs per /books request to avoid payload limit

# py_clob_client's shared httpx client has no usable timeout and speaks HTTP/2,
# which the CLOB server drops with GOAWAY under batch load.
_clob_helpers._http_client = _httpx.Client(http2=False, timeout=15.0)


def _sort_book_levels(
    raw_bids: list, raw_asks: list,
) -> tuple[tuple[PriceLevel, ...], tuple[PriceLevel, ...]]:
    """
    Convert raw SDK levels to sorted PriceLevel tuples.
    Asks ascending (best first), bids descending (best first).
    The SDK does not guarantee order.
    """
    bids = tuple(sorted(
        (PriceLevel(price=float(b.price), size=float(b.size)) for b in (raw_bids or [])),
        key=lambda lvl: lvl.price,
        reverse=True,
    ))
    asks = tuple(sorted(
        (PriceLevel(price=float(a.price), size=float(a.size)) for a in (raw_asks or [])),
        key=lambda lvl: lvl.price,
    ))
    return bids, asks


def _retry_api_call(fn, *args, max_retries: int = _MAX_RETRIES, **kwargs):
    """Retry a py_clob_client call with exponential backoff on connection errors."""
    last_exc = None
    for attempt in range(max_retries):
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            last_exc = exc
            err_str = str(exc)
            # Only connection-level errors (status_code=None) are retried, not 4xx/5xx
            is_connection_error = "Request exception" in err_str or "status_code=None" in err_str
            if not is_connection_error or attempt == max_retries - 1:
                raise
            wait = _RETRY_BACKOFF_SEC * (2 ** attempt)
            logger.debug("CLOB API retry %d/%d after %.1fs: %s", attempt + 1, max_retries, wait, exc)
            time.sleep(wait)
    raise last_exc


def get_orderbooks(client: ClobClient, token_ids: list[str]) -> dict[str, OrderBook]:
    """Fetch orderbooks for multiple tokens, chunking to avoid payload limits."""
    result = {}
    for i in range(0, len(token_ids), BOOK_BATCH_SIZE):
        chunk = token_ids[i:i + BOOK_BATCH_SIZE]
        params = [BookParams(token_id=tid) for tid in chunk]
        raws = _retry_api_call(client.get_order_books, params)
        for raw in raws:
            tid = raw.asset_id
            bids, asks = _sort_book_levels(raw.bids, raw.asks)
            result[tid] = OrderBook(token_id=tid, bids=bids, asks=asks)
    return result


def side_prices_from_books(
    markets: list[ThresholdMarket],
    books: dict[str, OrderBook],
    now: float | None = None,
) -> dict[str, SidePrices]:
    """
    Best ask of each outcome token, keyed by market id. Markets missing a
    book or an ask on either side are left out rather than defaulted.
    """
    now = now if now is not None else time.time()
    result: dict[str, SidePrices] = {}
    for market in markets:
        yes_book = books.get(market.yes_token_id)
        no_book = books.get(market.no_token_id)
        if not yes_book or not no_book:
            continue
        if not yes_book.best_ask or not no_book.best_ask:
            continue
        result[market.market_id] = SidePrices(
            yes_price=yes_book.best_ask.price,
            no_price=no_book.best_ask.price,
            fetched_at=now,
        )
    return result


class ClobPriceSource:
    """Async side-price source backed by the blocking SDK client."""

    def __init__(self, client: ClobClient):
        self._client = client

    @classmethod
    def from_host(cls, host: str) -> ClobPriceSource:
        # Level-0 client: public book endpoints only, no key needed.
        return cls(ClobClient(host))

    async def fetch(self, markets: list[ThresholdMarket]) -> dict[str, SidePrices]:
        tradable = [m for m in markets if m.yes_token_id and m.no_token_id]
        if not tradable:
            return {}
        token_ids: list[str] = []
        for m in tradable:
            token_ids.extend((m.yes_token_id, m.no_token_id))
        books = await asyncio.to_thread(get_orderbooks, self._client, token_ids)
        prices = side_prices_from_books(tradable, books)
        logger.debug(
            "Side prices: %d/%d markets priced from %d books",
            len(prices), len(tradable), len(books),
        )
        return prices
