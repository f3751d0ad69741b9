"""
Unit tests for client/clob.py -- order book parsing and side-price extraction.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import client.clob as clob
from client.clob import (
    ClobPriceSource,
    _retry_api_call,
    _sort_book_levels,
    get_orderbooks,
    side_prices_from_books,
)
from scanner.models import Asset, Direction, OrderBook, PriceLevel, ThresholdMarket


def _make_market(market_id: str = "m1", yes: str = "y1", no: str = "n1") -> ThresholdMarket:
    return ThresholdMarket(
        market_id=market_id,
        question="Will Bitcoin be above $100,000?",
        asset=Asset.BTC,
        threshold=100_000.0,
        direction=Direction.ABOVE,
        yes_token_id=yes,
        no_token_id=no,
    )


def _book(token_id: str, asks=(), bids=()) -> OrderBook:
    return OrderBook(
        token_id=token_id,
        bids=tuple(PriceLevel(p, 100.0) for p in bids),
        asks=tuple(PriceLevel(p, 100.0) for p in asks),
    )


def _raw_book(token_id: str, asks=(), bids=()):
    return SimpleNamespace(
        asset_id=token_id,
        asks=[SimpleNamespace(price=str(p), size="10") for p in asks],
        bids=[SimpleNamespace(price=str(p), size="10") for p in bids],
    )


class TestSortBookLevels:
    def test_orders_best_first(self):
        raw_bids = [SimpleNamespace(price="0.40", size="5"), SimpleNamespace(price="0.45", size="1")]
        raw_asks = [SimpleNamespace(price="0.60", size="5"), SimpleNamespace(price="0.55", size="2")]
        bids, asks = _sort_book_levels(raw_bids, raw_asks)
        assert [b.price for b in bids] == [0.45, 0.40]
        assert [a.price for a in asks] == [0.55, 0.60]

    def test_none_levels(self):
        assert _sort_book_levels(None, None) == ((), ())


class TestSidePricesFromBooks:
    def test_best_asks(self):
        books = {
            "y1": _book("y1", asks=(0.55, 0.60)),
            "n1": _book("n1", asks=(0.15,)),
        }
        prices = side_prices_from_books([_make_market()], books, now=123.0)
        assert prices["m1"].yes_price == 0.55
        assert prices["m1"].no_price == 0.15
        assert prices["m1"].fetched_at == 123.0

    def test_missing_book_skipped(self):
        books = {"y1": _book("y1", asks=(0.55,))}
        assert side_prices_from_books([_make_market()], books) == {}

    def test_empty_ask_side_skipped(self):
        books = {"y1": _book("y1", asks=(0.55,)), "n1": _book("n1", bids=(0.40,))}
        assert side_prices_from_books([_make_market()], books) == {}


class TestGetOrderbooks:
    def test_batches_requests(self):
        client = MagicMock()
        client.get_order_books.side_effect = lambda params: [
            _raw_book(p.token_id, asks=(0.5,)) for p in params
        ]
        token_ids = [f"t{i}" for i in range(clob.BOOK_BATCH_SIZE + 10)]

        books = get_orderbooks(client, token_ids)

        assert client.get_order_books.call_count == 2
        assert len(books) == len(token_ids)
        assert books["t0"].best_ask.price == 0.5


class TestRetry:
    def test_connection_error_retried(self, monkeypatch):
        monkeypatch.setattr(clob.time, "sleep", lambda _: None)
        fn = MagicMock(side_effect=[Exception("Request exception!"), "ok"])
        assert _retry_api_call(fn) == "ok"
        assert fn.call_count == 2

    def test_http_error_not_retried(self):
        fn = MagicMock(side_effect=Exception("status_code=404"))
        with pytest.raises(Exception, match="404"):
            _retry_api_call(fn)
        assert fn.call_count == 1


class TestClobPriceSource:
    @pytest.mark.asyncio
    async def test_fetch(self):
        client = MagicMock()
        client.get_order_books.return_value = [
            _raw_book("y1", asks=(0.55,)),
            _raw_book("n1", asks=(0.15,)),
        ]
        source = ClobPriceSource(client)

        prices = await source.fetch([_make_market(), _make_market("m2", yes="", no="")])

        assert set(prices) == {"m1"}
        assert prices["m1"].yes_price == 0.55
        params = client.get_order_books.call_args[0][0]
        assert [p.token_id for p in params] == ["y1", "n1"]

    @pytest.mark.asyncio
    async def test_fetch_nothing_tradable(self):
        client = MagicMock()
        source = ClobPriceSource(client)
        assert await source.fetch([_make_market(yes="", no="")]) == {}
        client.get_order_books.assert_not_called()
