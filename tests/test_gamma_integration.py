"""
Integration tests for client/gamma.py -- listing discovery with mocked HTTP.
"""

import json

import httpx
import pytest
import respx

from client.gamma import PAGE_SIZE, GammaClient, parse_listing

GAMMA_HOST = "https://gamma-api.polymarket.com"


def _market_json(mid, question="Will Bitcoin be above $100,000 by June 30?", volume=80_000, **extra):
    row = {
        "id": mid,
        "question": question,
        "clobTokenIds": [f"{mid}_yes", f"{mid}_no"],
        "volume24hr": volume,
        "endDateIso": "2026-06-30",
        "active": True,
        "closed": False,
    }
    row.update(extra)
    return row


class TestParseListing:
    def test_basic(self):
        listing = parse_listing(_market_json("m1"))
        assert listing.market_id == "m1"
        assert listing.yes_token_id == "m1_yes"
        assert listing.no_token_id == "m1_no"
        assert listing.volume_24h == 80_000.0
        assert listing.end_date == "2026-06-30"

    def test_token_ids_as_json_string(self):
        listing = parse_listing(_market_json("m1", clobTokenIds=json.dumps(["a", "b"])))
        assert (listing.yes_token_id, listing.no_token_id) == ("a", "b")

    def test_bad_token_ids(self):
        listing = parse_listing(_market_json("m1", clobTokenIds="not json"))
        assert (listing.yes_token_id, listing.no_token_id) == ("", "")

    def test_condition_id_fallback(self):
        row = _market_json("", conditionId="0xabc")
        assert parse_listing(row).market_id == "0xabc"

    def test_missing_id(self):
        row = _market_json("")
        assert parse_listing(row) is None

    def test_end_date_fallback_and_missing_volume(self):
        row = _market_json("m1", endDateIso=None, endDate="2026-06-30T12:00:00Z", volume24hr=None)
        listing = parse_listing(row)
        assert listing.end_date == "2026-06-30T12:00:00Z"
        assert listing.volume_24h == 0.0


class TestGammaClient:
    @pytest.mark.asyncio
    @respx.mock
    async def test_get_markets(self):
        route = respx.get(f"{GAMMA_HOST}/markets").mock(
            return_value=httpx.Response(200, json=[_market_json("m1"), _market_json("m2")])
        )
        client = GammaClient(GAMMA_HOST)
        try:
            listings = await client.get_markets(limit=10)
        finally:
            await client.aclose()

        assert [l.market_id for l in listings] == ["m1", "m2"]
        params = route.calls.last.request.url.params
        assert params["active"] == "true"
        assert params["closed"] == "false"
        assert params["limit"] == "10"

    @pytest.mark.asyncio
    @respx.mock
    async def test_rows_without_id_dropped(self):
        respx.get(f"{GAMMA_HOST}/markets").mock(
            return_value=httpx.Response(200, json=[_market_json("m1"), _market_json("")])
        )
        client = GammaClient(GAMMA_HOST)
        try:
            listings = await client.get_all_markets()
        finally:
            await client.aclose()
        assert [l.market_id for l in listings] == ["m1"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_paginates_until_short_page(self):
        def _pages(request):
            offset = int(request.url.params["offset"])
            if offset == 0:
                rows = [_market_json(f"a{i}") for i in range(PAGE_SIZE)]
            else:
                rows = [_market_json(f"b{i}") for i in range(3)]
            return httpx.Response(200, json=rows)

        route = respx.get(f"{GAMMA_HOST}/markets").mock(side_effect=_pages)
        client = GammaClient(GAMMA_HOST)
        try:
            listings = await client.get_all_markets()
        finally:
            await client.aclose()

        assert len(listings) == PAGE_SIZE + 3
        assert route.call_count == 2
        assert route.calls.last.request.url.params["offset"] == str(PAGE_SIZE)

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_raises(self):
        respx.get(f"{GAMMA_HOST}/markets").mock(return_value=httpx.Response(503))
        client = GammaClient(GAMMA_HOST)
        try:
            with pytest.raises(httpx.HTTPStatusError):
                await client.get_all_markets()
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    @respx.mock
    async def test_injected_client_not_closed(self):
        respx.get(f"{GAMMA_HOST}/markets").mock(return_value=httpx.Response(200, json=[]))
        async with httpx.AsyncClient() as http:
            client = GammaClient(GAMMA_HOST + "/", client=http)
            assert await client.get_all_markets() == []
            await client.aclose()
            assert not http.is_closed
