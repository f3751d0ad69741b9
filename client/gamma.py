"""
Gamma API client for threshold market discovery. Pure REST over httpx, no SDK.
"""

from __future__ import annotations

import json
import logging

import httpx

from scanner.models import MarketListing

logger = logging.getLogger(__name__)

_TIMEOUT = 30.0
PAGE_SIZE = 500
MAX_PAGES = 40


def _parse_token_ids(m: dict) -> tuple[str, str]:
    """clobTokenIds may be a JSON string or a list. Returns ("", "") if absent."""
    raw_ids = m.get("clobTokenIds") or m.get("clob_token_ids")
    if isinstance(raw_ids, str):
        try:
            raw_ids = json.loads(raw_ids)
        except (json.JSONDecodeError, TypeError):
            return "", ""
    if not raw_ids or len(raw_ids) < 2:
        return "", ""
    return str(raw_ids[0]), str(raw_ids[1])


def parse_listing(m: dict) -> MarketListing | None:
    """Convert one Gamma market row into a MarketListing. None if it has no id."""
    market_id = str(m.get("id") or m.get("conditionId") or "")
    if not market_id:
        return None
    yes_token, no_token = _parse_token_ids(m)
    end_date = str(
        m.get("endDateIso")
        or m.get("end_date_iso")
        or m.get("endDate")
        or m.get("end_date")
        or ""
    )
    return MarketListing(
        market_id=market_id,
        question=m.get("question") or "",
        volume_24h=float(m.get("volume24hr") or m.get("volume24hrClob") or 0),
        end_date=end_date,
        active=bool(m.get("active", True)),
        closed=bool(m.get("closed", False)),
        yes_token_id=yes_token,
        no_token_id=no_token,
    )


class GammaClient:
    """Async listing source. Owns its httpx client unless one is injected."""

    def __init__(self, host: str, client: httpx.AsyncClient | None = None, timeout: float = _TIMEOUT):
        self._host = host.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _get(self, path: str, params: dict | None = None) -> dict | list:
        """GET against the Gamma API. Raises on non-2xx."""
        resp = await self._client.get(f"{self._host}{path}", params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_markets(self, limit: int = PAGE_SIZE, offset: int = 0) -> list[MarketListing]:
        params = {
            "active": "true",
            "closed": "false",
            "limit": limit,
            "offset": offset,
        }
        listings, _ = await self._get_page(params)
        return listings

    async def _get_page(self, params: dict) -> tuple[list[MarketListing], int]:
        """One page of listings plus the raw row count (rows without an id are dropped)."""
        raw_markets = await self._get("/markets", params)
        listings = []
        for m in raw_markets:
            listing = parse_listing(m)
            if listing is not None:
                listings.append(listing)
        return listings, len(raw_markets)

    async def get_all_markets(self) -> list[MarketListing]:
        """All open listings, paginated until a short page comes back."""
        all_listings: list[MarketListing] = []
        offset = 0
        for _ in range(MAX_PAGES):
            page, raw_count = await self._get_page({
                "active": "true", "closed": "false", "limit": PAGE_SIZE, "offset": offset,
            })
            all_listings.extend(page)
            if raw_count < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        else:
            logger.warning("Gamma pagination stopped at %d pages", MAX_PAGES)
        logger.debug("Gamma returned %d open listings", len(all_listings))
        return all_listings

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
