"""
Threshold market discovery.

Turns raw market listings ("Will BTC be above $100,000 by June?") into
ThresholdMarket records: asset, threshold price and direction are pulled out
of the question text, speculative/news-driven questions are excluded, and
thin or soon-resolving markets are rejected before anything is stored.

The MarketCatalog keeps the accepted markets in memory for the scan loop and
writes them through the repository, keyed by market id.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, Protocol

from scanner.models import (
    Asset,
    Direction,
    DiscoveryResult,
    MarketListing,
    MarketStatus,
    ThresholdMarket,
)

logger = logging.getLogger(__name__)

# Checked in order, first match wins
_ASSET_PATTERNS: tuple[tuple[Asset, re.Pattern], ...] = (
    (Asset.BTC, re.compile(r"\b(BTC|Bitcoin)\b", re.IGNORECASE)),
    (Asset.ETH, re.compile(r"\b(ETH|Ethereum|Ether)\b", re.IGNORECASE)),
    (Asset.SOL, re.compile(r"\b(SOL|Solana)\b", re.IGNORECASE)),
)

# Numeric literals, first matching pattern wins
_THRESHOLD_PATTERNS = (
    re.compile(r"\$(\d{1,3}(?:,\d{3})*(?:\.\d{2})?)"),  # $100,000 / $100,000.00
    re.compile(r"\$(\d+(?:\.\d+)?)\s*[kK]"),            # $100K
    re.compile(r"\$(\d+(?:\.\d+)?)\s*[mM]"),            # $1M
    re.compile(r"(\d{1,3}(?:,\d{3})+)"),                # 100,000 without $
)

# K/M right after the number, not the start of a word ("$95,000 mark")
_SUFFIX = re.compile(r"\s?([km])(?![a-z])", re.IGNORECASE)

_MULTIPLIERS = {"k": 1_000.0, "m": 1_000_000.0}

THRESHOLD_RANGES: dict[Asset, tuple[float, float]] = {
    Asset.BTC: (10_000.0, 1_000_000.0),
    Asset.ETH: (500.0, 50_000.0),
    Asset.SOL: (10.0, 5_000.0),
}

_BELOW_PATTERN = re.compile(r"\b(below|under|fall|drop|dip)\b", re.IGNORECASE)

_EXCLUSION_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"tweet",
    r"hack",
    r"\bsec\b",
    r"\belon\b",
    r"\btrump\b",
    r"\bmusk\b",
    r"\bban\b",
    r"\bregulat",
    r"\bwhale\b",
    r"\bpump\b",
    r"\bdump\b",
    r"\bsay\b",
    r"\bannounce",
    r"\bconfirm",
    r"\breport",
    r"\bclaim",
    r"\blaunch",
    r"\blist",
    r"\bapprove",
    r"\betf\b",
    r"\bhalving\b",
))

_WHITELIST_PATTERNS = (
    re.compile(
        r"will\s+(?:BTC|Bitcoin|ETH|Ethereum|SOL|Solana)\s+(?:be\s+)?(?:above|below|reach|hit)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:BTC|Bitcoin|ETH|Ethereum|SOL|Solana)\s+(?:price\s+)?(?:above|below|over|under)\s+\$",
        re.IGNORECASE,
    ),
)


def _parse_threshold(question: str) -> float | None:
    for pattern in _THRESHOLD_PATTERNS:
        match = pattern.search(question)
        if not match:
            continue
        try:
            value = float(match.group(1).replace(",", ""))
        except ValueError:
            return None
        matched_text = match.group(0).lower()
        suffix = _SUFFIX.match(question, match.end())
        unit = suffix.group(1).lower() if suffix else ""
        if "k" in matched_text or unit == "k":
            value *= _MULTIPLIERS["k"]
        elif "m" in matched_text or unit == "m":
            value *= _MULTIPLIERS["m"]
        return value
    return None


def extract_threshold(question: str) -> tuple[Asset, float, Direction] | None:
    """
    Pull (asset, threshold, direction) out of a market question.
    None when no asset matches, no number parses, or the number is outside
    the asset's plausible price range.
    """
    asset = None
    for candidate, pattern in _ASSET_PATTERNS:
        if pattern.search(question):
            asset = candidate
            break
    if asset is None:
        return None

    threshold = _parse_threshold(question)
    if threshold is None or threshold <= 0:
        return None
    low, high = THRESHOLD_RANGES[asset]
    if not low <= threshold <= high:
        return None

    # BELOW keywords win; anything else ("above", "reach", no keyword) is ABOVE
    if _BELOW_PATTERN.search(question):
        direction = Direction.BELOW
    else:
        direction = Direction.ABOVE
    return asset, threshold, direction


def should_exclude(question: str) -> bool:
    return any(p.search(question) for p in _EXCLUSION_PATTERNS)


def is_whitelisted(question: str) -> bool:
    return any(p.search(question) for p in _WHITELIST_PATTERNS)


def parse_end_date(end_date: str) -> datetime | None:
    """ISO end date to an aware datetime. Date-only values mean end of that day UTC."""
    if not end_date:
        return None
    try:
        dt_str = end_date.replace("Z", "+00:00")
        if "T" not in dt_str:
            dt_str += "T23:59:59+00:00"
        dt = datetime.fromisoformat(dt_str)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def validate_listing(
    listing: MarketListing,
    min_volume: float,
    min_resolution_hours: float,
    now: datetime | None = None,
) -> tuple[bool, str]:
    """Volume, time-to-resolution and open checks. Returns (valid, reason)."""
    if listing.volume_24h < min_volume:
        return False, f"Volume too low: ${listing.volume_24h:,.0f}"

    end_dt = parse_end_date(listing.end_date)
    if end_dt is not None:
        now = now or datetime.now(timezone.utc)
        hours_left = (end_dt - now).total_seconds() / 3600.0
        if hours_left < min_resolution_hours:
            return False, f"Resolves too soon: {hours_left:.0f} hours"

    if listing.closed or not listing.active:
        return False, "Market is closed or inactive"

    return True, ""


class ListingSource(Protocol):
    async def get_all_markets(self) -> list[MarketListing]: ...


class CatalogStore(Protocol):
    async def upsert_market(self, market: ThresholdMarket) -> None: ...
    async def get_active_markets(self) -> list[ThresholdMarket]: ...
    async def mark_missing_inactive(self, seen_ids: set[str]) -> int: ...


class MarketCatalog:
    """
    Discovered threshold markets, persisted through the repository and held
    in memory by asset for the scan loop.
    """

    def __init__(
        self,
        source: ListingSource,
        store: CatalogStore,
        min_volume: float = 50_000.0,
        min_resolution_hours: float = 24.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self._source = source
        self._store = store
        self._min_volume = min_volume
        self._min_resolution_hours = min_resolution_hours
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._markets: dict[str, ThresholdMarket] = {}

    def build_market(self, listing: MarketListing) -> tuple[ThresholdMarket | None, str]:
        """Run one listing through extraction, exclusion and validation."""
        extraction = extract_threshold(listing.question)
        if extraction is None:
            return None, "no threshold"
        if should_exclude(listing.question):
            return None, "excluded keyword"
        valid, reason = validate_listing(
            listing, self._min_volume, self._min_resolution_hours, self._clock(),
        )
        if not valid:
            return None, reason

        asset, threshold, direction = extraction
        return ThresholdMarket(
            market_id=listing.market_id,
            question=listing.question,
            asset=asset,
            threshold=threshold,
            direction=direction,
            resolution_time=parse_end_date(listing.end_date),
            volume_24h=listing.volume_24h,
            is_whitelisted=is_whitelisted(listing.question),
            status=MarketStatus.ACTIVE,
            yes_token_id=listing.yes_token_id,
            no_token_id=listing.no_token_id,
            discovered_at=time.time(),
        ), ""

    async def discover(self) -> DiscoveryResult:
        """
        One discovery pass over every open listing. A failing listing source
        or a failing upsert is recorded in `errors`, never raised.
        """
        result = DiscoveryResult()
        try:
            listings = await self._source.get_all_markets()
        except Exception as e:
            result.errors.append(f"Discovery failed: {e}")
            logger.error("Market discovery failed: %s", e)
            return result

        result.discovered = len(listings)
        seen: set[str] = set()
        candidates = 0
        for listing in listings:
            if extract_threshold(listing.question) is None:
                continue
            candidates += 1
            market, reason = self.build_market(listing)
            if market is None:
                result.excluded += 1
                logger.debug("Discovery skip %s: %s", listing.market_id, reason)
                continue
            try:
                await self._store.upsert_market(market)
            except Exception as e:
                result.errors.append(f"Failed to save market {listing.market_id}: {e}")
                continue
            seen.add(market.market_id)
            result.matched += 1
            logger.info(
                "Matched: %s %s $%s - %s",
                market.asset.value, market.direction.value,
                f"{market.threshold:,.0f}", market.question[:60],
            )

        # A partial run cannot tell "delisted" from "failed to save"
        if not result.errors:
            try:
                retired = await self._store.mark_missing_inactive(seen)
            except Exception as e:
                result.errors.append(f"Failed to retire missing markets: {e}")
            else:
                if retired:
                    logger.info("Marked %d markets INACTIVE (no longer listed)", retired)

        logger.info(
            "Discovery: %d listings, %d crypto candidates, %d matched, %d excluded, %d errors",
            result.discovered, candidates, result.matched, result.excluded, len(result.errors),
        )
        return result

    async def load(self) -> list[ThresholdMarket]:
        """Replace the in-memory catalog with the stored ACTIVE markets."""
        markets = await self._store.get_active_markets()
        self._markets = {m.market_id: m for m in markets}
        logger.info("Catalog loaded: %d active markets", len(self._markets))
        return markets

    async def refresh(self) -> DiscoveryResult:
        result = await self.discover()
        await self.load()
        return result

    def markets_for(self, asset: Asset) -> list[ThresholdMarket]:
        return [m for m in self._markets.values() if m.asset == asset]

    def get(self, market_id: str) -> ThresholdMarket | None:
        return self._markets.get(market_id)

    def all(self) -> list[ThresholdMarket]:
        return list(self._markets.values())

    def __len__(self) -> int:
        return len(self._markets)
