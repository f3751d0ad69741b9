"""
Data models for the threshold trader. Pure data, apart from lifecycle transitions.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Asset(Enum):
    BTC = "BTC"
    ETH = "ETH"
    SOL = "SOL"


class Direction(Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"


class MarketStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    RESOLVED = "RESOLVED"


class ContractSide(Enum):
    YES = "YES"
    NO = "NO"


class OpportunityStatus(Enum):
    DETECTED = "DETECTED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class PositionStatus(Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class ExitReason(Enum):
    PROFIT = "PROFIT"
    STOP = "STOP"
    TIME = "TIME"
    REVERSAL = "REVERSAL"


class RiskRejection(Enum):
    DAILY_LOSS = "daily_loss"
    DAILY_TRADES = "daily_trades"
    POSITIONS = "positions"
    EXPOSURE = "exposure"
    COOLDOWN = "cooldown"


class InvalidTransition(Exception):
    """Raised when a lifecycle status change is not allowed."""


_OPPORTUNITY_TRANSITIONS: dict[OpportunityStatus, frozenset[OpportunityStatus]] = {
    OpportunityStatus.DETECTED: frozenset({
        OpportunityStatus.EXECUTING,
        OpportunityStatus.SKIPPED,
        OpportunityStatus.FAILED,
    }),
    OpportunityStatus.EXECUTING: frozenset({
        OpportunityStatus.EXECUTED,
        OpportunityStatus.FAILED,
    }),
    OpportunityStatus.EXECUTED: frozenset(),
    OpportunityStatus.SKIPPED: frozenset(),
    OpportunityStatus.FAILED: frozenset(),
}

_POSITION_TRANSITIONS: dict[PositionStatus, frozenset[PositionStatus]] = {
    PositionStatus.OPEN: frozenset({PositionStatus.CLOSING}),
    PositionStatus.CLOSING: frozenset({PositionStatus.CLOSED}),
    PositionStatus.CLOSED: frozenset(),
}


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class PriceSample:
    price: float
    timestamp: float


@dataclass(frozen=True)
class AssetPrice:
    asset: Asset
    price: float
    timestamp: float
    change_1m: float = 0.0
    change_5m: float = 0.0


@dataclass(frozen=True)
class SignificantMove:
    asset: Asset
    previous_price: float
    current_price: float
    change_pct: float
    timestamp: float


@dataclass(frozen=True)
class MarketListing:
    """One raw row from the market listing source."""
    market_id: str
    question: str
    volume_24h: float = 0.0
    end_date: str = ""   # ISO 8601 (empty = unknown)
    active: bool = True
    closed: bool = False
    yes_token_id: str = ""
    no_token_id: str = ""


@dataclass(frozen=True)
class PriceLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    token_id: str
    bids: tuple[PriceLevel, ...]
    asks: tuple[PriceLevel, ...]

    @property
    def best_bid(self) -> PriceLevel | None:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> PriceLevel | None:
        return self.asks[0] if self.asks else None


@dataclass(frozen=True)
class SidePrices:
    yes_price: float
    no_price: float
    fetched_at: float = field(default_factory=time.time)


@dataclass
class ThresholdMarket:
    market_id: str
    question: str
    asset: Asset
    threshold: float
    direction: Direction
    resolution_time: datetime | None = None
    volume_24h: float = 0.0
    is_whitelisted: bool = False
    status: MarketStatus = MarketStatus.ACTIVE
    yes_token_id: str = ""
    no_token_id: str = ""
    discovered_at: float = field(default_factory=time.time)


@dataclass
class Opportunity:
    market_id: str
    asset: Asset
    threshold: float
    source_price: float
    expected_price: float
    actual_price: float
    gap_pct: float
    side: ContractSide
    opportunity_id: str = field(default_factory=_new_id)
    detected_at: float = field(default_factory=time.time)
    status: OpportunityStatus = OpportunityStatus.DETECTED
    skip_reason: str = ""

    def transition(self, new_status: OpportunityStatus) -> None:
        if new_status not in _OPPORTUNITY_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Opportunity {self.opportunity_id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status


@dataclass
class Position:
    market_id: str
    asset: Asset
    side: ContractSide
    entry_price: float
    quantity: float
    asset_price_at_entry: float
    position_id: str = field(default_factory=_new_id)
    opportunity_id: str = ""
    entry_time: float = field(default_factory=time.time)
    exit_price: float | None = None
    exit_time: float | None = None
    exit_reason: ExitReason | None = None
    pnl: float | None = None
    status: PositionStatus = PositionStatus.OPEN

    @property
    def cost_basis(self) -> float:
        return self.quantity * self.entry_price

    def transition(self, new_status: PositionStatus) -> None:
        if new_status not in _POSITION_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Position {self.position_id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status


@dataclass
class RiskState:
    total_exposure: float = 0.0
    open_positions: int = 0
    daily_pnl: float = 0.0
    daily_trades: int = 0
    cooldowns: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class PositionStats:
    """Aggregates read back from the repository."""
    open_positions: int = 0
    total_exposure: float = 0.0
    today_pnl: float = 0.0
    today_trades: int = 0


@dataclass(frozen=True)
class RiskCheck:
    allowed: bool
    reason: str = ""
    category: RiskRejection | None = None


@dataclass
class DiscoveryResult:
    discovered: int = 0
    matched: int = 0
    excluded: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MispricingResult:
    has_opportunity: bool
    opportunity: Opportunity | None = None
    reason: str = ""
    expected_yes: float = 0.0
    expected_no: float = 0.0


@dataclass(frozen=True)
class ExitDecision:
    should_exit: bool
    reason: ExitReason | None = None
    current_price: float = 0.0
    pnl_pct: float = 0.0


@dataclass(frozen=True)
class TradeOutcome:
    success: bool
    position: Position | None = None
    error: str = ""


@dataclass(frozen=True)
class CloseOutcome:
    success: bool
    pnl: float = 0.0
    error: str = ""
