"""
Console summaries for the trader.

Pure formatting functions that emit log lines using box-drawing characters.
No side effects beyond logging. All data arrives via arguments.
"""

from __future__ import annotations

import logging

from config import Config
from scanner.models import DiscoveryResult, RiskState, ThresholdMarket

logger = logging.getLogger(__name__)

_TOP = "\u250c"  # ┌
_MID = "\u2502"  # │
_BOT = "\u2514"  # └
_DASH = "\u2500"  # ─

_MAX_QUESTION_LEN = 50


def _truncate(text: str, length: int = _MAX_QUESTION_LEN) -> str:
    if len(text) <= length:
        return text
    return text[: length - 1] + "\u2026"


def print_startup(cfg: Config) -> None:
    """Compact config block emitted once at startup."""
    logger.info(
        "  Assets: %s  Min gap: %.0f%%  Min volume: $%s  Min resolution: %.0fh",
        " ".join(cfg.tracked_assets), cfg.min_gap_percent * 100,
        f"{cfg.min_volume:,.0f}", cfg.min_resolution_hours,
    )
    logger.info(
        "  Size: $%.0f base / $%.0f max  Exposure <= $%.0f  Positions <= %d",
        cfg.base_position_size, cfg.max_position_size,
        cfg.max_total_exposure, cfg.max_simultaneous_positions,
    )
    logger.info(
        "  Exits: +%.0f%% / -%.0f%% / %.0fs  Daily: -$%.0f loss, %d trades  Cooldown: %.0fm",
        cfg.profit_target_pct * 100, cfg.stop_loss_pct * 100, cfg.max_hold_time_seconds,
        cfg.daily_loss_limit, cfg.max_daily_trades, cfg.cooldown_minutes,
    )


def print_discovery(result: DiscoveryResult, markets: list[ThresholdMarket]) -> None:
    """Box listing the markets the catalog will trade."""
    logger.info(
        "%s%s Discovery: %d listings, %d matched, %d excluded, %d errors",
        _TOP, _DASH, result.discovered, result.matched, result.excluded, len(result.errors),
    )
    for market in markets:
        logger.info(
            "%s %s %-5s $%-10s %s%s",
            _MID,
            market.asset.value,
            market.direction.value,
            f"{market.threshold:,.0f}",
            _truncate(market.question),
            " *" if market.is_whitelisted else "",
        )
    for error in result.errors[:5]:
        logger.warning("%s %s", _MID, error)
    logger.info("%s%s", _BOT, _DASH * 40)


def print_session_summary(pnl_summary: dict, all_time: dict, risk: RiskState) -> None:
    logger.info("%s%s Session summary %s", _TOP, _DASH, _DASH * 24)
    logger.info(
        "%s Trades: %d  Wins: %d  Win rate: %.1f%%  P&L: $%.2f (avg $%.2f)",
        _MID, pnl_summary["total_trades"], pnl_summary["winning_trades"],
        pnl_summary["win_rate_pct"], pnl_summary["total_pnl"], pnl_summary["avg_pnl"],
    )
    logger.info(
        "%s Open: %d  Exposure: $%.2f  Today: $%.2f over %d trades",
        _MID, risk.open_positions, risk.total_exposure, risk.daily_pnl, risk.daily_trades,
    )
    if all_time:
        logger.info(
            "%s All time: %d trades  P&L: $%.2f  Best: $%.2f  Worst: $%.2f",
            _MID, all_time["total_trades"], all_time["total_pnl"],
            all_time["best_trade"], all_time["worst_trade"],
        )
    logger.info("%s%s", _BOT, _DASH * 40)
