#!/usr/bin/env python3
"""
Crypto threshold trader -- single entry point.

Wires the pipeline together and runs it until interrupted:
  1. Discover threshold markets ("Will BTC be above $100,000 ...")
  2. Stream spot prices for BTC / ETH / SOL
  3. Compare fair vs observed YES/NO prices on every tick
  4. Size + risk-check + open simulated positions
  5. Sweep exits and track P&L

Usage:
  uv run python run.py                       # trade (simulated fills)
  uv run python run.py --discover-only       # one discovery pass, then exit
  uv run python run.py --json-log run.ndjson # also write machine-readable logs
  uv run python run.py --db /tmp/trader.db   # override the database path
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from client.cache import MarketPriceCache
from client.clob import ClobPriceSource
from client.gamma import GammaClient
from client.ws import PriceFeed, stream_url
from config import Config, load_config
from executor.engine import Executor
from executor.exits import ExitMonitor, ExitRules
from executor.risk import RiskLedger, RiskLimits
from monitor.display import print_discovery, print_session_summary, print_startup
from monitor.logger import setup_logging
from monitor.pnl import PnLTracker
from pipeline.orchestrator import ReactiveTrader
from scanner.discovery import MarketCatalog
from scanner.models import Asset
from scanner.price_window import PriceTracker
from state.store import PersistenceError, SQLiteStore

logger = logging.getLogger(__name__)

_BANNER = r"""
 _____ _                   _           _     _
|_   _| |__  _ __ ___  ___| |__   ___ | | __| |
  | | | '_ \| '__/ _ \/ __| '_ \ / _ \| |/ _` |
  | | | | | | | |  __/\__ \ | | | (_) | | (_| |
  |_| |_| |_|_|  \___||___/_| |_|\___/|_|\__,_|
                            Threshold Trader v0.1
"""


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Crypto threshold market trader")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (overrides DB_PATH)")
    parser.add_argument("--discover-only", action="store_true", help="Run one discovery pass, print the catalog and exit")
    return parser.parse_args()


async def _run(cfg: Config, args: argparse.Namespace) -> int:
    db_path = args.db or cfg.db_path
    store = SQLiteStore(db_path)
    gamma = GammaClient(cfg.gamma_host)
    catalog = MarketCatalog(
        gamma, store,
        min_volume=cfg.min_volume,
        min_resolution_hours=cfg.min_resolution_hours,
    )
    logger.debug("Store: %s  Gamma: %s", db_path, cfg.gamma_host)

    try:
        if args.discover_only:
            result = await catalog.refresh()
            print_discovery(result, catalog.all())
            return 1 if result.errors else 0

        assets = tuple(Asset(a) for a in cfg.tracked_assets)
        tracker = PriceTracker(assets=assets, significant_move_pct=cfg.significant_move_pct)
        feed = PriceFeed(
            url=stream_url(cfg.binance_ws_url, assets),
            tracker=tracker,
            reconnect_delay_sec=cfg.reconnect_delay_sec,
            backoff_factor=cfg.reconnect_backoff_factor,
            max_delay_sec=cfg.reconnect_max_delay_sec,
            max_reconnect_attempts=cfg.max_reconnect_attempts,
            heartbeat_interval_sec=cfg.heartbeat_interval_sec,
            open_timeout_sec=cfg.connect_timeout_sec,
        )
        logger.debug("Price feed: %s", feed.url)

        clob = ClobPriceSource.from_host(cfg.clob_host)
        price_cache = MarketPriceCache(clob.fetch, ttl_sec=cfg.price_cache_ttl_sec)

        risk = RiskLedger(store, RiskLimits(
            max_total_exposure=cfg.max_total_exposure,
            max_simultaneous_positions=cfg.max_simultaneous_positions,
            daily_loss_limit=cfg.daily_loss_limit,
            max_daily_trades=cfg.max_daily_trades,
            cooldown_minutes=cfg.cooldown_minutes,
        ))
        pnl = PnLTracker(ledger_path=cfg.pnl_ledger_path or None)
        executor = Executor(
            store, risk,
            base_position_size=cfg.base_position_size,
            max_position_size=cfg.max_position_size,
            pnl_tracker=pnl,
        )
        exit_monitor = ExitMonitor(
            store, executor,
            side_prices=price_cache.get,
            asset_price=feed.current_price,
            market_lookup=catalog.get,
            rules=ExitRules(
                profit_target_pct=cfg.profit_target_pct,
                stop_loss_pct=cfg.stop_loss_pct,
                max_hold_time_seconds=cfg.max_hold_time_seconds,
            ),
        )
        trader = ReactiveTrader(
            store, catalog, feed, price_cache, executor, exit_monitor, risk,
            min_gap=cfg.min_gap_percent,
            discovery_interval_sec=cfg.discovery_interval_minutes * 60.0,
            exit_check_interval_sec=cfg.exit_check_interval_sec,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, trader.request_stop)
            except NotImplementedError:
                # Windows: KeyboardInterrupt still ends asyncio.run
                pass

        clean = await trader.run()

        try:
            all_time = await store.get_all_time_stats()
        except PersistenceError as e:
            logger.error("Could not read all-time stats: %s", e)
            all_time = {}
        print_session_summary(pnl.summary(), all_time, risk.state())

        if not clean:
            logger.critical("Exiting: price feed could not be re-established")
            return 1
        return 0
    finally:
        await gamma.aclose()
        store.close()


def main() -> None:
    args = parse_args()

    try:
        cfg = load_config()
    except Exception as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    log_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    logger.info(_BANNER.strip())
    logger.info("  Log file: %s", log_path)
    print_startup(cfg)

    try:
        exit_code = asyncio.run(_run(cfg, args))
    except KeyboardInterrupt:
        exit_code = 0
    except PersistenceError as e:
        logger.critical("Storage unavailable: %s", e)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
