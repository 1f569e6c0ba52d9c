"""
Command-line entry point.

Usage:
    python -m market_fusion run --config config/fusion.yaml
    python -m market_fusion cycle
    python -m market_fusion backfill --symbols bitcoin ethereum --days 7
    python -m market_fusion status --ping
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from market_fusion.adapters.data_sources.base import MarketDataSource
from market_fusion.adapters.data_sources.binance import BinanceSource
from market_fusion.adapters.data_sources.coingecko import CoinGeckoSource
from market_fusion.adapters.data_sources.coinmarketcap import CoinMarketCapSource
from market_fusion.adapters.data_sources.sentiment_feeds import FearGreedFeed, NewsFeed, RedditFeed
from market_fusion.core.config import FusionConfig, load_config
from market_fusion.core.errors import MarketFusionError
from market_fusion.core.logging_config import configure_logging, get_logger
from market_fusion.db.market_data_store import SQLiteMarketDataStore
from market_fusion.services.data.aggregator import AggregationOrchestrator
from market_fusion.services.data.scheduler import FusionScheduler
from market_fusion.services.data.sentiment import SentimentFusionEngine

logger = get_logger(__name__)


def build_sources(config: FusionConfig) -> List[MarketDataSource]:
    """Provider adapters for the configuration (CoinMarketCap only with an API key)."""
    timeout = config.request_timeout_seconds
    sources: List[MarketDataSource] = [
        CoinGeckoSource(
            api_key=config.coingecko_api_key,
            timeout=timeout,
            max_redirects=config.max_redirects
        ),
    ]

    if config.coinmarketcap_api_key:
        sources.append(CoinMarketCapSource(
            api_key=config.coinmarketcap_api_key,
            timeout=timeout,
            max_redirects=config.max_redirects
        ))
    else:
        logger.warning("COINMARKETCAP_API_KEY not set - CoinMarketCap disabled")

    sources.append(BinanceSource(timeout=timeout, max_redirects=config.max_redirects))
    return sources


def build_orchestrator(config: FusionConfig) -> AggregationOrchestrator:
    """Wire the full pipeline from configuration."""
    timeout = config.sentiment_timeout_seconds
    sentiment = SentimentFusionEngine(
        reddit=RedditFeed(timeout=timeout, max_redirects=config.max_redirects),
        news=NewsFeed(api_key=config.news_api_key, timeout=timeout, max_redirects=config.max_redirects),
        fear_greed=FearGreedFeed(timeout=timeout, max_redirects=config.max_redirects),
        search_terms=config.search_terms_for,
        timeout=timeout
    )

    return AggregationOrchestrator(
        sources=build_sources(config),
        store=SQLiteMarketDataStore(config.db_path),
        config=config,
        sentiment_engine=sentiment
    )


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run(config: FusionConfig) -> None:
    orchestrator = build_orchestrator(config)
    scheduler = FusionScheduler(
        orchestrator,
        aggregation_interval=config.aggregation_interval_seconds,
        backfill_interval=config.backfill_interval_seconds
    )
    await scheduler.run_forever()


async def _cycle(config: FusionConfig) -> int:
    report = await build_orchestrator(config).run_cycle()
    _print_json({
        "timestamp": report.timestamp.isoformat(),
        "skipped": report.skipped,
        "persisted": report.persisted,
        "duplicates": report.duplicates,
        "no_data": report.no_data,
        "failed": report.failed,
    })
    return 1 if report.failed else 0


async def _backfill(config: FusionConfig, symbols: Optional[List[str]], days: Optional[int]) -> int:
    report = await build_orchestrator(config).backfill(symbols, days)
    _print_json({
        "start": report.start.isoformat(),
        "end": report.end.isoformat(),
        "inserted": report.inserted,
        "already_present": report.already_present,
        "failed": report.failed,
    })
    return 1 if report.failed else 0


def _status(config: FusionConfig, ping: bool = False) -> int:
    orchestrator = build_orchestrator(config)
    payload = {
        "sources": orchestrator.get_source_status(),
        "health": orchestrator.health_check(),
    }
    if ping:
        payload["reachable"] = {
            source.source_id: source.validate_connection() for source in orchestrator.sources
        }
    _print_json(payload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="market-fusion", description="Market data fusion pipeline")
    ap.add_argument("--config", type=Path, default=None, help="Config file (YAML)")
    ap.add_argument("--env-file", type=Path, default=None, help=".env file with API keys")

    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the scheduler until interrupted")
    sub.add_parser("cycle", help="Run one live aggregation cycle")

    backfill = sub.add_parser("backfill", help="Backfill history from the canonical provider")
    backfill.add_argument("--symbols", nargs="+", default=None, help="Symbols (default: configured)")
    backfill.add_argument("--days", type=int, default=None, help="Days of history")

    status = sub.add_parser("status", help="Print source status and health check as JSON")
    status.add_argument("--ping", action="store_true", help="Also test each provider connection")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, args.env_file)
    except MarketFusionError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(
        level=config.log_level,
        log_dir=Path(config.log_dir) if config.log_dir else None,
        enable_file=config.log_dir is not None,
        serialize=config.log_json
    )

    try:
        if args.command == "run":
            asyncio.run(_run(config))
            return 0
        if args.command == "cycle":
            return asyncio.run(_cycle(config))
        if args.command == "backfill":
            return asyncio.run(_backfill(config, args.symbols, args.days))
        return _status(config, args.ping)

    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C)")
        return 130  # Standard SIGINT exit code

    except MarketFusionError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
