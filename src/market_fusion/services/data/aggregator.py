"""
Multi-source market data aggregation.

The AggregationOrchestrator drives the fusion pipeline per symbol:

    fetch (all providers, settle-all) -> validate -> resolve
        -> enrich (indicators, sentiment; best effort) -> persist

and runs the lower-frequency historical backfill. It also serves the read
side: current record, indicators, sentiment, history, quality metrics,
source status and health.

Per-symbol failures are logged and reported; they never stop the cycle.
"""

import asyncio
import dataclasses
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

import pandas as pd
from loguru import logger

from market_fusion.adapters.data_sources.base import MarketDataSource
from market_fusion.core.config import FusionConfig
from market_fusion.core.errors import (
    EnrichmentFailure,
    FetchError,
    FetchErrorKind,
    InsufficientData,
    MarketFusionError,
    NoDataAvailable,
)
from market_fusion.core.logging_config import PipelineLogger
from market_fusion.db.market_data_store import MarketDataStore
from market_fusion.services.data.conflict_resolver import ConflictResolver
from market_fusion.services.data.indicators import TechnicalIndicatorEngine
from market_fusion.services.data.sentiment import SentimentFusionEngine
from market_fusion.services.data.source_health import SourceHealthTracker
from market_fusion.services.data.types import (
    BackfillReport,
    CycleReport,
    FusedRecord,
    Indicators,
    RawReading,
    Sentiment,
    utc_now,
)
from market_fusion.services.data.validation import DataValidationEngine


# Symbol outcomes within a cycle
PERSISTED = "persisted"
DUPLICATE = "duplicate"
NO_DATA = "no_data"
FAILED = "failed"

BACKFILL_QUALITY = 0.8
BACKFILL_CONFIDENCE = 0.7

PERIOD_DAYS = {
    "1d": 1,
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "1y": 365,
}
DEFAULT_PERIOD_DAYS = 30

INTERVAL_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}

QUALITY_SAMPLE_SIZE = 100
STALE_AGGREGATION = timedelta(minutes=10)
MIN_HEALTHY_QUALITY = 0.5


def downsample(records: List[FusedRecord], interval: str) -> List[FusedRecord]:
    """
    Keep the latest record per interval bucket.

    Unknown intervals return the records unchanged.

    Args:
        records: Records, oldest first
        interval: Bucket size (1m, 5m, 15m, 1h, 4h, 1d)

    Returns:
        Downsampled records, oldest first
    """
    seconds = INTERVAL_SECONDS.get(interval)
    if seconds is None or len(records) < 2:
        return records

    frame = pd.DataFrame({
        "timestamp": pd.to_datetime([r.timestamp for r in records], utc=True),
        "position": range(len(records)),
    })
    buckets = frame["timestamp"].dt.floor(pd.Timedelta(seconds=seconds))
    latest = frame.groupby(buckets)["position"].max().sort_values()

    return [records[i] for i in latest]


class AggregationOrchestrator:
    """
    Scheduled driver of the fusion pipeline.

    Concurrency:
    - Symbols within a cycle are processed concurrently
    - Provider fetches for a symbol run concurrently in the default executor
    - Backfill fetches, cleaning and batch inserts also run in the executor
    - A cycle (or backfill) triggered while the previous one is still running
      is skipped, not queued
    """

    def __init__(
        self,
        sources: List[MarketDataSource],
        store: MarketDataStore,
        config: Optional[FusionConfig] = None,
        validator: Optional[DataValidationEngine] = None,
        resolver: Optional[ConflictResolver] = None,
        indicator_engine: Optional[TechnicalIndicatorEngine] = None,
        sentiment_engine: Optional[SentimentFusionEngine] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize orchestrator.

        Args:
            sources: Provider adapters (CoinGecko, CoinMarketCap, Binance, ...)
            store: Market data store
            config: Pipeline settings (default: FusionConfig())
            validator: Reading validator
            resolver: Conflict resolver (default: weights from config)
            indicator_engine: Indicator engine (default: reads from store)
            sentiment_engine: Sentiment engine (None disables sentiment)
            clock: Current UTC time provider
        """
        self.config = config or FusionConfig()
        self.sources = sources
        self.store = store
        self.validator = validator or DataValidationEngine()
        self.resolver = resolver or ConflictResolver(
            self.config.source_weights, self.config.default_source_weight
        )
        self.indicator_engine = indicator_engine or TechnicalIndicatorEngine(
            store, self.config.indicator_window, self.config.min_indicator_history
        )
        self.sentiment_engine = sentiment_engine
        self.clock = clock

        self.health = SourceHealthTracker([s.source_id for s in sources])
        self.events = PipelineLogger(component="aggregator")

        self._cycle_running = False
        self._backfill_running = False
        self._background: Set[asyncio.Task] = set()
        self._backfill_task: Optional[asyncio.Task] = None

        logger.info(
            f"AggregationOrchestrator initialized with {len(sources)} sources: "
            f"{[s.source_id for s in sources]} | Symbols: {self.config.symbols}"
        )

    @property
    def symbols(self) -> List[str]:
        return list(self.config.symbols)

    @property
    def cycle_running(self) -> bool:
        return self._cycle_running

    @property
    def backfill_running(self) -> bool:
        return self._backfill_running

    # ========== Live cycle ==========

    async def _fetch_one(self, source: MarketDataSource, symbol: str) -> RawReading:
        loop = asyncio.get_running_loop()
        timeout = self.config.request_timeout_seconds
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, source.fetch, symbol),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise FetchError(
                FetchErrorKind.TIMEOUT,
                f"No response within {timeout}s",
                source=source.source_id, symbol=symbol
            ) from e

    async def fetch_all(self, symbol: str) -> List[RawReading]:
        """
        Fetch the symbol from every provider concurrently.

        A failing provider is logged and excluded; the others are unaffected.

        Returns:
            Readings from the providers that succeeded
        """
        results = await asyncio.gather(
            *(self._fetch_one(source, symbol) for source in self.sources),
            return_exceptions=True
        )

        readings = []
        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                kind = result.kind.value if isinstance(result, FetchError) else "unexpected"
                self.health.record_failure(source.source_id, str(result))
                self.events.source_failed(symbol, source.source_id, kind, str(result))
                continue

            self.health.record_success(source.source_id)
            readings.append(result)

        return readings

    async def _enrich(self, record: FusedRecord) -> FusedRecord:
        """Attach indicators and sentiment; each failure only leaves its field empty."""
        indicators = None
        try:
            indicators = self.indicator_engine.calculate(record.symbol)
        except InsufficientData as e:
            logger.debug(f"Skipping indicators for {record.symbol}: {e}")
        except Exception as e:
            self.events.enrichment_failed(record.symbol, "indicators", str(e))

        sentiment = None
        if self.sentiment_engine is not None:
            try:
                sentiment = await self.sentiment_engine.analyze(record.symbol)
            except Exception as e:
                self.events.enrichment_failed(record.symbol, "sentiment", str(e))

        return dataclasses.replace(record, indicators=indicators, sentiment=sentiment)

    async def process_symbol(self, symbol: str, timestamp: datetime) -> str:
        """
        Run the full pipeline for one symbol.

        Args:
            symbol: Canonical symbol
            timestamp: Cycle timestamp for the fused record

        Returns:
            PERSISTED, or DUPLICATE if a record already existed for the key

        Raises:
            NoDataAvailable: No provider produced a valid reading
            PersistenceError: The store rejected the write
        """
        readings = await self.fetch_all(symbol)
        validated = self.validator.validate_batch(readings, now=self.clock())
        record = self.resolver.resolve(validated, timestamp=timestamp, now=self.clock())
        record = await self._enrich(record)

        if self.store.save(record):
            self.events.record_persisted(
                symbol, record.price, record.quality_score, record.confidence, len(validated),
                source_id=record.source_id
            )
            return PERSISTED

        self.events.record_duplicate(symbol, timestamp.isoformat())
        return DUPLICATE

    async def _run_symbol(self, symbol: str, timestamp: datetime) -> str:
        try:
            return await self.process_symbol(symbol, timestamp)
        except NoDataAvailable:
            logger.warning(f"No valid data for {symbol} in cycle {timestamp.isoformat()}")
            return NO_DATA
        except MarketFusionError as e:
            logger.error(f"Pipeline failed for {symbol}: {e}")
            return FAILED
        except Exception:
            logger.exception(f"Unexpected pipeline failure for {symbol}")
            return FAILED

    async def run_cycle(self) -> CycleReport:
        """
        Run one live aggregation cycle over all configured symbols.

        Returns:
            CycleReport (skipped=True if a cycle was already running)
        """
        timestamp = self.clock().replace(microsecond=0)

        if self._cycle_running:
            self.events.cycle_skipped("aggregation", "previous cycle still running")
            return CycleReport(timestamp=timestamp, skipped=True)

        self._cycle_running = True
        started = time.perf_counter()
        try:
            symbols = self.symbols
            outcomes = await asyncio.gather(*(self._run_symbol(s, timestamp) for s in symbols))
        finally:
            self._cycle_running = False

        report = CycleReport(timestamp=timestamp)
        buckets = {
            PERSISTED: report.persisted,
            DUPLICATE: report.duplicates,
            NO_DATA: report.no_data,
            FAILED: report.failed,
        }
        for symbol, outcome in zip(symbols, outcomes):
            buckets[outcome].append(symbol)

        self.events.cycle_completed(
            timestamp.isoformat(),
            persisted=len(report.persisted),
            no_data=len(report.no_data),
            failed=len(report.failed),
            duration_ms=(time.perf_counter() - started) * 1000
        )
        return report

    # ========== Backfill ==========

    def _history_source(self) -> Optional[MarketDataSource]:
        for source in self.sources:
            if source.source_id == self.config.history_source and hasattr(source, "fetch_history"):
                return source
        return None

    def _store_history(self, symbol: str, raw: List[RawReading], end: datetime) -> tuple:
        """Clean and insert history points; blocking, runs in the executor."""
        cleaned = self.validator.validate_historical(symbol, raw, now=end)
        records = [
            FusedRecord(
                symbol=symbol,
                price=point.price,
                volume=point.volume,
                market_cap=point.market_cap,
                price_change_24h=point.price_change_24h,
                timestamp=point.timestamp,
                source_id=point.source_id,
                quality_score=BACKFILL_QUALITY,
                confidence=BACKFILL_CONFIDENCE
            )
            for point in cleaned
        ]
        inserted = self.store.save_many(records)
        return inserted, len(records) - inserted

    async def _backfill_symbol(
        self,
        source: MarketDataSource,
        symbol: str,
        start: datetime,
        end: datetime
    ) -> tuple:
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, source.fetch_history, symbol, start, end)
        return await loop.run_in_executor(None, self._store_history, symbol, raw, end)

    async def backfill(
        self,
        symbols: Optional[List[str]] = None,
        days: Optional[int] = None
    ) -> BackfillReport:
        """
        Backfill history from the canonical provider.

        Only rows whose (symbol, timestamp) is absent are inserted, so
        running it twice over the same range inserts nothing new.

        Args:
            symbols: Symbols to backfill (default: configured symbols)
            days: Days of history (default: config.backfill_days)

        Returns:
            BackfillReport (skipped=True if a backfill was already running)
        """
        end = self.clock()
        start = end - timedelta(days=days or self.config.backfill_days)
        targets = symbols or self.symbols
        report = BackfillReport(start=start, end=end)

        if self._backfill_running:
            self.events.cycle_skipped("backfill", "previous backfill still running")
            report.skipped = True
            return report

        source = self._history_source()
        if source is None:
            logger.error(f"Backfill unavailable: no history source '{self.config.history_source}'")
            report.failed.extend(targets)
            return report

        self._backfill_running = True
        try:
            for symbol in targets:
                try:
                    inserted, present = await self._backfill_symbol(source, symbol, start, end)
                except MarketFusionError as e:
                    logger.error(f"Backfill failed for {symbol}: {e}")
                    report.failed.append(symbol)
                    continue
                except Exception:
                    logger.exception(f"Unexpected backfill failure for {symbol}")
                    report.failed.append(symbol)
                    continue

                report.inserted[symbol] = inserted
                report.already_present[symbol] = present
                self.events.backfill_completed(symbol, inserted, present)
        finally:
            self._backfill_running = False

        return report

    async def trigger_backfill(
        self,
        symbols: Optional[List[str]] = None,
        days: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Start a backfill in the background and return immediately.

        Returns:
            {"message": ..., "symbols": [...]}
        """
        targets = symbols or self.symbols

        pending = self._backfill_task is not None and not self._backfill_task.done()
        if self._backfill_running or pending:
            return {"message": "Backfill already running", "symbols": targets}

        task = asyncio.create_task(self.backfill(targets, days))
        self._backfill_task = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        return {"message": "Backfill process started", "symbols": targets}

    async def wait_background(self) -> None:
        """Wait for background backfills started by trigger_backfill."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ========== Queries ==========

    def get_current(self, symbol: str) -> FusedRecord:
        """
        Latest fused record for a symbol.

        Raises:
            NoDataAvailable: If nothing is stored for the symbol
        """
        latest = self.store.find_latest_by_symbol(symbol, 1)
        if not latest:
            raise NoDataAvailable(f"No data available for {symbol}")
        return latest[-1]

    def get_indicators(self, symbol: str) -> Indicators:
        """
        Indicators over stored history.

        Raises:
            InsufficientData: Not enough stored records yet
            EnrichmentFailure: The calculation itself failed
        """
        try:
            return self.indicator_engine.calculate(symbol)
        except MarketFusionError:
            raise
        except Exception as e:
            raise EnrichmentFailure(symbol, "indicators", str(e)) from e

    async def get_sentiment(self, symbol: str) -> Sentiment:
        if self.sentiment_engine is None:
            raise NoDataAvailable("Sentiment analysis is not configured")
        return await self.sentiment_engine.analyze(symbol)

    def get_historical(self, symbol: str, period: str = "30d", interval: str = "1h") -> List[FusedRecord]:
        """
        Stored records in the period, oldest first, one per interval bucket.

        Args:
            symbol: Canonical symbol
            period: 1d, 7d, 30d, 90d or 1y (unknown -> 30d)
            interval: 1m, 5m, 15m, 1h, 4h or 1d (unknown -> no downsampling)
        """
        end = self.clock()
        start = end - timedelta(days=PERIOD_DAYS.get(period, DEFAULT_PERIOD_DAYS))
        records = self.store.find_by_symbol_and_range(symbol, start, end)
        return downsample(records, interval)

    def get_quality_metrics(self, symbol: str) -> Dict[str, Any]:
        """
        Quality summary over the latest 100 records.

        Returns:
            Averages, count, source distribution and last update, or
            {"error": ...} when the symbol has no data
        """
        recent = self.store.find_latest_by_symbol(symbol, QUALITY_SAMPLE_SIZE)
        if not recent:
            return {"error": "No data available for symbol"}

        return {
            "symbol": symbol,
            "average_quality": sum(r.quality_score for r in recent) / len(recent),
            "average_confidence": sum(r.confidence for r in recent) / len(recent),
            "data_points": len(recent),
            "source_distribution": dict(Counter(r.source_id for r in recent)),
            "last_update": recent[-1].timestamp.isoformat(),
        }

    def get_source_status(self) -> Dict[str, Any]:
        now = self.clock()
        statuses = [
            self.health.status(
                source.source_id,
                weight=self.config.weight_for(source.source_id),
                usage=source.current_usage,
                limit_per_hour=source.rate_limit_per_hour,
                now=now
            ).to_dict()
            for source in self.sources
        ]
        return {"sources": statuses, "timestamp": now.isoformat()}

    def health_check(self) -> Dict[str, Any]:
        """
        Overall pipeline health.

        "degraded" if the newest record is older than 10 minutes or average
        quality across symbols is below 0.5; "unhealthy" if the store fails.
        """
        now = self.clock()
        health = {
            "status": "healthy",
            "services": {
                "data_aggregation": "healthy",
                "technical_indicators": "healthy",
                "sentiment_analysis": "healthy" if self.sentiment_engine else "disabled",
                "data_validation": "healthy",
            },
            "metrics": {
                "active_symbols": len(self.symbols),
                "last_aggregation": None,
                "data_quality": 0.0,
                "cycle_running": self._cycle_running,
                "backfill_running": self._backfill_running,
            },
            "timestamp": now.isoformat(),
        }

        try:
            latest = self.store.find_latest()
            if latest is not None:
                health["metrics"]["last_aggregation"] = latest.timestamp.isoformat()
                if now - latest.timestamp > STALE_AGGREGATION:
                    health["status"] = "degraded"
                    health["services"]["data_aggregation"] = "degraded"

            metrics = [self.get_quality_metrics(s) for s in self.symbols]
            avg_quality = sum(m.get("average_quality", 0.0) for m in metrics) / len(metrics)
            health["metrics"]["data_quality"] = avg_quality

            if avg_quality < MIN_HEALTHY_QUALITY:
                health["status"] = "degraded"

        except Exception as e:
            logger.error(f"Health check failed: {e}")
            health["status"] = "unhealthy"
            health["services"]["data_aggregation"] = "unhealthy"

        return health
