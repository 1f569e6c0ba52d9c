"""
Conflict resolution across providers.

Reconciles the validated readings for one symbol in one cycle into a single
FusedRecord using a weighted consensus:
- Weighted mean of price, volume, market cap and 24h change
- Quality from cross-source consistency and source count
- Confidence from source count, recency and price consensus
"""

import statistics
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from loguru import logger

from market_fusion.core.errors import NoDataAvailable
from market_fusion.services.data.types import (
    AGGREGATED_SOURCE,
    FusedRecord,
    ValidatedReading,
    clamp,
    utc_now,
)


def coefficient_of_variation(values: Sequence[float]) -> float:
    """
    Population standard deviation divided by the mean.

    Returns 0 for an empty series or a zero mean.
    """
    if not values:
        return 0.0
    mean = statistics.fmean(values)
    if mean == 0:
        return 0.0
    return statistics.pstdev(values) / mean


class ConflictResolver:
    """
    Weighted consensus of validated readings for a single symbol.

    Weights come from configuration; sources not in the table get
    ``default_weight``.
    """

    SINGLE_SOURCE_QUALITY = 0.7
    SINGLE_SOURCE_CONFIDENCE = 0.6
    EXPECTED_SOURCES = 3
    MAX_AGE_SECONDS = 300.0

    def __init__(self, weights: Optional[Dict[str, float]] = None, default_weight: float = 0.1):
        """
        Args:
            weights: source_id -> weight (e.g., {"coingecko": 0.4})
            default_weight: Weight for sources not in the table
        """
        self.weights = dict(weights or {})
        self.default_weight = default_weight

    def weight_for(self, source_id: str) -> float:
        return self.weights.get(source_id, self.default_weight)

    def resolve(
        self,
        readings: List[ValidatedReading],
        timestamp: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> FusedRecord:
        """
        Fuse readings into one record.

        Args:
            readings: Validated readings for one symbol
            timestamp: Cycle timestamp stamped on the record (default: now)
            now: Reference time for recency scoring (default: current UTC time)

        Returns:
            FusedRecord with quality_score and confidence in [0, 1]

        Raises:
            NoDataAvailable: If readings is empty
        """
        if not readings:
            raise NoDataAvailable("No valid data points to resolve")

        now = now or utc_now()
        timestamp = timestamp or now
        first = readings[0]

        if len(readings) == 1:
            return FusedRecord(
                symbol=first.symbol,
                price=first.price,
                volume=first.volume,
                market_cap=first.market_cap,
                price_change_24h=first.price_change_24h,
                timestamp=timestamp,
                source_id=first.source_id,
                quality_score=self.SINGLE_SOURCE_QUALITY,
                confidence=self.SINGLE_SOURCE_CONFIDENCE
            )

        weights = [self.weight_for(r.source_id) for r in readings]
        total_weight = sum(weights)

        def weighted(attr: str) -> float:
            return sum(getattr(r, attr) * w for r, w in zip(readings, weights)) / total_weight

        record = FusedRecord(
            symbol=first.symbol,
            price=weighted("price"),
            volume=weighted("volume"),
            market_cap=weighted("market_cap"),
            price_change_24h=weighted("price_change_24h"),
            timestamp=timestamp,
            source_id=AGGREGATED_SOURCE,
            quality_score=self.quality_score(readings),
            confidence=self.confidence(readings, now)
        )

        logger.debug(
            f"Resolved {first.symbol} from {len(readings)} sources "
            f"{[r.source_id for r in readings]}: {record}"
        )
        return record

    def quality_score(self, readings: List[ValidatedReading]) -> float:
        """0.7 x cross-source consistency + 0.3 x source count score."""
        price_cv = coefficient_of_variation([r.price for r in readings])
        volume_cv = coefficient_of_variation([r.volume for r in readings])

        consistency = max(0.0, 1.0 - (price_cv + volume_cv) / 2)
        source_score = min(1.0, len(readings) / self.EXPECTED_SOURCES)

        return clamp(consistency * 0.7 + source_score * 0.3)

    def confidence(self, readings: List[ValidatedReading], now: datetime) -> float:
        """0.4 x source count + 0.3 x recency + 0.3 x price consensus."""
        source_count = len(readings) / self.EXPECTED_SOURCES

        avg_age = statistics.fmean((now - r.timestamp).total_seconds() for r in readings)
        recency = max(0.0, 1.0 - avg_age / self.MAX_AGE_SECONDS)

        consensus = max(0.0, 1.0 - coefficient_of_variation([r.price for r in readings]) * 10)

        return clamp(source_count * 0.4 + recency * 0.3 + consensus * 0.3)
