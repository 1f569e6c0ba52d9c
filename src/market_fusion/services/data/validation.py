"""
Reading validation and quality scoring.

Screens provider readings before they reach conflict resolution:
- Structural checks (required fields present and well-typed)
- Plausibility checks (positive finite price, no future timestamps)
- Quality sub-scores (completeness, accuracy, consistency, timeliness, validity)
- Deduplication per (symbol, source)
- Spike cleaning for historical series

Readings with any error are dropped; warnings only lower the quality score.
"""

import math
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from loguru import logger

from market_fusion.core.errors import ValidationError
from market_fusion.core.logging_config import PipelineLogger
from market_fusion.services.data.types import (
    QualityMetrics,
    RawReading,
    ValidatedReading,
    ValidationResult,
    clamp,
    ensure_utc,
    utc_now,
)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite_number(value) -> bool:
    return _is_number(value) and math.isfinite(value)


class DataValidationEngine:
    """
    Validates readings and scores their quality.

    Quality weights:
    - completeness 0.20
    - accuracy     0.30
    - consistency  0.20
    - timeliness   0.15
    - validity     0.15
    """

    QUALITY_WEIGHTS = {
        "completeness": 0.20,
        "accuracy": 0.30,
        "consistency": 0.20,
        "timeliness": 0.15,
        "validity": 0.15,
    }

    MAX_FUTURE_SKEW = timedelta(seconds=60)
    STALE_AFTER_SECONDS = 300.0
    EXTREME_CHANGE_PCT = 100.0
    SPIKE_THRESHOLD = 0.5  # 50% jump from the last accepted point

    REQUIRED_FIELDS = ("symbol", "price", "volume", "timestamp", "source_id")
    OPTIONAL_FIELDS = ("market_cap", "price_change_24h")

    def __init__(self):
        self.events = PipelineLogger(component="validation")

    def validate(self, reading: RawReading, now: Optional[datetime] = None) -> ValidationResult:
        """
        Validate one reading.

        Args:
            reading: Reading to check
            now: Reference time (default: current UTC time)

        Returns:
            ValidationResult with errors, warnings and the overall quality score
        """
        now = now or utc_now()
        errors: List[str] = []
        warnings: List[str] = []

        if not isinstance(reading.symbol, str) or not reading.symbol:
            errors.append("Invalid symbol")

        if not _is_finite_number(reading.price) or reading.price <= 0:
            errors.append("Invalid price")

        if not _is_finite_number(reading.volume) or reading.volume < 0:
            errors.append("Invalid volume")

        if not _is_finite_number(reading.market_cap) or reading.market_cap < 0:
            errors.append("Invalid market cap")

        timestamp = None
        if not isinstance(reading.timestamp, datetime):
            errors.append("Invalid timestamp")
        else:
            timestamp = ensure_utc(reading.timestamp)

        if not isinstance(reading.source_id, str) or not reading.source_id:
            errors.append("Invalid source")

        if timestamp is not None and timestamp > now + self.MAX_FUTURE_SKEW:
            errors.append("Future timestamp detected")

        change = reading.price_change_24h
        if _is_finite_number(change) and abs(change) > self.EXTREME_CHANGE_PCT:
            warnings.append("Extreme price change detected")

        if timestamp is not None and (now - timestamp).total_seconds() > self.STALE_AFTER_SECONDS:
            warnings.append("Stale data detected")

        metrics = QualityMetrics(
            completeness=self.completeness(reading),
            accuracy=self.accuracy(reading, errors),
            consistency=self.consistency(reading),
            timeliness=self.timeliness(reading, now),
            validity=1.0 if not errors else 0.0
        )

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            quality_score=self.overall_quality(metrics),
            metrics=metrics
        )

    def ensure_valid(self, reading: RawReading, now: Optional[datetime] = None) -> ValidatedReading:
        """
        Strict variant of validate().

        Raises:
            ValidationError: If the reading has any error
        """
        result = self.validate(reading, now)
        if not result.is_valid:
            raise ValidationError(
                f"Invalid reading from {reading.source_id} for {reading.symbol}: "
                f"{', '.join(result.errors)}",
                result.errors
            )
        return ValidatedReading.from_raw(reading, result.quality_score)

    def validate_batch(
        self,
        readings: Iterable[RawReading],
        now: Optional[datetime] = None
    ) -> List[ValidatedReading]:
        """
        Validate readings, drop invalid ones, dedupe per (symbol, source).

        The first occurrence of each (symbol, source_id) pair is kept.

        Returns:
            ValidatedReadings in input order
        """
        now = now or utc_now()
        validated: List[ValidatedReading] = []
        seen = set()

        for reading in readings:
            result = self.validate(reading, now)
            if not result.is_valid:
                self.events.reading_rejected(reading.symbol, reading.source_id, result.errors)
                continue

            key = (reading.symbol, reading.source_id)
            if key in seen:
                logger.debug(f"Duplicate reading dropped: {reading.symbol}@{reading.source_id}")
                continue
            seen.add(key)

            validated.append(ValidatedReading.from_raw(reading, result.quality_score))

        return validated

    def validate_historical(
        self,
        symbol: str,
        readings: Iterable[RawReading],
        now: Optional[datetime] = None
    ) -> List[ValidatedReading]:
        """
        Clean a historical series.

        Points are sorted by time; invalid points are dropped, and any point
        whose price moved more than 50% from the last accepted point is
        rejected as a spike.

        Returns:
            Accepted points, oldest first
        """
        now = now or utc_now()
        ordered = sorted(
            (r for r in readings if isinstance(r.timestamp, datetime)),
            key=lambda r: ensure_utc(r.timestamp)
        )

        accepted: List[ValidatedReading] = []
        spikes = 0

        for reading in ordered:
            result = self.validate(reading, now)
            if not result.is_valid:
                continue

            if accepted:
                previous = accepted[-1].price
                change = abs((reading.price - previous) / previous)
                if change > self.SPIKE_THRESHOLD:
                    spikes += 1
                    logger.warning(
                        f"Suspicious price change detected for {symbol}: {change * 100:.1f}% "
                        f"at {ensure_utc(reading.timestamp).isoformat()}"
                    )
                    continue

            accepted.append(ValidatedReading.from_raw(reading, result.quality_score))

        if spikes:
            logger.info(f"Historical cleaning for {symbol}: {spikes} spikes rejected, {len(accepted)} kept")

        return accepted

    # ========== Quality sub-scores ==========

    def completeness(self, reading: RawReading) -> float:
        """Required fields count 1.0, non-zero optional fields 0.5; normalized to 6."""
        score = sum(1.0 for name in self.REQUIRED_FIELDS if getattr(reading, name) is not None)
        score += sum(
            0.5 for name in self.OPTIONAL_FIELDS
            if getattr(reading, name) is not None and getattr(reading, name) != 0
        )
        max_score = len(self.REQUIRED_FIELDS) + 0.5 * len(self.OPTIONAL_FIELDS)
        return min(1.0, score / max_score)

    @staticmethod
    def accuracy(reading: RawReading, errors: List[str]) -> float:
        if errors:
            return 0.0

        accuracy = 1.0
        if reading.price > 1e6 or reading.price < 1e-6:
            accuracy -= 0.1
        if reading.volume > reading.market_cap * 10:
            accuracy -= 0.1
        if _is_finite_number(reading.price_change_24h) and abs(reading.price_change_24h) > 50:
            accuracy -= 0.2

        return max(0.0, accuracy)

    @staticmethod
    def consistency(reading: RawReading) -> float:
        """Penalize an implausible implied circulating supply (market_cap / price)."""
        consistency = 1.0
        if (_is_finite_number(reading.market_cap) and _is_finite_number(reading.price)
                and reading.market_cap > 0 and reading.price > 0):
            supply = reading.market_cap / reading.price
            if supply < 1e3 or supply > 1e12:
                consistency -= 0.2
        return max(0.0, consistency)

    def timeliness(self, reading: RawReading, now: datetime) -> float:
        if not isinstance(reading.timestamp, datetime):
            return 0.0
        age = (now - ensure_utc(reading.timestamp)).total_seconds()
        return clamp(1.0 - age / self.STALE_AFTER_SECONDS)

    def overall_quality(self, metrics: QualityMetrics) -> float:
        total = sum(getattr(metrics, name) * weight for name, weight in self.QUALITY_WEIGHTS.items())
        return clamp(total)
