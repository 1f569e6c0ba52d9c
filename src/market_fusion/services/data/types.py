"""
Market data types shared across the fusion pipeline.

Readings flow through three shapes:
- RawReading: one provider's observation, exactly as mapped from the wire
- ValidatedReading: a RawReading that passed validation, with its quality
- FusedRecord: the single reconciled record per symbol per cycle

All timestamps are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


AGGREGATED_SOURCE = "aggregated"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def utc_now() -> datetime:
    """Current time (UTC, timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class SentimentLabel(Enum):
    """Direction of the fused sentiment score."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


@dataclass
class RawReading:
    """
    One provider's price/volume observation for a symbol.

    Fields are Optional because provider payloads can be incomplete;
    validation rejects anything missing a required field.
    """
    symbol: Optional[str]
    price: Optional[float]
    volume: Optional[float]
    market_cap: Optional[float]
    price_change_24h: Optional[float]
    timestamp: Optional[datetime]
    source_id: Optional[str]

    def __repr__(self):
        return (f"RawReading({self.symbol}@{self.source_id}, P={self.price}, "
                f"V={self.volume}, MC={self.market_cap})")


@dataclass
class ValidatedReading:
    """A reading with zero validation errors and its quality score."""
    symbol: str
    price: float
    volume: float
    market_cap: float
    price_change_24h: float
    timestamp: datetime
    source_id: str
    quality_score: float

    @classmethod
    def from_raw(cls, reading: RawReading, quality_score: float) -> "ValidatedReading":
        return cls(
            symbol=reading.symbol,
            price=float(reading.price),
            volume=float(reading.volume),
            market_cap=float(reading.market_cap),
            price_change_24h=float(reading.price_change_24h or 0.0),
            timestamp=ensure_utc(reading.timestamp),
            source_id=reading.source_id,
            quality_score=clamp(quality_score)
        )


@dataclass
class QualityMetrics:
    """Validation sub-scores, each in [0, 1]."""
    completeness: float
    accuracy: float
    consistency: float
    timeliness: float
    validity: float


@dataclass
class ValidationResult:
    """Outcome of validating a single reading."""
    is_valid: bool
    errors: List[str]
    warnings: List[str]
    quality_score: float
    metrics: Optional[QualityMetrics] = None


@dataclass(frozen=True)
class MACD:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class Indicators:
    """Technical indicators computed from a symbol's stored history."""
    rsi: float
    macd: MACD
    bollinger: BollingerBands
    sma20: float
    ema12: float
    ema26: float
    volume: float
    volatility: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Indicators":
        return cls(
            rsi=data["rsi"],
            macd=MACD(**data["macd"]),
            bollinger=BollingerBands(**data["bollinger"]),
            sma20=data["sma20"],
            ema12=data["ema12"],
            ema26=data["ema26"],
            volume=data["volume"],
            volatility=data["volatility"]
        )


@dataclass(frozen=True)
class SentimentSources:
    social: float
    news: float
    on_chain: float


@dataclass(frozen=True)
class SentimentSignals:
    fear_greed_index: float  # 0 to 100
    social_volume: float
    news_volume: float


@dataclass(frozen=True)
class Sentiment:
    """Fused social/news/on-chain sentiment for a symbol."""
    score: float
    label: SentimentLabel
    confidence: float
    sources: SentimentSources
    signals: SentimentSignals

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["label"] = self.label.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sentiment":
        return cls(
            score=data["score"],
            label=SentimentLabel(data["label"]),
            confidence=data["confidence"],
            sources=SentimentSources(**data["sources"]),
            signals=SentimentSignals(**data["signals"])
        )


@dataclass(frozen=True)
class FusedRecord:
    """
    Reconciled market data for one symbol at one timestamp.

    Keyed by (symbol, timestamp). Once persisted it is never overwritten.
    """
    symbol: str
    price: float
    volume: float
    market_cap: float
    price_change_24h: float
    timestamp: datetime
    source_id: str
    quality_score: float
    confidence: float
    indicators: Optional[Indicators] = None
    sentiment: Optional[Sentiment] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "volume": self.volume,
            "market_cap": self.market_cap,
            "price_change_24h": self.price_change_24h,
            "timestamp": self.timestamp.isoformat(),
            "source_id": self.source_id,
            "quality_score": self.quality_score,
            "confidence": self.confidence,
            "indicators": self.indicators.to_dict() if self.indicators else None,
            "sentiment": self.sentiment.to_dict() if self.sentiment else None,
        }

    def __repr__(self):
        return (f"FusedRecord({self.symbol} @ {self.timestamp.isoformat()} | "
                f"P={self.price:.4f} | Q={self.quality_score:.2f} | "
                f"C={self.confidence:.2f} | src={self.source_id})")


@dataclass
class SourceStatus:
    """Health snapshot for one provider."""
    name: str
    is_active: bool
    reliability: float
    weight: float
    last_successful_fetch: Optional[datetime]
    last_failed_fetch: Optional[datetime]
    consecutive_failures: int
    status: str  # "healthy" or "degraded"
    rate_limit_usage: str  # "<used>/<limit per hour>"
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("last_successful_fetch", "last_failed_fetch"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class CycleReport:
    """Outcome of one live aggregation cycle."""
    timestamp: datetime
    skipped: bool = False
    persisted: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    no_data: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def __repr__(self):
        if self.skipped:
            return f"CycleReport({self.timestamp.isoformat()} | SKIPPED)"
        return (f"CycleReport({self.timestamp.isoformat()} | "
                f"persisted={len(self.persisted)} duplicates={len(self.duplicates)} "
                f"no_data={len(self.no_data)} failed={len(self.failed)})")


@dataclass
class BackfillReport:
    """Outcome of one backfill run."""
    start: datetime
    end: datetime
    skipped: bool = False
    inserted: Dict[str, int] = field(default_factory=dict)
    already_present: Dict[str, int] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())
