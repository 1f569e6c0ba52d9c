"""
Error taxonomy for the market-data fusion pipeline.

Every failure the pipeline can surface derives from MarketFusionError so
callers can catch the whole family in one place. Failures are scoped:

- FetchError: one provider, one cycle (excluded, never escalated)
- ValidationError: one reading (dropped)
- NoDataAvailable: one symbol, one cycle (nothing written)
- InsufficientData: indicator history too short (retryable)
- EnrichmentFailure: indicators/sentiment failed (base record still written)
- PersistenceError: one symbol, one cycle (other symbols unaffected)
"""

from enum import Enum
from typing import List, Optional


class MarketFusionError(Exception):
    """Base class for all market-fusion errors."""
    pass


class ConfigError(MarketFusionError):
    """Configuration file or environment value is invalid."""
    pass


class FetchErrorKind(Enum):
    """Why a provider fetch failed."""
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    MALFORMED = "malformed"
    UNAVAILABLE = "unavailable"


class FetchError(MarketFusionError):
    """A single provider failed to return a usable reading."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        source: Optional[str] = None,
        symbol: Optional[str] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.source = source
        self.symbol = symbol

    def __str__(self):
        prefix = f"[{self.source or '?'}:{self.kind.value}]"
        return f"{prefix} {super().__str__()}"


class ValidationError(MarketFusionError):
    """A reading failed structural or plausibility checks."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class NoDataAvailable(MarketFusionError):
    """No provider produced a valid reading for the symbol."""
    pass


class InsufficientData(MarketFusionError):
    """Not enough stored history to compute indicators. Retry later."""

    retryable = True

    def __init__(self, symbol: str, required: int, available: int):
        super().__init__(
            f"Insufficient data for technical indicators on {symbol}: "
            f"need {required} records, have {available}"
        )
        self.symbol = symbol
        self.required = required
        self.available = available


class EnrichmentFailure(MarketFusionError):
    """Indicator or sentiment enrichment failed for a fused record."""

    def __init__(self, symbol: str, stage: str, message: str):
        super().__init__(f"{stage} enrichment failed for {symbol}: {message}")
        self.symbol = symbol
        self.stage = stage


class PersistenceError(MarketFusionError):
    """The market data store rejected a read or write."""
    pass
