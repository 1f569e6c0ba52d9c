"""Shared pytest fixtures and configuration."""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from market_fusion.adapters.data_sources.base import MarketDataSource
from market_fusion.db.market_data_store import SQLiteMarketDataStore
from market_fusion.services.data.types import FusedRecord, RawReading, ValidatedReading


class StubSource(MarketDataSource):
    """In-memory provider: returns a fixed reading or raises a fixed error."""

    def __init__(
        self,
        name: str,
        price: Optional[float] = None,
        error: Optional[Exception] = None,
        volume: float = 1_000_000.0,
        market_cap: float = 1_000_000_000.0,
        history: Optional[List[RawReading]] = None
    ):
        super().__init__()
        self._name = name
        self.price = price
        self.error = error
        self.volume = volume
        self.market_cap = market_cap
        self.history = history or []
        self.calls = 0

    @property
    def source_id(self) -> str:
        return self._name

    def normalize_symbol(self, symbol: str) -> str:
        return symbol

    def fetch(self, symbol: str) -> RawReading:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return RawReading(
            symbol=symbol,
            price=self.price,
            volume=self.volume,
            market_cap=self.market_cap,
            price_change_24h=1.5,
            timestamp=datetime.now(timezone.utc),
            source_id=self._name
        )

    def fetch_history(self, symbol: str, start: datetime, end: datetime) -> List[RawReading]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.history)


@pytest.fixture
def now():
    """Fixed reference time (UTC)."""
    return datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_reading(now):
    """Factory for valid raw readings (override any field)."""
    def _make(**overrides) -> RawReading:
        fields = dict(
            symbol="bitcoin",
            price=50000.0,
            volume=2.5e10,
            market_cap=9.8e11,
            price_change_24h=2.0,
            timestamp=now,
            source_id="coingecko"
        )
        fields.update(overrides)
        return RawReading(**fields)
    return _make


@pytest.fixture
def make_validated(now):
    """Factory for validated readings."""
    def _make(source_id: str, price: float, volume: float = 1000.0, **overrides) -> ValidatedReading:
        fields = dict(
            symbol="bitcoin",
            price=price,
            volume=volume,
            market_cap=price * 19_000_000,
            price_change_24h=1.0,
            timestamp=now,
            source_id=source_id,
            quality_score=0.9
        )
        fields.update(overrides)
        return ValidatedReading(**fields)
    return _make


@pytest.fixture
def make_record(now):
    """Factory for fused records, `minutes_ago` before `now`."""
    def _make(price: float = 100.0, minutes_ago: int = 0, symbol: str = "bitcoin", **overrides) -> FusedRecord:
        fields = dict(
            symbol=symbol,
            price=price,
            volume=1000.0,
            market_cap=price * 1e6,
            price_change_24h=0.0,
            timestamp=now - timedelta(minutes=minutes_ago),
            source_id="aggregated",
            quality_score=0.9,
            confidence=0.8
        )
        fields.update(overrides)
        return FusedRecord(**fields)
    return _make


@pytest.fixture
def store(tmp_path):
    """Empty SQLite market data store in a temp directory."""
    return SQLiteMarketDataStore(db_path=str(tmp_path / "market_data.db"))


@pytest.fixture
def stub_source():
    """The StubSource class, for building in-memory providers."""
    return StubSource
