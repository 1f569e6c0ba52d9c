"""
Binance data source adapter.

Provides the 24h rolling ticker for USDT spot pairs. Volume is taken from
``quoteVolume`` (USDT) so it is comparable to the USD volumes of the other
providers. Binance does not report market capitalization; readings carry 0.

Free public API (no authentication required for market data).
Rate limit: 1200 requests/minute.
"""

from datetime import datetime, timezone

from loguru import logger

from market_fusion.adapters.data_sources.base import MarketDataSource, symbol_to_ticker
from market_fusion.services.data.types import RawReading


class BinanceSource(MarketDataSource):
    """
    Binance spot market adapter.

    Uses public API endpoints (no authentication required).
    """

    BASE_URL = "https://api.binance.com"
    QUOTE_ASSET = "USDT"

    def __init__(self, timeout: float = 10.0, max_redirects: int = 3):
        """
        Initialize Binance data source.

        Args:
            timeout: Request timeout in seconds (default: 10)
            max_redirects: Redirect limit per request
        """
        super().__init__(timeout=timeout, max_redirects=max_redirects, rate_limit_per_hour=72000)

    @property
    def source_id(self) -> str:
        return "binance"

    def normalize_symbol(self, symbol: str) -> str:
        """
        Normalize symbol to a Binance USDT pair.

        Examples:
            bitcoin → BTCUSDT
            ethereum → ETHUSDT
        """
        return f"{symbol_to_ticker(symbol)}{self.QUOTE_ASSET}"

    def fetch(self, symbol: str) -> RawReading:
        """
        Fetch the current reading from /api/v3/ticker/24hr.

        Args:
            symbol: Canonical symbol (e.g., "bitcoin")

        Returns:
            RawReading (market cap is always 0)
        """
        data = self._get_json(
            f"{self.BASE_URL}/api/v3/ticker/24hr",
            symbol,
            {"symbol": self.normalize_symbol(symbol)}
        )

        try:
            return RawReading(
                symbol=symbol,
                price=float(data["lastPrice"]),
                volume=float(data["quoteVolume"]),  # USDT-denominated, like the other providers
                market_cap=0.0,
                price_change_24h=float(data["priceChangePercent"]),
                timestamp=datetime.now(timezone.utc),
                source_id=self.source_id
            )
        except (KeyError, TypeError, ValueError) as e:
            raise self._malformed(symbol, e) from e

    def validate_connection(self) -> bool:
        """
        Test Binance connection.

        Returns:
            True if connection successful
        """
        try:
            response = self.session.get(f"{self.BASE_URL}/api/v3/ping", timeout=self.timeout)
            return response.status_code == 200
        except Exception as e:
            logger.error(f"Binance connection test failed: {e}")
            return False
