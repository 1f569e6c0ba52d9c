"""
CoinGecko data source adapter.

Provides access to:
- Current price, market cap, 24h volume and 24h change
- Historical price/volume/market-cap series (backfill)

Free API (rate limited: 10-50 calls/minute depending on plan).
No API key required for public endpoints.
"""

from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger
from ratelimit import limits, RateLimitException

from market_fusion.adapters.data_sources.base import MarketDataSource
from market_fusion.core.errors import FetchError, FetchErrorKind
from market_fusion.services.data.types import RawReading


class CoinGeckoSource(MarketDataSource):
    """
    CoinGecko API adapter.

    Canonical symbols are CoinGecko coin ids, so no mapping is needed.
    Also the canonical provider for historical backfill.
    """

    BASE_URL = "https://api.coingecko.com/api/v3"
    PRO_URL = "https://pro-api.coingecko.com/api/v3"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        max_redirects: int = 3
    ):
        """
        Initialize CoinGecko source.

        Args:
            api_key: Optional API key for higher rate limits (Pro/Enterprise)
            timeout: Request timeout in seconds
            max_redirects: Redirect limit per request
        """
        super().__init__(timeout=timeout, max_redirects=max_redirects, rate_limit_per_hour=1800)
        self.api_key = api_key
        self.base_url = self.PRO_URL if api_key else self.BASE_URL

        if api_key:
            self.session.headers.update({"x-cg-pro-api-key": api_key})

    @property
    def source_id(self) -> str:
        return "coingecko"

    def normalize_symbol(self, symbol: str) -> str:
        return symbol.strip().lower()

    @limits(calls=30, period=60)
    def _request(self, url: str, symbol: str, params: dict):
        return self._get_json(url, symbol, params)

    def _throttled_get(self, url: str, symbol: str, params: dict):
        try:
            return self._request(url, symbol, params)
        except RateLimitException as e:
            raise FetchError(
                FetchErrorKind.RATE_LIMITED,
                f"Local CoinGecko budget exhausted, retry in {e.period_remaining:.1f}s",
                source=self.source_id, symbol=symbol
            ) from e

    def fetch(self, symbol: str) -> RawReading:
        """
        Fetch the current reading from /simple/price.

        Args:
            symbol: Coin id (e.g., "bitcoin")

        Returns:
            RawReading with price, volume, market cap and 24h change
        """
        coin_id = self.normalize_symbol(symbol)
        data = self._throttled_get(
            f"{self.base_url}/simple/price",
            symbol,
            {
                "ids": coin_id,
                "vs_currencies": "usd",
                "include_market_cap": "true",
                "include_24hr_vol": "true",
                "include_24hr_change": "true"
            }
        )

        try:
            coin_data = data[coin_id]
            return RawReading(
                symbol=symbol,
                price=coin_data["usd"],
                volume=coin_data.get("usd_24h_vol"),
                market_cap=coin_data.get("usd_market_cap"),
                price_change_24h=coin_data.get("usd_24h_change"),
                timestamp=datetime.now(timezone.utc),
                source_id=self.source_id
            )
        except (KeyError, TypeError) as e:
            raise self._malformed(symbol, e) from e

    def fetch_history(self, symbol: str, start: datetime, end: datetime) -> List[RawReading]:
        """
        Fetch a historical series from /coins/{id}/market_chart/range.

        CoinGecko returns parallel [timestamp_ms, value] arrays for prices,
        total volumes and market caps. The 24h change is not part of the
        range payload and is reported as 0.

        Args:
            symbol: Coin id
            start: Range start (UTC)
            end: Range end (UTC)

        Returns:
            Readings in provider order (not validated)
        """
        coin_id = self.normalize_symbol(symbol)
        data = self._throttled_get(
            f"{self.base_url}/coins/{coin_id}/market_chart/range",
            symbol,
            {
                "vs_currency": "usd",
                "from": int(start.timestamp()),
                "to": int(end.timestamp())
            }
        )

        try:
            prices = data["prices"]
            volumes = data.get("total_volumes", [])
            market_caps = data.get("market_caps", [])

            readings = []
            for i, (ts, price) in enumerate(prices):
                readings.append(RawReading(
                    symbol=symbol,
                    price=price,
                    volume=volumes[i][1] if i < len(volumes) else 0.0,
                    market_cap=market_caps[i][1] if i < len(market_caps) else 0.0,
                    price_change_24h=0.0,
                    timestamp=datetime.fromtimestamp(ts / 1000, timezone.utc),
                    source_id=self.source_id
                ))
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise self._malformed(symbol, e) from e

        logger.debug(f"Fetched {len(readings)} historical points for {coin_id} from CoinGecko")
        return readings

    def validate_connection(self) -> bool:
        """
        Test CoinGecko connection.

        Returns:
            True if connection successful
        """
        try:
            response = self.session.get(f"{self.base_url}/ping", timeout=self.timeout)
            return response.status_code == 200
        except Exception as e:
            logger.error(f"CoinGecko connection test failed: {e}")
            return False
