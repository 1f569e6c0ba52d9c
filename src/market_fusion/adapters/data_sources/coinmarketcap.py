"""
CoinMarketCap data source adapter.

Provides access to:
- Cryptocurrency prices (15,000+ assets)
- Market cap
- 24h volume and percent change

Free tier: 10,000 API credits/month (333 calls/day).
API key required (free registration).
"""

import os
import time
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from market_fusion.adapters.data_sources.base import MarketDataSource, symbol_to_ticker
from market_fusion.core.errors import FetchError, FetchErrorKind
from market_fusion.services.data.types import RawReading


class CoinMarketCapSource(MarketDataSource):
    """
    CoinMarketCap API adapter.

    Free tier: 10,000 credits/month, 333 calls/day.
    Get API key: https://coinmarketcap.com/api/
    """

    BASE_URL = "https://pro-api.coinmarketcap.com/v1"
    SANDBOX_URL = "https://sandbox-api.coinmarketcap.com/v1"

    def __init__(
        self,
        api_key: Optional[str] = None,
        sandbox: bool = False,
        timeout: float = 10.0,
        max_redirects: int = 3,
        calls_per_minute: int = 30,
        calls_per_day: int = 333
    ):
        """
        Initialize CoinMarketCap source.

        Args:
            api_key: CoinMarketCap API key (or set COINMARKETCAP_API_KEY env var)
            sandbox: Use sandbox for testing (default: False)
            timeout: Request timeout in seconds
            max_redirects: Redirect limit per request
            calls_per_minute: Max API calls per minute (default: 30, free tier safe limit)
            calls_per_day: Max API calls per day (default: 333, free tier limit)
        """
        api_key = api_key or os.getenv("COINMARKETCAP_API_KEY")
        if not api_key:
            raise ValueError(
                "CoinMarketCap API key required. "
                "Set COINMARKETCAP_API_KEY environment variable or pass api_key parameter. "
                "Get free key at: https://coinmarketcap.com/api/"
            )

        super().__init__(
            timeout=timeout,
            max_redirects=max_redirects,
            rate_limit_per_hour=calls_per_minute * 60
        )
        self.api_key = api_key
        self.sandbox = sandbox
        self.base_url = self.SANDBOX_URL if sandbox else self.BASE_URL

        self.calls_per_minute = calls_per_minute
        self.calls_per_day = calls_per_day
        self._minute_calls: deque = deque(maxlen=calls_per_minute)
        self._day_calls: deque = deque(maxlen=calls_per_day)

        self.session.headers.update({"X-CMC_PRO_API_KEY": self.api_key})

    @property
    def source_id(self) -> str:
        return "coinmarketcap"

    def normalize_symbol(self, symbol: str) -> str:
        """
        Normalize symbol to CoinMarketCap ticker format.

        Examples:
            bitcoin → BTC
            ethereum → ETH
            btc → BTC
        """
        return symbol_to_ticker(symbol)

    def _check_rate_limit(self, symbol: str) -> None:
        """
        Check and enforce rate limits.

        Raises:
            FetchError: RATE_LIMITED if the minute or day budget is spent
        """
        current_time = time.time()

        while self._minute_calls and current_time - self._minute_calls[0] > 60:
            self._minute_calls.popleft()

        while self._day_calls and current_time - self._day_calls[0] > 86400:
            self._day_calls.popleft()

        if len(self._minute_calls) >= self.calls_per_minute:
            wait_time = 60 - (current_time - self._minute_calls[0])
            logger.warning(
                f"CoinMarketCap minute rate limit reached ({self.calls_per_minute} calls/min). "
                f"Wait {wait_time:.1f}s or reduce request frequency."
            )
            raise FetchError(
                FetchErrorKind.RATE_LIMITED,
                f"Rate limit exceeded: {self.calls_per_minute} calls per minute. "
                f"Retry in {wait_time:.1f} seconds.",
                source=self.source_id, symbol=symbol
            )

        if len(self._day_calls) >= self.calls_per_day:
            wait_time = 86400 - (current_time - self._day_calls[0])
            logger.warning(
                f"CoinMarketCap daily rate limit reached ({self.calls_per_day} calls/day). "
                f"Wait {wait_time/3600:.1f}h or upgrade API plan."
            )
            raise FetchError(
                FetchErrorKind.RATE_LIMITED,
                f"Rate limit exceeded: {self.calls_per_day} calls per day. "
                f"Retry in {wait_time/3600:.1f} hours.",
                source=self.source_id, symbol=symbol
            )

        self._minute_calls.append(current_time)
        self._day_calls.append(current_time)

    def fetch(self, symbol: str) -> RawReading:
        """
        Fetch the current reading from /cryptocurrency/quotes/latest.

        Args:
            symbol: Canonical symbol (e.g., "bitcoin")

        Returns:
            RawReading with price, volume, market cap and 24h change
        """
        self._check_rate_limit(symbol)

        ticker = self.normalize_symbol(symbol)
        data = self._get_json(
            f"{self.base_url}/cryptocurrency/quotes/latest",
            symbol,
            {"symbol": ticker, "convert": "USD"}
        )

        try:
            status = data.get("status", {})
            if status.get("error_code", 0) != 0:
                raise FetchError(
                    FetchErrorKind.UNAVAILABLE,
                    f"CoinMarketCap API error: {status.get('error_message', 'Unknown error')}",
                    source=self.source_id, symbol=symbol
                )

            quote = data["data"][ticker]["quote"]["USD"]
            return RawReading(
                symbol=symbol,
                price=quote["price"],
                volume=quote.get("volume_24h"),
                market_cap=quote.get("market_cap"),
                price_change_24h=quote.get("percent_change_24h"),
                timestamp=datetime.now(timezone.utc),
                source_id=self.source_id
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise self._malformed(symbol, e) from e

    def validate_connection(self) -> bool:
        """
        Test CoinMarketCap connection.

        Returns:
            True if the API key is accepted
        """
        try:
            self._check_rate_limit("-")
            response = self.session.get(f"{self.base_url}/key/info", timeout=self.timeout)

            if response.status_code != 200:
                return False

            return response.json().get("status", {}).get("error_code") == 0

        except Exception as e:
            logger.error(f"CoinMarketCap connection test failed: {e}")
            return False
