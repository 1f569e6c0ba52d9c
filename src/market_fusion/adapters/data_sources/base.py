"""Base HTTP client and market data source adapter interface.

All provider adapters inherit from MarketDataSource so the orchestrator can
treat them uniformly: ``fetch(symbol)`` either returns a RawReading or raises
a typed FetchError. Adapters never share mutable state; each one owns its
own HTTP session and request bookkeeping.
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, Optional

import requests
from loguru import logger

from market_fusion.core.errors import FetchError, FetchErrorKind
from market_fusion.services.data.types import RawReading


# Canonical symbol (CoinGecko coin id) -> exchange ticker
COIN_TICKERS = {
    "bitcoin": "BTC",
    "ethereum": "ETH",
    "starknet": "STRK",
    "tether": "USDT",
    "binancecoin": "BNB",
    "solana": "SOL",
    "ripple": "XRP",
    "cardano": "ADA",
    "dogecoin": "DOGE",
    "polkadot": "DOT",
    "avalanche-2": "AVAX",
    "chainlink": "LINK",
    "uniswap": "UNI",
}


def symbol_to_ticker(symbol: str) -> str:
    """
    Convert a canonical symbol to its exchange ticker.

    Examples:
        bitcoin → BTC
        eth → ETH (unknown ids are uppercased)
    """
    return COIN_TICKERS.get(symbol.lower(), symbol.upper())


class JsonHttpClient(ABC):
    """Session-owning JSON client that maps transport failures to FetchError.

    Tracks its own requests over the last hour so that usage can be
    reported against the provider's budget.
    """

    USER_AGENT = "MarketFusion-DataAggregator/1.0"

    def __init__(
        self,
        timeout: float = 10.0,
        max_redirects: int = 3,
        rate_limit_per_hour: int = 1000
    ):
        """
        Args:
            timeout: Per-request timeout in seconds
            max_redirects: Redirects followed before the request fails
            rate_limit_per_hour: Provider budget, reported by source status
        """
        self.timeout = timeout
        self.rate_limit_per_hour = rate_limit_per_hour
        self._hour_calls: deque = deque()

        self.session = requests.Session()
        self.session.max_redirects = max_redirects
        self.session.headers.update({
            "User-Agent": self.USER_AGENT,
            "Accept": "application/json"
        })

    def __del__(self):
        """Clean up session on deletion to prevent resource leak."""
        if hasattr(self, 'session'):
            try:
                self.session.close()
            except Exception:
                pass  # Ignore errors during cleanup

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close session."""
        self.close()
        return False

    def close(self) -> None:
        if hasattr(self, 'session'):
            self.session.close()

    @property
    @abstractmethod
    def source_id(self) -> str:
        """Provider name used for weighting, status and errors (e.g., "coingecko")."""
        pass

    @property
    def current_usage(self) -> int:
        """Requests made in the last hour."""
        self._prune_usage(time.time())
        return len(self._hour_calls)

    def _prune_usage(self, now: float) -> None:
        while self._hour_calls and now - self._hour_calls[0] > 3600:
            self._hour_calls.popleft()

    def _get_json(
        self,
        url: str,
        symbol: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        GET a JSON document, mapping transport failures to FetchError.

        Args:
            url: Request URL
            symbol: Symbol being fetched (error context)
            params: Query parameters

        Returns:
            Decoded JSON body

        Raises:
            FetchError: timeout, rate_limited (HTTP 429), malformed (bad JSON)
                or unavailable (connection/HTTP errors, too many redirects)
        """
        now = time.time()
        self._prune_usage(now)
        self._hour_calls.append(now)

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise FetchError(
                FetchErrorKind.TIMEOUT, f"Request timed out after {self.timeout}s: {e}",
                source=self.source_id, symbol=symbol
            ) from e
        except requests.exceptions.RequestException as e:
            raise FetchError(
                FetchErrorKind.UNAVAILABLE, f"Request failed: {e}",
                source=self.source_id, symbol=symbol
            ) from e

        if response.status_code == 429:
            raise FetchError(
                FetchErrorKind.RATE_LIMITED,
                "Rate limited by provider (HTTP 429)",
                source=self.source_id, symbol=symbol
            )

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise FetchError(
                FetchErrorKind.UNAVAILABLE, f"HTTP error: {e}",
                source=self.source_id, symbol=symbol
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(
                FetchErrorKind.MALFORMED, f"Response is not valid JSON: {e}",
                source=self.source_id, symbol=symbol
            ) from e

    def _malformed(self, symbol: str, error: Exception) -> FetchError:
        """Build a MALFORMED FetchError for a payload that could not be mapped."""
        logger.error(f"{self.source_id} returned an unexpected payload for {symbol}: {error!r}")
        return FetchError(
            FetchErrorKind.MALFORMED,
            f"Unexpected response shape: {error!r}",
            source=self.source_id, symbol=symbol
        )


class MarketDataSource(JsonHttpClient):
    """Base class for all market data providers.

    Subclasses implement ``source_id``, ``fetch`` and ``normalize_symbol``.
    HTTP access should go through ``_get_json`` so that transport failures
    are mapped to FetchError kinds consistently.
    """

    @abstractmethod
    def fetch(self, symbol: str) -> RawReading:
        """Fetch the current reading for a symbol.

        Args:
            symbol: Canonical symbol (e.g., "bitcoin")

        Returns:
            RawReading mapped from the provider's response

        Raises:
            FetchError: On timeout, rate limiting, malformed payloads or
                an unavailable provider
        """
        pass

    @abstractmethod
    def normalize_symbol(self, symbol: str) -> str:
        """Convert a canonical symbol to the provider's own format."""
        pass

    def validate_connection(self) -> bool:
        """
        Test connection to the provider.

        Returns:
            True if connection successful
        """
        return True
