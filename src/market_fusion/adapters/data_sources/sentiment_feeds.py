"""
Sentiment input feeds.

Read-only clients for the text and index sources behind sentiment fusion:
- Reddit r/cryptocurrency search (public JSON, no key)
- NewsAPI "everything" search over crypto outlets (API key required)
- alternative.me Fear & Greed index (public, no key)

Feeds return raw material (texts, index value). Scoring happens in
market_fusion.services.data.sentiment.
"""

from typing import List, Optional

from loguru import logger
from ratelimit import limits, RateLimitException

from market_fusion.adapters.data_sources.base import JsonHttpClient
from market_fusion.core.errors import FetchError, FetchErrorKind


class RedditFeed(JsonHttpClient):
    """Recent r/cryptocurrency posts matching a search term."""

    SEARCH_URL = "https://www.reddit.com/r/cryptocurrency/search.json"

    def __init__(self, timeout: float = 5.0, max_redirects: int = 3, posts_per_term: int = 10):
        super().__init__(timeout=timeout, max_redirects=max_redirects, rate_limit_per_hour=600)
        self.posts_per_term = posts_per_term

    @property
    def source_id(self) -> str:
        return "reddit"

    def fetch_posts(self, terms: List[str]) -> List[str]:
        """
        Search each term and collect post texts (title + body).

        A failing term is skipped; the remaining terms still contribute.

        Args:
            terms: Search terms (e.g., ["bitcoin", "btc"])

        Returns:
            Post texts, possibly empty
        """
        texts = []
        for term in terms:
            try:
                data = self._get_json(
                    self.SEARCH_URL,
                    term,
                    {"q": term, "sort": "new", "limit": self.posts_per_term, "restrict_sr": "on"}
                )
                for child in data["data"]["children"]:
                    post = child.get("data", {})
                    texts.append(f"{post.get('title') or ''} {post.get('selftext') or ''}")
            except FetchError as e:
                logger.debug(f"Reddit search skipped for '{term}': {e}")
            except (KeyError, TypeError) as e:
                logger.debug(f"Reddit search returned unexpected payload for '{term}': {e!r}")

        return texts


class NewsFeed(JsonHttpClient):
    """Crypto news headlines from NewsAPI."""

    EVERYTHING_URL = "https://newsapi.org/v2/everything"
    DOMAINS = "coindesk.com,cointelegraph.com"
    MAX_ARTICLES = 20

    def __init__(self, api_key: Optional[str] = None, timeout: float = 5.0, max_redirects: int = 3):
        # Free developer plan: 100 requests/day
        super().__init__(timeout=timeout, max_redirects=max_redirects, rate_limit_per_hour=100)
        self.api_key = api_key
        if api_key:
            self.session.headers.update({"X-Api-Key": api_key})

    @property
    def source_id(self) -> str:
        return "newsapi"

    @limits(calls=100, period=86400)
    def _search(self, query: str) -> dict:
        return self._get_json(
            self.EVERYTHING_URL,
            query,
            {"q": query, "domains": self.DOMAINS, "sortBy": "publishedAt"}
        )

    def fetch_articles(self, terms: List[str]) -> List[str]:
        """
        Fetch the latest articles matching any of the terms.

        Args:
            terms: Search terms, OR-ed together

        Returns:
            Up to 20 article texts (title + description)

        Raises:
            FetchError: If no API key is configured, the daily budget is
                spent, or the request fails
        """
        query = " OR ".join(terms)
        if not self.api_key:
            raise FetchError(
                FetchErrorKind.UNAVAILABLE,
                "NEWS_API_KEY not configured",
                source=self.source_id, symbol=query
            )

        try:
            data = self._search(query)
        except RateLimitException as e:
            raise FetchError(
                FetchErrorKind.RATE_LIMITED,
                f"NewsAPI daily budget exhausted, retry in {e.period_remaining:.0f}s",
                source=self.source_id, symbol=query
            ) from e

        try:
            articles = data["articles"][:self.MAX_ARTICLES]
            return [
                f"{article.get('title') or ''} {article.get('description') or ''}"
                for article in articles
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise self._malformed(query, e) from e


class FearGreedFeed(JsonHttpClient):
    """Crypto Fear & Greed index (0 = extreme fear, 100 = extreme greed)."""

    URL = "https://api.alternative.me/fng/"

    def __init__(self, timeout: float = 5.0, max_redirects: int = 3):
        super().__init__(timeout=timeout, max_redirects=max_redirects, rate_limit_per_hour=3600)

    @property
    def source_id(self) -> str:
        return "fear_greed"

    def fetch_index(self) -> float:
        """
        Fetch the latest index value.

        Returns:
            Index value clamped to [0, 100]
        """
        data = self._get_json(self.URL, "market")
        try:
            value = float(int(data["data"][0]["value"]))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise self._malformed("market", e) from e

        return max(0.0, min(100.0, value))
