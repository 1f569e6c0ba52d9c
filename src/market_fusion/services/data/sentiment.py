"""
Sentiment fusion engine.

Gathers four independent sub-analyses concurrently and fuses them:
- social: Reddit keyword score averaged with a Twitter proxy heuristic
- news: NewsAPI headlines, keyword scored
- on-chain: proxy heuristic around neutral
- fear & greed: alternative.me index (reported as a signal, not fused)

Every sub-analysis has its own timeout and degrades to neutral (0.5, or 50
for the index) on any failure, so one slow or broken feed never blocks the
others.
"""

import asyncio
import random
import statistics
from typing import Callable, Iterable, List, Optional, Tuple

from loguru import logger

from market_fusion.adapters.data_sources.sentiment_feeds import FearGreedFeed, NewsFeed, RedditFeed
from market_fusion.services.data.types import (
    Sentiment,
    SentimentLabel,
    SentimentSignals,
    SentimentSources,
    clamp,
)


POSITIVE_WORDS = (
    "bull", "bullish", "moon", "pump", "buy", "long",
    "up", "rise", "gain", "profit", "surge", "rally",
)
NEGATIVE_WORDS = (
    "bear", "bearish", "crash", "dump", "sell", "short",
    "down", "fall", "loss", "drop", "dip", "correction",
)

NEUTRAL_SCORE = 0.5
NEUTRAL_FEAR_GREED = 50.0
MAX_VOLUME = 100

# Fusion weights
SOCIAL_WEIGHT = 0.3
NEWS_WEIGHT = 0.4
ON_CHAIN_WEIGHT = 0.3


def score_text(text: str) -> float:
    """
    Keyword sentiment of one text in [0, 1].

    A word counts as positive (negative) when it contains any positive
    (negative) keyword; a word can count for both. Returns 0.5 when no
    word hits.
    """
    positive = 0
    negative = 0
    for word in text.lower().split():
        if any(keyword in word for keyword in POSITIVE_WORDS):
            positive += 1
        if any(keyword in word for keyword in NEGATIVE_WORDS):
            negative += 1

    total = positive + negative
    if total == 0:
        return NEUTRAL_SCORE
    return positive / total


def score_items(texts: Iterable[str]) -> float:
    """Mean keyword score across texts (0.5 when there are none)."""
    scores = [score_text(t) for t in texts]
    return statistics.fmean(scores) if scores else NEUTRAL_SCORE


def label_for(score: float) -> SentimentLabel:
    if score > 0.6:
        return SentimentLabel.BULLISH
    if score < 0.4:
        return SentimentLabel.BEARISH
    return SentimentLabel.NEUTRAL


def fused_confidence(scores: List[float]) -> float:
    """1 - population variance of the source scores, floored at 0.1."""
    return clamp(max(0.1, 1.0 - statistics.pvariance(scores)))


def default_sentiment() -> Sentiment:
    """Neutral sentiment used when fusion itself fails."""
    return Sentiment(
        score=NEUTRAL_SCORE,
        label=SentimentLabel.NEUTRAL,
        confidence=0.3,
        sources=SentimentSources(social=NEUTRAL_SCORE, news=NEUTRAL_SCORE, on_chain=NEUTRAL_SCORE),
        signals=SentimentSignals(fear_greed_index=NEUTRAL_FEAR_GREED, social_volume=50, news_volume=50)
    )


class SentimentFusionEngine:
    """
    Fuses social, news and on-chain sentiment for a symbol.

    Feeds are blocking HTTP clients; each runs in the default executor
    under asyncio.wait_for.
    """

    def __init__(
        self,
        reddit: Optional[RedditFeed] = None,
        news: Optional[NewsFeed] = None,
        fear_greed: Optional[FearGreedFeed] = None,
        search_terms: Optional[Callable[[str], List[str]]] = None,
        timeout: float = 5.0,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            reddit: Reddit search feed (social)
            news: NewsAPI feed
            fear_greed: Fear & Greed index feed
            search_terms: symbol -> search terms (default: the symbol itself)
            timeout: Per sub-analysis timeout in seconds
            rng: Random source for the proxy heuristics (seed it in tests)
        """
        self.reddit = reddit
        self.news = news
        self.fear_greed = fear_greed
        self.search_terms = search_terms or (lambda symbol: [symbol])
        self.timeout = timeout
        self.rng = rng or random.Random()

    async def analyze(self, symbol: str) -> Sentiment:
        """
        Fused sentiment for a symbol.

        Never raises; returns default_sentiment() if fusion fails.
        """
        try:
            terms = self.search_terms(symbol)
            (social, social_volume), (news, news_volume), on_chain, fear_greed = await asyncio.gather(
                self._bounded(self.social_sentiment(terms), (NEUTRAL_SCORE, 0), symbol, "social"),
                self._bounded(self.news_sentiment(terms), (NEUTRAL_SCORE, 0), symbol, "news"),
                self._bounded(self.on_chain_sentiment(symbol), NEUTRAL_SCORE, symbol, "on_chain"),
                self._bounded(self.fear_greed_index(), NEUTRAL_FEAR_GREED, symbol, "fear_greed"),
            )

            score = clamp(social * SOCIAL_WEIGHT + news * NEWS_WEIGHT + on_chain * ON_CHAIN_WEIGHT)

            return Sentiment(
                score=score,
                label=label_for(score),
                confidence=fused_confidence([social, news, on_chain]),
                sources=SentimentSources(social=social, news=news, on_chain=on_chain),
                signals=SentimentSignals(
                    fear_greed_index=fear_greed,
                    social_volume=min(social_volume, MAX_VOLUME),
                    news_volume=min(news_volume, MAX_VOLUME)
                )
            )
        except Exception as e:
            logger.error(f"Sentiment analysis failed for {symbol}: {e}")
            return default_sentiment()

    async def _bounded(self, coro, default, symbol: str, name: str):
        """Await a sub-analysis under the timeout; default on any failure."""
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{name} sentiment for {symbol} timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"{name} sentiment for {symbol} failed: {e}")
        return default

    async def _in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def social_sentiment(self, terms: List[str]) -> Tuple[float, int]:
        """Mean of the Reddit keyword score and the Twitter proxy."""
        posts = await self._in_executor(self.reddit.fetch_posts, terms) if self.reddit else []
        reddit_score = score_items(posts)
        twitter_score = self.twitter_proxy()
        return clamp((reddit_score + twitter_score) / 2), len(posts)

    async def news_sentiment(self, terms: List[str]) -> Tuple[float, int]:
        if self.news is None:
            return NEUTRAL_SCORE, 0
        articles = await self._in_executor(self.news.fetch_articles, terms)
        return clamp(score_items(articles)), len(articles)

    async def on_chain_sentiment(self, symbol: str) -> float:
        # No on-chain feed yet; jitter around neutral
        return clamp(0.5 + (self.rng.random() - 0.5) * 0.3)

    async def fear_greed_index(self) -> float:
        if self.fear_greed is None:
            return NEUTRAL_FEAR_GREED
        value = await self._in_executor(self.fear_greed.fetch_index)
        return clamp(value, 0.0, 100.0)

    def twitter_proxy(self) -> float:
        """Stand-in for a Twitter feed: uniform in [0.2, 0.8]."""
        return self.rng.uniform(0.2, 0.8)
