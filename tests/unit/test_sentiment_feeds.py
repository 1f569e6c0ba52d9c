"""Unit tests for Reddit, NewsAPI and Fear & Greed feeds."""
import pytest
from unittest.mock import patch, MagicMock
import requests

from market_fusion.adapters.data_sources.sentiment_feeds import FearGreedFeed, NewsFeed, RedditFeed
from market_fusion.core.errors import FetchError, FetchErrorKind


def json_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


def reddit_listing(*posts):
    return {"data": {"children": [{"data": {"title": t, "selftext": s}} for t, s in posts]}}


class TestRedditFeed:

    @patch('requests.Session.get')
    def test_collects_title_and_body_per_term(self, mock_get):
        """Test each term is searched and post texts are concatenated."""
        # ARRANGE
        feed = RedditFeed()
        mock_get.side_effect = [
            json_response(reddit_listing(("BTC to the moon", "buy now"))),
            json_response(reddit_listing(("Market dump", ""), ("Hodl", None))),
        ]

        # ACT
        texts = feed.fetch_posts(["bitcoin", "btc"])

        # ASSERT
        assert texts == ["BTC to the moon buy now", "Market dump ", "Hodl "]
        assert mock_get.call_count == 2
        first_params = mock_get.call_args_list[0][1]["params"]
        assert first_params["q"] == "bitcoin"
        assert first_params["limit"] == 10

    @patch('requests.Session.get')
    def test_failing_term_is_skipped(self, mock_get):
        feed = RedditFeed()
        mock_get.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            json_response(reddit_listing(("Rally", "continues"))),
        ]

        texts = feed.fetch_posts(["bitcoin", "btc"])

        assert texts == ["Rally continues"]

    @patch('requests.Session.get')
    def test_unexpected_payload_yields_nothing(self, mock_get):
        feed = RedditFeed()
        mock_get.return_value = json_response({"kind": "Listing"})

        assert feed.fetch_posts(["bitcoin"]) == []


class TestNewsFeed:

    def test_missing_api_key_is_unavailable(self):
        feed = NewsFeed(api_key=None)

        with pytest.raises(FetchError) as exc_info:
            feed.fetch_articles(["bitcoin"])

        assert exc_info.value.kind == FetchErrorKind.UNAVAILABLE

    @patch('requests.Session.get')
    def test_returns_first_20_articles(self, mock_get):
        """Test terms are OR-ed and at most 20 articles are returned."""
        # ARRANGE
        feed = NewsFeed(api_key="news_key")
        articles = [{"title": f"Headline {i}", "description": "bullish"} for i in range(25)]
        mock_get.return_value = json_response({"status": "ok", "articles": articles})

        # ACT
        texts = feed.fetch_articles(["bitcoin", "btc"])

        # ASSERT
        assert len(texts) == 20
        assert texts[0] == "Headline 0 bullish"
        assert mock_get.call_args[1]["params"]["q"] == "bitcoin OR btc"
        assert feed.session.headers["X-Api-Key"] == "news_key"

    @patch('requests.Session.get')
    def test_missing_articles_is_malformed(self, mock_get):
        feed = NewsFeed(api_key="news_key")
        mock_get.return_value = json_response({"status": "error"})

        with pytest.raises(FetchError) as exc_info:
            feed.fetch_articles(["bitcoin"])

        assert exc_info.value.kind == FetchErrorKind.MALFORMED


class TestFearGreedFeed:

    @patch('requests.Session.get')
    def test_parses_index_value(self, mock_get):
        mock_get.return_value = json_response({
            "name": "Fear and Greed Index",
            "data": [{"value": "72", "value_classification": "Greed"}]
        })

        assert FearGreedFeed().fetch_index() == 72.0

    @patch('requests.Session.get')
    def test_empty_data_is_malformed(self, mock_get):
        mock_get.return_value = json_response({"data": []})

        with pytest.raises(FetchError) as exc_info:
            FearGreedFeed().fetch_index()

        assert exc_info.value.kind == FetchErrorKind.MALFORMED

    @patch('requests.Session.get')
    def test_timeout_is_timeout(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(FetchError) as exc_info:
            FearGreedFeed().fetch_index()

        assert exc_info.value.kind == FetchErrorKind.TIMEOUT
