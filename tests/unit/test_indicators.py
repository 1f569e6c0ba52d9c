"""Unit tests for technical indicator functions and TechnicalIndicatorEngine."""
import math

import pytest
from hypothesis import given, settings, strategies as st

from market_fusion.core.errors import InsufficientData
from market_fusion.services.data import indicators as ind
from market_fusion.services.data.indicators import TechnicalIndicatorEngine


class TestRSI:
    """Test RSI bounds and edge cases."""

    def test_fewer_than_15_prices_is_neutral(self):
        assert ind.rsi([100.0 + i for i in range(14)]) == 50.0

    def test_only_gains_is_100(self):
        assert ind.rsi([100.0 + i for i in range(30)]) == 100.0

    def test_only_losses_is_0(self):
        assert ind.rsi([100.0 - i for i in range(30)]) == pytest.approx(0.0)

    def test_flat_series_is_neutral(self):
        assert ind.rsi([100.0] * 30) == 50.0

    def test_alternating_series_is_balanced(self):
        """Test equal gains and losses give RSI 50."""
        prices = [100.0 if i % 2 == 0 else 101.0 for i in range(15)]

        # 7 gains and 7 losses of 1.0 in the seed window
        assert ind.rsi(prices) == pytest.approx(50.0)

    @settings(max_examples=300, deadline=None)
    @given(st.lists(st.floats(min_value=0.01, max_value=1e7), min_size=0, max_size=80))
    def test_rsi_is_always_between_0_and_100(self, prices):
        """Property: RSI is bounded for any positive price series."""
        value = ind.rsi(prices)

        assert 0.0 <= value <= 100.0


class TestMovingAverages:
    """Test EMA/SMA."""

    def test_ema_of_constant_series_is_constant(self):
        assert ind.ema([42.0] * 40, 12) == pytest.approx(42.0)
        assert ind.ema([42.0] * 40, 26) == pytest.approx(42.0)

    def test_ema_is_seeded_with_first_price(self):
        """Pin: EMA starts from the raw first price, not an SMA seed."""
        # k = 2 / (3 + 1) = 0.5
        assert ind.ema_series([10.0, 20.0, 30.0], 3) == [10.0, 15.0, 22.5]

    def test_ema_of_empty_series_is_zero(self):
        assert ind.ema([], 12) == 0.0

    def test_sma_uses_last_period_prices(self):
        prices = [1.0] * 10 + [3.0] * 20

        assert ind.sma(prices, 20) == pytest.approx(3.0)

    def test_sma_with_fewer_prices_uses_all(self):
        assert ind.sma([1.0, 2.0, 3.0], 20) == pytest.approx(2.0)


class TestMACD:

    def test_constant_series_has_zero_macd(self):
        result = ind.macd([100.0] * 40)

        assert result.macd == pytest.approx(0.0)
        assert result.signal == pytest.approx(0.0)
        assert result.histogram == pytest.approx(0.0)

    def test_rising_series_has_positive_macd(self):
        result = ind.macd([100.0 + i for i in range(40)])

        assert result.macd > 0
        assert result.histogram == pytest.approx(result.macd - result.signal)

    def test_signal_uses_macd_line_from_slow_window(self):
        """Test the signal EMA covers the MACD line from index 25 onward."""
        # ARRANGE
        prices = [100.0 + (i % 5) for i in range(30)]
        fast = ind.ema_series(prices, 12)
        slow = ind.ema_series(prices, 26)
        macd_line = [f - s for f, s in zip(fast[25:], slow[25:])]

        # ACT
        result = ind.macd(prices)

        # ASSERT
        assert len(macd_line) == 5
        assert result.signal == pytest.approx(ind.ema(macd_line, 9))


class TestBollingerAndVolatility:

    def test_constant_series_has_collapsed_bands(self):
        bands = ind.bollinger([50.0] * 30)

        assert bands.upper == bands.middle == bands.lower == pytest.approx(50.0)

    def test_bands_use_population_stddev(self):
        """Test 1..20: mean 10.5, population std dev sqrt(399/12)."""
        prices = [float(i) for i in range(1, 21)]
        std_dev = math.sqrt(399 / 12)

        bands = ind.bollinger(prices)

        assert bands.middle == pytest.approx(10.5)
        assert bands.upper == pytest.approx(10.5 + 2 * std_dev)
        assert bands.lower == pytest.approx(10.5 - 2 * std_dev)

    def test_constant_series_has_zero_volatility(self):
        assert ind.volatility([100.0] * 30) == pytest.approx(0.0)

    def test_single_price_has_zero_volatility(self):
        assert ind.volatility([100.0]) == 0.0

    def test_volatility_is_annualized(self):
        """Test alternating +/- log returns of equal size."""
        # ARRANGE
        up = math.log(1.01)
        prices = [100.0]
        for i in range(20):
            prices.append(prices[-1] * (1.01 if i % 2 == 0 else 1 / 1.01))

        # ACT
        value = ind.volatility(prices)

        # ASSERT
        # returns alternate +up / -up: population std dev == up
        assert value == pytest.approx(up * math.sqrt(252))


class TestTechnicalIndicatorEngine:
    """Test indicator calculation from stored history."""

    def test_insufficient_history_raises(self, store, make_record):
        """Test fewer than 26 records raises a retryable error."""
        # ARRANGE
        for i in range(25):
            store.save(make_record(price=100.0 + i, minutes_ago=25 - i))
        engine = TechnicalIndicatorEngine(store)

        # ACT
        with pytest.raises(InsufficientData) as exc_info:
            engine.calculate("bitcoin")

        # ASSERT
        assert exc_info.value.required == 26
        assert exc_info.value.available == 25
        assert exc_info.value.retryable

    def test_calculates_from_chronological_history(self, store, make_record):
        """Test indicators use stored records oldest first."""
        # ARRANGE
        for i in range(30):
            store.save(make_record(price=100.0 + i, minutes_ago=30 - i, volume=1000.0 + i))
        engine = TechnicalIndicatorEngine(store)

        # ACT
        result = engine.calculate("bitcoin")

        # ASSERT
        assert result.rsi == 100.0  # strictly rising
        assert result.volume == 1029.0  # latest record
        assert result.sma20 == pytest.approx(119.5)  # mean of the last 20 prices
        assert result.ema12 > result.ema26

    def test_window_limits_history(self, store, make_record):
        for i in range(80):
            store.save(make_record(price=100.0, minutes_ago=80 - i))
        seen = []

        class SpyStore:
            def find_latest_by_symbol(self, symbol, limit):
                seen.append(limit)
                return store.find_latest_by_symbol(symbol, limit)

        TechnicalIndicatorEngine(SpyStore(), window=50).calculate("bitcoin")

        assert seen == [50]
