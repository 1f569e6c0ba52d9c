"""
Technical indicator engine.

Computes indicators over a symbol's stored fused history:
- RSI(14) with Wilder smoothing
- MACD(12, 26, 9)
- Bollinger Bands(20, 2)
- SMA20, EMA12, EMA26
- Annualized volatility of log returns

All series are chronological (oldest first). The EMA is seeded with the
first price of the series rather than an SMA.
"""

import math
from typing import List, Sequence

import numpy as np
from loguru import logger

from market_fusion.core.errors import InsufficientData
from market_fusion.services.data.types import BollingerBands, Indicators, MACD


RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
BOLLINGER_PERIOD = 20
BOLLINGER_STD = 2.0
SMA_PERIOD = 20
VOLATILITY_PERIOD = 20
TRADING_DAYS = 252


def rsi(prices: Sequence[float], period: int = RSI_PERIOD) -> float:
    """
    Relative Strength Index with Wilder smoothing.

    Returns 50 with fewer than period + 1 prices, 100 when there were
    gains and no losses, 50 for a flat series.
    """
    if len(prices) < period + 1:
        return 50.0

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change

    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(prices)):
        change = prices[i] - prices[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0

    rs = avg_gain / avg_loss
    return max(0.0, min(100.0, 100.0 - 100.0 / (1.0 + rs)))


def ema_series(prices: Sequence[float], period: int) -> List[float]:
    """EMA value at every index, seeded with the first price."""
    if not prices:
        return []

    k = 2.0 / (period + 1)
    values = [float(prices[0])]
    for price in prices[1:]:
        values.append(price * k + values[-1] * (1 - k))
    return values


def ema(prices: Sequence[float], period: int) -> float:
    """Latest EMA value (0 for an empty series)."""
    series = ema_series(prices, period)
    return series[-1] if series else 0.0


def sma(prices: Sequence[float], period: int = SMA_PERIOD) -> float:
    """Mean of the last `period` prices (all prices when fewer)."""
    window = prices[-period:]
    if not len(window):
        return 0.0
    return float(np.mean(window))


def macd(
    prices: Sequence[float],
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal_period: int = MACD_SIGNAL
) -> MACD:
    """
    MACD line, signal and histogram.

    The signal line is the EMA of the MACD line taken from index slow - 1
    onward, where both EMAs cover a full slow window.
    """
    fast_series = ema_series(prices, fast)
    slow_series = ema_series(prices, slow)
    if not fast_series:
        return MACD(macd=0.0, signal=0.0, histogram=0.0)

    macd_value = fast_series[-1] - slow_series[-1]
    macd_line = [f - s for f, s in zip(fast_series[slow - 1:], slow_series[slow - 1:])]
    signal = ema(macd_line, signal_period) if macd_line else macd_value

    return MACD(macd=macd_value, signal=signal, histogram=macd_value - signal)


def bollinger(
    prices: Sequence[float],
    period: int = BOLLINGER_PERIOD,
    num_std_dev: float = BOLLINGER_STD
) -> BollingerBands:
    """Bands at SMA +/- num_std_dev population standard deviations."""
    middle = sma(prices, period)
    window = prices[-period:]
    std_dev = float(np.std(window)) if len(window) else 0.0

    return BollingerBands(
        upper=middle + num_std_dev * std_dev,
        middle=middle,
        lower=middle - num_std_dev * std_dev
    )


def volatility(prices: Sequence[float], period: int = VOLATILITY_PERIOD) -> float:
    """
    Annualized volatility: population std dev of the last `period` log
    returns times sqrt(252).
    """
    if len(prices) < 2:
        return 0.0

    series = np.asarray(prices[-(period + 1):], dtype=float)
    returns = np.diff(np.log(series))
    return float(np.std(returns) * math.sqrt(TRADING_DAYS))


def compute(prices: Sequence[float], volumes: Sequence[float]) -> Indicators:
    """
    All indicators for a chronological series.

    Args:
        prices: Prices, oldest first
        volumes: Volumes aligned with prices

    Returns:
        Indicators (volume is the latest volume)
    """
    return Indicators(
        rsi=rsi(prices),
        macd=macd(prices),
        bollinger=bollinger(prices),
        sma20=sma(prices, SMA_PERIOD),
        ema12=ema(prices, MACD_FAST),
        ema26=ema(prices, MACD_SLOW),
        volume=float(volumes[-1]) if len(volumes) else 0.0,
        volatility=volatility(prices)
    )


class TechnicalIndicatorEngine:
    """
    Computes indicators from the store's latest fused records for a symbol.

    Stateless apart from the store reference; safe to share across
    concurrently processed symbols.
    """

    def __init__(self, store, window: int = 50, min_history: int = MACD_SLOW):
        """
        Args:
            store: MarketDataStore to read history from
            window: Number of latest records to use
            min_history: Minimum records required (>= 26 for MACD)
        """
        self.store = store
        self.window = window
        self.min_history = min_history

    def calculate(self, symbol: str) -> Indicators:
        """
        Compute indicators for a symbol from stored history.

        Args:
            symbol: Canonical symbol

        Returns:
            Indicators

        Raises:
            InsufficientData: If fewer than min_history records are available
        """
        records = self.store.find_latest_by_symbol(symbol, self.window)
        if len(records) < self.min_history:
            raise InsufficientData(symbol, self.min_history, len(records))

        prices = [r.price for r in records]
        volumes = [r.volume for r in records]

        indicators = compute(prices, volumes)
        logger.debug(
            f"Indicators for {symbol} over {len(prices)} points | "
            f"RSI: {indicators.rsi:.2f} | MACD: {indicators.macd.macd:.4f}"
        )
        return indicators
