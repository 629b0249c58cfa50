"""
Technical Indicators

Pure indicator calculations over numpy price arrays. Every function
returns nan (or a dict of nans) when the input is shorter than the
window it needs.
"""

import numpy as np
from typing import Dict, Sequence

from ...core.models import PriceBar


def closes(bars: Sequence[PriceBar]) -> np.ndarray:
    return np.array([bar.close for bar in bars], dtype=float)


def highs(bars: Sequence[PriceBar]) -> np.ndarray:
    return np.array([bar.high for bar in bars], dtype=float)


def lows(bars: Sequence[PriceBar]) -> np.ndarray:
    return np.array([bar.low for bar in bars], dtype=float)


def volumes(bars: Sequence[PriceBar]) -> np.ndarray:
    return np.array([bar.volume for bar in bars], dtype=float)


class TechnicalIndicators:
    """Collection of technical indicator calculations."""

    @staticmethod
    def sma(prices: np.ndarray, window: int) -> float:
        """Simple Moving Average."""
        if len(prices) < window:
            return np.nan
        return float(np.mean(prices[-window:]))

    @staticmethod
    def sma_series(prices: np.ndarray, window: int) -> np.ndarray:
        """Rolling SMA; leading positions without a full window are nan."""
        result = np.full(len(prices), np.nan)
        if len(prices) < window:
            return result
        cumsum = np.cumsum(np.insert(prices.astype(float), 0, 0.0))
        result[window - 1:] = (cumsum[window:] - cumsum[:-window]) / window
        return result

    @staticmethod
    def ema_series(prices: np.ndarray, window: int) -> np.ndarray:
        """EMA series seeded with the SMA of the first window."""
        result = np.full(len(prices), np.nan)
        if len(prices) < window:
            return result

        alpha = 2.0 / (window + 1)
        ema_value = float(np.mean(prices[:window]))
        result[window - 1] = ema_value
        for i in range(window, len(prices)):
            ema_value = alpha * prices[i] + (1 - alpha) * ema_value
            result[i] = ema_value

        return result

    @staticmethod
    def rsi(prices: np.ndarray, window: int = 14) -> float:
        """Relative Strength Index."""
        if len(prices) < window + 1:
            return np.nan

        deltas = np.diff(prices)
        gains = np.where(deltas > 0, deltas, 0)
        losses = np.where(deltas < 0, -deltas, 0)

        avg_gain = np.mean(gains[-window:])
        avg_loss = np.mean(losses[-window:])

        if avg_loss == 0:
            return 100.0 if avg_gain > 0 else 50.0

        rs = avg_gain / avg_loss
        return float(100 - (100 / (1 + rs)))

    @staticmethod
    def macd(prices: np.ndarray, fast: int = 12, slow: int = 26, signal: int = 9) -> Dict[str, float]:
        """MACD line, signal line (EMA of MACD) and histogram, with previous histogram."""
        empty = {'macd': np.nan, 'signal': np.nan, 'histogram': np.nan, 'prev_histogram': np.nan}
        if len(prices) < slow + signal:
            return empty

        ema_fast = TechnicalIndicators.ema_series(prices, fast)
        ema_slow = TechnicalIndicators.ema_series(prices, slow)
        macd_series = (ema_fast - ema_slow)[slow - 1:]

        signal_series = TechnicalIndicators.ema_series(macd_series, signal)
        histogram = macd_series - signal_series

        return {
            'macd': float(macd_series[-1]),
            'signal': float(signal_series[-1]),
            'histogram': float(histogram[-1]),
            'prev_histogram': float(histogram[-2]) if len(histogram) > 1 else np.nan
        }

    @staticmethod
    def bollinger_bands(prices: np.ndarray, window: int = 20, num_std: float = 2.0) -> Dict[str, float]:
        """Bollinger Bands with band width and %B position."""
        if len(prices) < window:
            return {'upper': np.nan, 'middle': np.nan, 'lower': np.nan,
                    'bandwidth': np.nan, 'position': np.nan}

        sma = TechnicalIndicators.sma(prices, window)
        std = float(np.std(prices[-window:]))

        upper = sma + (num_std * std)
        lower = sma - (num_std * std)
        width = upper - lower
        position = (prices[-1] - lower) / width if width > 0 else 0.5

        return {
            'upper': upper,
            'middle': sma,
            'lower': lower,
            'bandwidth': width / sma if sma else np.nan,
            'position': float(position)
        }

    @staticmethod
    def zscore(prices: np.ndarray, window: int = 20) -> float:
        """Z-score of the last price against its rolling window."""
        if len(prices) < window:
            return np.nan
        segment = prices[-window:]
        std = np.std(segment)
        if std == 0:
            return 0.0
        return float((prices[-1] - np.mean(segment)) / std)

    @staticmethod
    def atr(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, window: int = 14) -> float:
        """Average True Range."""
        if len(highs) < window + 1 or len(lows) < window + 1 or len(closes) < window + 1:
            return np.nan

        prev_close = closes[:-1]
        tr = np.maximum.reduce([
            highs[1:] - lows[1:],
            np.abs(highs[1:] - prev_close),
            np.abs(lows[1:] - prev_close)
        ])
        return float(np.mean(tr[-window:]))

    @staticmethod
    def volume_ratio(volumes: np.ndarray, window: int = 20) -> float:
        """Last volume relative to the trailing average (excluding the last bar)."""
        if len(volumes) < window + 1:
            return np.nan
        average = np.mean(volumes[-window - 1:-1])
        if average == 0:
            return np.nan
        return float(volumes[-1] / average)
