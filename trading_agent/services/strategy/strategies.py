"""
Strategy Signal Generators

Five technical strategies sharing one contract: given a price history,
produce a StrategySignal or raise DataInsufficient. The registry maps
strategy ids to configured implementations, enable flags and manual
weights.
"""

import logging
import numpy as np
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from ...core.errors import DataInsufficient
from ...core.models import Action, PriceBar, StrategySignal
from ..processing.indicators import TechnicalIndicators, closes, volumes


class BaseStrategy(ABC):
    """Base class for signal-generating strategies."""

    strategy_id: str = ""
    name: str = ""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    @abstractmethod
    def lookback(self) -> int:
        """Minimum number of bars required."""

    @abstractmethod
    def _analyze(self, symbol: str, bars: Sequence[PriceBar]) -> StrategySignal:
        pass

    def generate(self, price_history: Sequence[PriceBar]) -> StrategySignal:
        """
        Generate a signal for the most recent bar.

        Args:
            price_history: Bars ordered oldest to newest

        Returns:
            Strategy signal

        Raises:
            DataInsufficient: If fewer bars than the lookback are available
        """
        if len(price_history) < self.lookback:
            raise DataInsufficient(self.strategy_id, self.lookback, len(price_history))
        symbol = price_history[-1].symbol
        return self._analyze(symbol, price_history)

    def _signal(self, symbol: str, action: Action, confidence: float,
                risk_score: float, rationale: str) -> StrategySignal:
        return StrategySignal(
            strategy_id=self.strategy_id,
            symbol=symbol,
            action=action,
            confidence=confidence,
            risk_score=risk_score,
            rationale=rationale
        )


class RSIStrategy(BaseStrategy):
    """RSI momentum reversal: buy oversold, sell overbought."""

    strategy_id = "rsi"
    name = "RSI Momentum"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.period = int(self.config.get('period', 14))
        self.oversold = float(self.config.get('oversold', 30))
        self.overbought = float(self.config.get('overbought', 70))

    @property
    def lookback(self) -> int:
        return self.period + 1

    def _analyze(self, symbol: str, bars: Sequence[PriceBar]) -> StrategySignal:
        rsi = TechnicalIndicators.rsi(closes(bars), self.period)

        if rsi <= self.oversold:
            depth = self.oversold - rsi
            return self._signal(symbol, Action.BUY, min(1.0, depth / 15 + 0.3),
                                min(0.8, max(0.1, depth / 20 + 0.2)),
                                f"RSI oversold: {rsi:.1f} <= {self.oversold:.0f}")
        if rsi >= self.overbought:
            height = rsi - self.overbought
            return self._signal(symbol, Action.SELL, min(1.0, height / 15 + 0.3),
                                min(0.8, max(0.1, height / 20 + 0.2)),
                                f"RSI overbought: {rsi:.1f} >= {self.overbought:.0f}")
        return self._signal(symbol, Action.HOLD, 0.5, 0.3, f"RSI neutral: {rsi:.1f}")


class MACDStrategy(BaseStrategy):
    """MACD signal-line crossover with histogram momentum."""

    strategy_id = "macd"
    name = "MACD Crossover"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.fast_period = int(self.config.get('fast_period', 12))
        self.slow_period = int(self.config.get('slow_period', 26))
        self.signal_period = int(self.config.get('signal_period', 9))

    @property
    def lookback(self) -> int:
        return self.slow_period + self.signal_period + 1

    def _analyze(self, symbol: str, bars: Sequence[PriceBar]) -> StrategySignal:
        prices = closes(bars)
        macd = TechnicalIndicators.macd(prices, self.fast_period, self.slow_period, self.signal_period)
        histogram = macd['histogram']
        prev_histogram = macd['prev_histogram']
        # Histogram as a fraction of price keeps confidence scale-free
        strength = abs(histogram) / prices[-1] if prices[-1] else 0.0

        if prev_histogram <= 0 < histogram:
            return self._signal(symbol, Action.BUY, min(0.9, 0.55 + strength * 100), 0.4,
                                f"MACD bullish crossover (hist {histogram:.4f})")
        if prev_histogram >= 0 > histogram:
            return self._signal(symbol, Action.SELL, min(0.9, 0.55 + strength * 100), 0.4,
                                f"MACD bearish crossover (hist {histogram:.4f})")
        if histogram > 0 and histogram > prev_histogram and macd['macd'] > 0:
            return self._signal(symbol, Action.BUY, min(0.7, 0.3 + strength * 100), 0.5,
                                "MACD bullish momentum building")
        if histogram < 0 and histogram < prev_histogram and macd['macd'] < 0:
            return self._signal(symbol, Action.SELL, min(0.7, 0.3 + strength * 100), 0.5,
                                "MACD bearish momentum building")
        return self._signal(symbol, Action.HOLD, 0.5, 0.3, "MACD neutral")


class BollingerBandsStrategy(BaseStrategy):
    """Band-position mean reversion with volume confirmation."""

    strategy_id = "bollinger"
    name = "Bollinger Bands"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.period = int(self.config.get('period', 20))
        self.std_dev = float(self.config.get('std_dev', 2.0))
        self.squeeze_threshold = float(self.config.get('squeeze_threshold', 0.02))

    @property
    def lookback(self) -> int:
        return self.period + 10

    def _analyze(self, symbol: str, bars: Sequence[PriceBar]) -> StrategySignal:
        bands = TechnicalIndicators.bollinger_bands(closes(bars), self.period, self.std_dev)
        position = bands['position']
        bandwidth = bands['bandwidth']

        if bandwidth < self.squeeze_threshold:
            return self._signal(symbol, Action.HOLD, 0.4, 0.3,
                                f"Band squeeze ({bandwidth:.3f}), waiting for breakout")

        if position <= 0.05:
            action, confidence = Action.BUY, min(0.9, 0.6 + (0.05 - position) * 2)
        elif position >= 0.95:
            action, confidence = Action.SELL, min(0.9, 0.6 + (position - 0.95) * 2)
        else:
            return self._signal(symbol, Action.HOLD, 0.5, 0.3, f"Inside bands (%B {position:.2f})")

        ratio = TechnicalIndicators.volume_ratio(volumes(bars), self.period)
        if not np.isnan(ratio):
            if ratio >= 1.5:
                confidence *= 1.15
            elif ratio < 0.7:
                confidence *= 0.7

        return self._signal(symbol, action, min(1.0, confidence), 0.4,
                            f"Price at {'lower' if action == Action.BUY else 'upper'} band (%B {position:.2f})")


class MovingAverageCrossoverStrategy(BaseStrategy):
    """Fast/slow SMA golden and death crosses with trend continuation."""

    strategy_id = "ma_crossover"
    name = "Moving Average Crossover"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.fast_period = int(self.config.get('fast_period', 20))
        self.slow_period = int(self.config.get('slow_period', 50))
        self.pullback_tolerance = float(self.config.get('pullback_tolerance', 0.01))
        self.weak_trend = float(self.config.get('weak_trend', 0.02))

    @property
    def lookback(self) -> int:
        return self.slow_period + 10

    def _analyze(self, symbol: str, bars: Sequence[PriceBar]) -> StrategySignal:
        prices = closes(bars)
        fast = TechnicalIndicators.sma_series(prices, self.fast_period)
        slow = TechnicalIndicators.sma_series(prices, self.slow_period)
        fast_now, fast_prev = fast[-1], fast[-2]
        slow_now, slow_prev = slow[-1], slow[-2]
        trend = (fast_now - slow_now) / slow_now

        if fast_prev <= slow_prev and fast_now > slow_now:
            action, confidence, rationale = Action.BUY, 0.75, "Golden cross"
        elif fast_prev >= slow_prev and fast_now < slow_now:
            action, confidence, rationale = Action.SELL, 0.75, "Death cross"
        elif abs(prices[-1] - fast_now) / fast_now <= self.pullback_tolerance:
            if trend > 0:
                action, confidence, rationale = Action.BUY, 0.6, "Pullback to fast MA in uptrend"
            elif trend < 0:
                action, confidence, rationale = Action.SELL, 0.6, "Rally to fast MA in downtrend"
            else:
                return self._signal(symbol, Action.HOLD, 0.5, 0.3, "Flat moving averages")
        else:
            return self._signal(symbol, Action.HOLD, 0.5, 0.3, f"No crossover (trend {trend:+.2%})")

        if abs(trend) < self.weak_trend:
            confidence *= 0.6
            rationale += ", weak trend"

        return self._signal(symbol, action, confidence, 0.4, rationale)


class MeanReversionStrategy(BaseStrategy):
    """Z-score reversion toward the rolling mean."""

    strategy_id = "mean_reversion"
    name = "Mean Reversion"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.period = int(self.config.get('period', 20))
        self.entry_zscore = float(self.config.get('entry_zscore', 2.0))

    @property
    def lookback(self) -> int:
        return self.period + 1

    def _analyze(self, symbol: str, bars: Sequence[PriceBar]) -> StrategySignal:
        zscore = TechnicalIndicators.zscore(closes(bars), self.period)
        excess = abs(zscore) - self.entry_zscore

        if zscore <= -self.entry_zscore:
            return self._signal(symbol, Action.BUY, min(0.95, 0.6 + excess * 0.2),
                                min(0.8, 0.3 + excess * 0.1), f"Z-score {zscore:.2f} below mean")
        if zscore >= self.entry_zscore:
            return self._signal(symbol, Action.SELL, min(0.95, 0.6 + excess * 0.2),
                                min(0.8, 0.3 + excess * 0.1), f"Z-score {zscore:.2f} above mean")
        return self._signal(symbol, Action.HOLD, 0.5, 0.3, f"Z-score {zscore:.2f} within band")


STRATEGY_CLASSES = {
    cls.strategy_id: cls
    for cls in (RSIStrategy, MACDStrategy, BollingerBandsStrategy,
                MovingAverageCrossoverStrategy, MeanReversionStrategy)
}


class StrategyRegistry:
    """Maps strategy ids to implementations plus enable flags and manual weights."""

    def __init__(self):
        self.strategies: Dict[str, BaseStrategy] = {}
        self.enabled: Dict[str, bool] = {}
        self.weights: Dict[str, float] = {}
        self.logger = logging.getLogger(f"{__name__}.StrategyRegistry")

    def register(self, strategy: BaseStrategy, enabled: bool = True, weight: float = 1.0) -> None:
        self.strategies[strategy.strategy_id] = strategy
        self.enabled[strategy.strategy_id] = bool(enabled)
        self.weights[strategy.strategy_id] = self._clamp_weight(weight)

    def get(self, strategy_id: str) -> BaseStrategy:
        if strategy_id not in self.strategies:
            raise KeyError(f"Unknown strategy: {strategy_id}")
        return self.strategies[strategy_id]

    def strategy_ids(self) -> List[str]:
        return sorted(self.strategies)

    def enabled_strategies(self) -> List[BaseStrategy]:
        """Enabled strategies in id order."""
        return [self.strategies[sid] for sid in self.strategy_ids() if self.enabled[sid]]

    def set_enabled(self, strategy_id: str, enabled: bool) -> None:
        self.get(strategy_id)
        self.enabled[strategy_id] = bool(enabled)
        self.logger.info(f"Strategy {strategy_id} {'enabled' if enabled else 'disabled'}")

    def set_weight(self, strategy_id: str, weight: float) -> None:
        self.get(strategy_id)
        self.weights[strategy_id] = self._clamp_weight(weight)

    def weight_of(self, strategy_id: str) -> float:
        return self.weights.get(strategy_id, 0.0)

    def max_lookback(self) -> int:
        return max((s.lookback for s in self.enabled_strategies()), default=0)

    @staticmethod
    def _clamp_weight(weight: float) -> float:
        return max(0.0, min(1.0, float(weight)))


def build_default_registry(config: Optional[Dict[str, Any]] = None) -> StrategyRegistry:
    """
    Build a registry with every known strategy.

    Args:
        config: The 'strategies' configuration section keyed by strategy id

    Returns:
        Populated registry
    """
    config = config or {}
    registry = StrategyRegistry()
    for strategy_id, cls in STRATEGY_CLASSES.items():
        section = config.get(strategy_id, {}) or {}
        registry.register(
            cls(section),
            enabled=section.get('enabled', True),
            weight=section.get('weight', 1.0)
        )
    return registry
