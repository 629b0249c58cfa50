"""
Feedback Loop

Analyzes closed trades and feeds the results back into the decision
pipeline: per-strategy accuracy for consensus weighting and confidence
threshold recommendations for risk, sizing and the execution guard.
Runs on its own schedule, independent of execution.
"""

import logging
import numpy as np
import pandas as pd
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ...core.errors import PersistenceError
from ...core.event_bus import ANALYSIS_TOPIC, EventBusInterface
from ...core.models import (
    Action, StrategyPerformance, ThresholdRecommendation, TradeRecord, utcnow
)


STATUS_OK = "ok"
STATUS_INSUFFICIENT_DATA = "insufficient_data"
STATUS_PERSISTENCE_FAILED = "persistence_failed"
STATUS_ERROR = "error"


@dataclass
class PerformanceAttribution:
    """Portfolio-level performance of closed trades."""
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    average_pnl: float
    average_win: float
    average_loss: float
    profit_factor: float
    sharpe_ratio: float
    max_drawdown: float
    total_return: float
    attribution_by_symbol: Dict[str, Dict[str, float]] = field(default_factory=dict)


@dataclass
class LearningReport:
    """Result of one learning cycle."""
    status: str
    closed_trades: int
    min_closed_trades: int
    overall_accuracy: Optional[float]
    strategy_performance: Dict[str, StrategyPerformance]
    recommendation: Optional[ThresholdRecommendation]
    performance: Optional[PerformanceAttribution]
    execution_quality: Dict[str, int]
    recommendations: List[str]
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'closed_trades': self.closed_trades,
            'min_closed_trades': self.min_closed_trades,
            'overall_accuracy': self.overall_accuracy,
            'strategy_performance': {
                sid: {'accuracy': p.accuracy, 'total_signals': p.total_signals,
                      'correct_signals': p.correct_signals}
                for sid, p in self.strategy_performance.items()
            },
            'recommendation': None if self.recommendation is None else {
                'optimal_threshold': self.recommendation.optimal_threshold,
                'minimum': self.recommendation.minimum,
                'conservative': self.recommendation.conservative,
                'aggressive': self.recommendation.aggressive,
                'sample_size': self.recommendation.sample_size,
            },
            'performance': None if self.performance is None else {
                'win_rate': self.performance.win_rate,
                'average_pnl': self.performance.average_pnl,
                'profit_factor': self.performance.profit_factor,
                'sharpe_ratio': self.performance.sharpe_ratio,
                'max_drawdown': self.performance.max_drawdown,
                'total_return': self.performance.total_return,
            },
            'execution_quality': self.execution_quality,
            'recommendations': self.recommendations,
            'generated_at': self.generated_at.isoformat(),
        }


class PerformanceCalculator:
    """Calculates various performance metrics."""

    def __init__(self):
        """Initialize performance calculator."""
        self.logger = logging.getLogger(f"{__name__}.PerformanceCalculator")

    def calculate_portfolio_metrics(self, trades: List[TradeRecord]) -> PerformanceAttribution:
        closed = [t for t in trades if t.is_closed]
        if not closed:
            return PerformanceAttribution(0, 0, 0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

        pnls = np.array([t.realized_pnl for t in closed], dtype=float)
        wins = pnls[pnls > 0]
        losses = pnls[pnls < 0]

        total_wins = float(wins.sum()) if len(wins) else 0.0
        total_losses = float(abs(losses.sum())) if len(losses) else 0.0
        profit_factor = total_wins / total_losses if total_losses > 0 else float('inf') if total_wins else 0.0

        return PerformanceAttribution(
            total_trades=len(closed),
            winning_trades=int(len(wins)),
            losing_trades=int(len(losses)),
            win_rate=float(len(wins) / len(closed)),
            average_pnl=float(pnls.mean()),
            average_win=float(wins.mean()) if len(wins) else 0.0,
            average_loss=float(losses.mean()) if len(losses) else 0.0,
            profit_factor=profit_factor,
            sharpe_ratio=self._calculate_sharpe_ratio(closed),
            max_drawdown=self._calculate_max_drawdown(pnls),
            total_return=float(pnls.sum()),
            attribution_by_symbol=self._calculate_symbol_attribution(closed)
        )

    def _calculate_sharpe_ratio(self, trades: List[TradeRecord], risk_free_rate: float = 0.02) -> float:
        """Per-trade return Sharpe, annualized over trading days."""
        returns = np.array([t.realized_pnl / t.notional_value for t in trades], dtype=float)
        if len(returns) < 2:
            return 0.0

        std_return = np.std(returns)
        if std_return == 0:
            return 0.0

        excess_return = np.mean(returns) - (risk_free_rate / 252)
        return float(excess_return / std_return * np.sqrt(252))

    def _calculate_max_drawdown(self, pnls: np.ndarray) -> float:
        if len(pnls) == 0:
            return 0.0
        cumulative = np.cumsum(pnls)
        running_max = np.maximum.accumulate(np.concatenate([[0.0], cumulative]))[1:]
        return float(np.min(cumulative - running_max))

    def _calculate_symbol_attribution(self, trades: List[TradeRecord]) -> Dict[str, Dict[str, float]]:
        frame = pd.DataFrame({
            'symbol': [t.symbol for t in trades],
            'pnl': [t.realized_pnl for t in trades],
        })
        grouped = frame.groupby('symbol')['pnl']
        return {
            symbol: {
                'total_pnl': float(group.sum()),
                'trade_count': int(group.count()),
                'win_rate': float((group > 0).mean()),
            }
            for symbol, group in grouped
        }


class OutcomeAnalyzer:
    """Accuracy attribution and confidence threshold optimization."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.logger = logging.getLogger(f"{__name__}.OutcomeAnalyzer")

        self.threshold_min = float(self.config.get('threshold_min', 0.50))
        self.threshold_max = float(self.config.get('threshold_max', 0.95))
        self.threshold_step = float(self.config.get('threshold_step', 0.05))
        self.default_threshold = float(self.config.get('default_threshold', 0.65))

    @staticmethod
    def overall_accuracy(trades: List[TradeRecord]) -> Optional[float]:
        closed = [t for t in trades if t.is_closed]
        if not closed:
            return None
        return sum(1 for t in closed if t.realized_pnl > 0) / len(closed)

    def strategy_accuracy(self, trades: List[TradeRecord]) -> Dict[str, StrategyPerformance]:
        """
        Credit each strategy that voted on a closed trade.

        A vote for the traded side is correct when the trade made money;
        a vote for the opposite side is correct when it lost money. HOLD
        votes are not scored.
        """
        rows = []
        for trade in trades:
            if not trade.is_closed:
                continue
            for strategy_id, vote in trade.contributing_actions.items():
                if vote == Action.HOLD.value:
                    continue
                agreed = vote == trade.side.value
                correct = trade.realized_pnl > 0 if agreed else trade.realized_pnl < 0
                rows.append({'strategy_id': strategy_id, 'correct': int(correct)})

        if not rows:
            return {}

        now = utcnow()
        grouped = pd.DataFrame(rows).groupby('strategy_id')['correct'].agg(['sum', 'count'])
        return {
            strategy_id: StrategyPerformance(
                strategy_id=strategy_id,
                total_signals=int(row['count']),
                correct_signals=int(row['sum']),
                accuracy=float(row['sum'] / row['count']),
                last_updated=now
            )
            for strategy_id, row in grouped.iterrows()
        }

    def thresholds(self) -> List[float]:
        steps = int(round((self.threshold_max - self.threshold_min) / self.threshold_step))
        return [round(self.threshold_min + i * self.threshold_step, 4) for i in range(steps + 1)]

    def optimal_threshold(self, trades: List[TradeRecord]) -> float:
        """
        Scan confidence thresholds; score = 0.7 * accuracy + 0.3 if the
        average P&L above the threshold is positive.
        """
        closed = [t for t in trades if t.is_closed]
        if not closed:
            return self.default_threshold

        frame = pd.DataFrame({
            'confidence': [t.confidence for t in closed],
            'pnl': [t.realized_pnl for t in closed],
        })

        best_threshold, best_score = self.default_threshold, float('-inf')
        for threshold in self.thresholds():
            subset = frame[frame['confidence'] >= threshold]
            if subset.empty:
                continue
            accuracy = float((subset['pnl'] > 0).mean())
            score = accuracy * 0.7 + (0.3 if subset['pnl'].mean() > 0 else 0.0)
            if score > best_score:
                best_threshold, best_score = threshold, score

        return best_threshold

    def recommend(self, trades: List[TradeRecord]) -> ThresholdRecommendation:
        optimal = self.optimal_threshold(trades)
        return ThresholdRecommendation(
            optimal_threshold=optimal,
            minimum=round(max(0.6, optimal - 0.1), 4),
            conservative=round(max(0.7, optimal), 4),
            aggressive=round(min(0.9, optimal + 0.1), 4),
            sample_size=sum(1 for t in trades if t.is_closed)
        )


class FeedbackLoop:
    """
    Periodic learning cycle over the trade ledger.

    Below the minimum closed-trade sample it reports metrics but writes
    nothing, leaving learned weights and thresholds untouched.
    """

    def __init__(self, store, config: Optional[Dict[str, Any]] = None,
                 event_bus: Optional[EventBusInterface] = None):
        """
        Initialize feedback loop.

        Args:
            store: TradeStore
            config: The 'analytics' configuration section
            event_bus: Optional observability sink
        """
        self.store = store
        self.config = config or {}
        self.event_bus = event_bus
        self.logger = logging.getLogger(f"{__name__}.FeedbackLoop")

        self.min_closed_trades = int(self.config.get('min_closed_trades', 25))
        self.lookback_days = int(self.config.get('lookback_days', 30))
        self.max_trades = int(self.config.get('max_trades', 1000))

        self.calculator = PerformanceCalculator()
        self.analyzer = OutcomeAnalyzer(self.config)
        self.last_report: Optional[LearningReport] = None

    async def run_cycle(self) -> LearningReport:
        """Run one learning cycle. Never raises."""
        try:
            report = await self._run_cycle()
        except Exception as e:
            self.logger.error(f"Learning cycle failed: {e}")
            report = LearningReport(
                status=STATUS_ERROR, closed_trades=0, min_closed_trades=self.min_closed_trades,
                overall_accuracy=None, strategy_performance={}, recommendation=None,
                performance=None, execution_quality={}, recommendations=[f"Learning cycle error: {e}"]
            )

        self.last_report = report
        if self.event_bus:
            event_type = ('insufficient_data' if report.status == STATUS_INSUFFICIENT_DATA
                          else 'learning_completed')
            self.event_bus.publish(ANALYSIS_TOPIC, report.to_dict(), event_type=event_type)
        return report

    async def _run_cycle(self) -> LearningReport:
        since = datetime.now(timezone.utc) - timedelta(days=self.lookback_days)
        closed = await self.store.query_closed_trades(since=since, limit=self.max_trades)
        recent = await self.store.query_trades(since=since, limit=self.max_trades)

        overall = self.analyzer.overall_accuracy(closed)
        performance = self.calculator.calculate_portfolio_metrics(closed)
        quality = dict(Counter(t.execution_quality.value for t in recent))

        if len(closed) < self.min_closed_trades:
            self.logger.info(
                f"Insufficient data: {len(closed)}/{self.min_closed_trades} closed trades, "
                f"keeping current weights and thresholds"
            )
            return LearningReport(
                status=STATUS_INSUFFICIENT_DATA,
                closed_trades=len(closed),
                min_closed_trades=self.min_closed_trades,
                overall_accuracy=overall,
                strategy_performance={},
                recommendation=None,
                performance=performance,
                execution_quality=quality,
                recommendations=[
                    f"Need {self.min_closed_trades - len(closed)} more closed trades before recalibrating."
                ]
            )

        strategy_performance = self.analyzer.strategy_accuracy(closed)
        recommendation = self.analyzer.recommend(closed)
        recommendations = self._generate_recommendations(overall, strategy_performance, recommendation,
                                                         performance, quality)

        status = STATUS_OK
        try:
            await self.store.upsert_strategy_performance(strategy_performance.values())
            await self.store.save_threshold_recommendation(recommendation)
        except PersistenceError as e:
            self.logger.error(f"Could not persist learning results, will retry next cycle: {e}")
            status = STATUS_PERSISTENCE_FAILED

        self.logger.info(
            f"Learning cycle: {len(closed)} trades, accuracy {overall:.1%}, "
            f"optimal threshold {recommendation.optimal_threshold:.2f}"
        )

        return LearningReport(
            status=status,
            closed_trades=len(closed),
            min_closed_trades=self.min_closed_trades,
            overall_accuracy=overall,
            strategy_performance=strategy_performance,
            recommendation=recommendation,
            performance=performance,
            execution_quality=quality,
            recommendations=recommendations
        )

    def _generate_recommendations(self, overall: Optional[float],
                                  strategy_performance: Dict[str, StrategyPerformance],
                                  recommendation: ThresholdRecommendation,
                                  performance: PerformanceAttribution,
                                  quality: Dict[str, int]) -> List[str]:
        recommendations = []

        if overall is not None and overall < 0.4:
            recommendations.append(f"Overall accuracy is poor ({overall:.2f}). Consider raising the confidence floor.")

        for strategy_id, perf in sorted(strategy_performance.items()):
            if perf.total_signals >= 5 and perf.accuracy < 0.4:
                recommendations.append(
                    f"Strategy {strategy_id} accuracy is {perf.accuracy:.2f}; its consensus weight will shrink."
                )

        if recommendation.optimal_threshold >= 0.85:
            recommendations.append("Only very high-confidence trades are profitable. Trade less often.")

        if performance.profit_factor and performance.profit_factor < 1.0:
            recommendations.append(f"Profit factor {performance.profit_factor:.2f} is below 1.0.")

        poor = quality.get('POOR', 0)
        total = sum(quality.values())
        if total and poor / total > 0.2:
            recommendations.append(f"{poor}/{total} executions rated POOR. Check broker latency and slippage.")

        if not recommendations:
            recommendations.append("Performance appears satisfactory. Continue monitoring.")

        return recommendations
