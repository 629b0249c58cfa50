"""
Multi-Strategy Consensus Engine

Runs every enabled strategy against a price history and blends their
signals into one ConsensusSignal, weighting each strategy by its manual
weight times its learned accuracy. Also owns the active-strategy
pointer and its hysteresis-protected automatic switching.
"""

import logging
import math
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ...core.errors import DataInsufficient
from ...core.event_bus import EventBusInterface, STRATEGY_TOPIC
from ...core.models import (
    Action, ConsensusSignal, PriceBar, StrategyPerformance, StrategySignal
)
from .strategies import StrategyRegistry


# Accuracy assumed for a strategy with no recorded outcomes
NEUTRAL_ACCURACY = 0.5


class ActiveStrategySelector:
    """
    Tracks the active strategy and switches it only when a challenger
    outperforms the incumbent by a margin, for a sustained number of
    evaluations, after a minimum dwell time.
    """

    def __init__(self, config: Dict[str, Any], registry: StrategyRegistry,
                 event_bus: Optional[EventBusInterface] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.registry = registry
        self.event_bus = event_bus
        self.clock = clock
        self.logger = logging.getLogger(f"{__name__}.ActiveStrategySelector")

        self.switch_margin = float(config.get('switch_margin', 0.05))
        self.sustained_evaluations = max(1, int(config.get('sustained_evaluations', 3)))
        self.min_dwell_seconds = float(config.get('min_dwell_seconds', 3600))
        self.min_signals = int(config.get('min_signals', 20))

        configured = config.get('active_strategy')
        enabled_ids = [s.strategy_id for s in registry.enabled_strategies()]
        if configured in registry.strategies:
            self.active_strategy_id: Optional[str] = configured
        else:
            self.active_strategy_id = enabled_ids[0] if enabled_ids else None

        self.last_switch_at = self.clock()
        self.challenger_id: Optional[str] = None
        self.challenger_streak = 0
        self.switch_history: List[Dict[str, Any]] = []

    def observe(self, performance: Dict[str, StrategyPerformance]) -> Optional[str]:
        """
        Feed one evaluation's view of performance; may switch the pointer.

        Returns:
            The active strategy id after this observation
        """
        challenger = self._best_challenger(performance)
        if challenger is None:
            self.challenger_id = None
            self.challenger_streak = 0
            return self.active_strategy_id

        if challenger == self.challenger_id:
            self.challenger_streak += 1
        else:
            self.challenger_id = challenger
            self.challenger_streak = 1

        dwell = self.clock() - self.last_switch_at
        if self.challenger_streak >= self.sustained_evaluations and dwell >= self.min_dwell_seconds:
            self._switch(challenger, performance, reason="performance")

        return self.active_strategy_id

    def set_active_strategy(self, strategy_id: str) -> None:
        """Manual override; bypasses hysteresis."""
        self.registry.get(strategy_id)
        self._switch(strategy_id, {}, reason="manual")

    def _best_challenger(self, performance: Dict[str, StrategyPerformance]) -> Optional[str]:
        incumbent = performance.get(self.active_strategy_id) if self.active_strategy_id else None
        incumbent_accuracy = incumbent.accuracy if incumbent and incumbent.total_signals else NEUTRAL_ACCURACY

        best_id, best_accuracy = None, incumbent_accuracy + self.switch_margin
        for strategy in self.registry.enabled_strategies():
            perf = performance.get(strategy.strategy_id)
            if strategy.strategy_id == self.active_strategy_id or perf is None:
                continue
            if perf.total_signals < self.min_signals:
                continue
            if perf.accuracy > best_accuracy:
                best_id, best_accuracy = strategy.strategy_id, perf.accuracy
        return best_id

    def _switch(self, strategy_id: str, performance: Dict[str, StrategyPerformance], reason: str) -> None:
        previous = self.active_strategy_id
        self.active_strategy_id = strategy_id
        self.last_switch_at = self.clock()
        self.challenger_id = None
        self.challenger_streak = 0

        details = {
            'from_strategy': previous,
            'to_strategy': strategy_id,
            'reason': reason,
            'from_accuracy': performance[previous].accuracy if previous in performance else None,
            'to_accuracy': performance[strategy_id].accuracy if strategy_id in performance else None,
            'switched_at': datetime.now(timezone.utc).isoformat()
        }
        self.switch_history.append(details)
        self.logger.info(f"Active strategy switched {previous} -> {strategy_id} ({reason})")
        if self.event_bus:
            self.event_bus.publish(STRATEGY_TOPIC, details, event_type="strategy_switched")


class ConsensusEngine:
    """
    Weighted multi-strategy consensus.

    Weight of a strategy is its manual weight times its learned accuracy
    (neutral prior when it has no recorded outcomes). The recommended
    action is the one with the largest weight-times-confidence mass; a
    tie for the top resolves to HOLD.
    """

    def __init__(self, registry: StrategyRegistry, config: Optional[Dict[str, Any]] = None,
                 event_bus: Optional[EventBusInterface] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize consensus engine.

        Args:
            registry: Strategy registry
            config: The 'consensus' configuration section
            event_bus: Optional observability sink
            clock: Monotonic clock used for switch dwell time
        """
        self.registry = registry
        self.config = config or {}
        self.logger = logging.getLogger(f"{__name__}.ConsensusEngine")
        self.performance: Dict[str, StrategyPerformance] = {}
        self.selector = ActiveStrategySelector(self.config, registry, event_bus, clock)

    @property
    def active_strategy_id(self) -> Optional[str]:
        return self.selector.active_strategy_id

    def update_performance(self, performances: Iterable[StrategyPerformance]) -> None:
        """Replace the learned performance table."""
        self.performance = {p.strategy_id: p for p in performances}

    def strategy_weight(self, strategy_id: str) -> float:
        perf = self.performance.get(strategy_id)
        accuracy = perf.accuracy if perf is not None and perf.total_signals > 0 else NEUTRAL_ACCURACY
        return self.registry.weight_of(strategy_id) * accuracy

    def evaluate(self, symbol: str, price_history: Sequence[PriceBar]) -> ConsensusSignal:
        """
        Produce a consensus signal for a symbol.

        Args:
            symbol: Symbol being evaluated
            price_history: Bars ordered oldest to newest

        Returns:
            Consensus signal; HOLD with zero confidence when no strategy is usable
        """
        signals: List[StrategySignal] = []
        skipped: List[str] = []
        failed: List[str] = []

        for strategy in self.registry.enabled_strategies():
            try:
                signals.append(strategy.generate(price_history))
            except DataInsufficient as e:
                skipped.append(strategy.strategy_id)
                self.logger.debug(f"Skipping {strategy.strategy_id} for {symbol}: {e}")
            except Exception as e:
                failed.append(strategy.strategy_id)
                self.logger.error(f"Strategy {strategy.strategy_id} failed for {symbol}: {e}")

        active = self.selector.observe(self.performance)
        return self.combine(symbol, signals, active, skipped, failed)

    def combine(self, symbol: str, signals: Sequence[StrategySignal],
                active_strategy_id: Optional[str] = None,
                skipped: Sequence[str] = (), failed: Sequence[str] = ()) -> ConsensusSignal:
        """Blend already-generated signals into a consensus signal."""
        ordered = sorted(signals, key=lambda s: s.strategy_id)
        weights = {s.strategy_id: self.strategy_weight(s.strategy_id) for s in ordered}
        total_weight = math.fsum(weights.values())

        if not ordered or total_weight <= 0:
            return ConsensusSignal(
                symbol=symbol,
                recommended_action=Action.HOLD,
                blended_confidence=0.0,
                contributing_signals=tuple(ordered),
                active_strategy_id=active_strategy_id,
                consensus_agreement=0.0,
                skipped_strategies=tuple(skipped),
                failed_strategies=tuple(failed)
            )

        contributions = defaultdict(list)
        for s in ordered:
            contributions[s.action].append(weights[s.strategy_id] * s.confidence)
        mass = {action: math.fsum(values) for action, values in contributions.items()}
        total_mass = math.fsum(mass.values())

        top_mass = max(mass.values())
        leaders = [action for action, value in mass.items() if value == top_mass]
        recommended = leaders[0] if len(leaders) == 1 and top_mass > 0 else Action.HOLD

        agreement = mass.get(recommended, 0.0) / total_mass if total_mass > 0 else 0.0

        blended = math.fsum(
            weights[s.strategy_id] * s.confidence * (1.0 if s.action == recommended else -1.0)
            for s in ordered
        ) / total_weight
        blended = max(0.0, min(1.0, blended))

        self.logger.debug(
            f"Consensus {symbol}: {recommended.value} conf={blended:.3f} "
            f"agreement={agreement:.2f} from {len(ordered)} strategies"
        )

        return ConsensusSignal(
            symbol=symbol,
            recommended_action=recommended,
            blended_confidence=blended,
            contributing_signals=tuple(ordered),
            active_strategy_id=active_strategy_id,
            consensus_agreement=agreement,
            skipped_strategies=tuple(skipped),
            failed_strategies=tuple(failed)
        )

    def get_strategy_status(self) -> List[Dict[str, Any]]:
        """Per-strategy enable flag, weights and accuracy for the control surface."""
        status = []
        for strategy_id in self.registry.strategy_ids():
            perf = self.performance.get(strategy_id)
            status.append({
                'strategy_id': strategy_id,
                'name': self.registry.get(strategy_id).name,
                'enabled': self.registry.enabled[strategy_id],
                'manual_weight': self.registry.weight_of(strategy_id),
                'effective_weight': self.strategy_weight(strategy_id),
                'accuracy': perf.accuracy if perf else None,
                'total_signals': perf.total_signals if perf else 0,
                'active': strategy_id == self.active_strategy_id
            })
        return status
