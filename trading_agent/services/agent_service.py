"""
Trading Agent Service

Orchestrates one decision cycle per symbol: price history, consensus,
sizing, risk validation, guard reservation, order routing and ledger
recording. Also hosts the control surface (kill switch, configuration,
metrics) and the scan/learning scheduler.
"""

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.errors import GuardBlocked, PersistenceError
from ..core.event_bus import (
    CONTROL_TOPIC, DECISIONS_TOPIC, EventBusInterface, InMemoryEventBus
)
from ..core.models import (
    Action, DecisionOutcome, DecisionStatus, ExecutionResult, PortfolioSnapshot,
    PriceBar, TradeRecord
)
from .analysis.feedback_loop import FeedbackLoop, LearningReport, STATUS_OK
from .execution.broker import BrokerAdapter
from .execution.execution_guard import ExecutionGuard
from .execution.order_gateway import OrderRouter
from .execution.risk_manager import RiskValidationEngine
from .strategy.consensus_engine import ConsensusEngine
from .strategy.position_sizing import PositionSizer
from .strategy.strategies import StrategyRegistry, build_default_registry


class TradingAgentService:
    """
    Automated trading agent.

    Every failure inside a cycle degrades to a DecisionOutcome with a
    status and reason; nothing raises out of evaluate_and_maybe_execute.
    """

    def __init__(self, config: Dict[str, Any], broker: BrokerAdapter, store,
                 event_bus: Optional[EventBusInterface] = None,
                 registry: Optional[StrategyRegistry] = None,
                 clock: Callable[[], float] = time.monotonic,
                 now: Optional[Callable[[], datetime]] = None):
        """
        Initialize the trading agent.

        Args:
            config: Full agent configuration
            broker: Broker adapter
            store: TradeStore
            event_bus: Observability sink; an in-memory bus is created if omitted
            registry: Strategy registry; built from config if omitted
            clock: Monotonic clock for cooldowns and strategy dwell time
            now: Wall clock for the trading-day boundary and market hours
        """
        self.config = config
        self.broker = broker
        self.store = store
        self.event_bus = event_bus or InMemoryEventBus("trading_agent")
        self.logger = logging.getLogger(f"{__name__}.TradingAgentService")

        self.agent_config = config.get('agent', {}) or {}
        self.symbols: List[str] = list(self.agent_config.get('symbols', []))
        self.max_concurrent = max(1, int(self.agent_config.get('max_concurrent_evaluations', 4)))

        self.registry = registry or build_default_registry(config.get('strategies', {}))
        self.consensus = ConsensusEngine(self.registry, config.get('consensus', {}), self.event_bus, clock)
        self.risk = RiskValidationEngine(config.get('risk', {}), now)
        self.sizer = PositionSizer(config.get('sizing', {}))
        self.guard = ExecutionGuard(config.get('execution', {}), store, clock, now)
        self.router = OrderRouter(broker, store, config.get('execution', {}), self.event_bus)
        self.feedback = FeedbackLoop(store, config.get('analytics', {}), self.event_bus)

        self.history_window = max(int(self.agent_config.get('history_window', 250)),
                                  self.registry.max_lookback())
        self.correlation_window = int(self.agent_config.get('correlation_window', 60))

        self.symbol_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_outcomes: Dict[str, DecisionOutcome] = {}
        self.scan_count = 0

    async def start(self) -> None:
        """Restore persisted counters and learned state."""
        await self.guard.restore()
        await self.refresh_learned_state()
        self.logger.info(
            f"Trading agent ready: {len(self.symbols)} symbols, "
            f"execution {'ENABLED' if self.guard.enabled else 'DISABLED'}"
        )

    async def refresh_learned_state(self) -> None:
        """Pull strategy accuracy and threshold bounds written by the learning loop."""
        try:
            performance = await self.store.get_strategy_performance()
            self.consensus.update_performance(performance.values())
            recommendation = await self.store.get_threshold_recommendation()
        except PersistenceError as e:
            self.logger.error(f"Could not refresh learned state: {e}")
            return

        if recommendation is not None:
            self.risk.apply_recommendation(recommendation)
            self.sizer.apply_recommendation(recommendation)
            self.guard.apply_recommendation(recommendation)

    # Decision cycle

    async def evaluate_and_maybe_execute(self, symbol: str) -> DecisionOutcome:
        """
        Run one full decision cycle for a symbol.

        Evaluations of the same symbol are serialized.
        """
        async with self.symbol_locks[symbol]:
            try:
                outcome = await self._evaluate(symbol)
            except Exception as e:
                self.logger.error(f"Decision cycle failed for {symbol}: {e}")
                outcome = DecisionOutcome(symbol=symbol, status=DecisionStatus.ERROR, reason=str(e))
            self.last_outcomes[symbol] = outcome
            return outcome

    async def _evaluate(self, symbol: str) -> DecisionOutcome:
        # Kill switch read at the top of the cycle; it gates reservation and submission only
        execution_enabled = self.guard.enabled

        history = await self.broker.get_price_history(symbol, self.history_window)
        consensus = self.consensus.evaluate(symbol, history)
        self.event_bus.publish(DECISIONS_TOPIC, {
            'symbol': symbol,
            'action': consensus.recommended_action.value,
            'confidence': consensus.blended_confidence,
            'agreement': consensus.consensus_agreement,
            'active_strategy': consensus.active_strategy_id,
            'signals': consensus.contributing_actions(),
            'skipped': list(consensus.skipped_strategies),
            'failed': list(consensus.failed_strategies),
        }, event_type='signal_generated')

        if consensus.recommended_action == Action.HOLD:
            reason = "no usable strategies" if not consensus.contributing_signals else "consensus recommends HOLD"
            return DecisionOutcome(symbol=symbol, status=DecisionStatus.HOLD, reason=reason, consensus=consensus)

        portfolio = await self.broker.get_account()
        sizing = self.sizer.size_with_reasoning(consensus.blended_confidence, portfolio.buying_power)
        if sizing.notional <= 0:
            self.logger.info(f"Sizing unavailable for {symbol}: {sizing.reasoning}")
            self.event_bus.publish(DECISIONS_TOPIC, {'symbol': symbol, 'reason': sizing.reasoning},
                                   event_type='sizing_unavailable')
            return DecisionOutcome(symbol=symbol, status=DecisionStatus.SIZING_UNAVAILABLE,
                                   reason="insufficient buying power", consensus=consensus)

        price_histories = await self._correlation_histories(symbol, history, portfolio)
        assessment = self.risk.validate(consensus, portfolio, sizing.notional, price_histories, history)
        if not assessment.approved:
            self.event_bus.publish(DECISIONS_TOPIC, {
                'symbol': symbol,
                'violations': assessment.violations,
                'risk_score': assessment.risk_score,
            }, event_type='risk_rejected')
            return DecisionOutcome(symbol=symbol, status=DecisionStatus.RISK_REJECTED,
                                   reason="; ".join(assessment.violations),
                                   consensus=consensus, assessment=assessment)

        if not execution_enabled:
            self.logger.info(f"Execution disabled: {consensus.recommended_action.value} {symbol} "
                             f"${sizing.notional:.2f} not submitted")
            return DecisionOutcome(symbol=symbol, status=DecisionStatus.DISABLED, reason="execution disabled",
                                   consensus=consensus, assessment=assessment)

        try:
            reservation = await self.guard.reserve(symbol, consensus.blended_confidence)
        except GuardBlocked as e:
            self.event_bus.publish(DECISIONS_TOPIC, {'symbol': symbol, 'reason': e.reason},
                                   event_type='guard_blocked')
            return DecisionOutcome(symbol=symbol, status=DecisionStatus.GUARD_BLOCKED, reason=e.reason,
                                   consensus=consensus, assessment=assessment)

        result: Optional[ExecutionResult] = None
        try:
            request = self.router.build_request(consensus, sizing.notional, reference_price=history[-1].close)
            result = await self.router.submit(request)
        finally:
            await self.guard.complete(reservation, result)

        record = await self.router.record(request, result)
        return DecisionOutcome(
            symbol=symbol,
            status=DecisionStatus.EXECUTED if result.success else DecisionStatus.FAILED,
            reason=sizing.reasoning if result.success else (result.error or "order failed"),
            consensus=consensus,
            assessment=assessment,
            request=request,
            result=result,
            trade_id=record.trade_id if record is not None else None
        )

    async def _correlation_histories(self, symbol: str, history: Sequence[PriceBar],
                                     portfolio: PortfolioSnapshot) -> Dict[str, List[float]]:
        if not self.risk.enabled_checks.get('correlation') or not portfolio.open_positions:
            return {}

        histories = {symbol: [bar.close for bar in history[-self.correlation_window:]]}
        for position in portfolio.open_positions:
            if position.symbol == symbol:
                continue
            try:
                bars = await self.broker.get_price_history(position.symbol, self.correlation_window)
                histories[position.symbol] = [bar.close for bar in bars]
            except Exception as e:
                self.logger.warning(f"No history for correlation with {position.symbol}: {e}")
        return histories

    async def run_scan(self, symbols: Optional[Sequence[str]] = None) -> List[DecisionOutcome]:
        """
        Evaluate every symbol once, bounded by the concurrency limit.

        With execution disabled the scan still produces recommendations;
        nothing is reserved or submitted.
        """
        if not self.guard.enabled:
            self.logger.info("Scan running with execution disabled: recommendations only")

        symbols = list(symbols or self.symbols)
        self.scan_count += 1
        self.event_bus.publish(DECISIONS_TOPIC, {'symbols': symbols, 'scan': self.scan_count},
                               event_type='scan_started')
        await self.refresh_learned_state()

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def bounded(symbol: str) -> DecisionOutcome:
            async with semaphore:
                return await self.evaluate_and_maybe_execute(symbol)

        outcomes = await asyncio.gather(*(bounded(s) for s in symbols))
        executed = sum(1 for o in outcomes if o.status == DecisionStatus.EXECUTED)
        self.logger.info(f"Scan {self.scan_count}: {len(outcomes)} symbols evaluated, {executed} orders placed")
        return list(outcomes)

    async def run_learning_cycle(self) -> LearningReport:
        """Run analytics and apply fresh learning immediately."""
        report = await self.feedback.run_cycle()
        if report.status == STATUS_OK:
            await self.refresh_learned_state()
        return report

    async def close_trade(self, trade_id: str, realized_pnl: float) -> Optional[TradeRecord]:
        """Record realized P&L for a trade; a trade can be closed only once."""
        try:
            return await self.store.close_trade(trade_id, realized_pnl)
        except (KeyError, ValueError) as e:
            self.logger.warning(f"Cannot close trade {trade_id}: {e}")
        except PersistenceError as e:
            self.logger.error(f"Failed to close trade {trade_id}: {e}")
        return None

    # Control surface

    @property
    def execution_enabled(self) -> bool:
        return self.guard.enabled

    def enable_execution(self) -> None:
        self.guard.enable()
        self.event_bus.publish(CONTROL_TOPIC, {'enabled': True}, event_type='execution_enabled')

    def disable_execution(self) -> None:
        self.guard.disable()
        self.event_bus.publish(CONTROL_TOPIC, {'enabled': False}, event_type='execution_disabled')

    def update_execution_settings(self, min_confidence: Optional[float] = None,
                                  daily_order_limit: Optional[int] = None,
                                  cooldown_seconds: Optional[float] = None) -> Dict[str, Any]:
        if min_confidence is not None:
            if not 0.0 <= min_confidence <= 1.0:
                raise ValueError("min_confidence must be within [0, 1]")
            self.guard.min_confidence = float(min_confidence)
        if daily_order_limit is not None:
            if daily_order_limit < 0:
                raise ValueError("daily_order_limit must be non-negative")
            self.guard.daily_order_limit = int(daily_order_limit)
        if cooldown_seconds is not None:
            if cooldown_seconds < 0:
                raise ValueError("cooldown_seconds must be non-negative")
            self.guard.cooldown_seconds = float(cooldown_seconds)
        self.logger.info(f"Execution settings updated: {self.guard.get_status()}")
        return self.guard.get_status()

    def set_strategy_enabled(self, strategy_id: str, enabled: bool) -> None:
        self.registry.set_enabled(strategy_id, enabled)

    def set_strategy_weight(self, strategy_id: str, weight: float) -> None:
        self.registry.set_weight(strategy_id, weight)

    def set_active_strategy(self, strategy_id: str) -> None:
        self.consensus.selector.set_active_strategy(strategy_id)

    def get_config(self) -> Dict[str, Any]:
        return {
            'symbols': self.symbols,
            'execution': self.guard.get_status(),
            'risk': self.risk.get_config(),
            'sizing': self.sizer.get_config(),
            'strategies': self.consensus.get_strategy_status(),
            'active_strategy': self.consensus.active_strategy_id,
        }

    def get_metrics(self) -> Dict[str, Any]:
        guard_status = self.guard.get_status()
        recent = []
        if isinstance(self.event_bus, InMemoryEventBus):
            recent = [e.to_dict() for e in self.event_bus.recent_events(limit=20)]
        return {
            'execution_enabled': self.guard.enabled,
            'orders_today': guard_status['orders_today'],
            'daily_order_limit': guard_status['daily_order_limit'],
            'execution': self.router.get_execution_summary(),
            'active_strategy': self.consensus.active_strategy_id,
            'strategy_switches': len(self.consensus.selector.switch_history),
            'scans': self.scan_count,
            'last_outcomes': {s: o.to_dict() for s, o in self.last_outcomes.items()},
            'last_learning': self.feedback.last_report.to_dict() if self.feedback.last_report else None,
            'recent_events': recent,
        }


class AgentScheduler:
    """Runs the scan loop and the learning loop as independent asyncio tasks."""

    def __init__(self, service: TradingAgentService,
                 scan_interval: Optional[float] = None,
                 learning_interval: Optional[float] = None):
        agent_config = service.agent_config
        self.service = service
        self.scan_interval = float(scan_interval or agent_config.get('scan_interval_seconds', 300))
        self.learning_interval = float(learning_interval or agent_config.get('learning_interval_seconds', 3600))
        self.logger = logging.getLogger(f"{__name__}.AgentScheduler")
        self.tasks: List[asyncio.Task] = []
        self.running = False

    async def start(self) -> None:
        if self.running:
            return
        await self.service.start()
        self.running = True
        self.tasks = [
            asyncio.create_task(self._scan_loop(), name="scan_loop"),
            asyncio.create_task(self._learning_loop(), name="learning_loop"),
        ]
        self.logger.info(f"Scheduler started: scan every {self.scan_interval:.0f}s, "
                         f"learning every {self.learning_interval:.0f}s")

    async def run_forever(self) -> None:
        await self.start()
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def _scan_loop(self) -> None:
        try:
            while self.running:
                try:
                    await self.service.run_scan()
                except Exception as e:
                    self.logger.error(f"Scan cycle error: {e}")
                await asyncio.sleep(self.scan_interval)
        except asyncio.CancelledError:
            self.logger.info("Scan loop cancelled")

    async def _learning_loop(self) -> None:
        try:
            while self.running:
                await asyncio.sleep(self.learning_interval)
                try:
                    await self.service.run_learning_cycle()
                except Exception as e:
                    self.logger.error(f"Learning cycle error: {e}")
        except asyncio.CancelledError:
            self.logger.info("Learning loop cancelled")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []
        self.logger.info("Scheduler stopped")
