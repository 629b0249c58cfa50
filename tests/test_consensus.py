"""
Test suite for the multi-strategy consensus engine and active-strategy switching.
"""

import random
import unittest

from trading_agent.core.event_bus import InMemoryEventBus, STRATEGY_TOPIC
from trading_agent.core.models import Action, StrategyPerformance
from trading_agent.services.strategy.consensus_engine import ConsensusEngine, NEUTRAL_ACCURACY
from trading_agent.services.strategy.strategies import (
    BaseStrategy, RSIStrategy, StrategyRegistry, build_default_registry
)

from tests.helpers import make_bars, make_signal, random_walk


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ExplodingStrategy(BaseStrategy):
    strategy_id = "exploding"
    name = "Exploding"

    @property
    def lookback(self) -> int:
        return 1

    def _analyze(self, symbol, bars):
        raise RuntimeError("indicator blew up")


def _performance(strategy_id: str, accuracy: float, total: int = 30) -> StrategyPerformance:
    return StrategyPerformance(strategy_id, total_signals=total,
                               correct_signals=int(accuracy * total), accuracy=accuracy)


class TestConsensusCombination(unittest.TestCase):
    """Test weighted blending of strategy signals."""

    def setUp(self):
        self.engine = ConsensusEngine(build_default_registry(), {'active_strategy': 'rsi'})

    def test_two_buys_outweigh_one_sell(self):
        signals = [
            make_signal('rsi', Action.BUY, 0.8),
            make_signal('macd', Action.BUY, 0.6),
            make_signal('bollinger', Action.SELL, 0.9),
        ]
        consensus = self.engine.combine('AAPL', signals, 'rsi')

        self.assertEqual(consensus.recommended_action, Action.BUY)
        self.assertAlmostEqual(consensus.consensus_agreement, 1.4 / 2.3, places=6)
        self.assertAlmostEqual(consensus.blended_confidence, (0.8 + 0.6 - 0.9) / 3, places=6)
        self.assertEqual(consensus.active_strategy_id, 'rsi')
        self.assertEqual(consensus.contributing_actions(),
                         {'rsi': 'BUY', 'macd': 'BUY', 'bollinger': 'SELL'})

    def test_tie_for_top_resolves_to_hold(self):
        signals = [make_signal('rsi', Action.BUY, 0.8), make_signal('macd', Action.SELL, 0.8)]
        consensus = self.engine.combine('AAPL', signals)

        self.assertEqual(consensus.recommended_action, Action.HOLD)
        self.assertEqual(consensus.blended_confidence, 0.0)
        self.assertEqual(consensus.consensus_agreement, 0.0)

    def test_no_signals_is_hold_with_zero_confidence(self):
        consensus = self.engine.combine('AAPL', [])
        self.assertEqual(consensus.recommended_action, Action.HOLD)
        self.assertEqual(consensus.blended_confidence, 0.0)

    def test_zero_weights_is_hold(self):
        for strategy_id in ('rsi', 'macd'):
            self.engine.registry.set_weight(strategy_id, 0.0)
        signals = [make_signal('rsi', Action.BUY, 0.9), make_signal('macd', Action.BUY, 0.9)]
        consensus = self.engine.combine('AAPL', signals)
        self.assertEqual(consensus.recommended_action, Action.HOLD)
        self.assertEqual(consensus.blended_confidence, 0.0)

    def test_order_of_signals_does_not_matter(self):
        signals = [
            make_signal('rsi', Action.BUY, 0.71),
            make_signal('macd', Action.SELL, 0.64),
            make_signal('bollinger', Action.BUY, 0.33),
            make_signal('ma_crossover', Action.HOLD, 0.5),
            make_signal('mean_reversion', Action.SELL, 0.9),
        ]
        baseline = self.engine.combine('AAPL', signals)
        rng = random.Random(11)
        for _ in range(10):
            shuffled = list(signals)
            rng.shuffle(shuffled)
            consensus = self.engine.combine('AAPL', shuffled)
            self.assertEqual(consensus.recommended_action, baseline.recommended_action)
            self.assertEqual(consensus.blended_confidence, baseline.blended_confidence)
            self.assertEqual(consensus.consensus_agreement, baseline.consensus_agreement)

    def test_learned_accuracy_scales_weight(self):
        self.assertEqual(self.engine.strategy_weight('rsi'), NEUTRAL_ACCURACY)
        self.engine.update_performance([_performance('macd', 0.9), _performance('rsi', 0.2)])
        self.assertAlmostEqual(self.engine.strategy_weight('macd'), 0.9)

        signals = [make_signal('rsi', Action.BUY, 0.9), make_signal('macd', Action.SELL, 0.7)]
        consensus = self.engine.combine('AAPL', signals)
        self.assertEqual(consensus.recommended_action, Action.SELL)

    def test_manual_weight_multiplies_accuracy(self):
        self.engine.registry.set_weight('rsi', 0.5)
        self.engine.update_performance([_performance('rsi', 0.8)])
        self.assertAlmostEqual(self.engine.strategy_weight('rsi'), 0.4)

    def test_blended_confidence_in_unit_interval(self):
        rng = random.Random(5)
        ids = ['rsi', 'macd', 'bollinger', 'ma_crossover', 'mean_reversion']
        for _ in range(50):
            signals = [make_signal(sid, rng.choice(list(Action)), rng.random()) for sid in ids]
            consensus = self.engine.combine('AAPL', signals)
            self.assertGreaterEqual(consensus.blended_confidence, 0.0)
            self.assertLessEqual(consensus.blended_confidence, 1.0)


class TestConsensusEvaluation(unittest.TestCase):
    """Test running strategies against price history."""

    def test_short_history_skips_long_lookback_strategies(self):
        engine = ConsensusEngine(build_default_registry())
        consensus = engine.evaluate('AAPL', make_bars(random_walk(20)))

        self.assertEqual([s.strategy_id for s in consensus.contributing_signals], ['rsi'])
        self.assertEqual(set(consensus.skipped_strategies),
                         {'macd', 'bollinger', 'ma_crossover', 'mean_reversion'})
        self.assertEqual(consensus.failed_strategies, ())

    def test_failing_strategy_is_excluded(self):
        registry = StrategyRegistry()
        registry.register(RSIStrategy())
        registry.register(ExplodingStrategy())
        engine = ConsensusEngine(registry)

        consensus = engine.evaluate('AAPL', make_bars(random_walk(40)))
        self.assertEqual(consensus.failed_strategies, ('exploding',))
        self.assertEqual([s.strategy_id for s in consensus.contributing_signals], ['rsi'])

    def test_all_strategies_disabled(self):
        registry = build_default_registry()
        for strategy_id in registry.strategy_ids():
            registry.set_enabled(strategy_id, False)
        consensus = ConsensusEngine(registry).evaluate('AAPL', make_bars(random_walk(100)))
        self.assertEqual(consensus.recommended_action, Action.HOLD)
        self.assertEqual(consensus.blended_confidence, 0.0)

    def test_strategy_status(self):
        engine = ConsensusEngine(build_default_registry(), {'active_strategy': 'macd'})
        status = {s['strategy_id']: s for s in engine.get_strategy_status()}
        self.assertEqual(len(status), 5)
        self.assertTrue(status['macd']['active'])
        self.assertFalse(status['rsi']['active'])
        self.assertEqual(status['rsi']['effective_weight'], NEUTRAL_ACCURACY)


class TestActiveStrategySwitching(unittest.TestCase):
    """Test hysteresis on the active-strategy pointer."""

    def setUp(self):
        self.clock = FakeClock()
        self.event_bus = InMemoryEventBus("test")
        self.engine = ConsensusEngine(
            build_default_registry(),
            {'active_strategy': 'rsi', 'switch_margin': 0.05, 'sustained_evaluations': 3,
             'min_dwell_seconds': 3600, 'min_signals': 20},
            event_bus=self.event_bus,
            clock=self.clock
        )
        self.selector = self.engine.selector

    def test_no_switch_before_dwell_time(self):
        performance = {'rsi': _performance('rsi', 0.55), 'macd': _performance('macd', 0.70)}
        for _ in range(5):
            self.selector.observe(performance)
        self.assertEqual(self.engine.active_strategy_id, 'rsi')

    def test_sustained_outperformance_switches(self):
        performance = {'rsi': _performance('rsi', 0.55), 'macd': _performance('macd', 0.70)}
        self.clock.now = 4000.0
        self.selector.observe(performance)
        self.selector.observe(performance)
        self.assertEqual(self.engine.active_strategy_id, 'rsi')

        self.selector.observe(performance)
        self.assertEqual(self.engine.active_strategy_id, 'macd')

        switches = self.event_bus.recent_events(event_type='strategy_switched')
        self.assertEqual(len(switches), 1)
        self.assertEqual(switches[0].topic, STRATEGY_TOPIC)
        self.assertEqual(switches[0].data['from_strategy'], 'rsi')
        self.assertEqual(switches[0].data['to_strategy'], 'macd')

    def test_switch_restarts_dwell(self):
        performance = {'rsi': _performance('rsi', 0.55), 'macd': _performance('macd', 0.70),
                       'bollinger': _performance('bollinger', 0.90)}
        self.clock.now = 4000.0
        for _ in range(3):
            self.selector.observe(performance)
        self.assertEqual(self.engine.active_strategy_id, 'bollinger')

        worse = dict(performance, bollinger=_performance('bollinger', 0.40))
        for _ in range(5):
            self.selector.observe(worse)
        self.assertEqual(self.engine.active_strategy_id, 'bollinger')

    def test_margin_and_sample_size_required(self):
        self.clock.now = 4000.0
        narrow = {'rsi': _performance('rsi', 0.60), 'macd': _performance('macd', 0.62)}
        sparse = {'rsi': _performance('rsi', 0.60), 'macd': _performance('macd', 0.95, total=5)}
        for _ in range(5):
            self.selector.observe(narrow)
            self.selector.observe(sparse)
        self.assertEqual(self.engine.active_strategy_id, 'rsi')

    def test_interrupted_streak_resets(self):
        self.clock.now = 4000.0
        better = {'rsi': _performance('rsi', 0.55), 'macd': _performance('macd', 0.70)}
        flat = {'rsi': _performance('rsi', 0.70), 'macd': _performance('macd', 0.70)}
        self.selector.observe(better)
        self.selector.observe(better)
        self.selector.observe(flat)
        self.selector.observe(better)
        self.assertEqual(self.engine.active_strategy_id, 'rsi')

    def test_manual_override(self):
        self.engine.selector.set_active_strategy('mean_reversion')
        self.assertEqual(self.engine.active_strategy_id, 'mean_reversion')
        self.assertEqual(self.selector.switch_history[-1]['reason'], 'manual')
        with self.assertRaises(KeyError):
            self.selector.set_active_strategy('nope')


if __name__ == '__main__':
    unittest.main()
