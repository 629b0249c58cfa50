"""
Test suite for core infrastructure components.
"""

import pytest
import tempfile
import unittest
from unittest.mock import Mock, patch
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from trading_agent.configs import get_config_value, load_agent_config, substitute_env_vars
from trading_agent.core.event_bus import (
    ALL_TOPICS, DECISIONS_TOPIC, EventMessage, InMemoryEventBus
)
from trading_agent.core.models import (
    Action, ExecutionQuality, StrategyPerformance, StrategySignal, ThresholdRecommendation
)
from trading_agent.core.persistent_state_manager import SQLAlchemyTradeStore

from tests.helpers import make_trade


class TestAgentConfig(unittest.TestCase):
    """Test configuration loading functionality."""

    def test_environment_variable_default(self):
        content = "test_value: ${TEST_VAR_UNSET_FOR_TESTS:-default_value}"
        self.assertEqual(substitute_env_vars(content), "test_value: default_value")

    @patch.dict('os.environ', {'AGENT_TEST_VAR': 'from_env'})
    def test_environment_variable_overrides_default(self):
        self.assertEqual(substitute_env_vars("v: ${AGENT_TEST_VAR:-fallback}"), "v: from_env")

    def test_required_environment_variable(self):
        with self.assertRaises(ValueError):
            substitute_env_vars("test_value: ${REQUIRED_VAR_UNSET_FOR_TESTS}")

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_agent_config('does_not_exist.yaml')

    def test_explicit_file_with_substitution(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "agent.yaml"
            path.write_text("execution:\n  enabled: ${AGENT_TEST_ENABLED_UNSET:-true}\n", encoding='utf-8')
            config = load_agent_config(path)
        self.assertIs(config['execution']['enabled'], True)

    def test_empty_file_is_empty_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "empty.yaml"
            path.write_text("", encoding='utf-8')
            with patch.dict('os.environ', {'AGENT_CONFIG': str(path)}):
                self.assertEqual(load_agent_config(), {})

    def test_bundled_agent_config(self):
        """The shipped agent.yaml parses and carries every section."""
        config = load_agent_config()
        for section in ('agent', 'strategies', 'consensus', 'risk', 'sizing',
                        'execution', 'analytics', 'database'):
            self.assertIn(section, config)
        self.assertEqual(config['sizing']['min_order_value'], 25.0)
        self.assertEqual(config['analytics']['min_closed_trades'], 25)
        self.assertEqual(set(config['strategies']),
                         {'rsi', 'macd', 'bollinger', 'ma_crossover', 'mean_reversion'})
        self.assertEqual(config['risk']['min_average_volume'], 15000)
        self.assertIs(config['risk']['checks']['same_direction'], True)

    def test_get_config_value(self):
        config = {'execution': {'cooldown_seconds': 60}}
        self.assertEqual(get_config_value(config, 'execution.cooldown_seconds'), 60)
        self.assertEqual(get_config_value(config, 'execution.missing', 5), 5)
        self.assertIsNone(get_config_value(config, 'nope.deeper'))


class TestModels(unittest.TestCase):
    """Test core value types."""

    def test_strategy_signal_clips_scores(self):
        signal = StrategySignal('rsi', 'AAPL', Action.BUY, confidence=1.4, risk_score=-0.2)
        self.assertEqual(signal.confidence, 1.0)
        self.assertEqual(signal.risk_score, 0.0)

    def test_trade_record_closes_once(self):
        trade = make_trade('t1')
        self.assertFalse(trade.is_closed)

        closed = trade.close(12.5)
        self.assertTrue(closed.is_closed)
        self.assertEqual(closed.realized_pnl, 12.5)
        self.assertIsNotNone(closed.closed_at)
        self.assertFalse(trade.is_closed)

        with self.assertRaises(ValueError):
            closed.close(3.0)


class TestEventBus(unittest.TestCase):
    """Test event bus functionality."""

    def setUp(self):
        """Set up test fixtures."""
        self.event_bus = InMemoryEventBus("test_service", history_size=3)
        self.received_messages = []

    def message_callback(self, message: EventMessage):
        """Callback for testing message reception."""
        self.received_messages.append(message)

    def test_publish_and_subscribe(self):
        self.event_bus.subscribe(DECISIONS_TOPIC, self.message_callback)
        self.assertTrue(self.event_bus.publish(DECISIONS_TOPIC, {'symbol': 'AAPL'}, event_type='signal_generated'))

        self.assertEqual(len(self.received_messages), 1)
        message = self.received_messages[0]
        self.assertEqual(message.topic, DECISIONS_TOPIC)
        self.assertEqual(message.event_type, 'signal_generated')
        self.assertEqual(message.data['symbol'], 'AAPL')
        self.assertEqual(message.source_service, 'test_service')

    def test_wildcard_subscriber_sees_all_topics(self):
        self.event_bus.subscribe(ALL_TOPICS, self.message_callback)
        self.event_bus.publish('strategy', {}, event_type='strategy_switched')
        self.event_bus.publish('control', {}, event_type='execution_disabled')
        self.assertEqual([m.event_type for m in self.received_messages],
                         ['strategy_switched', 'execution_disabled'])

    def test_failing_subscriber_does_not_block_others(self):
        failing = Mock(side_effect=RuntimeError("boom"))
        self.event_bus.subscribe(DECISIONS_TOPIC, failing)
        self.event_bus.subscribe(DECISIONS_TOPIC, self.message_callback)

        self.assertTrue(self.event_bus.publish(DECISIONS_TOPIC, {}, event_type='order_failed'))
        failing.assert_called_once()
        self.assertEqual(len(self.received_messages), 1)

    def test_history_is_bounded(self):
        for i in range(5):
            self.event_bus.publish(DECISIONS_TOPIC, {'i': i}, event_type='scan_started')
        recent = self.event_bus.recent_events()
        self.assertEqual([e.data['i'] for e in recent], [2, 3, 4])
        self.assertEqual(self.event_bus.get_event_counts()['scan_started'], 5)

    def test_closed_bus_drops_messages(self):
        self.event_bus.close()
        self.assertFalse(self.event_bus.publish(DECISIONS_TOPIC, {}))


@pytest.fixture
def store():
    trade_store = SQLAlchemyTradeStore("sqlite://")
    yield trade_store
    trade_store.close()


class TestTradeStore:
    """Test the SQLAlchemy trade store against in-memory SQLite."""

    @pytest.mark.asyncio
    async def test_trade_record_round_trip(self, store):
        record = make_trade('t1', confidence=0.72, votes={'rsi': 'BUY', 'macd': 'SELL'},
                            quality=ExecutionQuality.EXCELLENT)
        await store.append_trade_record(record)

        loaded = await store.get_trade('t1')
        assert loaded.trade_id == record.trade_id
        assert loaded.symbol == record.symbol
        assert loaded.side == Action.BUY
        assert loaded.notional_value == record.notional_value
        assert loaded.idempotency_key == record.idempotency_key
        assert loaded.confidence == pytest.approx(0.72)
        assert loaded.contributing_actions == {'rsi': 'BUY', 'macd': 'SELL'}
        assert loaded.execution_quality == ExecutionQuality.EXCELLENT
        assert loaded.decided_at == record.decided_at
        assert not loaded.is_closed

    @pytest.mark.asyncio
    async def test_close_trade_only_once(self, store):
        await store.append_trade_record(make_trade('t1'))

        closed = await store.close_trade('t1', -4.25)
        assert closed.realized_pnl == -4.25
        assert (await store.get_trade('t1')).is_closed

        with pytest.raises(ValueError):
            await store.close_trade('t1', 10.0)
        assert (await store.get_trade('t1')).realized_pnl == -4.25

    @pytest.mark.asyncio
    async def test_close_unknown_trade(self, store):
        with pytest.raises(KeyError):
            await store.close_trade('missing', 1.0)

    @pytest.mark.asyncio
    async def test_query_closed_trades(self, store):
        await store.append_trade_record(make_trade('open'))
        await store.append_trade_record(make_trade('old', pnl=1.0,
                                                   closed_at=datetime.now(timezone.utc) - timedelta(days=40)))
        await store.append_trade_record(make_trade('recent', pnl=2.0))

        since = datetime.now(timezone.utc) - timedelta(days=30)
        closed = await store.query_closed_trades(since=since)
        assert [t.trade_id for t in closed] == ['recent']

        everything = await store.query_closed_trades()
        assert {t.trade_id for t in everything} == {'old', 'recent'}

        all_trades = await store.query_trades()
        assert len(all_trades) == 3

    @pytest.mark.asyncio
    async def test_strategy_performance_upsert(self, store):
        await store.upsert_strategy_performance([
            StrategyPerformance('rsi', total_signals=10, correct_signals=6, accuracy=0.6)
        ])
        await store.upsert_strategy_performance([
            StrategyPerformance('rsi', total_signals=20, correct_signals=15, accuracy=0.75),
            StrategyPerformance('macd', total_signals=5, correct_signals=1, accuracy=0.2),
        ])

        performance = await store.get_strategy_performance()
        assert set(performance) == {'rsi', 'macd'}
        assert performance['rsi'].accuracy == 0.75
        assert performance['rsi'].total_signals == 20

    @pytest.mark.asyncio
    async def test_latest_threshold_recommendation(self, store):
        assert await store.get_threshold_recommendation() is None
        await store.save_threshold_recommendation(ThresholdRecommendation(0.65, 0.6, 0.7, 0.75, 30))
        await store.save_threshold_recommendation(ThresholdRecommendation(0.8, 0.7, 0.8, 0.9, 40))

        latest = await store.get_threshold_recommendation()
        assert latest.optimal_threshold == 0.8
        assert latest.sample_size == 40

    @pytest.mark.asyncio
    async def test_daily_counter_never_moves_backwards(self, store):
        today = date(2024, 3, 1)
        assert await store.load_daily_counter(today) == 0

        await store.save_daily_counter(today, 3)
        await store.save_daily_counter(today, 2)
        assert await store.load_daily_counter(today) == 3
        assert await store.load_daily_counter(date(2024, 3, 2)) == 0
