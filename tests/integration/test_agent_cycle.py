"""
Integration tests for the full decision cycle.

These tests drive the agent against the simulated broker and an
in-memory SQLite trade store: consensus, sizing, risk, the execution
guard, order routing, ledger recording and the learning loop.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from trading_agent.core.event_bus import InMemoryEventBus
from trading_agent.core.models import Action, DecisionStatus, PortfolioSnapshot
from trading_agent.core.persistent_state_manager import SQLAlchemyTradeStore
from trading_agent.services.agent_service import AgentScheduler, TradingAgentService
from trading_agent.services.execution.broker import SimulatedBroker
from trading_agent.services.strategy.strategies import STRATEGY_CLASSES

from tests.helpers import make_bars, trending_closes


pytestmark = pytest.mark.integration


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def agent_config(**execution):
    settings = {'enabled': True, 'min_confidence': 0.65, 'daily_order_limit': 20,
                'cooldown_seconds': 60, 'broker_timeout_seconds': 2}
    settings.update(execution)
    return {
        'agent': {'symbols': ['AAPL', 'MSFT'], 'history_window': 60, 'max_concurrent_evaluations': 4},
        # Only RSI votes, so a steady decline is an unambiguous oversold BUY
        'strategies': {sid: {'enabled': sid == 'rsi'} for sid in STRATEGY_CLASSES},
        'consensus': {'active_strategy': 'rsi'},
        'risk': {'checks': {'correlation': False, 'same_direction': False},
                 'sectors': {'AAPL': 'technology', 'MSFT': 'technology'}},
        'sizing': {},
        'execution': settings,
        'analytics': {'min_closed_trades': 2},
    }


@pytest.fixture
def store():
    trade_store = SQLAlchemyTradeStore("sqlite://")
    yield trade_store
    trade_store.close()


@pytest.fixture
def broker():
    simulated = SimulatedBroker({'starting_cash': 100000.0, 'seed': 7})
    for symbol, start in (('AAPL', 180.0), ('MSFT', 400.0)):
        simulated.set_price_history(symbol, make_bars(trending_closes(60, start=start, step=-1.0), symbol))
    return simulated


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_bus():
    return InMemoryEventBus("integration")


def make_service(store, broker, clock, event_bus, **execution):
    return TradingAgentService(agent_config(**execution), broker, store,
                               event_bus=event_bus, clock=clock)


class TestDecisionCycle:
    """End-to-end decision cycle tests."""

    @pytest.mark.asyncio
    async def test_buy_signal_is_executed_and_recorded(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        await service.start()

        outcome = await service.evaluate_and_maybe_execute('AAPL')

        assert outcome.status == DecisionStatus.EXECUTED
        assert outcome.request.notional_value == 200.0
        assert outcome.consensus.blended_confidence == pytest.approx(1.0)
        assert broker.fill_count == 1

        trades = await store.query_trades()
        assert len(trades) == 1
        assert trades[0].trade_id == outcome.trade_id
        assert trades[0].contributing_actions == {'rsi': 'BUY'}
        assert trades[0].strategy_id == 'rsi'
        assert await store.load_daily_counter(service.guard.trading_date) == 1

        counts = event_bus.get_event_counts()
        assert counts['signal_generated'] == 1
        assert counts['order_placed'] == 1

    @pytest.mark.asyncio
    async def test_second_evaluation_within_cooldown_is_blocked(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        await service.evaluate_and_maybe_execute('AAPL')

        clock.now = 30.0
        outcome = await service.evaluate_and_maybe_execute('AAPL')

        assert outcome.status == DecisionStatus.GUARD_BLOCKED
        assert outcome.reason.startswith('cooldown')
        assert broker.place_order_calls == 1

        clock.now = 61.0
        outcome = await service.evaluate_and_maybe_execute('AAPL')
        assert outcome.status == DecisionStatus.EXECUTED
        assert broker.place_order_calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_place_one_order(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)

        outcomes = await asyncio.gather(*(service.evaluate_and_maybe_execute('AAPL') for _ in range(5)))

        statuses = [o.status for o in outcomes]
        assert statuses.count(DecisionStatus.EXECUTED) == 1
        assert statuses.count(DecisionStatus.GUARD_BLOCKED) == 4
        assert broker.fill_count == 1

    @pytest.mark.asyncio
    async def test_daily_limit_across_scan(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus, daily_order_limit=1)

        outcomes = await service.run_scan()

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ['EXECUTED', 'GUARD_BLOCKED']
        assert broker.fill_count == 1

    @pytest.mark.asyncio
    async def test_kill_switch(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        service.disable_execution()

        outcomes = await service.run_scan()
        assert [o.status for o in outcomes] == [DecisionStatus.DISABLED, DecisionStatus.DISABLED]
        assert broker.place_order_calls == 0
        assert event_bus.get_event_counts()['execution_disabled'] == 1

    @pytest.mark.asyncio
    async def test_disabled_agent_still_recommends(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        service.disable_execution()

        outcome = await service.evaluate_and_maybe_execute('AAPL')

        assert outcome.status == DecisionStatus.DISABLED
        assert outcome.consensus is not None
        assert outcome.consensus.recommended_action == Action.BUY
        assert outcome.assessment is not None and outcome.assessment.approved
        assert outcome.request is None
        assert broker.place_order_calls == 0
        assert service.guard.orders_today == 0
        assert await store.query_trades() == []

        service.enable_execution()
        assert (await service.evaluate_and_maybe_execute('AAPL')).status == DecisionStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_insufficient_buying_power(self, store, broker, clock, event_bus):
        broker.set_account(PortfolioSnapshot(equity=10.0, buying_power=10.0))
        service = make_service(store, broker, clock, event_bus)

        outcome = await service.evaluate_and_maybe_execute('AAPL')

        assert outcome.status == DecisionStatus.SIZING_UNAVAILABLE
        assert outcome.reason == "insufficient buying power"
        assert broker.place_order_calls == 0

    @pytest.mark.asyncio
    async def test_risk_rejection(self, store, broker, clock, event_bus):
        broker.set_account(PortfolioSnapshot(equity=100000.0, buying_power=100000.0,
                                             day_pnl=-8000.0, day_pnl_percent=-0.08))
        service = make_service(store, broker, clock, event_bus)

        outcome = await service.evaluate_and_maybe_execute('AAPL')

        assert outcome.status == DecisionStatus.RISK_REJECTED
        assert 'Daily loss' in outcome.reason
        assert broker.place_order_calls == 0
        assert service.guard.orders_today == 0

    @pytest.mark.asyncio
    async def test_broker_failure_still_cools_down(self, store, broker, clock, event_bus):
        broker.inject_failures(1)
        service = make_service(store, broker, clock, event_bus)

        outcome = await service.evaluate_and_maybe_execute('AAPL')
        assert outcome.status == DecisionStatus.FAILED
        assert outcome.result.error.startswith('Broker error')

        trades = await store.query_trades()
        assert len(trades) == 1
        assert not trades[0].success

        retry = await service.evaluate_and_maybe_execute('AAPL')
        assert retry.status == DecisionStatus.GUARD_BLOCKED

    @pytest.mark.asyncio
    async def test_no_second_buy_while_long(self, store, broker, clock, event_bus):
        config = agent_config()
        config['risk']['checks']['same_direction'] = True
        service = TradingAgentService(config, broker, store, event_bus=event_bus, clock=clock)

        assert (await service.evaluate_and_maybe_execute('AAPL')).status == DecisionStatus.EXECUTED

        clock.now = 61.0
        outcome = await service.evaluate_and_maybe_execute('AAPL')
        assert outcome.status == DecisionStatus.RISK_REJECTED
        assert 'Already long AAPL' in outcome.reason
        assert broker.place_order_calls == 1

    @pytest.mark.asyncio
    async def test_thin_volume_rejected(self, store, broker, clock, event_bus):
        broker.set_price_history('AAPL', make_bars(trending_closes(60, start=180.0, step=-1.0), 'AAPL',
                                                   volumes=[500.0] * 60))
        service = make_service(store, broker, clock, event_bus)

        outcome = await service.evaluate_and_maybe_execute('AAPL')
        assert outcome.status == DecisionStatus.RISK_REJECTED
        assert 'Average volume' in outcome.reason
        assert broker.place_order_calls == 0

    @pytest.mark.asyncio
    async def test_hold_places_nothing(self, store, broker, clock, event_bus):
        broker.set_price_history('AAPL', make_bars([100.0] * 60))
        service = make_service(store, broker, clock, event_bus)

        outcome = await service.evaluate_and_maybe_execute('AAPL')
        assert outcome.status == DecisionStatus.HOLD
        assert broker.place_order_calls == 0


class TestLearningCycle:
    """Closed trades flow back into consensus weights and thresholds."""

    @pytest.mark.asyncio
    async def test_closed_trades_update_learned_state(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        outcomes = await service.run_scan()
        assert all(o.status == DecisionStatus.EXECUTED for o in outcomes)

        for outcome in outcomes:
            closed = await service.close_trade(outcome.trade_id, 5.0)
            assert closed.realized_pnl == 5.0
        assert await service.close_trade(outcomes[0].trade_id, 9.0) is None
        assert await service.close_trade('unknown', 1.0) is None

        report = await service.run_learning_cycle()

        assert report.status == 'ok'
        assert report.overall_accuracy == 1.0
        assert service.consensus.strategy_weight('rsi') == pytest.approx(1.0)
        assert service.sizer.confidence_floor == 0.7
        assert service.guard.min_confidence == 0.65
        assert service.get_metrics()['last_learning']['status'] == 'ok'

    @pytest.mark.asyncio
    async def test_learned_state_survives_restart(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        outcomes = await service.run_scan()
        for outcome in outcomes:
            await service.close_trade(outcome.trade_id, 5.0)
        await service.run_learning_cycle()

        restarted = make_service(store, broker, clock, event_bus)
        await restarted.start()
        assert restarted.guard.orders_today == 2
        assert restarted.consensus.strategy_weight('rsi') == pytest.approx(1.0)
        assert restarted.sizer.confidence_floor == 0.7


class TestControlSurface:
    """Runtime configuration and status."""

    def test_update_execution_settings(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        status = service.update_execution_settings(min_confidence=0.8, daily_order_limit=5, cooldown_seconds=120)

        assert status['min_confidence'] == 0.8
        assert status['daily_order_limit'] == 5
        assert status['cooldown_seconds'] == 120.0
        with pytest.raises(ValueError):
            service.update_execution_settings(min_confidence=1.5)
        with pytest.raises(ValueError):
            service.update_execution_settings(daily_order_limit=-1)

    def test_strategy_controls(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        service.set_strategy_enabled('macd', True)
        service.set_strategy_weight('macd', 0.3)
        service.set_active_strategy('macd')

        config = service.get_config()
        macd = next(s for s in config['strategies'] if s['strategy_id'] == 'macd')
        assert macd['enabled']
        assert macd['manual_weight'] == 0.3
        assert config['active_strategy'] == 'macd'
        assert service.get_metrics()['strategy_switches'] == 1

    @pytest.mark.asyncio
    async def test_orders_today_resets_after_midnight(self, store, broker, clock, event_bus):
        wall = [datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)]
        service = TradingAgentService(agent_config(), broker, store, event_bus=event_bus,
                                      clock=clock, now=lambda: wall[0])
        await service.run_scan()
        assert service.get_metrics()['orders_today'] == 2

        wall[0] = wall[0] + timedelta(days=1)
        metrics = service.get_metrics()
        assert metrics['orders_today'] == 0
        assert service.get_config()['execution']['trading_date'] == '2024-03-05'

    @pytest.mark.asyncio
    async def test_scheduler_runs_and_stops(self, store, broker, clock, event_bus):
        service = make_service(store, broker, clock, event_bus)
        scheduler = AgentScheduler(service, scan_interval=0.01, learning_interval=0.01)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert service.scan_count >= 1
        assert scheduler.tasks == []
        assert service.feedback.last_report is not None
