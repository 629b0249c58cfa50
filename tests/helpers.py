"""
Shared builders for test price histories, portfolios and trades.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np

from trading_agent.core.models import (
    Action, ConsensusSignal, ExecutionQuality, PortfolioSnapshot, Position,
    PriceBar, StrategySignal, TradeRecord
)


START = datetime(2024, 1, 2, tzinfo=timezone.utc)


def make_bars(closes: Sequence[float], symbol: str = "AAPL",
              volumes: Optional[Sequence[float]] = None) -> List[PriceBar]:
    """Daily bars with the given closes."""
    volumes = volumes if volumes is not None else [1_000_000.0] * len(closes)
    bars = []
    for i, (close, volume) in enumerate(zip(closes, volumes)):
        bars.append(PriceBar(
            symbol=symbol,
            timestamp=START + timedelta(days=i),
            open=float(close),
            high=float(close) * 1.01,
            low=float(close) * 0.99,
            close=float(close),
            volume=float(volume)
        ))
    return bars


def trending_closes(length: int, start: float = 100.0, step: float = 0.5) -> List[float]:
    return [start + i * step for i in range(length)]


def random_walk(length: int, seed: int = 7, start: float = 100.0) -> List[float]:
    rng = np.random.default_rng(seed)
    return list(start * np.cumprod(1 + rng.normal(0, 0.01, length)))


def make_portfolio(equity: float = 100000.0, buying_power: Optional[float] = None,
                   positions: Sequence[Position] = (), day_pnl_percent: float = 0.0) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        equity=equity,
        buying_power=equity if buying_power is None else buying_power,
        open_positions=tuple(positions),
        day_pnl=equity * day_pnl_percent,
        day_pnl_percent=day_pnl_percent
    )


def make_signal(strategy_id: str, action: Action, confidence: float, symbol: str = "AAPL") -> StrategySignal:
    return StrategySignal(strategy_id=strategy_id, symbol=symbol, action=action, confidence=confidence)


def make_consensus(action: Action = Action.BUY, confidence: float = 0.8, symbol: str = "AAPL",
                   signals: Sequence[StrategySignal] = ()) -> ConsensusSignal:
    return ConsensusSignal(
        symbol=symbol,
        recommended_action=action,
        blended_confidence=confidence,
        contributing_signals=tuple(signals),
        active_strategy_id="rsi",
        consensus_agreement=1.0
    )


def make_trade(trade_id: str, confidence: float = 0.7, pnl: Optional[float] = None,
               side: Action = Action.BUY, votes: Optional[Dict[str, str]] = None,
               symbol: str = "AAPL", closed_at: Optional[datetime] = None,
               quality: ExecutionQuality = ExecutionQuality.GOOD) -> TradeRecord:
    now = datetime.now(timezone.utc)
    return TradeRecord(
        trade_id=trade_id,
        symbol=symbol,
        side=side,
        notional_value=100.0,
        idempotency_key=f"{symbol}-{trade_id}",
        confidence=confidence,
        decided_at=now,
        success=True,
        order_id=f"SIM_{trade_id}",
        filled_price=100.0,
        latency_ms=120.0,
        slippage=0.001,
        execution_quality=quality,
        strategy_id="rsi",
        contributing_actions=votes or {},
        created_at=now,
        realized_pnl=pnl,
        closed_at=(closed_at or now) if pnl is not None else None
    )
