"""
Core Data Model

Value types shared by the decision pipeline: price bars, strategy and
consensus signals, portfolio snapshots, risk assessments, execution
requests/results and the persisted trade ledger entries.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _clip01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class Action(Enum):
    """Trading action enumeration."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class ExecutionQuality(Enum):
    """Execution quality buckets derived from latency and slippage."""
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


class DecisionStatus(Enum):
    """Outcome of one evaluate-and-maybe-execute cycle."""
    DISABLED = "DISABLED"
    HOLD = "HOLD"
    SIZING_UNAVAILABLE = "SIZING_UNAVAILABLE"
    RISK_REJECTED = "RISK_REJECTED"
    GUARD_BLOCKED = "GUARD_BLOCKED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class PriceBar:
    """OHLCV bar."""
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class StrategySignal:
    """Output of a single strategy for a single symbol."""
    strategy_id: str
    symbol: str
    action: Action
    confidence: float
    risk_score: float = 0.5
    rationale: str = ""
    generated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, 'confidence', _clip01(self.confidence))
        object.__setattr__(self, 'risk_score', _clip01(self.risk_score))


@dataclass(frozen=True)
class ConsensusSignal:
    """Weighted combination of strategy signals for one symbol."""
    symbol: str
    recommended_action: Action
    blended_confidence: float
    contributing_signals: Tuple[StrategySignal, ...]
    active_strategy_id: Optional[str]
    consensus_agreement: float
    evaluated_at: datetime = field(default_factory=utcnow)
    skipped_strategies: Tuple[str, ...] = ()
    failed_strategies: Tuple[str, ...] = ()

    def contributing_actions(self) -> Dict[str, str]:
        """Map of strategy id to the action it voted for."""
        return {s.strategy_id: s.action.value for s in self.contributing_signals}


@dataclass(frozen=True)
class Position:
    """Open position held at the broker."""
    symbol: str
    quantity: float
    market_value: float
    unrealized_pnl: float = 0.0
    sector: Optional[str] = None


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Point-in-time account state used for validation and sizing."""
    equity: float
    buying_power: float
    open_positions: Tuple[Position, ...] = ()
    day_pnl: float = 0.0
    day_pnl_percent: float = 0.0
    as_of: datetime = field(default_factory=utcnow)

    def position_for(self, symbol: str) -> Optional[Position]:
        for position in self.open_positions:
            if position.symbol == symbol:
                return position
        return None


@dataclass
class RiskAssessment:
    """Complete risk assessment for a consensus signal."""
    approved: bool
    risk_score: float
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionRequest:
    """Order the router hands to the broker. Built only after approval and sizing."""
    symbol: str
    side: Action
    notional_value: float
    idempotency_key: str
    confidence: float
    decided_at: datetime
    reference_price: Optional[float] = None
    strategy_id: Optional[str] = None
    contributing_actions: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionResult:
    """Broker outcome for an execution request."""
    success: bool
    order_id: Optional[str] = None
    filled_price: Optional[float] = None
    latency_ms: float = 0.0
    slippage: Optional[float] = None
    error: Optional[str] = None
    completed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TradeRecord:
    """Persisted ledger entry; realized P&L is filled in once at close."""
    trade_id: str
    symbol: str
    side: Action
    notional_value: float
    idempotency_key: str
    confidence: float
    decided_at: datetime
    success: bool
    order_id: Optional[str] = None
    filled_price: Optional[float] = None
    latency_ms: float = 0.0
    slippage: Optional[float] = None
    error: Optional[str] = None
    execution_quality: ExecutionQuality = ExecutionQuality.POOR
    strategy_id: Optional[str] = None
    contributing_actions: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    realized_pnl: Optional[float] = None
    closed_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.realized_pnl is not None

    def close(self, realized_pnl: float, closed_at: Optional[datetime] = None) -> 'TradeRecord':
        """Return a closed copy of this record. A record closes exactly once."""
        if self.is_closed:
            raise ValueError(f"Trade {self.trade_id} is already closed")
        return replace(self, realized_pnl=float(realized_pnl), closed_at=closed_at or utcnow())


@dataclass(frozen=True)
class StrategyPerformance:
    """Learned per-strategy accuracy."""
    strategy_id: str
    total_signals: int = 0
    correct_signals: int = 0
    accuracy: float = 0.0
    last_updated: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ThresholdRecommendation:
    """Confidence thresholds derived from closed-trade outcomes."""
    optimal_threshold: float
    minimum: float
    conservative: float
    aggressive: float
    sample_size: int
    generated_at: datetime = field(default_factory=utcnow)


@dataclass
class DecisionOutcome:
    """What happened to one symbol during one decision cycle."""
    symbol: str
    status: DecisionStatus
    reason: str = ""
    consensus: Optional[ConsensusSignal] = None
    assessment: Optional[RiskAssessment] = None
    request: Optional[ExecutionRequest] = None
    result: Optional[ExecutionResult] = None
    trade_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'symbol': self.symbol,
            'status': self.status.value,
            'reason': self.reason,
            'trade_id': self.trade_id,
        }
        if self.consensus is not None:
            data['action'] = self.consensus.recommended_action.value
            data['confidence'] = round(self.consensus.blended_confidence, 4)
            data['active_strategy'] = self.consensus.active_strategy_id
        if self.request is not None:
            data['notional_value'] = self.request.notional_value
            data['idempotency_key'] = self.request.idempotency_key
        if self.result is not None:
            data['order_id'] = self.result.order_id
            data['filled_price'] = self.result.filled_price
            data['error'] = self.result.error
        return data
