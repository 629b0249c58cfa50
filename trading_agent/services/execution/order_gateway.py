"""
Order Gateway

Builds idempotent execution requests, submits them to the broker with a
deadline, and records every attempt in the trade ledger. Broker and
persistence failures are reported as data, never raised to the caller.
"""

import asyncio
import logging
import secrets
import time
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from ...core.errors import BrokerError, PersistenceError
from ...core.event_bus import DECISIONS_TOPIC, EventBusInterface
from ...core.models import (
    Action, ConsensusSignal, ExecutionQuality, ExecutionRequest, ExecutionResult,
    TradeRecord, utcnow
)
from .broker import BrokerAdapter


def build_idempotency_key(symbol: str, decided_at: datetime) -> str:
    """Symbol + decision timestamp + random suffix, unique per decision."""
    stamp = decided_at.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%S%f')
    return f"{symbol.upper()}-{stamp}-{secrets.token_hex(4)}"


def classify_execution_quality(result: ExecutionResult) -> ExecutionQuality:
    """Bucket an execution by latency and absolute slippage."""
    if not result.success:
        return ExecutionQuality.POOR
    slippage = abs(result.slippage or 0.0)
    if result.latency_ms < 500 and slippage < 0.005:
        return ExecutionQuality.EXCELLENT
    if result.latency_ms < 1000 and slippage < 0.01:
        return ExecutionQuality.GOOD
    if result.latency_ms < 3000 and slippage < 0.02:
        return ExecutionQuality.FAIR
    return ExecutionQuality.POOR


class ExecutionMetrics:
    """Live execution counters for the control surface."""

    def __init__(self):
        self.total_orders = 0
        self.successful_orders = 0
        self.failed_orders = 0
        self.total_value_traded = 0.0
        self.total_latency_ms = 0.0
        self.lock = Lock()

    def record(self, request: ExecutionRequest, result: ExecutionResult) -> None:
        with self.lock:
            self.total_orders += 1
            self.total_latency_ms += result.latency_ms
            if result.success:
                self.successful_orders += 1
                self.total_value_traded += request.notional_value
            else:
                self.failed_orders += 1

    def summary(self) -> Dict[str, Any]:
        with self.lock:
            return {
                'total_orders': self.total_orders,
                'successful_orders': self.successful_orders,
                'failed_orders': self.failed_orders,
                'success_rate': self.successful_orders / self.total_orders if self.total_orders else 0.0,
                'total_value_traded': round(self.total_value_traded, 2),
                'average_latency_ms': self.total_latency_ms / self.total_orders if self.total_orders else 0.0,
            }


class OrderRouter:
    """
    Order router with broker deadline and ledger recording.

    Features:
    - Idempotency key per decision
    - Timeout-bounded broker submission
    - Slippage and execution quality measurement
    - Trade ledger append that never rolls back a placed order
    """

    def __init__(self, broker: BrokerAdapter, store=None,
                 config: Optional[Dict[str, Any]] = None,
                 event_bus: Optional[EventBusInterface] = None):
        """
        Initialize order router.

        Args:
            broker: Broker adapter
            store: TradeStore for the ledger
            config: The 'execution' configuration section
            event_bus: Optional observability sink
        """
        self.broker = broker
        self.store = store
        self.config = config or {}
        self.event_bus = event_bus
        self.logger = logging.getLogger(f"{__name__}.OrderRouter")

        self.timeout_seconds = float(self.config.get('broker_timeout_seconds', 10))
        self.metrics = ExecutionMetrics()

    def build_request(self, consensus: ConsensusSignal, notional_value: float,
                      reference_price: Optional[float] = None,
                      decided_at: Optional[datetime] = None) -> ExecutionRequest:
        """
        Build an execution request for an approved, sized consensus signal.

        Raises:
            ValueError: For HOLD signals or non-positive notionals
        """
        if consensus.recommended_action == Action.HOLD:
            raise ValueError("Cannot build an execution request for HOLD")
        if notional_value <= 0:
            raise ValueError(f"Notional must be positive, got {notional_value}")

        decided_at = decided_at or utcnow()
        return ExecutionRequest(
            symbol=consensus.symbol,
            side=consensus.recommended_action,
            notional_value=notional_value,
            idempotency_key=build_idempotency_key(consensus.symbol, decided_at),
            confidence=consensus.blended_confidence,
            decided_at=decided_at,
            reference_price=reference_price,
            strategy_id=consensus.active_strategy_id,
            contributing_actions=consensus.contributing_actions()
        )

    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Send a request to the broker within the configured deadline.

        Returns:
            Execution result; failures are reported with success=False
        """
        start = time.perf_counter()
        try:
            broker_result = await asyncio.wait_for(
                self.broker.place_order(
                    request.symbol, request.side, request.notional_value, request.idempotency_key
                ),
                timeout=self.timeout_seconds
            )
            latency_ms = (time.perf_counter() - start) * 1000.0
            result = ExecutionResult(
                success=broker_result.success,
                order_id=broker_result.order_id,
                filled_price=broker_result.filled_price,
                latency_ms=latency_ms,
                slippage=self._slippage(request, broker_result.filled_price),
                error=broker_result.error
            )
        except asyncio.TimeoutError:
            result = self._failure(start, f"Broker timeout after {self.timeout_seconds:.1f}s")
        except BrokerError as e:
            result = self._failure(start, f"Broker error: {e}")
        except Exception as e:
            result = self._failure(start, f"Unexpected broker failure: {e}")

        self.metrics.record(request, result)

        if result.success:
            self.logger.info(
                f"Order placed: {request.side.value} ${request.notional_value:.2f} {request.symbol} "
                f"id={result.order_id} latency={result.latency_ms:.0f}ms"
            )
            self._publish('order_placed', request, result)
        else:
            self.logger.error(f"Order failed for {request.symbol}: {result.error}")
            self._publish('order_failed', request, result)

        return result

    async def record(self, request: ExecutionRequest, result: ExecutionResult) -> Optional[TradeRecord]:
        """
        Append the attempt to the trade ledger.

        Returns:
            The record, or None if it could not be persisted
        """
        record = TradeRecord(
            trade_id=str(uuid.uuid4()),
            symbol=request.symbol,
            side=request.side,
            notional_value=request.notional_value,
            idempotency_key=request.idempotency_key,
            confidence=request.confidence,
            decided_at=request.decided_at,
            success=result.success,
            order_id=result.order_id,
            filled_price=result.filled_price,
            latency_ms=result.latency_ms,
            slippage=result.slippage,
            error=result.error,
            execution_quality=classify_execution_quality(result),
            strategy_id=request.strategy_id,
            contributing_actions=dict(request.contributing_actions)
        )

        if self.store is None:
            return record

        try:
            await self.store.append_trade_record(record)
            return record
        except PersistenceError as e:
            # The order stands; only the ledger entry is missing
            self.logger.error(f"Failed to record trade {record.trade_id} for {request.symbol}: {e}")
            if self.event_bus:
                self.event_bus.publish(DECISIONS_TOPIC, {
                    'symbol': request.symbol,
                    'idempotency_key': request.idempotency_key,
                    'error': str(e)
                }, event_type='persistence_failed', correlation_id=request.idempotency_key)
            return None

    def _slippage(self, request: ExecutionRequest, filled_price: Optional[float]) -> Optional[float]:
        if not filled_price or not request.reference_price:
            return None
        move = (filled_price - request.reference_price) / request.reference_price
        # Positive means adverse
        return move if request.side == Action.BUY else -move

    @staticmethod
    def _failure(start: float, error: str) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            latency_ms=(time.perf_counter() - start) * 1000.0,
            error=error
        )

    def _publish(self, event_type: str, request: ExecutionRequest, result: ExecutionResult) -> None:
        if not self.event_bus:
            return
        self.event_bus.publish(DECISIONS_TOPIC, {
            'symbol': request.symbol,
            'side': request.side.value,
            'notional_value': request.notional_value,
            'confidence': request.confidence,
            'idempotency_key': request.idempotency_key,
            'order_id': result.order_id,
            'filled_price': result.filled_price,
            'latency_ms': result.latency_ms,
            'slippage': result.slippage,
            'error': result.error,
        }, event_type=event_type, correlation_id=request.idempotency_key)

    def get_execution_summary(self) -> Dict[str, Any]:
        return self.metrics.summary()
