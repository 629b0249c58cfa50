"""
Persistent State Manager

Trade store for the agent: the trade ledger, learned strategy
performance, daily order counters and threshold recommendations.
All state survives restarts; blocking database work runs off the
event loop.
"""

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError

from .database_schema import (
    TradeRecordRow, StrategyPerformanceRow, DailyOrderCounterRow,
    ThresholdRecommendationRow, init_database
)
from .errors import PersistenceError
from .models import (
    Action, ExecutionQuality, StrategyPerformance, ThresholdRecommendation,
    TradeRecord, utcnow
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes; SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TradeStore(ABC):
    """Durable store consumed by the router, guard and learning loop."""

    @abstractmethod
    async def append_trade_record(self, record: TradeRecord) -> None:
        pass

    @abstractmethod
    async def close_trade(self, trade_id: str, realized_pnl: float,
                          closed_at: Optional[datetime] = None) -> TradeRecord:
        pass

    @abstractmethod
    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        pass

    @abstractmethod
    async def query_trades(self, since: Optional[datetime] = None,
                           limit: Optional[int] = None) -> List[TradeRecord]:
        pass

    @abstractmethod
    async def query_closed_trades(self, since: Optional[datetime] = None,
                                  limit: Optional[int] = None) -> List[TradeRecord]:
        pass

    @abstractmethod
    async def upsert_strategy_performance(self, performances: Iterable[StrategyPerformance]) -> None:
        pass

    @abstractmethod
    async def get_strategy_performance(self) -> Dict[str, StrategyPerformance]:
        pass

    @abstractmethod
    async def save_threshold_recommendation(self, recommendation: ThresholdRecommendation) -> None:
        pass

    @abstractmethod
    async def get_threshold_recommendation(self) -> Optional[ThresholdRecommendation]:
        pass

    @abstractmethod
    async def save_daily_counter(self, trading_date: date, order_count: int) -> None:
        pass

    @abstractmethod
    async def load_daily_counter(self, trading_date: date) -> int:
        pass

    def close(self) -> None:
        pass


class SQLAlchemyTradeStore(TradeStore):
    """
    SQLAlchemy-backed trade store.

    Session work is serialized by a lock and executed in a worker thread
    so callers on the event loop never block on I/O.
    """

    def __init__(self, database_url: str = "sqlite:///trading_agent.db"):
        """
        Initialize the trade store.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.database_url = database_url
        self.logger = logging.getLogger(f"{__name__}.SQLAlchemyTradeStore")
        self.engine, self.session_factory = init_database(database_url)
        self.lock = threading.Lock()
        self.logger.info(f"Initialized trade store at {database_url.split('@')[-1]}")

    @contextmanager
    def get_session(self):
        """Get database session with automatic cleanup."""
        with self.lock:
            session = self.session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                self.logger.error(f"Database session error: {e}")
                raise PersistenceError(str(e)) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    async def _run(self, func, *args):
        return await asyncio.to_thread(func, *args)

    # Trade ledger

    async def append_trade_record(self, record: TradeRecord) -> None:
        await self._run(self._append_trade_record, record)

    def _append_trade_record(self, record: TradeRecord) -> None:
        with self.get_session() as session:
            session.add(self._to_row(record))
        self.logger.debug(f"Appended trade record {record.trade_id}")

    async def close_trade(self, trade_id: str, realized_pnl: float,
                          closed_at: Optional[datetime] = None) -> TradeRecord:
        return await self._run(self._close_trade, trade_id, realized_pnl, closed_at)

    def _close_trade(self, trade_id: str, realized_pnl: float,
                     closed_at: Optional[datetime]) -> TradeRecord:
        with self.get_session() as session:
            row = session.get(TradeRecordRow, trade_id)
            if row is None:
                raise KeyError(f"Unknown trade: {trade_id}")
            closed = self._from_row(row).close(realized_pnl, closed_at)
            row.realized_pnl = closed.realized_pnl
            row.closed_at = _as_utc(closed.closed_at)
        self.logger.info(f"Closed trade {trade_id} with realized P&L {realized_pnl:.2f}")
        return closed

    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        return await self._run(self._get_trade, trade_id)

    def _get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        with self.get_session() as session:
            row = session.get(TradeRecordRow, trade_id)
            return self._from_row(row) if row is not None else None

    async def query_trades(self, since: Optional[datetime] = None,
                           limit: Optional[int] = None) -> List[TradeRecord]:
        return await self._run(self._query_trades, since, limit, False)

    async def query_closed_trades(self, since: Optional[datetime] = None,
                                  limit: Optional[int] = None) -> List[TradeRecord]:
        return await self._run(self._query_trades, since, limit, True)

    def _query_trades(self, since: Optional[datetime], limit: Optional[int],
                      closed_only: bool) -> List[TradeRecord]:
        with self.get_session() as session:
            query = session.query(TradeRecordRow)
            if closed_only:
                query = query.filter(TradeRecordRow.realized_pnl.isnot(None))
                if since is not None:
                    query = query.filter(TradeRecordRow.closed_at >= _as_utc(since))
                query = query.order_by(desc(TradeRecordRow.closed_at))
            else:
                if since is not None:
                    query = query.filter(TradeRecordRow.created_at >= _as_utc(since))
                query = query.order_by(desc(TradeRecordRow.created_at))
            if limit is not None:
                query = query.limit(limit)
            records = [self._from_row(row) for row in query.all()]
        # Oldest first for the analytics consumers
        records.reverse()
        return records

    # Strategy performance

    async def upsert_strategy_performance(self, performances: Iterable[StrategyPerformance]) -> None:
        await self._run(self._upsert_strategy_performance, list(performances))

    def _upsert_strategy_performance(self, performances: List[StrategyPerformance]) -> None:
        with self.get_session() as session:
            for perf in performances:
                row = session.get(StrategyPerformanceRow, perf.strategy_id)
                if row is None:
                    row = StrategyPerformanceRow(strategy_id=perf.strategy_id)
                    session.add(row)
                row.total_signals = perf.total_signals
                row.correct_signals = perf.correct_signals
                row.accuracy = perf.accuracy
                row.last_updated = _as_utc(perf.last_updated)

    async def get_strategy_performance(self) -> Dict[str, StrategyPerformance]:
        return await self._run(self._get_strategy_performance)

    def _get_strategy_performance(self) -> Dict[str, StrategyPerformance]:
        with self.get_session() as session:
            return {
                row.strategy_id: StrategyPerformance(
                    strategy_id=row.strategy_id,
                    total_signals=row.total_signals,
                    correct_signals=row.correct_signals,
                    accuracy=row.accuracy,
                    last_updated=_as_utc(row.last_updated)
                )
                for row in session.query(StrategyPerformanceRow).all()
            }

    # Threshold recommendations

    async def save_threshold_recommendation(self, recommendation: ThresholdRecommendation) -> None:
        await self._run(self._save_threshold_recommendation, recommendation)

    def _save_threshold_recommendation(self, recommendation: ThresholdRecommendation) -> None:
        with self.get_session() as session:
            session.add(ThresholdRecommendationRow(
                optimal_threshold=recommendation.optimal_threshold,
                minimum=recommendation.minimum,
                conservative=recommendation.conservative,
                aggressive=recommendation.aggressive,
                sample_size=recommendation.sample_size,
                generated_at=_as_utc(recommendation.generated_at)
            ))

    async def get_threshold_recommendation(self) -> Optional[ThresholdRecommendation]:
        return await self._run(self._get_threshold_recommendation)

    def _get_threshold_recommendation(self) -> Optional[ThresholdRecommendation]:
        with self.get_session() as session:
            row = (session.query(ThresholdRecommendationRow)
                   .order_by(desc(ThresholdRecommendationRow.id))
                   .first())
            if row is None:
                return None
            return ThresholdRecommendation(
                optimal_threshold=row.optimal_threshold,
                minimum=row.minimum,
                conservative=row.conservative,
                aggressive=row.aggressive,
                sample_size=row.sample_size,
                generated_at=_as_utc(row.generated_at)
            )

    # Daily counters

    async def save_daily_counter(self, trading_date: date, order_count: int) -> None:
        await self._run(self._save_daily_counter, trading_date, order_count)

    def _save_daily_counter(self, trading_date: date, order_count: int) -> None:
        with self.get_session() as session:
            row = session.get(DailyOrderCounterRow, trading_date)
            if row is None:
                row = DailyOrderCounterRow(trading_date=trading_date)
                session.add(row)
            # Counters only move forward within a day
            row.order_count = max(row.order_count or 0, order_count)
            row.updated_at = utcnow()

    async def load_daily_counter(self, trading_date: date) -> int:
        return await self._run(self._load_daily_counter, trading_date)

    def _load_daily_counter(self, trading_date: date) -> int:
        with self.get_session() as session:
            row = session.get(DailyOrderCounterRow, trading_date)
            return row.order_count if row is not None else 0

    def close(self) -> None:
        self.engine.dispose()
        self.logger.info("Trade store closed")

    # Row mapping

    @staticmethod
    def _to_row(record: TradeRecord) -> TradeRecordRow:
        return TradeRecordRow(
            trade_id=record.trade_id,
            symbol=record.symbol,
            side=record.side.value,
            notional_value=record.notional_value,
            idempotency_key=record.idempotency_key,
            confidence=record.confidence,
            decided_at=_as_utc(record.decided_at),
            success=record.success,
            order_id=record.order_id,
            filled_price=record.filled_price,
            latency_ms=record.latency_ms,
            slippage=record.slippage,
            error=record.error,
            execution_quality=record.execution_quality.value,
            strategy_id=record.strategy_id,
            contributing_actions=json.dumps(record.contributing_actions, sort_keys=True),
            created_at=_as_utc(record.created_at),
            realized_pnl=record.realized_pnl,
            closed_at=_as_utc(record.closed_at)
        )

    @staticmethod
    def _from_row(row: TradeRecordRow) -> TradeRecord:
        return TradeRecord(
            trade_id=row.trade_id,
            symbol=row.symbol,
            side=Action(row.side),
            notional_value=row.notional_value,
            idempotency_key=row.idempotency_key,
            confidence=row.confidence,
            decided_at=_as_utc(row.decided_at),
            success=row.success,
            order_id=row.order_id,
            filled_price=row.filled_price,
            latency_ms=row.latency_ms or 0.0,
            slippage=row.slippage,
            error=row.error,
            execution_quality=ExecutionQuality(row.execution_quality),
            strategy_id=row.strategy_id,
            contributing_actions=json.loads(row.contributing_actions) if row.contributing_actions else {},
            created_at=_as_utc(row.created_at),
            realized_pnl=row.realized_pnl,
            closed_at=_as_utc(row.closed_at)
        )
