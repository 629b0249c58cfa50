"""
Database Schema Definitions

Tables backing the trade store: the trade ledger, learned strategy
performance, daily order counters and threshold recommendations.
"""

from sqlalchemy import (
    create_engine, Column, Integer, String, Float, DateTime, Date,
    Boolean, Text, Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from datetime import datetime, timezone


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeRecordRow(Base):
    """Trade ledger: one row per execution attempt."""

    __tablename__ = 'trade_records'

    trade_id = Column(String(50), primary_key=True)
    symbol = Column(String(20), nullable=False)
    side = Column(String(10), nullable=False)
    notional_value = Column(Float, nullable=False)
    idempotency_key = Column(String(100), nullable=False, unique=True)
    confidence = Column(Float, nullable=False)
    decided_at = Column(DateTime(timezone=True), nullable=False)
    success = Column(Boolean, nullable=False)
    order_id = Column(String(100), nullable=True)
    filled_price = Column(Float, nullable=True)
    latency_ms = Column(Float, nullable=False, default=0.0)
    slippage = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    execution_quality = Column(String(20), nullable=False)
    strategy_id = Column(String(50), nullable=True)
    contributing_actions = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    realized_pnl = Column(Float, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_trade_symbol_created', 'symbol', 'created_at'),
        Index('idx_trade_closed_at', 'closed_at'),
        CheckConstraint('notional_value > 0', name='positive_notional'),
        CheckConstraint('confidence >= 0 AND confidence <= 1', name='confidence_range'),
    )


class StrategyPerformanceRow(Base):
    """Learned accuracy per strategy."""

    __tablename__ = 'strategy_performance'

    strategy_id = Column(String(50), primary_key=True)
    total_signals = Column(Integer, nullable=False, default=0)
    correct_signals = Column(Integer, nullable=False, default=0)
    accuracy = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint('correct_signals <= total_signals', name='correct_le_total'),
    )


class DailyOrderCounterRow(Base):
    """Orders placed per local trading day."""

    __tablename__ = 'daily_order_counters'

    trading_date = Column(Date, primary_key=True)
    order_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ThresholdRecommendationRow(Base):
    """Confidence threshold recommendations produced by the learning loop."""

    __tablename__ = 'threshold_recommendations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    optimal_threshold = Column(Float, nullable=False)
    minimum = Column(Float, nullable=False)
    conservative = Column(Float, nullable=False)
    aggressive = Column(Float, nullable=False)
    sample_size = Column(Integer, nullable=False)
    generated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


def create_database_engine(database_url: str):
    """Create database engine with proper configuration."""
    if database_url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            # A single shared connection keeps the in-memory database alive
            kwargs['poolclass'] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=False
    )


def create_tables(engine):
    """Create all tables in the database."""
    Base.metadata.create_all(engine)


def get_session_factory(engine):
    """Get session factory for database operations."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_database(database_url: str):
    """Initialize database with all tables."""
    engine = create_database_engine(database_url)
    create_tables(engine)
    return engine, get_session_factory(engine)
