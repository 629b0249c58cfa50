"""
Execution Guard

Serializes the check-and-reserve step that precedes every order:
kill switch, confidence floor, daily order limit and per-symbol
cooldown are all checked and updated inside one asyncio lock, so two
concurrent evaluations can never both pass for the same symbol or
overrun the daily limit.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set
from zoneinfo import ZoneInfo

from ...core.errors import GuardBlocked, PersistenceError
from ...core.models import ExecutionResult, ThresholdRecommendation


class SymbolState(Enum):
    """Per-symbol execution state."""
    ELIGIBLE = "ELIGIBLE"
    IN_FLIGHT = "IN_FLIGHT"
    COOLED_DOWN = "COOLED_DOWN"


@dataclass(frozen=True)
class Reservation:
    """Proof that a symbol passed the guard and holds a daily slot."""
    symbol: str
    trading_date: date
    order_number: int
    reserved_at: float


class ExecutionGuard:
    """Cooldown, daily-limit and kill-switch gate in front of the order router."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, store=None,
                 clock: Callable[[], float] = time.monotonic,
                 now: Optional[Callable[[], datetime]] = None):
        """
        Initialize execution guard.

        Args:
            config: The 'execution' configuration section
            store: Optional TradeStore used to persist daily counters
            clock: Monotonic clock for cooldown expiry
            now: Wall clock used to find the local trading date
        """
        self.config = config or {}
        self.store = store
        self.clock = clock
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(f"{__name__}.ExecutionGuard")

        self.enabled = bool(self.config.get('enabled', False))
        self.min_confidence = float(self.config.get('min_confidence', 0.65))
        self.daily_order_limit = max(0, int(self.config.get('daily_order_limit', 20)))
        self.cooldown_seconds = float(self.config.get('cooldown_seconds', 60))
        self.timezone = ZoneInfo(str(self.config.get('timezone', 'America/New_York')))

        self.lock = asyncio.Lock()
        self.in_flight: Set[str] = set()
        self.cooldown_until: Dict[str, float] = {}
        self.trading_date = self._local_date()
        self.orders_today = 0
        self.blocked_counts: Dict[str, int] = {}

    def _local_date(self) -> date:
        return self.now().astimezone(self.timezone).date()

    async def restore(self) -> None:
        """Load today's counter from the store after a restart."""
        if self.store is None:
            return
        try:
            count = await self.store.load_daily_counter(self.trading_date)
        except PersistenceError as e:
            self.logger.error(f"Could not restore daily counter: {e}")
            return
        async with self.lock:
            self.orders_today = max(self.orders_today, count)
        self.logger.info(f"Restored daily order counter: {self.orders_today}/{self.daily_order_limit}")

    # Kill switch

    def enable(self) -> None:
        self.enabled = True
        self.logger.warning("Automated execution ENABLED")

    def disable(self) -> None:
        self.enabled = False
        self.logger.warning("Automated execution DISABLED (kill switch)")

    def apply_recommendation(self, recommendation: ThresholdRecommendation) -> None:
        """Never loosen the configured floor; tighten it to the learned minimum."""
        configured = float(self.config.get('min_confidence', 0.65))
        floor = max(configured, recommendation.minimum)
        if floor != self.min_confidence:
            self.logger.info(f"Execution confidence floor {self.min_confidence:.2f} -> {floor:.2f}")
            self.min_confidence = floor

    # State

    def state_of(self, symbol: str) -> SymbolState:
        if symbol in self.in_flight:
            return SymbolState.IN_FLIGHT
        expiry = self.cooldown_until.get(symbol)
        if expiry is not None:
            if self.clock() < expiry:
                return SymbolState.COOLED_DOWN
            del self.cooldown_until[symbol]
        return SymbolState.ELIGIBLE

    def _roll_day(self) -> None:
        today = self._local_date()
        if today != self.trading_date:
            self.logger.info(f"New trading day {today}: resetting daily counter "
                             f"({self.orders_today} orders on {self.trading_date})")
            self.trading_date = today
            self.orders_today = 0

    # Reserve / complete

    async def reserve(self, symbol: str, confidence: float) -> Reservation:
        """
        Atomically check every gate and reserve a daily slot for a symbol.

        Raises:
            GuardBlocked: If any gate refuses the order
        """
        async with self.lock:
            reason = self._blocking_reason(symbol, confidence)
            if reason:
                gate = reason.split(':')[0]
                self.blocked_counts[gate] = self.blocked_counts.get(gate, 0) + 1
                self.logger.debug(f"Guard blocked {symbol}: {reason}")
                raise GuardBlocked(symbol, reason)

            self.orders_today += 1
            self.in_flight.add(symbol)
            reservation = Reservation(
                symbol=symbol,
                trading_date=self.trading_date,
                order_number=self.orders_today,
                reserved_at=self.clock()
            )

        self.logger.info(f"Reserved order {reservation.order_number}/{self.daily_order_limit} for {symbol}")
        await self._persist_counter(reservation.trading_date, reservation.order_number)
        return reservation

    def _blocking_reason(self, symbol: str, confidence: float) -> Optional[str]:
        if not self.enabled:
            return "execution disabled"
        if confidence < self.min_confidence:
            return f"confidence: {confidence:.2f} below floor {self.min_confidence:.2f}"
        self._roll_day()
        if self.orders_today >= self.daily_order_limit:
            return f"daily limit: {self.orders_today}/{self.daily_order_limit} orders placed"
        state = self.state_of(symbol)
        if state == SymbolState.IN_FLIGHT:
            return "in flight: order already outstanding"
        if state == SymbolState.COOLED_DOWN:
            remaining = self.cooldown_until[symbol] - self.clock()
            return f"cooldown: {remaining:.0f}s remaining"
        return None

    async def complete(self, reservation: Reservation, result: Optional[ExecutionResult] = None) -> None:
        """
        Finish a reservation. Success and failure both keep the daily slot
        and start the cooldown; an existing cooldown is never shortened.
        """
        async with self.lock:
            self.in_flight.discard(reservation.symbol)
            expiry = self.clock() + self.cooldown_seconds
            self.cooldown_until[reservation.symbol] = max(
                self.cooldown_until.get(reservation.symbol, 0.0), expiry
            )

        outcome = "filled" if result is not None and result.success else "failed"
        self.logger.debug(f"{reservation.symbol} {outcome}; cooling down {self.cooldown_seconds:.0f}s")

    async def _persist_counter(self, trading_date: date, count: int) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_daily_counter(trading_date, count)
        except PersistenceError as e:
            self.logger.error(f"Failed to persist daily counter: {e}")

    def get_status(self) -> Dict[str, Any]:
        self._roll_day()
        cooling = [s for s in list(self.cooldown_until) if self.state_of(s) == SymbolState.COOLED_DOWN]
        return {
            'enabled': self.enabled,
            'trading_date': self.trading_date.isoformat(),
            'orders_today': self.orders_today,
            'daily_order_limit': self.daily_order_limit,
            'min_confidence': self.min_confidence,
            'cooldown_seconds': self.cooldown_seconds,
            'in_flight': sorted(self.in_flight),
            'cooling_down': sorted(cooling),
            'blocked_counts': dict(self.blocked_counts),
        }
