"""
Broker Interface

Abstract brokerage boundary plus a simulated paper broker. The agent
only ever talks to a BrokerAdapter; concrete brokerage wire formats
live outside this package.
"""

import asyncio
import logging
import time
import uuid
import zlib
import numpy as np
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from ...core.errors import BrokerError
from ...core.models import Action, ExecutionResult, PortfolioSnapshot, Position, PriceBar


class BrokerAdapter(ABC):
    """Abstract interface for broker communication."""

    @abstractmethod
    async def get_account(self) -> PortfolioSnapshot:
        """Current account state."""

    @abstractmethod
    async def place_order(self, symbol: str, side: Action, notional_value: float,
                          idempotency_key: str) -> ExecutionResult:
        """
        Submit a notional market order.

        A repeated idempotency key must return the original result
        without placing a second order.
        """

    @abstractmethod
    async def get_price_history(self, symbol: str, window: int) -> List[PriceBar]:
        """Most recent bars, oldest first."""


class SimulatedBroker(BrokerAdapter):
    """
    Paper broker with deterministic random-walk prices.

    Fills at the last close shifted by a fixed slippage, keeps an
    in-memory cash/position book and deduplicates idempotency keys.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize simulated broker.

        Args:
            config: The 'broker' configuration section
        """
        self.config = config or {}
        self.logger = logging.getLogger(f"{__name__}.SimulatedBroker")

        self.seed = int(self.config.get('seed', 42))
        self.latency_ms = float(self.config.get('latency_ms', 0))
        self.slippage_bps = float(self.config.get('slippage_bps', 2.0))
        self.cash = float(self.config.get('starting_cash', 100000.0))
        self.starting_equity = self.cash
        self.sectors: Dict[str, str] = dict(self.config.get('sectors', {}) or {})

        self.positions: Dict[str, Dict[str, float]] = {}
        self.price_histories: Dict[str, List[PriceBar]] = {}
        self.orders: Dict[str, ExecutionResult] = {}
        self.fail_next = 0
        self.place_order_calls = 0
        self.fill_count = 0
        self.account_override: Optional[PortfolioSnapshot] = None

    # Test and paper-trading hooks

    def set_price_history(self, symbol: str, bars: Sequence[PriceBar]) -> None:
        self.price_histories[symbol] = list(bars)

    def set_account(self, snapshot: Optional[PortfolioSnapshot]) -> None:
        self.account_override = snapshot

    def inject_failures(self, count: int = 1) -> None:
        self.fail_next += count

    # BrokerAdapter

    async def get_account(self) -> PortfolioSnapshot:
        if self.account_override is not None:
            return self.account_override

        positions = []
        market_value = 0.0
        for symbol, book in self.positions.items():
            price = self._last_price(symbol)
            value = book['quantity'] * price
            market_value += value
            positions.append(Position(
                symbol=symbol,
                quantity=book['quantity'],
                market_value=value,
                unrealized_pnl=(price - book['avg_price']) * book['quantity'],
                sector=self.sectors.get(symbol)
            ))

        equity = self.cash + market_value
        day_pnl = equity - self.starting_equity
        return PortfolioSnapshot(
            equity=equity,
            buying_power=max(0.0, self.cash),
            open_positions=tuple(positions),
            day_pnl=day_pnl,
            day_pnl_percent=day_pnl / self.starting_equity if self.starting_equity else 0.0
        )

    async def place_order(self, symbol: str, side: Action, notional_value: float,
                          idempotency_key: str) -> ExecutionResult:
        self.place_order_calls += 1
        start = time.perf_counter()

        if idempotency_key in self.orders:
            self.logger.info(f"Duplicate idempotency key {idempotency_key}, returning original result")
            return self.orders[idempotency_key]

        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)

        if self.fail_next > 0:
            self.fail_next -= 1
            raise BrokerError(f"Simulated rejection for {symbol}", symbol=symbol)

        if side == Action.HOLD:
            raise BrokerError("Cannot place a HOLD order", symbol=symbol)
        if notional_value <= 0:
            raise BrokerError(f"Invalid notional {notional_value}", symbol=symbol)

        last = self._last_price(symbol)
        adjustment = self.slippage_bps / 10000.0
        fill_price = last * (1 + adjustment) if side == Action.BUY else last * (1 - adjustment)
        quantity = notional_value / fill_price

        if side == Action.BUY:
            if notional_value > self.cash:
                raise BrokerError(f"Insufficient cash for {symbol}: {notional_value:.2f} > {self.cash:.2f}",
                                  symbol=symbol)
            self._apply_buy(symbol, quantity, fill_price)
        else:
            self._apply_sell(symbol, quantity, fill_price)

        self.fill_count += 1
        result = ExecutionResult(
            success=True,
            order_id=f"SIM_{uuid.uuid4().hex[:12]}",
            filled_price=fill_price,
            latency_ms=(time.perf_counter() - start) * 1000.0
        )
        self.orders[idempotency_key] = result
        self.logger.info(f"Simulated fill: {side.value} ${notional_value:.2f} {symbol} @ {fill_price:.2f}")
        return result

    async def get_price_history(self, symbol: str, window: int) -> List[PriceBar]:
        if symbol not in self.price_histories:
            self.price_histories[symbol] = self._generate_history(symbol, max(window, 250))
        return self.price_histories[symbol][-window:]

    # Internals

    def _apply_buy(self, symbol: str, quantity: float, price: float) -> None:
        book = self.positions.setdefault(symbol, {'quantity': 0.0, 'avg_price': price})
        total = book['quantity'] + quantity
        book['avg_price'] = (book['avg_price'] * book['quantity'] + price * quantity) / total
        book['quantity'] = total
        self.cash -= quantity * price

    def _apply_sell(self, symbol: str, quantity: float, price: float) -> None:
        book = self.positions.get(symbol)
        held = book['quantity'] if book else 0.0
        if held <= 0:
            raise BrokerError(f"No position in {symbol} to sell", symbol=symbol)
        quantity = min(quantity, held)
        book['quantity'] = held - quantity
        self.cash += quantity * price
        if book['quantity'] <= 1e-9:
            del self.positions[symbol]

    def _last_price(self, symbol: str) -> float:
        history = self.price_histories.get(symbol)
        if not history:
            history = self._generate_history(symbol, 250)
            self.price_histories[symbol] = history
        return history[-1].close

    def _generate_history(self, symbol: str, length: int) -> List[PriceBar]:
        rng = np.random.default_rng(self.seed + zlib.crc32(symbol.encode('utf-8')))
        start_price = 50.0 + (zlib.crc32(symbol.encode('utf-8')) % 400)
        returns = rng.normal(0.0003, 0.015, length)
        prices = start_price * np.cumprod(1 + returns)

        end = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        bars = []
        for i, close in enumerate(prices):
            open_price = close / (1 + returns[i])
            spread = abs(rng.normal(0, 0.005)) * close
            bars.append(PriceBar(
                symbol=symbol,
                timestamp=end - timedelta(days=length - 1 - i),
                open=float(open_price),
                high=float(max(open_price, close) + spread),
                low=float(min(open_price, close) - spread),
                close=float(close),
                volume=float(rng.integers(500_000, 5_000_000))
            ))
        return bars
