"""
Error taxonomy for the trading agent.

Each exception marks a distinct "no action taken" outcome of a decision
cycle. None of them is fatal to the agent process.
"""

from typing import List, Optional


class TradingAgentError(Exception):
    """Base class for all agent errors."""


class DataInsufficient(TradingAgentError):
    """Price history shorter than a strategy's lookback."""

    def __init__(self, strategy_id: str, required: int, available: int):
        self.strategy_id = strategy_id
        self.required = required
        self.available = available
        super().__init__(
            f"{strategy_id} needs {required} bars, only {available} available"
        )


class RiskRejected(TradingAgentError):
    """Risk validation failed one or more enabled checks."""

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations) or "risk rejected")


class SizingUnavailable(TradingAgentError):
    """Position sizing produced a zero notional."""

    def __init__(self, reason: str = "insufficient buying power"):
        self.reason = reason
        super().__init__(reason)


class GuardBlocked(TradingAgentError):
    """Execution guard refused the reservation."""

    def __init__(self, symbol: str, reason: str):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"{symbol}: {reason}")


class BrokerError(TradingAgentError):
    """Broker adapter call failed."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        self.symbol = symbol
        super().__init__(message)


class BrokerTimeout(BrokerError):
    """Broker call exceeded its deadline."""


class PersistenceError(TradingAgentError):
    """Trade store read or write failed."""
