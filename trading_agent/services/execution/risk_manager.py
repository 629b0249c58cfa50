"""
Risk Manager

Pre-trade risk validation of consensus signals against the current
portfolio: daily loss, position size, sector exposure, correlation,
per-action confidence floors and open-position count, plus market
conditions read from the candidate's bars (trading session, average
volume, estimated spread) and a block on adding to a position in the
same direction. Each check can be toggled independently.
"""

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from datetime import datetime, time as dt_time, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from ...core.models import (
    Action, ConsensusSignal, PortfolioSnapshot, PriceBar, RiskAssessment, ThresholdRecommendation
)
from ..processing.indicators import TechnicalIndicators, closes, highs, lows, volumes


@dataclass
class RiskCheck:
    """Individual risk check result."""
    check_name: str
    passed: bool
    message: str
    severity: str  # 'INFO', 'WARNING', 'ERROR', 'CRITICAL'


DEFAULT_CHECKS = ('daily_loss', 'position_size', 'sector_exposure', 'correlation',
                  'confidence', 'open_positions', 'market_hours', 'volume', 'spread',
                  'same_direction')

# Session gating is opt-in; every other check is on unless configured off
OPT_IN_CHECKS = ('market_hours',)

REGULAR_SESSION = (dt_time(9, 30), dt_time(16, 0))
EXTENDED_SESSION = (dt_time(4, 0), dt_time(20, 0))

CRYPTO_SYMBOLS = frozenset({
    'BTCUSD', 'ETHUSD', 'LTCUSD', 'BCHUSD', 'ADAUSD', 'DOTUSD', 'SOLUSD',
    'AVAXUSD', 'MATICUSD', 'SHIBUSD', 'LINKUSD', 'UNIUSD', 'AAVEUSD',
    'ALGOUSD', 'BATUSD', 'COMPUSD', 'TRXUSD', 'XLMUSD', 'XTZUSD',
    'ATOMUSD', 'EOSUSD', 'IOTAUSD',
})


def is_crypto_symbol(symbol: str) -> bool:
    """Crypto pairs trade around the clock."""
    normalized = symbol.upper().replace('/', '').replace('-', '')
    if normalized in CRYPTO_SYMBOLS:
        return True
    if normalized.endswith(('USDT', 'USDC')):
        return len(normalized) <= 9
    return normalized.endswith('USD') and 6 <= len(normalized) <= 8


class RiskValidationEngine:
    """
    Risk validation with independently toggleable checks.

    Failed checks are blocking violations; WARNING checks that pass are
    soft warnings that only raise the risk score.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 now: Optional[Callable[[], datetime]] = None):
        """
        Initialize risk validation engine.

        Args:
            config: The 'risk' configuration section
            now: Wall clock used by the market-hours check
        """
        self.config = config or {}
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(f"{__name__}.RiskValidationEngine")

        self.max_daily_loss = float(self.config.get('max_daily_loss', 0.05))
        self.max_position_size = float(self.config.get('max_position_size', 0.10))
        self.max_sector_exposure = float(self.config.get('max_sector_exposure', 0.30))
        self.max_correlation = float(self.config.get('max_correlation', 0.70))
        self.max_open_positions = int(self.config.get('max_open_positions', 10))
        self.soft_warning_penalty = float(self.config.get('soft_warning_penalty', 0.05))
        self.sectors: Dict[str, str] = dict(self.config.get('sectors', {}) or {})

        self.market_timezone = ZoneInfo(str(self.config.get('market_timezone', 'America/New_York')))
        self.extended_hours = bool(self.config.get('extended_hours', False))
        self.min_average_volume = float(self.config.get('min_average_volume', 15000))
        self.volume_window = int(self.config.get('volume_window', 20))
        self.max_spread = float(self.config.get('max_spread', 0.005))
        self.max_crypto_spread = float(self.config.get('max_crypto_spread', 0.015))
        self.spread_window = int(self.config.get('spread_window', 5))
        self.spread_range_fraction = float(self.config.get('spread_range_fraction', 0.1))

        min_conf = self.config.get('min_confidence', {}) or {}
        self.min_confidence: Dict[Action, float] = {
            Action.BUY: float(min_conf.get('BUY', 0.60)),
            Action.SELL: float(min_conf.get('SELL', 0.60)),
        }

        toggles = self.config.get('checks', {}) or {}
        self.enabled_checks: Dict[str, bool] = {
            name: bool(toggles.get(name, name not in OPT_IN_CHECKS)) for name in DEFAULT_CHECKS
        }

    def set_check_enabled(self, check_name: str, enabled: bool) -> None:
        if check_name not in self.enabled_checks:
            raise KeyError(f"Unknown risk check: {check_name}")
        self.enabled_checks[check_name] = bool(enabled)
        self.logger.info(f"Risk check {check_name} {'enabled' if enabled else 'disabled'}")

    def set_min_confidence(self, action: Action, value: float) -> None:
        if action == Action.HOLD:
            raise ValueError("HOLD has no confidence floor")
        self.min_confidence[action] = max(0.0, min(1.0, float(value)))

    def apply_recommendation(self, recommendation: ThresholdRecommendation) -> None:
        """Raise the per-action floors to the learned minimum bound."""
        for action in (Action.BUY, Action.SELL):
            configured = float((self.config.get('min_confidence', {}) or {}).get(action.value, 0.60))
            floor = max(configured, recommendation.minimum)
            if floor != self.min_confidence[action]:
                self.logger.info(f"Min confidence for {action.value}: "
                                 f"{self.min_confidence[action]:.2f} -> {floor:.2f}")
                self.min_confidence[action] = floor

    def sector_of(self, symbol: str) -> str:
        return self.sectors.get(symbol, symbol)

    def validate(self, signal: ConsensusSignal, portfolio: PortfolioSnapshot,
                 proposed_notional: float = 0.0,
                 price_histories: Optional[Dict[str, Sequence[float]]] = None,
                 bars: Optional[Sequence[PriceBar]] = None) -> RiskAssessment:
        """
        Validate a consensus signal against the portfolio.

        Args:
            signal: Consensus signal under consideration
            portfolio: Current portfolio snapshot
            proposed_notional: Notional of the prospective order
            price_histories: Close prices for the candidate and held symbols
            bars: Recent bars for the candidate; volume and spread checks
                only run when bars are supplied

        Returns:
            Risk assessment; approved only when no enabled check fails
        """
        try:
            checks: List[RiskCheck] = []
            metrics: Dict[str, float] = {'proposed_notional': float(proposed_notional)}
            # Buys add exposure, sells reduce it
            exposure_change = -proposed_notional if signal.recommended_action == Action.SELL else proposed_notional

            if signal.recommended_action == Action.HOLD:
                checks.append(RiskCheck('action', False, 'signal recommends HOLD', 'ERROR'))

            if portfolio.equity <= 0:
                checks.append(RiskCheck('equity', False, f"Non-positive equity {portfolio.equity:.2f}", 'CRITICAL'))
                return self._assess(signal, checks, metrics)

            if self.enabled_checks['daily_loss']:
                checks.extend(self._check_daily_loss(portfolio, metrics))

            if self.enabled_checks['position_size']:
                checks.extend(self._check_position_size(signal.symbol, portfolio, exposure_change, metrics))

            if self.enabled_checks['sector_exposure']:
                checks.extend(self._check_sector_exposure(signal.symbol, portfolio, exposure_change, metrics))

            if self.enabled_checks['correlation']:
                checks.extend(self._check_correlation(signal.symbol, portfolio, price_histories, metrics))

            if self.enabled_checks['confidence'] and signal.recommended_action != Action.HOLD:
                checks.extend(self._check_confidence(signal, metrics))

            if self.enabled_checks['open_positions']:
                checks.extend(self._check_open_positions(signal.symbol, portfolio, metrics))

            if self.enabled_checks['same_direction']:
                checks.extend(self._check_same_direction(signal, portfolio))

            if self.enabled_checks['market_hours']:
                checks.extend(self._check_market_hours(signal.symbol))

            if bars:
                if self.enabled_checks['volume']:
                    checks.extend(self._check_volume(bars, metrics))
                if self.enabled_checks['spread']:
                    checks.extend(self._check_spread(signal.symbol, bars, metrics))

            return self._assess(signal, checks, metrics)

        except Exception as e:
            self.logger.error(f"Error validating {signal.symbol}: {e}")
            return RiskAssessment(
                approved=False,
                risk_score=1.0,
                violations=[f"Risk validation error: {e}"],
                warnings=[],
                metrics={}
            )

    def _assess(self, signal: ConsensusSignal, checks: List[RiskCheck],
                metrics: Dict[str, float]) -> RiskAssessment:
        violations = [c.message for c in checks if not c.passed]
        warnings = [c.message for c in checks if c.passed and c.severity == 'WARNING']
        risk_score = self._calculate_risk_score(signal, warnings)
        approved = not violations

        if approved:
            self.logger.debug(f"Risk approved {signal.symbol} score={risk_score:.2f} warnings={len(warnings)}")
        else:
            self.logger.warning(f"Risk rejected {signal.symbol}: {'; '.join(violations)}")

        return RiskAssessment(
            approved=approved,
            risk_score=risk_score,
            violations=violations,
            warnings=warnings,
            metrics=metrics
        )

    def _calculate_risk_score(self, signal: ConsensusSignal, warnings: List[str]) -> float:
        score = (1.0 - signal.blended_confidence) + self.soft_warning_penalty * len(warnings)
        return max(0.0, min(1.0, score))

    def _check_daily_loss(self, portfolio: PortfolioSnapshot, metrics: Dict[str, float]) -> List[RiskCheck]:
        loss = -min(0.0, portfolio.day_pnl_percent)
        metrics['daily_loss'] = loss

        if loss >= self.max_daily_loss:
            return [RiskCheck('daily_loss', False,
                              f"Daily loss {loss:.2%} reached limit {self.max_daily_loss:.2%}", 'CRITICAL')]
        if loss >= self.max_daily_loss * 0.5:
            return [RiskCheck('daily_loss', True,
                              f"Daily loss {loss:.2%} past half of limit {self.max_daily_loss:.2%}", 'WARNING')]
        return [RiskCheck('daily_loss', True, 'Daily loss within limit', 'INFO')]

    def _check_position_size(self, symbol: str, portfolio: PortfolioSnapshot,
                             exposure_change: float, metrics: Dict[str, float]) -> List[RiskCheck]:
        existing = portfolio.position_for(symbol)
        existing_value = existing.market_value if existing else 0.0
        ratio = abs(existing_value + exposure_change) / portfolio.equity
        metrics['position_size'] = ratio

        if ratio > self.max_position_size:
            return [RiskCheck('position_size', False,
                              f"Position {ratio:.2%} of equity exceeds limit {self.max_position_size:.2%}", 'ERROR')]
        if ratio > self.max_position_size * 0.8:
            return [RiskCheck('position_size', True,
                              f"Position {ratio:.2%} of equity near limit {self.max_position_size:.2%}", 'WARNING')]
        return [RiskCheck('position_size', True, 'Position size within limit', 'INFO')]

    def _check_sector_exposure(self, symbol: str, portfolio: PortfolioSnapshot,
                               exposure_change: float, metrics: Dict[str, float]) -> List[RiskCheck]:
        sector = self.sector_of(symbol)
        sector_value = sum(
            p.market_value for p in portfolio.open_positions
            if (p.sector or self.sector_of(p.symbol)) == sector
        )
        ratio = abs(sector_value + exposure_change) / portfolio.equity
        metrics['sector_exposure'] = ratio

        if ratio > self.max_sector_exposure:
            return [RiskCheck('sector_exposure', False,
                              f"Sector {sector} exposure {ratio:.2%} exceeds limit {self.max_sector_exposure:.2%}",
                              'ERROR')]
        return [RiskCheck('sector_exposure', True, f"Sector {sector} exposure within limit", 'INFO')]

    def _check_correlation(self, symbol: str, portfolio: PortfolioSnapshot,
                           price_histories: Optional[Dict[str, Sequence[float]]],
                           metrics: Dict[str, float]) -> List[RiskCheck]:
        held = [p.symbol for p in portfolio.open_positions if p.symbol != symbol]
        if not held:
            metrics['max_correlation'] = 0.0
            return [RiskCheck('correlation', True, 'No other positions held', 'INFO')]

        correlations, missing = self._correlations(symbol, held, price_histories or {})
        if not correlations:
            return [RiskCheck('correlation', True,
                              f"Correlation data unavailable for {symbol}", 'WARNING')]

        worst_symbol, worst = max(correlations.items(), key=lambda item: item[1])
        metrics['max_correlation'] = worst

        checks = []
        if worst > self.max_correlation:
            checks.append(RiskCheck('correlation', False,
                                    f"Correlation {worst:.2f} with {worst_symbol} exceeds limit {self.max_correlation:.2f}",
                                    'ERROR'))
        else:
            checks.append(RiskCheck('correlation', True, 'Correlation within limit', 'INFO'))
        if missing:
            checks.append(RiskCheck('correlation_data', True,
                                    f"No price history for {', '.join(sorted(missing))}", 'WARNING'))
        return checks

    def _correlations(self, symbol: str, held: List[str],
                      price_histories: Dict[str, Sequence[float]]) -> Tuple[Dict[str, float], List[str]]:
        candidate = price_histories.get(symbol)
        if candidate is None or len(candidate) < 3:
            return {}, held

        series = {symbol: pd.Series(np.asarray(candidate, dtype=float))}
        missing = []
        for other in held:
            history = price_histories.get(other)
            if history is None or len(history) < 3:
                missing.append(other)
                continue
            series[other] = pd.Series(np.asarray(history, dtype=float))

        # Align on the most recent common window
        length = min(len(s) for s in series.values())
        frame = pd.DataFrame({k: v.iloc[-length:].reset_index(drop=True) for k, v in series.items()})
        corr = frame.pct_change().dropna().corr()

        correlations = {}
        for other in series:
            if other == symbol:
                continue
            value = corr.loc[symbol, other]
            if pd.notna(value):
                correlations[other] = float(value)
            else:
                missing.append(other)
        return correlations, missing

    def _check_confidence(self, signal: ConsensusSignal, metrics: Dict[str, float]) -> List[RiskCheck]:
        floor = self.min_confidence[signal.recommended_action]
        metrics['confidence'] = signal.blended_confidence

        if signal.blended_confidence < floor:
            return [RiskCheck('confidence', False,
                              f"Confidence {signal.blended_confidence:.2f} below "
                              f"{signal.recommended_action.value} floor {floor:.2f}", 'ERROR')]
        if signal.blended_confidence < floor + 0.05:
            return [RiskCheck('confidence', True,
                              f"Confidence {signal.blended_confidence:.2f} barely above floor {floor:.2f}", 'WARNING')]
        return [RiskCheck('confidence', True, 'Confidence above floor', 'INFO')]

    def _check_open_positions(self, symbol: str, portfolio: PortfolioSnapshot,
                              metrics: Dict[str, float]) -> List[RiskCheck]:
        count = len(portfolio.open_positions)
        metrics['open_positions'] = float(count)
        adds_position = portfolio.position_for(symbol) is None

        if adds_position and count >= self.max_open_positions:
            return [RiskCheck('open_positions', False,
                              f"{count} open positions at limit {self.max_open_positions}", 'ERROR')]
        return [RiskCheck('open_positions', True, 'Open positions within limit', 'INFO')]

    def _check_same_direction(self, signal: ConsensusSignal, portfolio: PortfolioSnapshot) -> List[RiskCheck]:
        position = portfolio.position_for(signal.symbol)
        if position is None or position.quantity == 0:
            return [RiskCheck('same_direction', True, 'No existing position', 'INFO')]

        long_position = position.quantity > 0
        if (long_position and signal.recommended_action == Action.BUY) or \
                (not long_position and signal.recommended_action == Action.SELL):
            side = 'long' if long_position else 'short'
            return [RiskCheck('same_direction', False,
                              f"Already {side} {signal.symbol}; {signal.recommended_action.value} "
                              f"would add in the same direction", 'ERROR')]
        return [RiskCheck('same_direction', True, 'Order reduces the existing position', 'INFO')]

    def is_market_open(self, symbol: str) -> bool:
        """Regular session 9:30-16:00 local, weekdays; crypto always open."""
        if is_crypto_symbol(symbol):
            return True
        local = self.now().astimezone(self.market_timezone)
        if local.weekday() >= 5:
            return False
        start, end = EXTENDED_SESSION if self.extended_hours else REGULAR_SESSION
        return start <= local.time() < end

    def _check_market_hours(self, symbol: str) -> List[RiskCheck]:
        if self.is_market_open(symbol):
            return [RiskCheck('market_hours', True, 'Market open', 'INFO')]
        local = self.now().astimezone(self.market_timezone)
        return [RiskCheck('market_hours', False,
                          f"Market closed for {symbol} at {local:%a %H:%M} {self.market_timezone.key}", 'ERROR')]

    def _check_volume(self, bars: Sequence[PriceBar], metrics: Dict[str, float]) -> List[RiskCheck]:
        recent = volumes(bars)[-self.volume_window:]
        average = TechnicalIndicators.sma(recent, len(recent))
        metrics['average_volume'] = average

        if average < self.min_average_volume:
            return [RiskCheck('volume', False,
                              f"Average volume {average:,.0f} below minimum {self.min_average_volume:,.0f}", 'ERROR')]
        return [RiskCheck('volume', True, 'Average volume sufficient', 'INFO')]

    def estimate_spread(self, bars: Sequence[PriceBar]) -> float:
        """Spread proxy: a fraction of the recent average true range relative to price."""
        price_closes = closes(bars)
        atr = TechnicalIndicators.atr(highs(bars), lows(bars), price_closes, self.spread_window)
        if np.isnan(atr) or price_closes[-1] <= 0:
            return np.nan
        return float(atr / price_closes[-1] * self.spread_range_fraction)

    def _check_spread(self, symbol: str, bars: Sequence[PriceBar], metrics: Dict[str, float]) -> List[RiskCheck]:
        spread = self.estimate_spread(bars)
        if np.isnan(spread):
            return [RiskCheck('spread', True, f"Not enough bars to estimate spread for {symbol}", 'INFO')]

        crypto = is_crypto_symbol(symbol)
        limit = self.max_crypto_spread if crypto else self.max_spread
        metrics['estimated_spread'] = spread

        if spread > limit:
            return [RiskCheck('spread', False,
                              f"Spread {spread:.2%} exceeds {'crypto' if crypto else 'stock'} limit {limit:.2%}",
                              'ERROR')]
        return [RiskCheck('spread', True, 'Spread within limit', 'INFO')]

    def get_config(self) -> Dict[str, Any]:
        return {
            'max_daily_loss': self.max_daily_loss,
            'max_position_size': self.max_position_size,
            'max_sector_exposure': self.max_sector_exposure,
            'max_correlation': self.max_correlation,
            'max_open_positions': self.max_open_positions,
            'extended_hours': self.extended_hours,
            'min_average_volume': self.min_average_volume,
            'max_spread': self.max_spread,
            'max_crypto_spread': self.max_crypto_spread,
            'min_confidence': {a.value: v for a, v in self.min_confidence.items()},
            'checks': dict(self.enabled_checks),
        }
