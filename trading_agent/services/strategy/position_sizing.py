"""
Position Sizing

Conservative confidence-scaled notional sizing bounded by order-value
limits and a hard fraction of buying power.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Optional

from ...core.models import ThresholdRecommendation


@dataclass
class SizingDecision:
    """Notional plus the reasoning that produced it."""
    notional: float
    fraction: float
    confidence_bonus: float
    reasoning: str
    within_limits: bool


class PositionSizer:
    """Implements the confidence-scaled sizing rule."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize position sizer.

        Args:
            config: The 'sizing' configuration section
        """
        self.config = config or {}
        self.logger = logging.getLogger(f"{__name__}.PositionSizer")

        self.base_fraction = float(self.config.get('base_fraction', 0.03))
        self.confidence_bonus_max = float(self.config.get('confidence_bonus_max', 0.07))
        self.confidence_floor = float(self.config.get('confidence_floor', 0.60))
        self.max_fraction = float(self.config.get('max_fraction', 0.10))
        self.min_order_value = float(self.config.get('min_order_value', 25.0))
        self.max_order_value = float(self.config.get('max_order_value', 200.0))
        self.max_buying_power_fraction = float(self.config.get('max_buying_power_fraction', 0.20))
        self.buying_power_floor = float(self.config.get('buying_power_floor', 125.0))

        if self.min_order_value > self.max_order_value:
            raise ValueError("min_order_value must not exceed max_order_value")

    def size(self, confidence: float, buying_power: float) -> float:
        """
        Notional order value for a signal.

        Args:
            confidence: Blended consensus confidence in [0, 1]
            buying_power: Available buying power

        Returns:
            Notional in dollars rounded down to cents; 0 means do not trade
        """
        return self.size_with_reasoning(confidence, buying_power).notional

    def size_with_reasoning(self, confidence: float, buying_power: float) -> SizingDecision:
        if buying_power < self.buying_power_floor:
            return SizingDecision(0.0, 0.0, 0.0,
                                  f"Insufficient buying power: ${buying_power:.2f} < ${self.buying_power_floor:.2f}",
                                  False)

        bonus = self._confidence_bonus(confidence)
        fraction = min(self.base_fraction + bonus, self.max_fraction)

        notional = buying_power * fraction
        notional = max(self.min_order_value, min(notional, self.max_order_value))

        hard_ceiling = buying_power * self.max_buying_power_fraction
        if hard_ceiling < self.min_order_value:
            return SizingDecision(0.0, fraction, bonus,
                                  f"Buying power cap ${hard_ceiling:.2f} below minimum order ${self.min_order_value:.2f}",
                                  False)
        notional = min(notional, hard_ceiling)

        # Strip float noise before truncating to cents
        rounded = float(Decimal(str(round(notional, 6))).quantize(Decimal('0.01'), rounding=ROUND_DOWN))
        reasoning = (
            f"{fraction:.2%} of ${buying_power:,.2f} "
            f"(base {self.base_fraction:.1%} + confidence bonus {bonus:.2%}) = ${rounded:,.2f}"
        )
        self.logger.debug(reasoning)
        return SizingDecision(rounded, fraction, bonus, reasoning, True)

    def _confidence_bonus(self, confidence: float) -> float:
        if confidence <= self.confidence_floor or self.confidence_floor >= 1.0:
            return 0.0
        scale = (min(confidence, 1.0) - self.confidence_floor) / (1.0 - self.confidence_floor)
        return self.confidence_bonus_max * scale

    def apply_recommendation(self, recommendation: ThresholdRecommendation) -> None:
        """Start the confidence bonus at the learned conservative threshold."""
        floor = max(0.5, min(0.9, recommendation.conservative))
        if floor != self.confidence_floor:
            self.logger.info(f"Sizing confidence floor {self.confidence_floor:.2f} -> {floor:.2f}")
            self.confidence_floor = floor

    def get_config(self) -> Dict[str, float]:
        return {
            'base_fraction': self.base_fraction,
            'confidence_bonus_max': self.confidence_bonus_max,
            'confidence_floor': self.confidence_floor,
            'max_fraction': self.max_fraction,
            'min_order_value': self.min_order_value,
            'max_order_value': self.max_order_value,
            'max_buying_power_fraction': self.max_buying_power_fraction,
            'buying_power_floor': self.buying_power_floor,
        }
