"""Risk analytics for advanced position sizing and volatility-based stop losses."""

import logging
from dataclasses import dataclass, field
from typing import List

from .strategies.base import SignalType

logger = logging.getLogger(__name__)

KELLY_FRACTION = 0.25
DEFAULT_MAX_RISK_FRACTION = 0.25


@dataclass
class PositionSizing:
    """Sizing recommendation for one order."""
    amount: float
    confidence: float
    warnings: List[str] = field(default_factory=list)


@dataclass
class StopLossDecision:
    """Volatility stop for an open position."""
    stop_price: float
    should_exit: bool
    reason: str


class RiskAnalyticsService:
    """Service for fractional-Kelly sizing and ATR stop losses."""

    def __init__(self, max_risk_fraction: float = DEFAULT_MAX_RISK_FRACTION):
        """Initialize risk analytics service.

        Args:
            max_risk_fraction: Largest share of the balance a single sizing may commit
        """
        self.max_risk_fraction = max_risk_fraction

    def size_position(
        self,
        balance: float,
        price: float,
        volatility: float,
        win_rate: float,
        avg_win: float,
        avg_loss: float,
    ) -> PositionSizing:
        """Size a position with a quarter of the Kelly fraction.

        Kelly: f = (b*p - q) / b, where b = avg_win / avg_loss,
        p = win_rate and q = 1 - p.

        Args:
            balance: Quote balance available for the order
            price: Expected execution price
            volatility: Annualized volatility of the market (fraction)
            win_rate: Historical fraction of winning trades
            avg_win: Average winning trade P&L
            avg_loss: Average losing trade P&L, as a positive number

        Returns:
            PositionSizing with the base amount and a confidence in [0, 1]
        """
        warnings: List[str] = []

        if balance <= 0 or price <= 0:
            return PositionSizing(amount=0.0, confidence=0.0, warnings=["No balance or price to size against"])

        win_rate = win_rate if 0 < win_rate < 1 else 0.5
        avg_win = avg_win if avg_win > 0 else 1.0
        avg_loss = avg_loss if avg_loss > 0 else 1.0

        payoff = avg_win / avg_loss
        kelly = (payoff * win_rate - (1 - win_rate)) / payoff
        if kelly <= 0:
            warnings.append(f"No statistical edge (Kelly {kelly:.3f})")
            return PositionSizing(amount=0.0, confidence=0.0, warnings=warnings)

        fraction = kelly * KELLY_FRACTION
        if fraction > self.max_risk_fraction:
            warnings.append(f"Kelly fraction {fraction:.3f} capped at {self.max_risk_fraction:.3f}")
            fraction = self.max_risk_fraction

        # High volatility dampens confidence, not the amount
        confidence = min(kelly, 1.0) / (1 + max(volatility, 0.0))
        if volatility > 1.0:
            warnings.append(f"High volatility: {volatility * 100:.1f}%")

        return PositionSizing(
            amount=balance * fraction / price,
            confidence=confidence,
            warnings=warnings,
        )

    def evaluate_stop_loss(
        self,
        entry_price: float,
        current_price: float,
        side: SignalType,
        atr: float,
        multiplier: float = 2.0,
    ) -> StopLossDecision:
        """Check an ATR-based stop for a position.

        Args:
            entry_price: Position entry price
            current_price: Current market price
            side: BUY for a long position, SELL for a short one
            atr: Average true range at entry
            multiplier: ATR multiples between entry and stop

        Returns:
            StopLossDecision
        """
        distance = atr * multiplier
        if side == SignalType.BUY:
            stop_price = entry_price - distance
            should_exit = current_price <= stop_price
        else:
            stop_price = entry_price + distance
            should_exit = current_price >= stop_price

        if should_exit:
            reason = f"Stop loss hit: price {current_price:.2f} crossed stop {stop_price:.2f}"
        else:
            reason = f"Within stop: price {current_price:.2f}, stop {stop_price:.2f}"
        return StopLossDecision(stop_price=stop_price, should_exit=should_exit, reason=reason)


# Global risk analytics instance
risk_analytics = RiskAnalyticsService()
