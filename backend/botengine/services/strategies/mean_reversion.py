"""Mean reversion strategy on Bollinger z-scores."""

import logging
from typing import Any, Dict

from ..errors import StrategyError
from .. import indicators as ta
from .base import BotContext, PositionStrategy, Signal, SignalType

logger = logging.getLogger(__name__)

STOP_LOSS_PERCENT = 3.0
MAX_CONSECUTIVE_LOSSES = 3


class MeanReversionStrategy(PositionStrategy):
    """Fades stretched moves: enters when the Bollinger z-score passes
    ``entryThreshold`` with RSI confirmation, exits when the price returns
    to the middle band.
    """

    name = "Mean Reversion"

    async def on_initialize(self) -> None:
        self.period = int(self.param("period", 20))
        self.standard_deviations = float(self.param("standardDeviations", 2))
        self.entry_threshold = float(self.param("entryThreshold", 2))
        self.exit_threshold = float(self.param("exitThreshold", 0.5))
        self.risk_per_trade = float(self.param("riskPerTrade", 0.02))

        if self.period <= 0:
            raise StrategyError("Invalid mean reversion configuration: period must be positive", self.bot_id)
        if self.standard_deviations <= 0:
            raise StrategyError("Invalid mean reversion configuration: standard deviations must be positive", self.bot_id)
        if self.entry_threshold <= 0 or self.exit_threshold <= 0:
            raise StrategyError("Invalid mean reversion configuration: thresholds must be positive", self.bot_id)
        if self.risk_per_trade <= 0 or self.risk_per_trade > 1:
            raise StrategyError("Invalid mean reversion configuration: risk per trade must be between 0 and 1", self.bot_id)

        self.mean_price = 0.0
        self.z_score = 0.0

    async def evaluate(self, context: BotContext) -> Signal:
        price = context.current_price
        prices = context.closes
        if len(prices) < max(self.period, 15):
            return self.hold(context, "Insufficient data for mean reversion analysis", confidence=0.3)

        bands = ta.bollinger_bands(prices, self.period, self.standard_deviations)
        self.mean_price = bands.middle[-1]
        std = bands.std[-1]
        self.z_score = (price - self.mean_price) / std if std > 0 else 0.0
        rsi_values = ta.rsi(prices, 14)
        rsi = rsi_values[-1] if rsi_values else 50.0

        if self.position is not None:
            return self._check_exit(context, price)

        if self.consecutive_losses >= MAX_CONSECUTIVE_LOSSES:
            return self.hold(context, "Skipping entry due to consecutive losses", confidence=0.8)

        if self.z_score <= -self.entry_threshold and rsi < 30:
            side = SignalType.BUY
            reason = "Oversold"
        elif self.z_score >= self.entry_threshold and rsi > 70 and self.allow_short:
            side = SignalType.SELL
            reason = "Overbought"
        else:
            deviation = (price - self.mean_price) / self.mean_price if self.mean_price else 0.0
            return self.hold(
                context,
                f"Price deviation: {deviation * 100:.2f}% from mean, Z-score: {self.z_score:.2f}",
                min(1.0, abs(self.z_score) / 2) * 0.4,
                max(0.3, 1 - abs(deviation)),
            )

        size = self.calculate_position_size(context, self.risk_per_trade, price)
        if size <= 0:
            return self.hold(context, "Position size is zero")
        return Signal(
            side,
            0.8,
            0.9,
            f"{reason} condition detected. Z-score: {self.z_score:.2f}, RSI: {rsi:.1f}. "
            f"Target: {self.mean_price:.2f}",
            timestamp=context.timestamp,
            amount=size,
            price=price,
        )

    def _check_exit(self, context: BotContext, price: float) -> Signal:
        side = self.position.side
        exit_type = self.exit_signal_type()
        kwargs = dict(timestamp=context.timestamp, amount=self.position.size, price=price)

        if self.should_stop_loss(self.position.entry_price, price, side, STOP_LOSS_PERCENT):
            return Signal(exit_type, 0.9, 1.0, f"Stop loss triggered at {price:.2f}", **kwargs)

        crossed_mean = price >= self.mean_price if side == SignalType.BUY else price <= self.mean_price
        if crossed_mean:
            return Signal(exit_type, 0.8, 0.95, f"Target reached: price reverted to mean at {price:.2f}", **kwargs)

        if abs(self.z_score) <= self.exit_threshold:
            return Signal(
                exit_type, 0.6, 0.8, f"Z-score normalized at {self.z_score:.2f}, exiting at {price:.2f}", **kwargs
            )

        return self.hold(
            context,
            f"Holding {side.value} position. P&L: {self.unrealized_pnl(price):.2f}, Z-score: {self.z_score:.2f}",
            0.4,
            0.7,
        )

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status["mean_price"] = getattr(self, "mean_price", 0.0)
        status["z_score"] = getattr(self, "z_score", 0.0)
        return status
