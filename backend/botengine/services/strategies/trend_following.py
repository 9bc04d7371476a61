"""Trend following strategy (MACD crossover confirmed by trend votes)."""

import logging
from typing import Any, Dict, Optional

from ..errors import StrategyError
from .. import indicators as ta
from .base import BotContext, PositionStrategy, Signal, SignalType

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_LOSSES = 3
REQUIRED_VOTES = 4


class TrendFollowingStrategy(PositionStrategy):
    """Enters on a MACD/signal crossover when at least four of five trend
    votes agree; exits on stop-loss, take-profit or the opposite crossover.
    """

    name = "Trend Following"

    async def on_initialize(self) -> None:
        self.fast_period = int(self.param("fastPeriod", 12))
        self.slow_period = int(self.param("slowPeriod", 26))
        self.signal_period = int(self.param("signalPeriod", 9))
        self.risk_per_trade = float(self.param("riskPerTrade", 0.02))
        self.stop_loss = float(self.param("stopLoss", 2))
        self.take_profit = float(self.param("takeProfit", 4))

        if self.fast_period <= 0 or self.slow_period <= 0 or self.signal_period <= 0:
            raise StrategyError("Invalid trend configuration: periods must be positive", self.bot_id)
        if self.fast_period >= self.slow_period:
            raise StrategyError("Fast period must be less than slow period", self.bot_id)
        if self.risk_per_trade <= 0 or self.risk_per_trade > 1:
            raise StrategyError("Invalid trend configuration: risk per trade must be between 0 and 1", self.bot_id)

    @property
    def min_candles(self) -> int:
        return max(50, self.slow_period + self.signal_period + 1)

    def _crossover(self, macd: ta.MACDResult) -> Optional[SignalType]:
        if len(macd.signal) < 2:
            return None
        line = macd.macd[-2:]
        signal = macd.signal[-2:]
        if line[0] <= signal[0] and line[1] > signal[1]:
            return SignalType.BUY
        if line[0] >= signal[0] and line[1] < signal[1]:
            return SignalType.SELL
        return None

    def trend_votes(self, price: float, prices, macd: ta.MACDResult) -> Dict[SignalType, int]:
        sma20 = ta.sma(prices, 20)[-1]
        sma50 = ta.sma(prices, 50)[-1]
        rsi_values = ta.rsi(prices, 14)
        rsi = rsi_values[-1] if rsi_values else 50.0
        histogram = macd.histogram[-1]
        bullish = [
            price > sma20,
            sma20 > sma50,
            macd.macd[-1] > macd.signal[-1],
            histogram > 0,
            40 <= rsi <= 70,
        ]
        bearish = [
            price < sma20,
            sma20 < sma50,
            macd.macd[-1] < macd.signal[-1],
            histogram < 0,
            30 <= rsi <= 60,
        ]
        return {SignalType.BUY: sum(bullish), SignalType.SELL: sum(bearish)}

    async def evaluate(self, context: BotContext) -> Signal:
        price = context.current_price
        prices = context.closes
        if len(prices) < self.min_candles:
            return self.hold(context, "Insufficient data for trend analysis", confidence=0.3)

        macd = ta.macd(prices, self.fast_period, self.slow_period, self.signal_period)
        crossover = self._crossover(macd)
        votes = self.trend_votes(price, prices, macd)

        if self.position is not None:
            side = self.position.side
            exit_type = self.exit_signal_type()
            kwargs = dict(timestamp=context.timestamp, amount=self.position.size, price=price)
            if self.should_stop_loss(self.position.entry_price, price, side, self.stop_loss):
                return Signal(exit_type, 0.9, 1.0, f"Stop loss triggered at {price}", **kwargs)
            if self.should_take_profit(self.position.entry_price, price, side, self.take_profit):
                return Signal(exit_type, 0.9, 1.0, f"Take profit triggered at {price}", **kwargs)
            if crossover == exit_type:
                return Signal(exit_type, 0.7, 0.8, f"Trend reversal detected, exiting {side.value} at {price}", **kwargs)
            pnl = self.unrealized_pnl(price)
            return self.hold(context, f"Holding {side.value} position. Unrealized P&L: {pnl:.2f}", 0.4, 0.7)

        if self.consecutive_losses >= MAX_CONSECUTIVE_LOSSES:
            return self.hold(context, "Skipping entry due to consecutive losses", confidence=0.8)

        if crossover is None:
            return self.hold(
                context,
                f"No crossover (bullish votes {votes[SignalType.BUY]}, bearish votes {votes[SignalType.SELL]})",
                0.2,
                0.6,
            )
        if votes[crossover] < REQUIRED_VOTES:
            return self.hold(context, f"Crossover without trend agreement ({votes[crossover]}/5)", 0.2, 0.6)
        if crossover == SignalType.SELL and not self.allow_short:
            return self.hold(context, "Bearish crossover; short entries disabled", 0.2, 0.6)

        size = self.calculate_position_size(context, self.risk_per_trade, price)
        if size <= 0:
            return self.hold(context, "Position size is zero")

        if crossover == SignalType.BUY:
            stop = price * (1 - self.stop_loss / 100)
            target = price * (1 + self.take_profit / 100)
        else:
            stop = price * (1 + self.stop_loss / 100)
            target = price * (1 - self.take_profit / 100)
        direction = "Bullish" if crossover == SignalType.BUY else "Bearish"
        return Signal(
            crossover,
            0.8,
            0.9,
            f"{direction} trend with MACD crossover. Entry: {price}, SL: {stop:.2f}, TP: {target:.2f}",
            timestamp=context.timestamp,
            amount=size,
            price=price,
        )

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status["parameters"] = {
            "fast_period": self.fast_period,
            "slow_period": self.slow_period,
            "signal_period": self.signal_period,
        } if self.is_initialized else {}
        return status
