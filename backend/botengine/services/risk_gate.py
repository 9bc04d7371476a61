"""Risk gate: turns a BUY/SELL signal into a bounded order request."""

import logging
from typing import Optional, Sequence

from .errors import RiskLimitError
from .exchange import OrderRequest, OrderSide
from .risk_analytics import RiskAnalyticsService, risk_analytics
from .strategies.base import BotContext, Signal, SignalType
from . import indicators as ta

logger = logging.getLogger(__name__)

# Closed trades needed before Kelly sizing is trusted
MIN_KELLY_TRADES = 5


def daily_realized_loss(trades: Sequence) -> float:
    """Net realized loss of the given trades, 0 when they netted a profit."""
    net = sum(getattr(trade, "net_pnl", 0.0) or 0.0 for trade in trades)
    return max(0.0, -net)


class RiskGate:
    """Sizes orders so that ``0 <= amount * price <= min(balance * r, max_position * price)``.

    The gate never raises the size a strategy asked for. It only shrinks
    the order or rejects it with :class:`RiskLimitError`.
    """

    def __init__(self, analytics: Optional[RiskAnalyticsService] = None):
        self.analytics = analytics or risk_analytics

    def size_order(self, signal: Signal, context: BotContext) -> OrderRequest:
        """Build the order request for a BUY or SELL signal.

        Raises:
            RiskLimitError: If the order would be empty or breaks a risk limit
            ValueError: If called with a HOLD signal
        """
        if signal.type == SignalType.BUY:
            amount = self._buy_amount(signal, context)
            side = OrderSide.BUY
            price = context.current_price * (1 + context.bot.execution.slippage_tolerance)
        elif signal.type == SignalType.SELL:
            amount = self._sell_amount(signal, context)
            side = OrderSide.SELL
            price = context.current_price * (1 - context.bot.execution.slippage_tolerance)
        else:
            raise ValueError("HOLD signals are not sized")

        execution = context.bot.execution
        return OrderRequest(
            symbol=context.symbol,
            side=side,
            type=execution.order_type,
            amount=amount,
            price=price,
            time_in_force=execution.time_in_force,
        )

    def _buy_amount(self, signal: Signal, context: BotContext) -> float:
        bot_id = context.bot.id
        risk = context.bot.risk
        price = context.current_price

        if risk.max_daily_loss > 0:
            loss = daily_realized_loss(context.trades)
            if loss >= risk.max_daily_loss:
                raise RiskLimitError(
                    f"Daily loss limit reached: {loss:.2f} >= {risk.max_daily_loss:.2f}", bot_id
                )

        if price <= 0:
            raise RiskLimitError("Insufficient balance or risk limits exceeded", bot_id)

        amount = context.quote_balance * risk.risk_per_trade / price
        amount = min(amount, risk.max_position_size)
        if signal.amount is not None:
            amount = min(amount, signal.amount)

        if risk.use_advanced_sizing:
            amount = self._apply_kelly(amount, context)

        if amount <= 0:
            raise RiskLimitError("Insufficient balance or risk limits exceeded", bot_id)
        return amount

    def _sell_amount(self, signal: Signal, context: BotContext) -> float:
        amount = min(context.base_holding, context.bot.risk.max_position_size)
        if signal.amount is not None:
            amount = min(amount, signal.amount)
        if amount <= 0:
            raise RiskLimitError("No position to sell or risk limits exceeded", context.bot.id)
        return amount

    def _apply_kelly(self, amount: float, context: BotContext) -> float:
        closed = [t.net_pnl for t in context.history if getattr(t, "pnl", None) is not None]
        if len(closed) < MIN_KELLY_TRADES:
            logger.debug(f"Bot {context.bot.id}: {len(closed)} closed trades, skipping Kelly sizing")
            return amount

        wins = [p for p in closed if p > 0]
        losses = [-p for p in closed if p < 0]
        vol = ta.volatility(context.closes, 20)
        sizing = self.analytics.size_position(
            balance=context.quote_balance,
            price=context.current_price,
            volatility=vol[-1] if vol else 0.0,
            win_rate=len(wins) / len(closed),
            avg_win=sum(wins) / len(wins) if wins else 0.0,
            avg_loss=sum(losses) / len(losses) if losses else 0.0,
        )
        for warning in sizing.warnings:
            logger.info(f"Bot {context.bot.id}: sizing: {warning}")
        return min(amount, sizing.amount)


# Global risk gate instance
risk_gate = RiskGate()
