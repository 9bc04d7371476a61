"""Bot performance metrics computed from recorded trades."""

import math
import statistics
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

from ..models import TradeSide


@dataclass
class BotPerformance:
    """Realized performance of one bot."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    net_profit: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    total_return: float = 0.0
    annualized_return: float = 0.0
    volatility: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def max_drawdown(pnls: Sequence[float]) -> float:
    """Largest fall of cumulative P&L from its peak, as a fraction of the peak.

    Only measured once the running peak is positive.
    """
    peak = 0.0
    cumulative = 0.0
    worst = 0.0
    for pnl in pnls:
        cumulative += pnl
        if cumulative > peak:
            peak = cumulative
        if peak > 0:
            worst = max(worst, (peak - cumulative) / peak)
    return worst


def sharpe_ratio(pnls: Sequence[float]) -> float:
    """mean / population stdev of per-trade P&L; 0 when undefined."""
    if len(pnls) < 2:
        return 0.0
    std = statistics.pstdev(pnls)
    return statistics.mean(pnls) / std if std > 0 else 0.0


def sortino_ratio(pnls: Sequence[float]) -> float:
    """mean / downside deviation of per-trade P&L; 0 when undefined."""
    if len(pnls) < 2:
        return 0.0
    downside = math.sqrt(sum(min(p, 0.0) ** 2 for p in pnls) / len(pnls))
    return statistics.mean(pnls) / downside if downside > 0 else 0.0


def compute_performance(trades: Sequence) -> BotPerformance:
    """Summarize trades given in execution order."""
    if not trades:
        return BotPerformance()

    pnls = [trade.net_pnl for trade in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]

    total_profit = sum(wins)
    total_loss = abs(sum(losses))
    net_profit = total_profit - total_loss
    drawdown = max_drawdown(pnls)

    return BotPerformance(
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(trades),
        total_profit=total_profit,
        total_loss=total_loss,
        net_profit=net_profit,
        profit_factor=total_profit / total_loss if total_loss > 0 else 0.0,
        max_drawdown=drawdown,
        sharpe_ratio=sharpe_ratio(pnls),
        sortino_ratio=sortino_ratio(pnls),
        calmar_ratio=net_profit / drawdown if drawdown > 0 else 0.0,
        total_return=net_profit,
        annualized_return=0.0,
        volatility=statistics.pstdev(pnls) if len(pnls) > 1 else 0.0,
    )


def average_cost(trades: Sequence) -> Tuple[float, Optional[float]]:
    """Held base amount and its average entry price, replaying trades in order.

    Sells reduce the holding at the running average, so the average only
    moves on buys. The price is None while nothing is held.
    """
    held = 0.0
    cost = 0.0
    for trade in trades:
        if trade.side == TradeSide.BUY:
            held += trade.amount
            cost += trade.amount * trade.price
        elif held > 0:
            sold = min(trade.amount, held)
            cost -= cost / held * sold
            held -= sold
    if held <= 0:
        return 0.0, None
    return held, cost / held


def realized_pnl(trades: Sequence, amount: float, price: float) -> Optional[float]:
    """P&L of selling ``amount`` at ``price`` against the average entry, before fees."""
    held, entry = average_cost(trades)
    if entry is None:
        return None
    return (price - entry) * min(amount, held)
