"""Replay historical candles through a strategy with a one-position simulator."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .bot_config import BotConfig, ExecutionConfig, MarketConfig, RiskConfig, StrategyConfig
from .exchange import Candle, ExchangeOrder
from .strategies.base import BotContext, Signal, SignalType, Strategy, split_symbol

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 100
POSITION_FRACTION = 0.1


@dataclass
class BacktestTrade:
    entry_price: float
    exit_price: float
    size: float
    pnl: float
    entry_time: datetime
    exit_time: datetime

    @property
    def hold_seconds(self) -> float:
        return (self.exit_time - self.entry_time).total_seconds()


@dataclass
class BacktestResult:
    """Summary of one backtest run."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    net_profit: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    average_hold_seconds: float = 0.0
    final_balance: float = 0.0
    trades: List[BacktestTrade] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("trades")
        return data


@dataclass
class _SimPosition:
    entry_price: float
    size: float
    entry_time: datetime


def _fill(signal: Signal, symbol: str, price: float, size: float, step: int) -> ExchangeOrder:
    return ExchangeOrder(
        id=f"backtest_{step}",
        symbol=symbol,
        side=signal.type.value.lower(),
        type="market",
        amount=size,
        price=price,
        cost=size * price,
        fee=0.0,
        fee_currency=split_symbol(symbol)[1],
        status="closed",
        timestamp=signal.timestamp,
        filled=size,
        remaining=0.0,
    )


async def backtest_strategy(
    strategy: Strategy,
    config: StrategyConfig,
    candles: Sequence[Candle],
    initial_balance: float = 10000.0,
    symbol: str = "BTC/USDT",
    window: int = DEFAULT_WINDOW,
) -> BacktestResult:
    """Run ``strategy`` over ``candles`` and measure closed long trades.

    Each step hands the strategy the previous ``window`` candles. A BUY
    opens a long with 10% of the balance when flat; a SELL closes it.
    Fills are reported back through ``on_fill`` so stateful strategies
    track the simulated position.

    Raises:
        StrategyError: If the strategy rejects ``config``
    """
    await strategy.initialize(config)

    bot = BotConfig(
        id=0,
        name="backtest",
        strategy=config,
        market=MarketConfig(symbol=symbol, exchange_account_id=None),
        risk=RiskConfig(max_position_size=1.0),
        execution=ExecutionConfig(),
    )
    base, quote = split_symbol(symbol)

    balance = initial_balance
    peak = initial_balance
    max_drawdown = 0.0
    position: Optional[_SimPosition] = None
    trades: List[BacktestTrade] = []

    for i in range(window, len(candles)):
        candle = candles[i]
        context = BotContext(
            bot=bot,
            market_data=candles[i - window:i],
            current_price=candle.close,
            balances={quote: balance},
            positions={base: position.size} if position else {},
            timestamp=candle.timestamp,
        )

        try:
            signal = await strategy.execute(context)
        except Exception as e:
            logger.error(f"Backtest step {i}: strategy error: {e}")
            continue

        if signal.type == SignalType.BUY and position is None:
            size = balance * POSITION_FRACTION / candle.close
            position = _SimPosition(candle.close, size, candle.timestamp)
            strategy.on_fill(signal, _fill(signal, symbol, candle.close, size, i))
        elif signal.type == SignalType.SELL and position is not None:
            pnl = (candle.close - position.entry_price) * position.size
            trades.append(BacktestTrade(
                entry_price=position.entry_price,
                exit_price=candle.close,
                size=position.size,
                pnl=pnl,
                entry_time=position.entry_time,
                exit_time=candle.timestamp,
            ))
            strategy.on_fill(signal, _fill(signal, symbol, candle.close, position.size, i))
            position = None

            balance += pnl
            peak = max(peak, balance)
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - balance) / peak)

    await strategy.cleanup()
    return _summarize(trades, balance, max_drawdown)


def _summarize(trades: List[BacktestTrade], balance: float, max_drawdown: float) -> BacktestResult:
    wins = [t.pnl for t in trades if t.pnl > 0]
    losses = [t.pnl for t in trades if t.pnl < 0]
    total_profit = sum(wins)
    total_loss = abs(sum(losses))

    return BacktestResult(
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(trades) if trades else 0.0,
        total_profit=total_profit,
        total_loss=total_loss,
        net_profit=total_profit - total_loss,
        profit_factor=total_profit / total_loss if total_loss > 0 else 0.0,
        max_drawdown=max_drawdown,
        average_win=total_profit / len(wins) if wins else 0.0,
        average_loss=total_loss / len(losses) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        average_hold_seconds=sum(t.hold_seconds for t in trades) / len(trades) if trades else 0.0,
        final_balance=balance,
        trades=trades,
    )
