"""Strategy contract shared by every bot strategy."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from ..bot_config import BotConfig, StrategyConfig
from ..conditions import evaluate_group
from ..errors import StrategyError
from ..exchange import Candle, ExchangeOrder
from .. import indicators as ta

logger = logging.getLogger(__name__)

# Checked longest first so "USDT" wins over "USD"
KNOWN_QUOTES = ("USDT", "USDC", "BUSD", "USD", "EUR", "BTC", "ETH", "BNB")

ATR_STOP_PERIOD = 14


def split_symbol(symbol: str) -> Tuple[str, str]:
    """Split a market symbol into (base, quote).

    Accepts both ``BTC/USDT`` and ``BTCUSDT``.
    """
    if "/" in symbol:
        base, quote = symbol.split("/", 1)
        return base.upper(), quote.split(":")[0].upper()
    upper = symbol.upper()
    for quote in KNOWN_QUOTES:
        if upper.endswith(quote) and len(upper) > len(quote):
            return upper[:-len(quote)], quote
    return upper[:3], upper[3:]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


@dataclass(frozen=True)
class Signal:
    """A strategy decision for one tick.

    ``amount`` is an optional requested base amount; the risk gate may only
    shrink it. ``price`` is the reference price the decision was made at.
    """
    type: SignalType
    strength: float = 0.5
    confidence: float = 0.5
    reason: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    amount: Optional[float] = None
    price: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "strength", _clamp(self.strength))
        object.__setattr__(self, "confidence", _clamp(self.confidence))

    @classmethod
    def buy(cls, strength: float = 0.5, confidence: float = 0.5, reason: str = "", **kwargs) -> "Signal":
        return cls(SignalType.BUY, strength, confidence, reason, **kwargs)

    @classmethod
    def sell(cls, strength: float = 0.5, confidence: float = 0.5, reason: str = "", **kwargs) -> "Signal":
        return cls(SignalType.SELL, strength, confidence, reason, **kwargs)

    @classmethod
    def hold(cls, reason: str = "", strength: float = 0.0, confidence: float = 0.5, **kwargs) -> "Signal":
        return cls(SignalType.HOLD, strength, confidence, reason, **kwargs)

    @property
    def is_hold(self) -> bool:
        return self.type == SignalType.HOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "strength": self.strength,
            "confidence": self.confidence,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "amount": self.amount,
            "price": self.price,
        }


@dataclass(frozen=True)
class BotContext:
    """Read-only view of the world handed to a strategy each tick.

    ``trades`` holds today's trades for the daily limits, ``history`` every
    trade the bot has recorded.
    """
    bot: BotConfig
    market_data: Tuple[Candle, ...]
    current_price: float
    balances: Mapping[str, float] = field(default_factory=dict)
    positions: Mapping[str, float] = field(default_factory=dict)
    orders: Tuple[ExchangeOrder, ...] = ()
    trades: Tuple[Any, ...] = ()
    history: Tuple[Any, ...] = ()
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        object.__setattr__(self, "market_data", tuple(self.market_data))
        object.__setattr__(self, "balances", MappingProxyType(dict(self.balances)))
        object.__setattr__(self, "positions", MappingProxyType(dict(self.positions)))
        object.__setattr__(self, "orders", tuple(self.orders))
        object.__setattr__(self, "trades", tuple(self.trades))
        object.__setattr__(self, "history", tuple(self.history))

    @property
    def symbol(self) -> str:
        return self.bot.market.symbol

    @property
    def base_asset(self) -> str:
        return split_symbol(self.symbol)[0]

    @property
    def quote_asset(self) -> str:
        return split_symbol(self.symbol)[1]

    @property
    def quote_balance(self) -> float:
        return self.balances.get(self.quote_asset, 0.0)

    @property
    def base_holding(self) -> float:
        return self.positions.get(self.base_asset, 0.0)

    @property
    def closes(self):
        return [c.close for c in self.market_data]


class Strategy(ABC):
    """Base class for strategies.

    Subclasses implement :meth:`on_initialize`, :meth:`evaluate` and
    :meth:`on_cleanup`. State lives on the instance; one instance serves
    exactly one bot run.
    """

    name = "Strategy"

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None):
        self.exchange_manager = exchange_manager
        self.bot_id = bot_id
        self.config: Optional[StrategyConfig] = None
        self.is_initialized = False
        self._last_indicators: Optional[Dict[str, float]] = None
        self._previous_indicators: Optional[Dict[str, float]] = None

    @property
    def parameters(self) -> Mapping[str, Any]:
        return self.config.parameters if self.config else {}

    def param(self, key: str, default: Any = None) -> Any:
        value = self.parameters.get(key)
        return default if value is None else value

    async def initialize(self, config: StrategyConfig) -> None:
        """Install the configuration and run the strategy's own setup.

        Raises:
            StrategyError: If the parameters are unusable
        """
        self.config = config
        await self.on_initialize()
        self.is_initialized = True
        logger.info(f"Bot {self.bot_id}: {self.name} strategy initialized")

    async def execute(self, context: BotContext) -> Signal:
        """Produce the signal for one tick.

        An uninitialized strategy, an empty candle window or a non-positive
        price yields HOLD instead of an error.
        """
        try:
            self.validate_context(context)
        except StrategyError as e:
            logger.warning(f"Bot {self.bot_id}: {self.name} holding: {e.message}")
            return Signal.hold(e.message, timestamp=context.timestamp)
        return await self.evaluate(context)

    async def cleanup(self) -> None:
        self.is_initialized = False
        await self.on_cleanup()
        logger.info(f"Bot {self.bot_id}: {self.name} strategy cleaned up")

    def on_fill(self, signal: Signal, order: ExchangeOrder) -> None:
        """Called after an order produced from ``signal`` was accepted."""

    @abstractmethod
    async def on_initialize(self) -> None:
        ...

    @abstractmethod
    async def evaluate(self, context: BotContext) -> Signal:
        ...

    async def on_cleanup(self) -> None:
        pass

    def validate_context(self, context: BotContext) -> None:
        if not self.is_initialized:
            raise StrategyError("Strategy not initialized", self.bot_id)
        if not context.market_data:
            raise StrategyError("No market data available", self.bot_id)
        if not context.current_price or context.current_price <= 0:
            raise StrategyError("Invalid current price", self.bot_id)

    def hold(self, context: BotContext, reason: str, strength: float = 0.0, confidence: float = 0.5) -> Signal:
        return Signal.hold(reason, strength, confidence, timestamp=context.timestamp)

    # ------------------------------------------------------------------
    # Indicator and condition helpers
    # ------------------------------------------------------------------

    def calculate_indicators(self, context: BotContext) -> Dict[str, float]:
        """Latest value of every configured indicator.

        Indicators without enough data are left out, except RSI and the
        stochastic (neutral 50) and VWAP (current price).
        """
        result: Dict[str, float] = {}
        candles = context.market_data
        prices = [c.close for c in candles]

        for indicator in (self.config.indicators if self.config else ()):
            params = indicator.parameters or {}
            name = indicator.name.lower()
            try:
                if name == "sma":
                    period = int(params.get("period", 20))
                    values = ta.sma(prices, period)
                    if values:
                        result[f"sma_{period}"] = values[-1]
                elif name == "ema":
                    period = int(params.get("period", 20))
                    values = ta.ema(prices, period)
                    if values:
                        result[f"ema_{period}"] = values[-1]
                elif name == "rsi":
                    values = ta.rsi(prices, int(params.get("period", 14)))
                    result["rsi"] = values[-1] if values else 50.0
                elif name == "macd":
                    macd = ta.macd(
                        prices,
                        int(params.get("fastPeriod", 12)),
                        int(params.get("slowPeriod", 26)),
                        int(params.get("signalPeriod", 9)),
                    )
                    if macd.macd:
                        result["macd"] = macd.macd[-1]
                    if macd.signal:
                        result["macd_signal"] = macd.signal[-1]
                        result["macd_histogram"] = macd.histogram[-1]
                elif name == "bollinger":
                    bands = ta.bollinger_bands(
                        prices, int(params.get("period", 20)), float(params.get("standardDeviations", 2))
                    )
                    if bands.middle:
                        result["bb_upper"] = bands.upper[-1]
                        result["bb_middle"] = bands.middle[-1]
                        result["bb_lower"] = bands.lower[-1]
                elif name == "atr":
                    values = ta.atr(candles, int(params.get("period", 14)))
                    if values:
                        result["atr"] = values[-1]
                elif name == "stochastic":
                    stoch = ta.stochastic(candles, int(params.get("kPeriod", 14)), int(params.get("dPeriod", 3)))
                    result["stoch_k"] = stoch.k[-1] if stoch.k else 50.0
                    result["stoch_d"] = stoch.d[-1] if stoch.d else 50.0
                elif name == "vwap":
                    values = ta.vwap(candles)
                    result["vwap"] = values[-1] if values else context.current_price
                else:
                    logger.warning(f"Bot {self.bot_id}: unknown indicator '{indicator.name}'")
            except (TypeError, ValueError, ZeroDivisionError) as e:
                logger.warning(f"Bot {self.bot_id}: error calculating indicator {indicator.name}: {e}")

        self._previous_indicators = self._last_indicators
        self._last_indicators = result
        return result

    def evaluate_conditions(self, indicators: Mapping[str, float]) -> bool:
        """Evaluate the configured condition tree; no conditions means True."""
        if not self.config or not self.config.conditions:
            return True
        return evaluate_group(self.config.conditions, indicators, self._previous_indicators)

    def calculate_position_size(self, context: BotContext, risk_amount: float, price: float) -> float:
        """Base amount to trade for ``risk_amount`` of the quote balance.

        Also bounded by the bot's risk-per-trade share of the portfolio value.
        """
        if price <= 0:
            return 0.0
        max_position = context.quote_balance * risk_amount / price
        max_risk_amount = self.portfolio_value(context) * (context.bot.risk.risk_per_trade or 0.02)
        return min(max_position, max_risk_amount / price)

    def portfolio_value(self, context: BotContext) -> float:
        total = context.quote_balance
        for amount in context.positions.values():
            if amount > 0:
                total += amount * context.current_price
        return total

    @staticmethod
    def should_take_profit(entry_price: float, current_price: float, side: SignalType, take_profit_percent: float) -> bool:
        if entry_price <= 0:
            return False
        if side == SignalType.BUY:
            change = (current_price - entry_price) / entry_price * 100
        else:
            change = (entry_price - current_price) / entry_price * 100
        return change >= take_profit_percent

    @staticmethod
    def should_stop_loss(entry_price: float, current_price: float, side: SignalType, stop_loss_percent: float) -> bool:
        if entry_price <= 0:
            return False
        if side == SignalType.BUY:
            change = (entry_price - current_price) / entry_price * 100
        else:
            change = (current_price - entry_price) / entry_price * 100
        return change >= stop_loss_percent

    @staticmethod
    def is_overbought(indicators: Mapping[str, float]) -> bool:
        return indicators.get("rsi", 50) > 70 or indicators.get("stoch_k", 50) > 80

    @staticmethod
    def is_oversold(indicators: Mapping[str, float]) -> bool:
        return indicators.get("rsi", 50) < 30 or indicators.get("stoch_k", 50) < 20

    @staticmethod
    def is_uptrend(candles) -> bool:
        if len(candles) < 20:
            return False
        sma20 = ta.sma([c.close for c in candles[-20:]], 20)
        return candles[-1].close > sma20[-1]

    @staticmethod
    def is_downtrend(candles) -> bool:
        if len(candles) < 20:
            return False
        sma20 = ta.sma([c.close for c in candles[-20:]], 20)
        return candles[-1].close < sma20[-1]

    @staticmethod
    def calculate_volatility(candles) -> float:
        values = ta.volatility([c.close for c in candles], 20)
        return values[-1] if values else 0.0

    def status(self) -> Dict[str, Any]:
        return {"name": self.name, "initialized": self.is_initialized}


@dataclass
class OpenPosition:
    side: SignalType
    entry_price: float
    size: float
    entry_time: datetime
    entry_atr: Optional[float] = None


class PositionStrategy(Strategy):
    """Strategy holding at most one directional position at a time.

    The position opens and closes from :meth:`on_fill`, so a signal the
    risk gate rejects never changes strategy state.

    With ``atrStopMultiplier`` set, an open position is closed once price
    crosses entry -/+ multiplier * ATR, before the subclass is consulted.
    """

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None):
        super().__init__(exchange_manager, bot_id)
        self.position: Optional[OpenPosition] = None
        self.total_trades = 0
        self.winning_trades = 0
        self.consecutive_wins = 0
        self.consecutive_losses = 0
        self._last_atr: Optional[float] = None

    @property
    def allow_short(self) -> bool:
        return bool(self.param("allowShort", False))

    @property
    def atr_stop_multiplier(self) -> float:
        return float(self.param("atrStopMultiplier", 0) or 0)

    async def execute(self, context: BotContext) -> Signal:
        stop = self.check_atr_stop(context)
        if stop is not None:
            return stop
        return await super().execute(context)

    def check_atr_stop(self, context: BotContext) -> Optional[Signal]:
        """Exit signal when price crossed the ATR stop of the open position."""
        if not self.is_initialized or self.atr_stop_multiplier <= 0 or context.current_price <= 0:
            return None
        values = ta.atr(context.market_data, ATR_STOP_PERIOD)
        self._last_atr = values[-1] if values else None
        if self.position is None:
            return None

        atr = self.position.entry_atr or self._last_atr
        if not atr:
            return None
        # Imported here: risk_analytics depends on this module
        from ..risk_analytics import risk_analytics

        decision = risk_analytics.evaluate_stop_loss(
            self.position.entry_price, context.current_price, self.position.side, atr, self.atr_stop_multiplier
        )
        if not decision.should_exit:
            return None
        logger.info(f"Bot {self.bot_id}: {decision.reason}")
        return Signal(
            self.exit_signal_type(), 1.0, 0.95, decision.reason,
            timestamp=context.timestamp, amount=self.position.size, price=context.current_price,
        )

    def on_fill(self, signal: Signal, order: ExchangeOrder) -> None:
        price = order.price or signal.price or 0.0
        if self.position is None:
            self.position = OpenPosition(signal.type, price, order.amount, signal.timestamp, self._last_atr)
            self.total_trades += 1
            logger.info(f"Bot {self.bot_id}: entered {signal.type.value} position at {price} size {order.amount}")
            return

        if signal.type == self.position.side:
            return

        pnl = self.unrealized_pnl(price)
        if pnl > 0:
            self.winning_trades += 1
            self.consecutive_wins += 1
            self.consecutive_losses = 0
        else:
            self.consecutive_losses += 1
            self.consecutive_wins = 0
        logger.info(f"Bot {self.bot_id}: exited {self.position.side.value} position at {price}, P&L {pnl:.2f}")
        self.position = None

    def unrealized_pnl(self, price: float) -> float:
        if self.position is None:
            return 0.0
        if self.position.side == SignalType.BUY:
            return (price - self.position.entry_price) * self.position.size
        return (self.position.entry_price - price) * self.position.size

    def exit_signal_type(self) -> SignalType:
        return SignalType.SELL if self.position.side == SignalType.BUY else SignalType.BUY

    async def on_cleanup(self) -> None:
        self.position = None
        self._last_atr = None
        self.consecutive_wins = 0
        self.consecutive_losses = 0

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            "position": None if self.position is None else {
                "side": self.position.side.value,
                "entry_price": self.position.entry_price,
                "size": self.position.size,
                "entry_time": self.position.entry_time.isoformat(),
            },
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "win_rate": self.winning_trades / self.total_trades * 100 if self.total_trades else 0.0,
            "consecutive_wins": self.consecutive_wins,
            "consecutive_losses": self.consecutive_losses,
        })
        return status
