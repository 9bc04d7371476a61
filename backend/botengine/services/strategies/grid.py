"""Grid trading strategy."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import StrategyError
from ..exchange import ExchangeOrder
from .base import BotContext, Signal, SignalType, Strategy

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.001      # 0.1% widening of the crossed span
MIN_REBALANCE_SECONDS = 300


@dataclass
class GridLevel:
    price: float
    amount: float
    side: SignalType
    filled: bool = False
    order_id: Optional[str] = None


class GridStrategy(Strategy):
    """Alternating BUY/SELL ladder between a lower and an upper price.

    Each level fills at most once per ladder. A level fills when the price
    crosses it between two ticks; BUY levels need quote balance and SELL
    levels need enough base holdings. When the price drifts too far from
    the centre the ladder is re-centred with the same width.
    """

    name = "Grid Trading"

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None):
        super().__init__(exchange_manager, bot_id)
        self.levels: List[GridLevel] = []
        self.lower_price = 0.0
        self.upper_price = 0.0
        self._last_rebalance_at: Optional[datetime] = None
        self._previous_price: Optional[float] = None
        self._pending_level: Optional[GridLevel] = None
        self._pending_from: Optional[float] = None
        self._account_id: Optional[int] = None
        self._symbol: Optional[str] = None

    async def on_initialize(self) -> None:
        upper = self.param("upperPrice")
        lower = self.param("lowerPrice")
        levels = self.param("gridLevels")
        amount = self.param("orderAmount")

        if not upper or not lower or not levels or not amount:
            raise StrategyError("Invalid grid configuration: missing required parameters", self.bot_id)
        if float(upper) <= float(lower):
            raise StrategyError("Upper price must be greater than lower price", self.bot_id)
        if int(levels) < 2:
            raise StrategyError("Grid levels must be at least 2", self.bot_id)
        if float(amount) <= 0:
            raise StrategyError("Order amount must be positive", self.bot_id)

        self.upper_price = float(upper)
        self.lower_price = float(lower)
        self.grid_levels = int(levels)
        self.order_amount = float(amount)
        self.rebalance_threshold = float(self.param("rebalanceThreshold", 0.05))
        self._build_ladder()

    def _build_ladder(self) -> None:
        width = self.upper_price - self.lower_price
        self.levels = [
            GridLevel(
                price=self.lower_price + width * i / (self.grid_levels - 1),
                amount=self.order_amount,
                side=SignalType.BUY if i % 2 == 0 else SignalType.SELL,
            )
            for i in range(self.grid_levels)
        ]
        logger.info(
            f"Bot {self.bot_id}: grid built with {len(self.levels)} levels "
            f"from {self.lower_price} to {self.upper_price}"
        )

    @property
    def center(self) -> float:
        return (self.upper_price + self.lower_price) / 2

    def _should_rebalance(self, price: float, now: datetime) -> bool:
        if self._last_rebalance_at is None:
            self._last_rebalance_at = now
            return False
        if (now - self._last_rebalance_at).total_seconds() < MIN_REBALANCE_SECONDS:
            return False
        return abs(price - self.center) / self.center > self.rebalance_threshold

    def _rebalance(self, price: float, now: datetime) -> None:
        half_width = (self.upper_price - self.lower_price) / 2
        self.upper_price = price + half_width
        self.lower_price = price - half_width
        self._build_ladder()
        self._previous_price = None
        self._last_rebalance_at = now
        logger.info(f"Bot {self.bot_id}: grid rebalanced to {self.lower_price} - {self.upper_price}")

    async def evaluate(self, context: BotContext) -> Signal:
        price = context.current_price
        self._account_id = context.bot.market.exchange_account_id
        self._symbol = context.symbol

        if self._pending_level is not None:
            # The last signal never filled: sweep again from where it started
            self._previous_price = self._pending_from
            self._pending_level = None

        if self._should_rebalance(price, context.timestamp):
            self._rebalance(price, context.timestamp)

        if price > self.upper_price or price < self.lower_price:
            self._previous_price = price
            return self.hold(
                context,
                f"Price {price} is outside grid range ({self.lower_price} - {self.upper_price})",
                confidence=1.0,
            )

        previous = self._previous_price if self._previous_price is not None else price
        self._previous_price = price
        span_low = min(previous, price) * (1 - PRICE_TOLERANCE)
        span_high = max(previous, price) * (1 + PRICE_TOLERANCE)

        candidates = []
        for level in self.levels:
            if level.filled or not (span_low <= level.price <= span_high):
                continue
            if level.side == SignalType.BUY and context.quote_balance <= 0:
                continue
            if level.side == SignalType.SELL and context.base_holding < level.amount:
                continue
            candidates.append(level)

        if not candidates:
            pending = sum(1 for level in self.levels if not level.filled)
            return self.hold(context, f"Grid active: {pending} pending levels", 0.3, 0.8)

        level = min(candidates, key=lambda lv: abs(lv.price - price))
        self._pending_level = level
        self._pending_from = previous
        reason = f"Grid {level.side.value.lower()} signal at {level.price:.2f} (current: {price})"
        if level.side == SignalType.BUY:
            return Signal.buy(0.7, 0.9, reason, timestamp=context.timestamp, amount=level.amount, price=level.price)
        return Signal.sell(0.7, 0.9, reason, timestamp=context.timestamp, amount=level.amount, price=level.price)

    def on_fill(self, signal: Signal, order: ExchangeOrder) -> None:
        if self._pending_level is not None:
            self._pending_level.filled = True
            self._pending_level.order_id = order.id
            self._pending_level = None

    async def on_cleanup(self) -> None:
        if self.exchange_manager is not None and self._account_id is not None:
            for level in self.levels:
                if not level.order_id:
                    continue
                try:
                    await self.exchange_manager.cancel_order(self._account_id, level.order_id, self._symbol)
                except Exception as e:
                    logger.warning(f"Bot {self.bot_id}: could not cancel grid order {level.order_id}: {e}")
        self.levels = []
        self._previous_price = None
        self._last_rebalance_at = None
        self._pending_level = None
        self._pending_from = None

    def status(self) -> Dict[str, Any]:
        filled = sum(1 for level in self.levels if level.filled)
        total = len(self.levels)
        status = super().status()
        status.update({
            "total_levels": total,
            "filled_levels": filled,
            "pending_levels": total - filled,
            "efficiency": filled / total if total else 0.0,
            "grid_range": {"lower": self.lower_price, "upper": self.upper_price},
        })
        return status
