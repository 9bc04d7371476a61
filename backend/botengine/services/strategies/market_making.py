"""Market making strategy: resting bids and asks around the mid price."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import StrategyError
from ..exchange import OrderRequest, OrderSide, OrderType, TimeInForce
from .base import BotContext, Signal, SignalType, Strategy

logger = logging.getLogger(__name__)

INVENTORY_SKEW = 0.1   # price shift per unit of inventory ratio deviation
DRIFT_MULTIPLIER = 2.0


@dataclass
class QuoteOrder:
    order_id: str
    side: SignalType
    price: float
    amount: float
    created_at: datetime


class MarketMakingStrategy(Strategy):
    """Keeps up to ``maxOrders`` limit orders on each side of the book.

    Quotes are shifted against the inventory imbalance; once the imbalance
    passes ``riskLimit`` only the side that reduces it is quoted. Orders are
    placed here directly, so the returned signal is always HOLD.
    """

    name = "Market Making"

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None):
        super().__init__(exchange_manager, bot_id)
        self.orders: List[QuoteOrder] = []
        self.filled_orders = 0
        self.inventory_ratio = 0.0
        self._last_refresh_at: Optional[datetime] = None
        self._account_id: Optional[int] = None
        self._symbol: Optional[str] = None

    async def on_initialize(self) -> None:
        self.spread_percent = float(self.param("spreadPercent", 0))
        self.order_size = float(self.param("orderSize", 0))
        self.max_orders = int(self.param("maxOrders", 0))
        self.inventory_target = float(self.param("inventoryTarget", 0.5))
        self.risk_limit = float(self.param("riskLimit", 0))
        self.min_spread = float(self.param("minSpread", 0))
        self.max_spread = float(self.param("maxSpread", 100))
        self.refresh_interval = float(self.param("refreshInterval", 5))

        if self.spread_percent <= 0:
            raise StrategyError("Invalid market making configuration: spread percent must be positive", self.bot_id)
        if self.order_size <= 0:
            raise StrategyError("Invalid market making configuration: order size must be positive", self.bot_id)
        if self.max_orders <= 0:
            raise StrategyError("Invalid market making configuration: max orders must be positive", self.bot_id)
        if not 0 <= self.inventory_target <= 1:
            raise StrategyError("Invalid market making configuration: inventory target must be between 0 and 1", self.bot_id)
        if self.risk_limit <= 0:
            raise StrategyError("Invalid market making configuration: risk limit must be positive", self.bot_id)
        if self.exchange_manager is None:
            raise StrategyError("Market making needs an exchange manager", self.bot_id)

    @property
    def spread(self) -> float:
        return max(self.min_spread, min(self.max_spread, self.spread_percent)) / 100

    def _orders_on(self, side: SignalType) -> List[QuoteOrder]:
        return [o for o in self.orders if o.side == side]

    def _update_inventory(self, context: BotContext) -> float:
        base_value = context.base_holding * context.current_price
        total = base_value + context.quote_balance
        self.inventory_ratio = base_value / total if total > 0 else 0.0
        return self.inventory_ratio - self.inventory_target

    async def evaluate(self, context: BotContext) -> Signal:
        self._account_id = context.bot.market.exchange_account_id
        self._symbol = context.symbol
        deviation = self._update_inventory(context)

        now = context.timestamp
        if self._last_refresh_at is not None and (now - self._last_refresh_at).total_seconds() < self.refresh_interval:
            return self._status_signal(context)
        self._last_refresh_at = now

        await self._sync_orders()

        mid = context.current_price
        # Skew is bounded by a quarter of the spread so neither quote crosses the mid.
        skew = max(-self.spread / 4, min(self.spread / 4, deviation * INVENTORY_SKEW))
        shift = 1 - skew
        bid = mid * (1 - self.spread / 2) * shift
        ask = mid * (1 + self.spread / 2) * shift

        await self._cancel_drifted(mid)

        sides = [SignalType.BUY, SignalType.SELL]
        if abs(deviation) > self.risk_limit:
            # Too much base: only sell. Too little: only buy.
            sides = [SignalType.SELL] if deviation > 0 else [SignalType.BUY]
            for order in [o for o in self.orders if o.side not in sides]:
                await self._cancel(order)

        for side in sides:
            if len(self._orders_on(side)) >= self.max_orders:
                continue
            price = bid if side == SignalType.BUY else ask
            if side == SignalType.BUY and context.quote_balance < self.order_size * price:
                continue
            if side == SignalType.SELL and context.base_holding < self.order_size:
                continue
            await self._place(side, price, now)

        return self._status_signal(context)

    def _status_signal(self, context: BotContext) -> Signal:
        return self.hold(
            context,
            f"Market making active: {len(self._orders_on(SignalType.BUY))} buy orders, "
            f"{len(self._orders_on(SignalType.SELL))} sell orders, spread: {self.spread * 100:.2f}%, "
            f"inventory: {self.inventory_ratio:.2f}",
            0.4,
            0.8,
        )

    async def _sync_orders(self) -> None:
        if not self.orders:
            return
        try:
            open_orders = await self.exchange_manager.get_open_orders(self._account_id, self._symbol)
        except Exception as e:
            logger.error(f"Bot {self.bot_id}: error updating market making orders: {e}")
            return
        open_ids = {order.id for order in open_orders}
        still_open = [o for o in self.orders if o.order_id in open_ids]
        self.filled_orders += len(self.orders) - len(still_open)
        self.orders = still_open

    async def _cancel_drifted(self, mid: float) -> None:
        limit = DRIFT_MULTIPLIER * self.spread
        for order in list(self.orders):
            if abs(order.price - mid) / mid > limit:
                await self._cancel(order)

    async def _place(self, side: SignalType, price: float, now: datetime) -> None:
        try:
            result = await self.exchange_manager.create_order(self._account_id, OrderRequest(
                symbol=self._symbol,
                side=OrderSide.BUY if side == SignalType.BUY else OrderSide.SELL,
                type=OrderType.LIMIT,
                amount=self.order_size,
                price=price,
                time_in_force=TimeInForce.GTC,
            ))
        except Exception as e:
            logger.error(f"Bot {self.bot_id}: error creating {side.value} quote at {price:.2f}: {e}")
            return
        self.orders.append(QuoteOrder(result.id, side, price, self.order_size, now))

    async def _cancel(self, order: QuoteOrder) -> None:
        try:
            await self.exchange_manager.cancel_order(self._account_id, order.order_id, self._symbol)
        except Exception as e:
            logger.error(f"Bot {self.bot_id}: error cancelling order {order.order_id}: {e}")
        if order in self.orders:
            self.orders.remove(order)

    async def on_cleanup(self) -> None:
        for order in list(self.orders):
            await self._cancel(order)
        self.orders = []
        self._last_refresh_at = None

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            "buy_orders": len(self._orders_on(SignalType.BUY)),
            "sell_orders": len(self._orders_on(SignalType.SELL)),
            "filled_orders": self.filled_orders,
            "inventory_ratio": self.inventory_ratio,
        })
        return status
