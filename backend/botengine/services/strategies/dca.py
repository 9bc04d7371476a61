"""Dollar cost averaging strategy."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import StrategyError
from ..exchange import ExchangeOrder
from .base import BotContext, Signal, Strategy

logger = logging.getLogger(__name__)

MIN_ORDER_INTERVAL_SECONDS = 300


@dataclass
class DCAEntry:
    index: int
    target_price: float
    quote_amount: float
    executed: bool = False
    executed_price: Optional[float] = None
    executed_amount: float = 0.0
    executed_at: Optional[datetime] = None


class DCAStrategy(Strategy):
    """Splits ``totalAmount`` into ``orderCount`` buys spread around a target price.

    Entries are kept sorted by target price and executed in that order, at
    most one every five minutes.
    """

    name = "Dollar Cost Averaging"

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None):
        super().__init__(exchange_manager, bot_id)
        self.entries: List[DCAEntry] = []
        self.total_invested = 0.0
        self.total_acquired = 0.0
        self.average_price = 0.0
        self.executed_count = 0
        self._last_order_at: Optional[datetime] = None
        self._started_at: Optional[datetime] = None
        self._last_price: Optional[float] = None
        self._pending_entry: Optional[DCAEntry] = None

    async def on_initialize(self) -> None:
        total = self.param("totalAmount")
        target = self.param("targetPrice")
        count = self.param("orderCount")
        deviation = self.param("priceDeviation")

        if not total or float(total) <= 0:
            raise StrategyError("Invalid DCA configuration: total amount must be positive", self.bot_id)
        if not target or float(target) <= 0:
            raise StrategyError("Invalid DCA configuration: target price must be positive", self.bot_id)
        if not count or int(count) < 1:
            raise StrategyError("Invalid DCA configuration: order count must be at least 1", self.bot_id)
        if not deviation or float(deviation) <= 0:
            raise StrategyError("Invalid DCA configuration: price deviation must be positive", self.bot_id)

        self.total_amount = float(total)
        self.target_price = float(target)
        self.order_count = int(count)
        self.price_deviation = float(deviation)
        self.max_orders = int(self.param("maxOrders", self.order_count))
        self._build_plan()

    def _deviation_multiplier(self, index: int) -> float:
        if self.order_count == 1:
            return 0.0
        center = (self.order_count - 1) / 2
        return ((index - center) / (self.order_count / 2)) * 0.5

    def _build_plan(self) -> None:
        amount = self.total_amount / self.order_count
        self.entries = sorted(
            (
                DCAEntry(
                    index=i,
                    target_price=self.target_price * (1 + self.price_deviation * self._deviation_multiplier(i)),
                    quote_amount=amount,
                )
                for i in range(self.order_count)
            ),
            key=lambda entry: entry.target_price,
        )
        logger.info(
            f"Bot {self.bot_id}: DCA plan with {len(self.entries)} orders, "
            f"targets {self.entries[0].target_price:.2f} - {self.entries[-1].target_price:.2f}"
        )

    @property
    def is_completed(self) -> bool:
        return all(entry.executed for entry in self.entries) or self.executed_count >= self.max_orders

    def next_entry(self) -> Optional[DCAEntry]:
        return next((entry for entry in self.entries if not entry.executed), None)

    def _target_reached(self, price: float, entry: DCAEntry) -> bool:
        if entry.target_price >= self.target_price:
            return price <= entry.target_price
        return price >= entry.target_price

    async def evaluate(self, context: BotContext) -> Signal:
        price = context.current_price
        self._last_price = price
        # An entry still pending here never filled and stays open
        self._pending_entry = None
        if self._started_at is None:
            self._started_at = context.timestamp

        if self.is_completed:
            return self.hold(context, "DCA plan completed. All orders executed.", confidence=1.0)

        entry = self.next_entry()
        if entry is None:
            return self.hold(context, "No pending DCA orders", confidence=1.0)

        if self._last_order_at is not None:
            elapsed = (context.timestamp - self._last_order_at).total_seconds()
            if elapsed < MIN_ORDER_INTERVAL_SECONDS:
                return self.hold(context, f"Next DCA order allowed in {MIN_ORDER_INTERVAL_SECONDS - elapsed:.0f}s")

        available = context.quote_balance
        if available < entry.quote_amount:
            return self.hold(
                context,
                f"Insufficient balance for next DCA order. Need: {entry.quote_amount}, Available: {available}",
            )

        if not self._target_reached(price, entry):
            distance = abs(price - self.target_price) / self.target_price
            strength = max(0.0, 1 - distance / self.price_deviation)
            return self.hold(
                context,
                f"Waiting for price opportunity. Current: {price}, Target: {entry.target_price:.2f}, "
                f"Distance: {distance * 100:.2f}%",
                strength * 0.6,
                0.8,
            )

        quote_amount = min(entry.quote_amount, available)
        self._pending_entry = entry
        return Signal.buy(
            0.8,
            0.95,
            f"DCA buy {quote_amount:.2f} at {price:.2f} (Order {entry.index + 1}/{self.order_count})",
            timestamp=context.timestamp,
            amount=quote_amount / price,
            price=price,
        )

    def on_fill(self, signal: Signal, order: ExchangeOrder) -> None:
        """Book the pending entry with what the exchange actually filled."""
        entry, self._pending_entry = self._pending_entry, None
        if entry is None:
            return
        amount = order.filled or order.amount
        price = order.price or signal.price
        if not amount or not price:
            logger.warning(f"Bot {self.bot_id}: DCA fill {order.id} without amount or price, entry left pending")
            return

        quote_amount = amount * price
        entry.executed = True
        entry.executed_price = price
        entry.executed_amount = quote_amount
        entry.executed_at = signal.timestamp
        self.executed_count += 1
        self.total_invested += quote_amount
        self.total_acquired += amount
        self.average_price = self.total_invested / self.total_acquired
        self._last_order_at = signal.timestamp

        logger.info(
            f"Bot {self.bot_id}: DCA order {entry.index + 1}/{self.order_count} at {price}: "
            f"invested {self.total_invested:.2f}, acquired {self.total_acquired:.8f}, "
            f"average {self.average_price:.2f}"
        )

    async def on_cleanup(self) -> None:
        self.entries = []
        self.total_invested = 0.0
        self.total_acquired = 0.0
        self.average_price = 0.0
        self.executed_count = 0
        self._last_order_at = None
        self._started_at = None
        self._pending_entry = None

    def status(self) -> Dict[str, Any]:
        executed = sum(1 for entry in self.entries if entry.executed)
        total = len(self.entries)
        price = self._last_price or self.target_price if self.entries else 0.0
        value = self.total_acquired * price
        pnl = value - self.total_invested
        status = super().status()
        status.update({
            "total_orders": total,
            "executed_orders": executed,
            "pending_orders": total - executed,
            "total_invested": self.total_invested,
            "total_acquired": self.total_acquired,
            "average_price": self.average_price,
            "profit_loss": pnl,
            "profit_loss_percent": pnl / self.total_invested * 100 if self.total_invested else 0.0,
            "completion_percentage": executed / total * 100 if total else 0.0,
            "completed": self.is_completed if self.entries else False,
        })
        return status
