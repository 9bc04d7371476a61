"""Cross-exchange arbitrage strategy."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import StrategyError
from ..exchange import OrderRequest, OrderSide, OrderType, TimeInForce
from .base import BotContext, Signal, Strategy

logger = logging.getLogger(__name__)

FEE_RATE = 0.001               # per leg
POSITION_TIMEOUT_SECONDS = 300
EVICT_AFTER_SECONDS = 60


class ArbitrageStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ENDED_STATUSES = (ArbitrageStatus.FILLED, ArbitrageStatus.FAILED, ArbitrageStatus.CANCELLED)


@dataclass
class ArbitrageOpportunity:
    buy_account: int
    sell_account: int
    buy_price: float
    sell_price: float
    price_difference: float
    profit_percent: float
    volume: float
    fees: float
    net_profit: float
    estimated_profit: float


@dataclass
class ArbitragePosition:
    id: str
    symbol: str
    buy_account: int
    sell_account: int
    buy_price: float
    sell_price: float
    amount: float
    estimated_profit: float
    start_time: datetime
    status: ArbitrageStatus = ArbitrageStatus.PENDING
    buy_order_id: Optional[str] = None
    sell_order_id: Optional[str] = None
    filled_amount: float = 0.0
    end_time: Optional[datetime] = None


class ArbitrageStrategy(Strategy):
    """Buys on the cheaper exchange account and sells on the dearer one.

    Both legs are submitted here as limit orders, so the signal returned to
    the engine is always HOLD.
    """

    name = "Arbitrage"

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None):
        super().__init__(exchange_manager, bot_id)
        self.positions: Dict[str, ArbitragePosition] = {}
        self._last_scan_at: Optional[datetime] = None
        self.total_trades = 0
        self.successful_trades = 0
        self.failed_trades = 0
        self.total_profit = 0.0

    async def on_initialize(self) -> None:
        accounts = self.param("exchanges") or []
        if len(accounts) < 2:
            raise StrategyError("Invalid arbitrage configuration: at least 2 exchanges required", self.bot_id)
        for key, label in (("minProfit", "minimum profit"), ("maxSlippage", "maximum slippage"),
                           ("orderAmount", "order amount")):
            value = self.param(key)
            if not value or float(value) <= 0:
                raise StrategyError(f"Invalid arbitrage configuration: {label} must be positive", self.bot_id)
        if self.exchange_manager is None:
            raise StrategyError("Arbitrage needs an exchange manager", self.bot_id)

        self.accounts = [int(a) for a in accounts]
        self.min_profit = float(self.param("minProfit"))
        self.max_slippage = float(self.param("maxSlippage"))
        self.order_amount = float(self.param("orderAmount"))
        self.scan_interval = float(self.param("scanInterval", 5))

        for account_id in self.accounts:
            try:
                connected = await self.exchange_manager.test_connection(account_id)
            except Exception as e:
                raise StrategyError(f"Exchange connection failed for {account_id}: {e}", self.bot_id)
            if not connected:
                raise StrategyError(f"Cannot connect to exchange account {account_id}", self.bot_id)

        logger.info(f"Bot {self.bot_id}: arbitrage across {len(self.accounts)} exchange accounts")

    async def evaluate(self, context: BotContext) -> Signal:
        now = context.timestamp
        if self._last_scan_at is not None and (now - self._last_scan_at).total_seconds() < self.scan_interval:
            return self.hold(context, "Waiting for next scan cycle", 0.2, 0.6)
        self._last_scan_at = now

        await self._update_positions(now)

        opportunities = await self.scan_opportunities(context)
        if opportunities:
            best = opportunities[0]
            position = await self._open_position(best, context)
            if position is not None:
                return self.hold(
                    context,
                    f"Arbitrage position {position.id} opened: buy {best.volume} on account "
                    f"{best.buy_account} at {best.buy_price}, sell on account {best.sell_account} "
                    f"at {best.sell_price} ({best.profit_percent:.3f}%, est. {best.estimated_profit:.2f})",
                    0.9,
                    0.95,
                )

        active = sum(1 for p in self.positions.values() if p.status not in ENDED_STATUSES)
        if active:
            return self.hold(context, f"Monitoring {active} active arbitrage positions", 0.3, 0.7)
        return self.hold(context, f"Scanning for opportunities across {len(self.accounts)} exchanges", 0.3, 0.7)

    async def scan_opportunities(self, context: BotContext) -> List[ArbitrageOpportunity]:
        """Profitable buy/sell account pairs, best net profit first."""
        symbol = context.symbol

        async def fetch(account_id):
            try:
                return account_id, await self.exchange_manager.get_ticker(account_id, symbol)
            except Exception as e:
                logger.warning(f"Bot {self.bot_id}: failed to get ticker from account {account_id}: {e}")
                return None

        tickers = [t for t in await asyncio.gather(*(fetch(a) for a in self.accounts)) if t is not None]

        opportunities = []
        for buy_account, buy_ticker in tickers:
            for sell_account, sell_ticker in tickers:
                if buy_account == sell_account:
                    continue
                opportunity = self._build_opportunity(
                    buy_account, sell_account, buy_ticker.ask, sell_ticker.bid, context
                )
                if opportunity is not None:
                    opportunities.append(opportunity)

        opportunities.sort(key=lambda o: o.net_profit, reverse=True)
        return opportunities

    def _build_opportunity(
        self,
        buy_account: int,
        sell_account: int,
        buy_price: float,
        sell_price: float,
        context: BotContext,
    ) -> Optional[ArbitrageOpportunity]:
        if not buy_price or not sell_price or buy_price <= 0 or sell_price <= 0:
            return None
        difference = sell_price - buy_price
        profit_percent = difference / buy_price * 100
        if profit_percent < self.min_profit:
            return None
        fees = (buy_price + sell_price) * FEE_RATE
        net_profit = difference - fees
        if net_profit <= 0:
            return None
        volume = min(self.order_amount, context.quote_balance / buy_price)
        if volume <= 0:
            return None
        return ArbitrageOpportunity(
            buy_account=buy_account,
            sell_account=sell_account,
            buy_price=buy_price,
            sell_price=sell_price,
            price_difference=difference,
            profit_percent=profit_percent,
            volume=volume,
            fees=fees,
            net_profit=net_profit,
            estimated_profit=net_profit * volume,
        )

    async def _open_position(self, opportunity: ArbitrageOpportunity, context: BotContext) -> Optional[ArbitragePosition]:
        position = ArbitragePosition(
            id=f"arb_{uuid.uuid4().hex[:12]}",
            symbol=context.symbol,
            buy_account=opportunity.buy_account,
            sell_account=opportunity.sell_account,
            buy_price=opportunity.buy_price,
            sell_price=opportunity.sell_price,
            amount=opportunity.volume,
            estimated_profit=opportunity.estimated_profit,
            start_time=context.timestamp,
        )
        self.positions[position.id] = position

        try:
            buy = await self.exchange_manager.create_order(position.buy_account, OrderRequest(
                symbol=position.symbol,
                side=OrderSide.BUY,
                type=OrderType.LIMIT,
                amount=position.amount,
                price=position.buy_price * (1 + self.max_slippage),
                time_in_force=TimeInForce.GTC,
            ))
            position.buy_order_id = buy.id
            sell = await self.exchange_manager.create_order(position.sell_account, OrderRequest(
                symbol=position.symbol,
                side=OrderSide.SELL,
                type=OrderType.LIMIT,
                amount=position.amount,
                price=position.sell_price * (1 - self.max_slippage),
                time_in_force=TimeInForce.GTC,
            ))
            position.sell_order_id = sell.id
        except Exception as e:
            logger.error(f"Bot {self.bot_id}: failed to execute arbitrage opportunity: {e}")
            await self._cancel_legs(position)
            del self.positions[position.id]
            self.failed_trades += 1
            return None

        position.status = ArbitrageStatus.PARTIALLY_FILLED
        self.total_trades += 1
        logger.info(
            f"Bot {self.bot_id}: arbitrage position {position.id} opened, "
            f"estimated profit {position.estimated_profit:.2f}"
        )
        return position

    async def _update_positions(self, now: datetime) -> None:
        for position in list(self.positions.values()):
            if position.status in ENDED_STATUSES:
                if (now - (position.end_time or position.start_time)).total_seconds() > EVICT_AFTER_SECONDS:
                    del self.positions[position.id]
                continue
            await self._poll_position(position, now)

    async def _poll_position(self, position: ArbitragePosition, now: datetime) -> None:
        try:
            buy_open = await self._is_open(position.buy_account, position.buy_order_id, position.symbol)
            sell_open = await self._is_open(position.sell_account, position.sell_order_id, position.symbol)
        except Exception as e:
            logger.error(f"Bot {self.bot_id}: error polling arbitrage position {position.id}: {e}")
            position.status = ArbitrageStatus.FAILED
            position.end_time = now
            self.failed_trades += 1
            return

        if not buy_open and not sell_open:
            position.status = ArbitrageStatus.FILLED
            position.filled_amount = position.amount
            position.end_time = now
            self.successful_trades += 1
            self.total_profit += position.estimated_profit
            logger.info(f"Bot {self.bot_id}: arbitrage position {position.id} filled")
        elif (now - position.start_time).total_seconds() > POSITION_TIMEOUT_SECONDS:
            await self._cancel_legs(position)
            position.status = ArbitrageStatus.CANCELLED
            position.end_time = now
            logger.warning(f"Bot {self.bot_id}: arbitrage position {position.id} timed out and was cancelled")

    async def _is_open(self, account_id: int, order_id: Optional[str], symbol: str) -> bool:
        if not order_id:
            return False
        orders = await self.exchange_manager.get_open_orders(account_id, symbol)
        return any(order.id == order_id for order in orders)

    async def _cancel_legs(self, position: ArbitragePosition) -> None:
        for account_id, order_id in ((position.buy_account, position.buy_order_id),
                                     (position.sell_account, position.sell_order_id)):
            if not order_id:
                continue
            try:
                await self.exchange_manager.cancel_order(account_id, order_id, position.symbol)
            except Exception as e:
                logger.warning(f"Bot {self.bot_id}: could not cancel arbitrage order {order_id}: {e}")

    async def on_cleanup(self) -> None:
        for position in self.positions.values():
            if position.status not in ENDED_STATUSES:
                await self._cancel_legs(position)
                position.status = ArbitrageStatus.CANCELLED
        self.positions.clear()
        self._last_scan_at = None

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            "active_positions": sum(1 for p in self.positions.values() if p.status not in ENDED_STATUSES),
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "failed_trades": self.failed_trades,
            "success_rate": self.successful_trades / self.total_trades * 100 if self.total_trades else 0.0,
            "total_profit": self.total_profit,
        })
        return status
