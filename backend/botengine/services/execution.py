"""Execution pipeline: retried order submission and its bookkeeping."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..models import ExecutionAction, ExecutionStatus, TradeSide
from .bot_store import BotStore
from .config import config_service
from .errors import ExecutionError
from .exchange import ExchangeOrder, OrderRequest, OrderSide
from .logging_service import BotLoggingService, TradeLogEntry
from .performance import realized_pnl
from .strategies.base import BotContext, Signal

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def execute_with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``fn`` up to ``attempts`` times.

    Waits ``base_delay * attempt`` seconds after the attempt-th failure.

    Raises:
        The last exception if every attempt fails
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt == attempts:
                raise
            delay = base_delay * attempt
            logger.warning(f"Attempt {attempt}/{attempts} failed: {e}; retrying in {delay:.1f}s")
            await sleep(delay)


class ExecutionPipeline:
    """Submits sized orders and records the outcome."""

    def __init__(self, exchange_manager, store: BotStore, retry_base_delay: Optional[float] = None):
        self.exchange_manager = exchange_manager
        self.store = store
        self._retry_base_delay = retry_base_delay

    @property
    def retry_base_delay(self) -> float:
        if self._retry_base_delay is not None:
            return self._retry_base_delay
        return config_service.get("engine.retry_base_delay_seconds")

    async def submit(
        self,
        bot_id: int,
        signal: Signal,
        context: BotContext,
        order_request: OrderRequest,
        trade_log: Optional[BotLoggingService] = None,
    ) -> ExchangeOrder:
        """Submit an order with retry.

        On success a SUCCESS TRADE record, a Trade row and a trade log line
        are written. On exhaustion a FAILED TRADE record is written.

        Raises:
            ExecutionError: If every attempt failed
        """
        account_id = context.bot.market.exchange_account_id
        attempts = context.bot.execution.retry_attempts

        try:
            order = await execute_with_retry(
                lambda: self.exchange_manager.create_order(account_id, order_request),
                attempts,
                self.retry_base_delay,
            )
        except Exception as e:
            message = f"Order submission failed after {attempts} attempts: {e}"
            logger.error(f"Bot {bot_id}: {message}")
            if trade_log:
                trade_log.log_activity(message, "ERROR")
            await self.store.append_execution(
                bot_id,
                ExecutionAction.TRADE,
                ExecutionStatus.FAILED,
                {
                    "signal": signal.to_dict(),
                    "order_request": order_request.to_dict(),
                    "error": type(e).__name__,
                },
                error=message,
            )
            raise ExecutionError(message, bot_id) from e

        price = order.price or order_request.price or context.current_price
        amount = order.filled or order.amount
        side = TradeSide.BUY if order_request.side == OrderSide.BUY else TradeSide.SELL

        pnl = None
        if side == TradeSide.SELL:
            pnl = realized_pnl(await self.store.list_trades(bot_id), amount, price)

        await self.store.append_execution(
            bot_id,
            ExecutionAction.TRADE,
            ExecutionStatus.SUCCESS,
            {
                "signal": signal.to_dict(),
                "order": order.to_dict(),
                "amount": order_request.amount,
                "price": context.current_price,
            },
        )
        await self.store.record_trade(
            bot_id,
            symbol=context.symbol,
            side=side,
            amount=amount,
            price=price,
            fee=order.fee or 0.0,
            pnl=pnl,
            exchange_order_id=order.id,
            strategy_used=context.bot.strategy.type,
            reason=signal.reason,
        )

        if trade_log:
            trade_log.log_trade(TradeLogEntry(
                timestamp=order.timestamp,
                bot_id=bot_id,
                bot_name=context.bot.name,
                order_id=order.id,
                side=side.value,
                order_type=order.type,
                symbol=context.symbol,
                amount=amount,
                price=price,
                fees=order.fee or 0.0,
                status=order.status,
                strategy=context.bot.strategy.type,
                reason=signal.reason,
                is_simulated=trade_log.is_simulated,
                pnl=pnl,
            ))
            trade_log.log_activity(f"{side.value.upper()} {amount:.8f} {context.symbol} at {price:.8f}: {signal.reason}")

        logger.info(f"Bot {bot_id}: {side.value} order {order.id} executed: {amount} {context.symbol} at {price}")
        return order
