"""Persistence for bot rows, execution records and trades."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select

from ..models import (
    Bot,
    BotExecution,
    BotStatus,
    ExecutionAction,
    ExecutionStatus,
    Trade,
    TradeSide,
    async_session_maker,
)
from .bot_config import merge_config
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Keys of a partial strategy update that replace the stored value
STRATEGY_FIELDS = {
    "type": "strategy",
    "indicators": "strategy_indicators",
    "conditions": "strategy_conditions",
}


class BotStore:
    """Opens one session per call; objects come back detached."""

    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory or async_session_maker

    async def load_bot(self, bot_id: int) -> Optional[Bot]:
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.id == bot_id))
            return result.scalar_one_or_none()

    async def list_bots_by_status(self, status: BotStatus) -> List[Bot]:
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.status == status).order_by(Bot.id))
            return list(result.scalars().all())

    async def update_status(self, bot_id: int, status: BotStatus) -> Optional[Bot]:
        """Persist a lifecycle status and its timestamp."""
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.id == bot_id))
            bot = result.scalar_one_or_none()
            if bot is None:
                return None

            now = datetime.utcnow()
            bot.status = status
            bot.updated_at = now
            if status == BotStatus.RUNNING:
                if bot.started_at is None or bot.stopped_at is not None:
                    bot.started_at = now
                bot.paused_at = None
                bot.stopped_at = None
            elif status == BotStatus.PAUSED:
                bot.paused_at = now
            elif status == BotStatus.STOPPED:
                bot.stopped_at = now

            await session.commit()
            return bot

    async def update_config(self, bot_id: int, partial: Mapping[str, Any]) -> Bot:
        """Merge a partial configuration into the stored bot.

        ``partial`` may hold ``name``, ``description``, ``symbol``,
        ``exchange_account_id``, ``strategy`` (type, parameters, indicators,
        conditions), ``risk`` and ``execution``. Parameters, risk and
        execution are merged key by key; everything else is replaced.

        Raises:
            ConfigurationError: If the bot does not exist
        """
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.id == bot_id))
            bot = result.scalar_one_or_none()
            if bot is None:
                raise ConfigurationError(f"Bot not found: {bot_id}", bot_id)

            for key in ("name", "description", "symbol", "exchange_account_id"):
                if partial.get(key) is not None:
                    setattr(bot, key, partial[key])

            strategy = partial.get("strategy") or {}
            for key, column in STRATEGY_FIELDS.items():
                if key in strategy:
                    setattr(bot, column, strategy[key])
            if "parameters" in strategy:
                bot.strategy_params = merge_config(bot.strategy_params, strategy["parameters"])

            if partial.get("risk"):
                bot.risk_config = merge_config(bot.risk_config, partial["risk"])
            if partial.get("execution"):
                bot.execution_config = merge_config(bot.execution_config, partial["execution"])

            bot.updated_at = datetime.utcnow()
            await session.commit()
            logger.info(f"Bot {bot_id}: configuration updated ({', '.join(sorted(partial))})")
            return bot

    async def append_execution(
        self,
        bot_id: int,
        action: ExecutionAction,
        status: ExecutionStatus,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> BotExecution:
        async with self._session_factory() as session:
            record = BotExecution(
                bot_id=bot_id,
                action=action,
                status=status,
                details=details or {},
                error=error,
                created_at=datetime.utcnow(),
            )
            session.add(record)
            await session.commit()
            return record

    async def list_executions(self, bot_id: int, limit: Optional[int] = None) -> List[BotExecution]:
        """Execution records, newest first."""
        async with self._session_factory() as session:
            query = (
                select(BotExecution)
                .where(BotExecution.bot_id == bot_id)
                .order_by(BotExecution.created_at.desc(), BotExecution.id.desc())
            )
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_trades(self, bot_id: int) -> List[Trade]:
        """Trades in execution order."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trade).where(Trade.bot_id == bot_id).order_by(Trade.executed_at, Trade.id)
            )
            return list(result.scalars().all())

    async def list_trades_since(self, bot_id: int, since: datetime) -> List[Trade]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trade)
                .where(Trade.bot_id == bot_id, Trade.executed_at >= since)
                .order_by(Trade.executed_at, Trade.id)
            )
            return list(result.scalars().all())

    async def record_trade(
        self,
        bot_id: int,
        symbol: str,
        side: TradeSide,
        amount: float,
        price: float,
        fee: float = 0.0,
        pnl: Optional[float] = None,
        exchange_order_id: Optional[str] = None,
        strategy_used: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Trade:
        async with self._session_factory() as session:
            trade = Trade(
                bot_id=bot_id,
                exchange_order_id=exchange_order_id,
                symbol=symbol,
                side=side,
                amount=amount,
                price=price,
                fee=fee,
                pnl=pnl,
                strategy_used=strategy_used,
                reason=(reason or "")[:500],
                executed_at=datetime.utcnow(),
            )
            session.add(trade)
            await session.commit()
            return trade


# Global bot store instance
bot_store = BotStore()
