# Database Models

from .database import Base, async_session_maker, get_session, init_db, configure_database
from .exchange_account import ExchangeAccount
from .bot import Bot, BotStatus
from .execution import BotExecution, ExecutionAction, ExecutionStatus
from .trade import Trade, TradeSide

__all__ = [
    "Base",
    "async_session_maker",
    "get_session",
    "init_db",
    "configure_database",
    "ExchangeAccount",
    "Bot",
    "BotStatus",
    "BotExecution",
    "ExecutionAction",
    "ExecutionStatus",
    "Trade",
    "TradeSide",
]
