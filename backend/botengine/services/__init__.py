# Business Logic Services

from .errors import (
    BotError,
    ConfigurationError,
    StrategyError,
    RiskLimitError,
    ExecutionError,
)
from .config import (
    ConfigService,
    config_service,
    configure_logging,
    ConfigValidationException,
    ConfigValidationError,
)
from .exchange import (
    ExchangeService,
    SimulatedExchangeService,
    ExchangeOrder,
    OrderRequest,
    Balance,
    Ticker,
    Candle,
    OrderSide,
    OrderType,
    TimeInForce,
)
from .exchange_manager import (
    ExchangeManager,
    ExchangeAccountNotFound,
    exchange_manager,
)
from .bot_config import (
    BotConfig,
    StrategyConfig,
    MarketConfig,
    RiskConfig,
    ExecutionConfig,
    IndicatorConfig,
    validate_bot_config,
)
from .logging_service import (
    BotLoggingService,
    TradeLogEntry,
)
from .bot_store import BotStore, bot_store
from .market_data import MarketDataCache
from .risk_analytics import RiskAnalyticsService, risk_analytics
from .risk_gate import RiskGate, risk_gate
from .performance import BotPerformance, compute_performance
from .execution import ExecutionPipeline, execute_with_retry
from .backtester import BacktestResult, backtest_strategy
from .scheduler import BotScheduler, bot_scheduler

__all__ = [
    # Errors
    "BotError",
    "ConfigurationError",
    "StrategyError",
    "RiskLimitError",
    "ExecutionError",
    # Config
    "ConfigService",
    "config_service",
    "configure_logging",
    "ConfigValidationException",
    "ConfigValidationError",
    # Exchange
    "ExchangeService",
    "SimulatedExchangeService",
    "ExchangeOrder",
    "OrderRequest",
    "Balance",
    "Ticker",
    "Candle",
    "OrderSide",
    "OrderType",
    "TimeInForce",
    "ExchangeManager",
    "ExchangeAccountNotFound",
    "exchange_manager",
    # Bot configuration
    "BotConfig",
    "StrategyConfig",
    "MarketConfig",
    "RiskConfig",
    "ExecutionConfig",
    "IndicatorConfig",
    "validate_bot_config",
    # Logging
    "BotLoggingService",
    "TradeLogEntry",
    # Engine
    "BotStore",
    "bot_store",
    "MarketDataCache",
    "RiskAnalyticsService",
    "risk_analytics",
    "RiskGate",
    "risk_gate",
    "BotPerformance",
    "compute_performance",
    "ExecutionPipeline",
    "execute_with_retry",
    "BacktestResult",
    "backtest_strategy",
    "BotScheduler",
    "bot_scheduler",
]
