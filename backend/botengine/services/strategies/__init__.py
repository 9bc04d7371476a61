# Trading strategies

from .base import BotContext, PositionStrategy, Signal, SignalType, Strategy, split_symbol
from .registry import (
    STRATEGY_REGISTRY,
    StrategyKind,
    StrategyValidationResult,
    create_strategy,
    get_strategy_default_config,
    get_strategy_description,
    list_available_strategies,
    supported_strategy_names,
    validate_strategy_config,
)

__all__ = [
    "BotContext",
    "PositionStrategy",
    "Signal",
    "SignalType",
    "Strategy",
    "split_symbol",
    "STRATEGY_REGISTRY",
    "StrategyKind",
    "StrategyValidationResult",
    "create_strategy",
    "get_strategy_default_config",
    "get_strategy_description",
    "list_available_strategies",
    "supported_strategy_names",
    "validate_strategy_config",
]
