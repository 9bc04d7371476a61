"""Immutable per-run bot configuration and its validation."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .exchange import OrderType, TimeInForce
from .config import config_service


@dataclass(frozen=True)
class IndicatorConfig:
    """One indicator a strategy should compute every tick."""
    name: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    timeframe: str = "1m"


@dataclass(frozen=True)
class StrategyConfig:
    """Strategy descriptor: kind, free-form parameters, indicators and conditions."""
    type: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    indicators: Tuple[IndicatorConfig, ...] = ()
    conditions: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class MarketConfig:
    symbol: str
    exchange_account_id: Optional[int]


@dataclass(frozen=True)
class RiskConfig:
    max_position_size: float = 0.0
    max_daily_loss: float = 0.0
    stop_loss: float = 0.0        # percent
    take_profit: float = 0.0      # percent
    max_leverage: float = 1.0
    risk_per_trade: float = 0.02  # fraction of quote balance
    use_advanced_sizing: bool = False


@dataclass(frozen=True)
class ExecutionConfig:
    order_type: OrderType = OrderType.MARKET
    time_in_force: TimeInForce = TimeInForce.GTC
    slippage_tolerance: float = 0.01
    retry_attempts: int = 3
    cooldown_period: float = 5.0  # seconds between ticks


@dataclass(frozen=True)
class BotConfig:
    """Snapshot of everything the engine needs to run one bot."""
    id: int
    name: str
    strategy: StrategyConfig
    market: MarketConfig
    risk: RiskConfig
    execution: ExecutionConfig
    description: Optional[str] = None

    @classmethod
    def from_model(cls, bot) -> "BotConfig":
        """Build a config snapshot from a persisted Bot row.

        Raises:
            ConfigurationError: If a stored policy has unknown keys or bad values
        """
        indicators = tuple(
            IndicatorConfig(
                name=item.get("name", ""),
                parameters=dict(item.get("parameters") or {}),
                timeframe=item.get("timeframe", "1m"),
            )
            for item in (bot.strategy_indicators or [])
        )
        return cls(
            id=bot.id,
            name=bot.name,
            description=bot.description,
            strategy=StrategyConfig(
                type=bot.strategy or "",
                parameters=dict(bot.strategy_params or {}),
                indicators=indicators,
                conditions=bot.strategy_conditions,
            ),
            market=MarketConfig(symbol=bot.symbol or "", exchange_account_id=bot.exchange_account_id),
            risk=build_risk_config(bot.risk_config or {}, bot_id=bot.id),
            execution=build_execution_config(bot.execution_config or {}, bot_id=bot.id),
        )


def _coerce(cls, values: Mapping[str, Any], bot_id: Optional[int], converters: Dict[str, Any]):
    known = cls.__dataclass_fields__
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}", bot_id)
    kwargs = {}
    for key, value in values.items():
        if value is None:
            continue
        try:
            kwargs[key] = converters.get(key, float)(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for {key}: {value!r} ({e})", bot_id)
    return cls(**kwargs)


def build_risk_config(values: Mapping[str, Any], bot_id: Optional[int] = None) -> RiskConfig:
    return _coerce(RiskConfig, values, bot_id, {"use_advanced_sizing": bool})


def build_execution_config(values: Mapping[str, Any], bot_id: Optional[int] = None) -> ExecutionConfig:
    values = dict(values)
    values.setdefault("cooldown_period", config_service.get("engine.default_cooldown_seconds"))
    return _coerce(ExecutionConfig, values, bot_id, {
        "order_type": lambda v: OrderType(str(v).lower()),
        "time_in_force": lambda v: TimeInForce(str(v).upper()),
        "retry_attempts": int,
    })


def validate_bot_config(config: BotConfig, supported_kinds: List[str]) -> None:
    """Reject configurations the engine cannot run.

    Args:
        config: Snapshot to check
        supported_kinds: Accepted strategy type names (aliases included)

    Raises:
        ConfigurationError: On the first problem found
    """
    if not config.market.symbol:
        raise ConfigurationError("Market symbol is required", config.id)

    if not config.market.exchange_account_id:
        raise ConfigurationError("Exchange account ID is required", config.id)

    if not config.strategy.type:
        raise ConfigurationError("Strategy type is required", config.id)

    if config.strategy.type.lower() not in supported_kinds:
        raise ConfigurationError(f"Unsupported strategy type: {config.strategy.type}", config.id)

    if not config.risk.max_position_size or config.risk.max_position_size <= 0:
        raise ConfigurationError("Invalid max position size", config.id)

    if config.risk.risk_per_trade <= 0 or config.risk.risk_per_trade > 1:
        raise ConfigurationError("Risk per trade must be between 0 and 1", config.id)

    if config.execution.retry_attempts < 1:
        raise ConfigurationError("Retry attempts must be at least 1", config.id)

    if config.execution.cooldown_period <= 0:
        raise ConfigurationError("Cooldown period must be positive", config.id)

    if config.execution.slippage_tolerance < 0:
        raise ConfigurationError("Slippage tolerance cannot be negative", config.id)


def merge_config(current: Dict[str, Any], partial: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Shallow-merge a partial policy/parameter dict into the stored one."""
    merged = dict(current or {})
    if partial:
        merged.update(partial)
    return merged

