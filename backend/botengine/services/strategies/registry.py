"""Strategy kinds, the kind -> class registry and the strategy catalog."""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type

from ..errors import ConfigurationError
from .arbitrage import ArbitrageStrategy
from .base import Strategy
from .dca import DCAStrategy
from .grid import GridStrategy
from .market_making import MarketMakingStrategy
from .mean_reversion import MeanReversionStrategy
from .ml_prediction import MLPredictionStrategy
from .sentiment import SentimentStrategy
from .trend_following import TrendFollowingStrategy

logger = logging.getLogger(__name__)


class StrategyKind(str, Enum):
    """Every strategy the engine can run."""
    GRID = "grid"
    DCA = "dca"
    TREND_FOLLOWING = "trend-following"
    MEAN_REVERSION = "mean-reversion"
    ARBITRAGE = "arbitrage"
    MARKET_MAKING = "market-making"
    SENTIMENT_BASED = "sentiment-based"
    ML_PREDICTION = "ml-prediction"

    @classmethod
    def parse(cls, value: str) -> "StrategyKind":
        """Resolve a type name or alias.

        Raises:
            ConfigurationError: If the name is not a known strategy
        """
        key = (value or "").strip().lower()
        key = STRATEGY_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(f"Unknown strategy type: {value}")


STRATEGY_ALIASES = {
    "dollar-cost-averaging": "dca",
    "trend": "trend-following",
    "sentiment": "sentiment-based",
    "ml": "ml-prediction",
}

STRATEGY_REGISTRY: Dict[StrategyKind, Type[Strategy]] = {
    StrategyKind.GRID: GridStrategy,
    StrategyKind.DCA: DCAStrategy,
    StrategyKind.TREND_FOLLOWING: TrendFollowingStrategy,
    StrategyKind.MEAN_REVERSION: MeanReversionStrategy,
    StrategyKind.ARBITRAGE: ArbitrageStrategy,
    StrategyKind.MARKET_MAKING: MarketMakingStrategy,
    StrategyKind.SENTIMENT_BASED: SentimentStrategy,
    StrategyKind.ML_PREDICTION: MLPredictionStrategy,
}

STRATEGY_DESCRIPTIONS = {
    StrategyKind.GRID: "Grid Trading - Places buy and sell orders at regular price intervals to profit from market volatility",
    StrategyKind.DCA: "Dollar Cost Averaging - Invests fixed amounts spread around a target price to reduce market timing risk",
    StrategyKind.TREND_FOLLOWING: "Trend Following - Identifies and follows market trends using technical indicators",
    StrategyKind.MEAN_REVERSION: "Mean Reversion - Trades on the assumption that prices will revert to their mean",
    StrategyKind.ARBITRAGE: "Arbitrage - Exploits price differences between exchange accounts",
    StrategyKind.MARKET_MAKING: "Market Making - Provides liquidity by placing both buy and sell orders",
    StrategyKind.SENTIMENT_BASED: "Sentiment-Based - Uses news, social media, on-chain and technical sentiment for trading decisions",
    StrategyKind.ML_PREDICTION: "ML Prediction - Predicts short-term price direction from engineered features",
}

DEFAULT_CONFIGS: Dict[StrategyKind, Dict[str, Any]] = {
    StrategyKind.GRID: {
        "upperPrice": 50000,
        "lowerPrice": 40000,
        "gridLevels": 10,
        "orderAmount": 0.1,
        "rebalanceThreshold": 0.05,
    },
    StrategyKind.DCA: {
        "totalAmount": 10000,
        "targetPrice": 45000,
        "orderCount": 20,
        "priceDeviation": 0.1,
        "maxOrders": 20,
    },
    StrategyKind.TREND_FOLLOWING: {
        "fastPeriod": 12,
        "slowPeriod": 26,
        "signalPeriod": 9,
        "riskPerTrade": 0.02,
        "stopLoss": 2,
        "takeProfit": 4,
    },
    StrategyKind.MEAN_REVERSION: {
        "period": 20,
        "standardDeviations": 2,
        "entryThreshold": 1.5,
        "exitThreshold": 0.5,
        "riskPerTrade": 0.02,
    },
    StrategyKind.ARBITRAGE: {
        "exchanges": [1, 2],
        "minProfit": 0.1,
        "maxSlippage": 0.001,
        "orderAmount": 0.1,
        "scanInterval": 5,
    },
    StrategyKind.MARKET_MAKING: {
        "spreadPercent": 0.1,
        "orderSize": 0.1,
        "maxOrders": 5,
        "inventoryTarget": 0.5,
        "riskLimit": 0.1,
    },
    StrategyKind.SENTIMENT_BASED: {
        "newsWeight": 0.25,
        "socialWeight": 0.25,
        "onchainWeight": 0.25,
        "technicalWeight": 0.25,
        "sentimentThreshold": 0.3,
        "confidenceThreshold": 0.7,
        "riskPerTrade": 0.02,
        "stopLoss": 3,
        "takeProfit": 6,
    },
    StrategyKind.ML_PREDICTION: {
        "predictionHorizon": 60,
        "confidenceThreshold": 0.7,
        "featureWindow": 120,
        "riskPerTrade": 0.02,
        "stopLoss": 2,
        "takeProfit": 4,
        "minAccuracy": 0.7,
    },
}


@dataclass
class StrategyValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def supported_strategy_names() -> List[str]:
    """Canonical names plus aliases, lowercase."""
    return [kind.value for kind in StrategyKind] + list(STRATEGY_ALIASES)


def create_strategy(kind, exchange_manager=None, bot_id: Optional[int] = None) -> Strategy:
    """Instantiate the strategy class registered for ``kind``.

    Raises:
        ConfigurationError: If the kind is unknown
    """
    if not isinstance(kind, StrategyKind):
        kind = StrategyKind.parse(kind)
    return STRATEGY_REGISTRY[kind](exchange_manager=exchange_manager, bot_id=bot_id)


def list_available_strategies() -> List[str]:
    return [kind.value for kind in StrategyKind]


def get_strategy_description(kind: str) -> str:
    try:
        return STRATEGY_DESCRIPTIONS[StrategyKind.parse(kind)]
    except ConfigurationError:
        return "Unknown strategy type"


def get_strategy_default_config(kind: str) -> Dict[str, Any]:
    try:
        return copy.deepcopy(DEFAULT_CONFIGS[StrategyKind.parse(kind)])
    except ConfigurationError:
        return {}


def _positive(config: Mapping[str, Any], key: str) -> bool:
    value = config.get(key)
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _fraction(config: Mapping[str, Any], key: str) -> bool:
    return _positive(config, key) and config[key] <= 1


def validate_strategy_config(kind: str, config: Any) -> StrategyValidationResult:
    """Check a parameter dict against the rules of its strategy kind."""
    errors: List[str] = []
    try:
        parsed = StrategyKind.parse(kind)
    except ConfigurationError as e:
        return StrategyValidationResult(False, [f"Strategy creation failed: {e.message}"])

    if not isinstance(config, Mapping):
        return StrategyValidationResult(False, ["Configuration must be an object"])

    if parsed == StrategyKind.GRID:
        if not _positive(config, "upperPrice"):
            errors.append("Upper price must be positive")
        if not _positive(config, "lowerPrice"):
            errors.append("Lower price must be positive")
        if _positive(config, "upperPrice") and _positive(config, "lowerPrice") \
                and config["upperPrice"] <= config["lowerPrice"]:
            errors.append("Upper price must be greater than lower price")
        if not isinstance(config.get("gridLevels"), int) or config["gridLevels"] < 2:
            errors.append("Grid levels must be at least 2")
        if not _positive(config, "orderAmount"):
            errors.append("Order amount must be positive")
    elif parsed == StrategyKind.DCA:
        if not _positive(config, "totalAmount"):
            errors.append("Total amount must be positive")
        if not _positive(config, "targetPrice"):
            errors.append("Target price must be positive")
        if not isinstance(config.get("orderCount"), int) or config["orderCount"] < 1:
            errors.append("Order count must be at least 1")
        if not _positive(config, "priceDeviation"):
            errors.append("Price deviation must be positive")
    elif parsed == StrategyKind.TREND_FOLLOWING:
        if not _positive(config, "fastPeriod"):
            errors.append("Fast period must be positive")
        if not _positive(config, "slowPeriod"):
            errors.append("Slow period must be positive")
        if _positive(config, "fastPeriod") and _positive(config, "slowPeriod") \
                and config["fastPeriod"] >= config["slowPeriod"]:
            errors.append("Fast period must be less than slow period")
    elif parsed == StrategyKind.MEAN_REVERSION:
        for key, label in (("period", "Period"), ("standardDeviations", "Standard deviations"),
                           ("entryThreshold", "Entry threshold"), ("exitThreshold", "Exit threshold")):
            if not _positive(config, key):
                errors.append(f"{label} must be positive")
    elif parsed == StrategyKind.ARBITRAGE:
        exchanges = config.get("exchanges")
        if not isinstance(exchanges, list) or len(exchanges) < 2:
            errors.append("At least 2 exchanges required")
        if not _positive(config, "minProfit"):
            errors.append("Minimum profit must be positive")
        if not _positive(config, "maxSlippage"):
            errors.append("Maximum slippage must be positive")
        if not _positive(config, "orderAmount"):
            errors.append("Order amount must be positive")
    elif parsed == StrategyKind.MARKET_MAKING:
        if not _positive(config, "spreadPercent"):
            errors.append("Spread percent must be positive")
        if not _positive(config, "orderSize"):
            errors.append("Order size must be positive")
        if not _positive(config, "maxOrders"):
            errors.append("Max orders must be positive")
        target = config.get("inventoryTarget")
        if not isinstance(target, (int, float)) or not 0 <= target <= 1:
            errors.append("Inventory target must be between 0 and 1")
        if not _positive(config, "riskLimit"):
            errors.append("Risk limit must be positive")
    elif parsed == StrategyKind.SENTIMENT_BASED:
        if not _positive(config, "sentimentThreshold"):
            errors.append("Sentiment threshold must be positive")
        if not _fraction(config, "confidenceThreshold"):
            errors.append("Confidence threshold must be between 0 and 1")
        weights = [config.get(k, 0.25) for k in ("newsWeight", "socialWeight", "onchainWeight", "technicalWeight")]
        if all(isinstance(w, (int, float)) for w in weights) and abs(sum(weights) - 1) > 0.01:
            errors.append("Weights must sum to 1")
    elif parsed == StrategyKind.ML_PREDICTION:
        if not _positive(config, "predictionHorizon"):
            errors.append("Prediction horizon must be positive")
        if not _fraction(config, "confidenceThreshold"):
            errors.append("Confidence threshold must be between 0 and 1")
        if "minAccuracy" in config and not _fraction(config, "minAccuracy"):
            errors.append("Minimum accuracy must be between 0 and 1")

    if "riskPerTrade" in config and not _fraction(config, "riskPerTrade"):
        errors.append("Risk per trade must be between 0 and 1")

    return StrategyValidationResult(not errors, errors)
