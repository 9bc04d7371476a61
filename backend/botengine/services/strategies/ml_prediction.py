"""Prediction-driven strategy using a rule-based direction model."""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

from ..errors import StrategyError
from ..exchange import ExchangeOrder
from .. import indicators as ta
from .base import BotContext, PositionStrategy, Signal, SignalType

logger = logging.getLogger(__name__)

BASELINE_ACCURACY = 0.85
FALLBACK_ACCURACY_FACTOR = 0.9
MIN_SCORED_PREDICTIONS = 10
MAX_CONSECUTIVE_LOSSES = 3


@dataclass
class Features:
    rsi: float
    momentum: float      # recent 5-close mean vs the 5 before, as a fraction
    volatility: float    # stdev of simple returns over the last 20 closes


@dataclass
class Prediction:
    direction: str       # UP, DOWN or SIDEWAYS
    confidence: float
    predicted_price: float
    accuracy: float
    reference_price: float
    timestamp: datetime
    features: Features = field(repr=False, default=None)


def extract_features(prices: List[float]) -> Features:
    rsi_values = ta.rsi(prices, 14)
    rsi = rsi_values[-1] if rsi_values else 50.0

    momentum = 0.0
    if len(prices) >= 10:
        recent = sum(prices[-5:]) / 5
        older = sum(prices[-10:-5]) / 5
        momentum = (recent - older) / older if older else 0.0

    window = prices[-21:]
    returns = [(b - a) / a for a, b in zip(window, window[1:]) if a]
    volatility = 0.0
    if returns:
        mean = sum(returns) / len(returns)
        volatility = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
    return Features(rsi, momentum, volatility)


def predict_direction(features: Features):
    """Rule-based direction and confidence from RSI and momentum."""
    if features.rsi > 70 and features.momentum > 0:
        return "DOWN", 0.7
    if features.rsi < 30 and features.momentum < 0:
        return "UP", 0.7
    if features.momentum > 0.01:
        return "UP", 0.6
    if features.momentum < -0.01:
        return "DOWN", 0.6
    return "SIDEWAYS", 0.5


class MLPredictionStrategy(PositionStrategy):
    """Trades predicted moves over ``predictionHorizon`` minutes.

    The model's accuracy starts at a baseline and is replaced by the
    measured hit rate once enough predictions have matured.
    """

    name = "ML Prediction"

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None):
        super().__init__(exchange_manager, bot_id)
        self.predictions: Deque[Prediction] = deque(maxlen=100)
        self._pending: Deque[Prediction] = deque()
        self.scored = 0
        self.hits = 0
        self._last_prediction_at: Optional[datetime] = None
        self.entry_prediction: Optional[Prediction] = None

    async def on_initialize(self) -> None:
        self.prediction_horizon = float(self.param("predictionHorizon", 15))
        self.confidence_threshold = float(self.param("confidenceThreshold", 0.6))
        self.feature_window = int(self.param("featureWindow", 50))
        self.risk_per_trade = float(self.param("riskPerTrade", 0.02))
        self.min_accuracy = float(self.param("minAccuracy", 0.6))
        self.stop_loss = float(self.param("stopLoss", 2))
        self.take_profit = float(self.param("takeProfit", 4))
        self.prediction_interval = float(self.param("predictionInterval", 60))

        if self.prediction_horizon <= 0:
            raise StrategyError("Invalid ML configuration: prediction horizon must be positive", self.bot_id)
        if not 0 < self.confidence_threshold <= 1:
            raise StrategyError("Invalid ML configuration: confidence threshold must be between 0 and 1", self.bot_id)
        if self.feature_window <= 0:
            raise StrategyError("Invalid ML configuration: feature window must be positive", self.bot_id)
        if not 0 < self.risk_per_trade <= 1:
            raise StrategyError("Invalid ML configuration: risk per trade must be between 0 and 1", self.bot_id)
        if not 0 < self.min_accuracy <= 1:
            raise StrategyError("Invalid ML configuration: minimum accuracy must be between 0 and 1", self.bot_id)

    @property
    def model_accuracy(self) -> float:
        if self.scored >= MIN_SCORED_PREDICTIONS:
            return self.hits / self.scored
        return BASELINE_ACCURACY

    def _score_matured(self, price: float, now: datetime) -> None:
        horizon = timedelta(minutes=self.prediction_horizon)
        while self._pending and now - self._pending[0].timestamp >= horizon:
            prediction = self._pending.popleft()
            change = (price - prediction.reference_price) / prediction.reference_price
            actual = "UP" if change > 0.01 else "DOWN" if change < -0.01 else "SIDEWAYS"
            self.scored += 1
            if actual == prediction.direction:
                self.hits += 1

    def predict(self, context: BotContext) -> Prediction:
        features = extract_features(context.closes[-self.feature_window:])
        direction, confidence = predict_direction(features)
        move = {"UP": 0.02, "DOWN": -0.02}.get(direction, 0.0) * confidence
        return Prediction(
            direction=direction,
            confidence=confidence,
            predicted_price=context.current_price * (1 + move),
            accuracy=self.model_accuracy * FALLBACK_ACCURACY_FACTOR,
            reference_price=context.current_price,
            timestamp=context.timestamp,
            features=features,
        )

    async def evaluate(self, context: BotContext) -> Signal:
        price = context.current_price
        now = context.timestamp
        self._score_matured(price, now)

        if self._last_prediction_at is None or (now - self._last_prediction_at).total_seconds() >= self.prediction_interval:
            prediction = self.predict(context)
            self.predictions.append(prediction)
            self._pending.append(prediction)
            self._last_prediction_at = now
        else:
            prediction = self.predictions[-1]

        if self.position is not None:
            return self._check_exit(context, price, prediction)

        if self.consecutive_losses >= MAX_CONSECUTIVE_LOSSES:
            return self.hold(context, "Skipping entry due to consecutive losses", confidence=0.8)
        if prediction.confidence < self.confidence_threshold:
            return self.hold(context, f"Prediction confidence too low: {prediction.confidence * 100:.1f}%")
        if prediction.accuracy < self.min_accuracy:
            return self.hold(context, f"Model accuracy too low: {prediction.accuracy * 100:.1f}%", confidence=0.4)
        if prediction.direction == "SIDEWAYS":
            return self.hold(context, "ML prediction: SIDEWAYS - no action", confidence=0.3)

        side = SignalType.BUY if prediction.direction == "UP" else SignalType.SELL
        if side == SignalType.SELL and not self.allow_short:
            return self.hold(context, "ML prediction: DOWN; short entries disabled")

        size = self.calculate_position_size(context, self.risk_per_trade, price)
        if size <= 0:
            return self.hold(context, "Insufficient balance for position", confidence=0.4)

        return Signal(
            side,
            prediction.confidence,
            prediction.accuracy,
            f"ML prediction: {prediction.direction} {prediction.confidence * 100:.1f}% confidence. "
            f"Target: {prediction.predicted_price:.2f}",
            timestamp=now,
            amount=size,
            price=price,
        )

    def _check_exit(self, context: BotContext, price: float, prediction: Prediction) -> Signal:
        side = self.position.side
        exit_type = self.exit_signal_type()
        kwargs = dict(timestamp=context.timestamp, amount=self.position.size, price=price)

        if self.should_stop_loss(self.position.entry_price, price, side, self.stop_loss):
            return Signal(exit_type, 0.9, 1.0, f"Stop loss triggered at {price:.2f}", **kwargs)
        if self.should_take_profit(self.position.entry_price, price, side, self.take_profit):
            return Signal(exit_type, 0.9, 1.0, f"Take profit triggered at {price:.2f}", **kwargs)

        max_hold = timedelta(minutes=self.prediction_horizon * 2)
        if context.timestamp - self.position.entry_time > max_hold:
            return Signal(exit_type, 0.7, 0.8, "Max hold time exceeded, exiting position", **kwargs)

        opposite = "DOWN" if side == SignalType.BUY else "UP"
        if prediction.direction == opposite and prediction.confidence >= self.confidence_threshold:
            return Signal(exit_type, 0.6, 0.8, f"Opposite prediction ({opposite}), exiting position", **kwargs)

        target = self.entry_prediction.predicted_price if self.entry_prediction else None
        if target is not None:
            if (side == SignalType.BUY and price >= target) or (side == SignalType.SELL and price <= target):
                return Signal(exit_type, 0.8, 0.95, f"Target price reached: {price:.2f}", **kwargs)

        return self.hold(
            context,
            f"Holding {side.value} position. P&L: {self.unrealized_pnl(price):.2f}, "
            f"Current prediction: {prediction.direction}",
            0.4,
            0.7,
        )

    def on_fill(self, signal: Signal, order: ExchangeOrder) -> None:
        opening = self.position is None
        super().on_fill(signal, order)
        if opening and self.predictions:
            self.entry_prediction = self.predictions[-1]
        elif self.position is None:
            self.entry_prediction = None

    async def on_cleanup(self) -> None:
        await super().on_cleanup()
        self.predictions.clear()
        self._pending.clear()
        self._last_prediction_at = None
        self.entry_prediction = None

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            "model_accuracy": self.model_accuracy,
            "scored_predictions": self.scored,
            "last_prediction": None if not self.predictions else {
                "direction": self.predictions[-1].direction,
                "confidence": self.predictions[-1].confidence,
                "predicted_price": self.predictions[-1].predicted_price,
            },
        })
        return status
