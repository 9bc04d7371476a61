"""Sentiment-based strategy blending weighted sentiment sources."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import StrategyError
from ..exchange import ExchangeOrder
from .. import indicators as ta
from .base import BotContext, PositionStrategy, Signal, SignalType

logger = logging.getLogger(__name__)

SOURCES = ("news", "social", "onchain", "technical")
REVERSAL_THRESHOLD = 0.5
MAX_CONSECUTIVE_LOSSES = 3


@dataclass
class SentimentReading:
    source: str
    score: float        # -1 (bearish) .. 1 (bullish)
    confidence: float   # 0 .. 1
    timestamp: datetime


SentimentProvider = Callable[[BotContext], Awaitable[Optional[SentimentReading]]]


@dataclass
class SentimentAnalysis:
    score: float
    confidence: float
    direction: str


async def technical_sentiment(context: BotContext) -> Optional[SentimentReading]:
    """Score RSI, MACD histogram, SMA20/SMA50 and the Bollinger position."""
    prices = context.closes
    if len(prices) < 50:
        return None

    score = 0.0
    rsi_values = ta.rsi(prices, 14)
    rsi = rsi_values[-1] if rsi_values else 50.0
    if rsi > 70:
        score -= 0.3
    elif rsi < 30:
        score += 0.3
    elif rsi > 50:
        score += 0.1
    else:
        score -= 0.1

    histogram = ta.macd(prices).histogram
    if histogram and histogram[-1] > 0:
        score += 0.2
    elif histogram and histogram[-1] < 0:
        score -= 0.2

    score += 0.2 if ta.sma(prices, 20)[-1] > ta.sma(prices, 50)[-1] else -0.2

    bands = ta.bollinger_bands(prices, 20, 2)
    width = bands.upper[-1] - bands.lower[-1]
    if width > 0:
        position = (context.current_price - bands.lower[-1]) / width
        if position > 0.8:
            score -= 0.2
        elif position < 0.2:
            score += 0.2

    return SentimentReading("technical", max(-1.0, min(1.0, score)), 0.9, context.timestamp)


class SentimentStrategy(PositionStrategy):
    """Trades the weighted blend of news, social, on-chain and technical
    sentiment. Only the technical source is built in; the others are
    async providers registered with :meth:`register_provider`.
    """

    name = "Sentiment Based"

    def __init__(self, exchange_manager=None, bot_id: Optional[int] = None,
                 providers: Optional[Dict[str, SentimentProvider]] = None):
        super().__init__(exchange_manager, bot_id)
        self.providers: Dict[str, Optional[SentimentProvider]] = {
            "news": None,
            "social": None,
            "onchain": None,
            "technical": technical_sentiment,
        }
        for source, provider in (providers or {}).items():
            self.register_provider(source, provider)
        self.readings: Dict[str, SentimentReading] = {}
        self._last_update_at: Optional[datetime] = None
        self._last_analysis: Optional[SentimentAnalysis] = None
        self.entry_score = 0.0

    def register_provider(self, source: str, provider: Optional[SentimentProvider]) -> None:
        if source not in SOURCES:
            raise StrategyError(f"Unknown sentiment source: {source}", self.bot_id)
        self.providers[source] = provider

    async def on_initialize(self) -> None:
        self.weights = {
            "news": float(self.param("newsWeight", 0.25)),
            "social": float(self.param("socialWeight", 0.25)),
            "onchain": float(self.param("onchainWeight", 0.25)),
            "technical": float(self.param("technicalWeight", 0.25)),
        }
        self.sentiment_threshold = float(self.param("sentimentThreshold", 0.3))
        self.confidence_threshold = float(self.param("confidenceThreshold", 0.6))
        self.risk_per_trade = float(self.param("riskPerTrade", 0.02))
        self.stop_loss = float(self.param("stopLoss", 3))
        self.take_profit = float(self.param("takeProfit", 6))
        self.lookback_days = float(self.param("lookbackWindow", 1))
        self.update_interval = float(self.param("updateInterval", 300))

        if self.sentiment_threshold <= 0:
            raise StrategyError("Invalid sentiment configuration: sentiment threshold must be positive", self.bot_id)
        if not 0 < self.confidence_threshold <= 1:
            raise StrategyError("Invalid sentiment configuration: confidence threshold must be between 0 and 1", self.bot_id)
        if not 0 < self.risk_per_trade <= 1:
            raise StrategyError("Invalid sentiment configuration: risk per trade must be between 0 and 1", self.bot_id)
        if abs(sum(self.weights.values()) - 1) > 0.01:
            raise StrategyError("Invalid sentiment configuration: weights must sum to 1", self.bot_id)

    async def _collect(self, context: BotContext) -> None:
        now = context.timestamp
        if self._last_update_at is not None and (now - self._last_update_at).total_seconds() < self.update_interval:
            return
        self._last_update_at = now

        sources = [s for s, p in self.providers.items() if p is not None and self.weights.get(s, 0) > 0]
        results = await asyncio.gather(*(self.providers[s](context) for s in sources), return_exceptions=True)
        for source, result in zip(sources, results):
            if isinstance(result, Exception):
                logger.warning(f"Bot {self.bot_id}: {source} sentiment provider failed: {result}")
            elif result is not None:
                self.readings[source] = result

        cutoff = now - timedelta(days=self.lookback_days)
        self.readings = {s: r for s, r in self.readings.items() if r.timestamp > cutoff}

    def analyze(self) -> SentimentAnalysis:
        """Weighted score and confidence over the latest reading per source."""
        total_weight = sum(self.weights[s] for s in self.readings)
        if total_weight <= 0:
            return SentimentAnalysis(0.0, 0.0, "NEUTRAL")
        score = sum(r.score * self.weights[s] for s, r in self.readings.items()) / total_weight
        confidence = sum(r.confidence * self.weights[s] for s, r in self.readings.items()) / total_weight
        if score > self.sentiment_threshold:
            direction = "BULLISH"
        elif score < -self.sentiment_threshold:
            direction = "BEARISH"
        else:
            direction = "NEUTRAL"
        return SentimentAnalysis(score, confidence, direction)

    async def evaluate(self, context: BotContext) -> Signal:
        price = context.current_price
        await self._collect(context)
        analysis = self.analyze()
        self._last_analysis = analysis

        if self.position is not None:
            side = self.position.side
            exit_type = self.exit_signal_type()
            kwargs = dict(timestamp=context.timestamp, amount=self.position.size, price=price)
            if self.should_stop_loss(self.position.entry_price, price, side, self.stop_loss):
                return Signal(exit_type, 0.9, 1.0, f"Stop loss triggered at {price:.2f}", **kwargs)
            if self.should_take_profit(self.position.entry_price, price, side, self.take_profit):
                return Signal(exit_type, 0.9, 1.0, f"Take profit triggered at {price:.2f}", **kwargs)
            if self._is_reversal(side, analysis.score) and analysis.confidence > self.confidence_threshold:
                return Signal(
                    exit_type, 0.7, analysis.confidence,
                    f"Sentiment reversal detected. Entry: {self.entry_score:.3f}, Current: {analysis.score:.3f}",
                    **kwargs,
                )
            return self.hold(
                context,
                f"Holding {side.value} position. Sentiment: {analysis.direction} ({analysis.score:.3f})",
                0.4,
                0.7,
            )

        if self.consecutive_losses >= MAX_CONSECUTIVE_LOSSES:
            return self.hold(context, "Skipping entry due to consecutive losses", confidence=0.8)
        if analysis.confidence < self.confidence_threshold:
            return self.hold(context, f"Insufficient confidence: {analysis.confidence * 100:.1f}%")
        if abs(analysis.score) < self.sentiment_threshold:
            return self.hold(context, f"Sentiment below threshold: {analysis.score:.3f}", confidence=0.3)

        side = SignalType.BUY if analysis.score > 0 else SignalType.SELL
        if side == SignalType.SELL and not self.allow_short:
            return self.hold(context, f"Bearish sentiment ({analysis.score:.3f}); short entries disabled")

        size = self.calculate_position_size(context, self.risk_per_trade, price)
        if size <= 0:
            return self.hold(context, "Insufficient balance for position", confidence=0.4)

        label = "Bullish" if side == SignalType.BUY else "Bearish"
        return Signal(
            side,
            abs(analysis.score),
            analysis.confidence,
            f"{label} sentiment detected. Score: {analysis.score:.3f}, "
            f"Confidence: {analysis.confidence * 100:.1f}%",
            timestamp=context.timestamp,
            amount=size,
            price=price,
        )

    def _is_reversal(self, side: SignalType, score: float) -> bool:
        if side == SignalType.BUY:
            return self.entry_score > 0 and score < -REVERSAL_THRESHOLD
        return self.entry_score < 0 and score > REVERSAL_THRESHOLD

    def on_fill(self, signal: Signal, order: ExchangeOrder) -> None:
        opening = self.position is None
        super().on_fill(signal, order)
        if opening and self._last_analysis is not None:
            self.entry_score = self._last_analysis.score

    async def on_cleanup(self) -> None:
        await super().on_cleanup()
        self.readings = {}
        self._last_update_at = None
        self.entry_score = 0.0

    def status(self) -> Dict[str, Any]:
        status = super().status()
        if self._last_analysis is not None:
            status["sentiment"] = {
                "score": self._last_analysis.score,
                "confidence": self._last_analysis.confidence,
                "direction": self._last_analysis.direction,
            }
        status["sources"] = sorted(self.readings)
        return status
