"""Technical indicators over candle windows.

Every function returns the indicator series oldest first, shorter than the
input by the indicator's warm-up length. A window too short for the period
yields an empty list rather than an error.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence

from .exchange import Candle


@dataclass
class MACDResult:
    macd: List[float]
    signal: List[float]
    histogram: List[float]


@dataclass
class BollingerBands:
    upper: List[float]
    middle: List[float]
    lower: List[float]
    std: List[float]


@dataclass
class StochasticResult:
    k: List[float]
    d: List[float]


def closes(candles: Sequence[Candle]) -> List[float]:
    return [c.close for c in candles]


def sma(values: Sequence[float], period: int) -> List[float]:
    """Simple moving average."""
    if period <= 0 or len(values) < period:
        return []
    window = sum(values[:period])
    result = [window / period]
    for i in range(period, len(values)):
        window += values[i] - values[i - period]
        result.append(window / period)
    return result


def ema(values: Sequence[float], period: int) -> List[float]:
    """Exponential moving average seeded with the SMA of the first period."""
    if period <= 0 or len(values) < period:
        return []
    multiplier = 2 / (period + 1)
    result = [sum(values[:period]) / period]
    for value in values[period:]:
        result.append((value - result[-1]) * multiplier + result[-1])
    return result


def rsi(values: Sequence[float], period: int = 14) -> List[float]:
    """Relative strength index using simple averages of gains and losses."""
    if period <= 0 or len(values) < period + 1:
        return []
    gains = []
    losses = []
    for prev, curr in zip(values, values[1:]):
        change = curr - prev
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))

    result = []
    for i in range(period - 1, len(gains)):
        avg_gain = sum(gains[i - period + 1:i + 1]) / period
        avg_loss = sum(losses[i - period + 1:i + 1]) / period
        if avg_loss == 0:
            result.append(100.0)
        else:
            rs = avg_gain / avg_loss
            result.append(100 - (100 / (1 + rs)))
    return result


def macd(values: Sequence[float], fast_period: int = 12, slow_period: int = 26, signal_period: int = 9) -> MACDResult:
    """MACD line, signal line and histogram.

    The MACD line starts where the slow EMA starts; signal and histogram
    are aligned to the end of the MACD line.
    """
    if fast_period >= slow_period or len(values) < slow_period:
        return MACDResult([], [], [])
    fast = ema(values, fast_period)
    slow = ema(values, slow_period)
    offset = slow_period - fast_period
    line = [fast[i + offset] - slow[i] for i in range(len(slow))]
    signal = ema(line, signal_period)
    tail = line[len(line) - len(signal):]
    histogram = [m - s for m, s in zip(tail, signal)]
    return MACDResult(line, signal, histogram)


def bollinger_bands(values: Sequence[float], period: int = 20, standard_deviations: float = 2.0) -> BollingerBands:
    """Bollinger bands with population standard deviation."""
    if period <= 0 or len(values) < period:
        return BollingerBands([], [], [], [])
    middle = sma(values, period)
    upper, lower, stds = [], [], []
    for i, mean in enumerate(middle):
        window = values[i:i + period]
        std = math.sqrt(sum((v - mean) ** 2 for v in window) / period)
        stds.append(std)
        upper.append(mean + std * standard_deviations)
        lower.append(mean - std * standard_deviations)
    return BollingerBands(upper, middle, lower, stds)


def atr(candles: Sequence[Candle], period: int = 14) -> List[float]:
    """Average true range with Wilder smoothing."""
    if period <= 0 or len(candles) < period + 1:
        return []
    true_ranges = []
    for prev, curr in zip(candles, candles[1:]):
        true_ranges.append(max(
            curr.high - curr.low,
            abs(curr.high - prev.close),
            abs(curr.low - prev.close),
        ))
    value = sum(true_ranges[:period]) / period
    result = [value]
    for tr in true_ranges[period:]:
        value = (value * (period - 1) + tr) / period
        result.append(value)
    return result


def stochastic(candles: Sequence[Candle], k_period: int = 14, d_period: int = 3) -> StochasticResult:
    """Stochastic oscillator %K and its SMA %D."""
    if k_period <= 0 or len(candles) < k_period:
        return StochasticResult([], [])
    k = []
    for i in range(k_period - 1, len(candles)):
        window = candles[i - k_period + 1:i + 1]
        highest = max(c.high for c in window)
        lowest = min(c.low for c in window)
        if highest == lowest:
            k.append(50.0)
        else:
            k.append((candles[i].close - lowest) / (highest - lowest) * 100)
    return StochasticResult(k, sma(k, d_period))


def vwap(candles: Sequence[Candle]) -> List[float]:
    """Cumulative volume-weighted average of the typical price."""
    result = []
    cumulative_volume = 0.0
    cumulative_value = 0.0
    for candle in candles:
        typical = (candle.high + candle.low + candle.close) / 3
        cumulative_volume += candle.volume
        cumulative_value += typical * candle.volume
        result.append(cumulative_value / cumulative_volume if cumulative_volume > 0 else typical)
    return result


def detect_crossover(fast: Sequence[float], slow: Sequence[float]) -> List[str]:
    """BUY/SELL/HOLD for each step where ``fast`` crosses ``slow``.

    Both series are aligned on their last element.
    """
    length = min(len(fast), len(slow))
    if length < 2:
        return []
    fast = fast[len(fast) - length:]
    slow = slow[len(slow) - length:]
    signals = []
    for i in range(1, length):
        if fast[i - 1] <= slow[i - 1] and fast[i] > slow[i]:
            signals.append("BUY")
        elif fast[i - 1] >= slow[i - 1] and fast[i] < slow[i]:
            signals.append("SELL")
        else:
            signals.append("HOLD")
    return signals


def volatility(values: Sequence[float], period: int = 20) -> List[float]:
    """Annualized (365 days) standard deviation of log returns."""
    if period <= 0 or len(values) < period + 1:
        return []
    returns = [
        math.log(curr / prev)
        for prev, curr in zip(values, values[1:])
        if prev > 0 and curr > 0
    ]
    result = []
    for i in range(period - 1, len(returns)):
        window = returns[i - period + 1:i + 1]
        mean = sum(window) / period
        variance = sum((r - mean) ** 2 for r in window) / period
        result.append(math.sqrt(variance) * math.sqrt(365))
    return result
