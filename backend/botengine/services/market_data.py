"""Short-lived candle cache shared by every bot tick."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .config import config_service
from .exchange import Candle

logger = logging.getLogger(__name__)

CacheKey = Tuple[int, str]


@dataclass
class CacheEntry:
    candles: List[Candle]
    fetched_at: float


class MarketDataCache:
    """Caches candles per (exchange account, symbol) for a few seconds.

    Each key has its own lock, so concurrent ticks of bots trading the same
    market share one fetch. A failed fetch returns an empty list and leaves
    the key uncached, so the next tick retries.
    """

    def __init__(
        self,
        exchange_manager,
        ttl_seconds: Optional[float] = None,
        interval: Optional[str] = None,
        limit: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.exchange_manager = exchange_manager
        self._ttl_seconds = ttl_seconds
        self._interval = interval
        self._limit = limit
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}

    # Unset values follow the engine configuration loaded at startup
    @property
    def ttl_seconds(self) -> float:
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return config_service.get("engine.market_data_ttl_seconds")

    @property
    def interval(self) -> str:
        return self._interval or config_service.get("engine.candle_interval")

    @property
    def limit(self) -> int:
        return self._limit or config_service.get("engine.candle_limit")

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _fresh(self, key: CacheKey) -> Optional[List[Candle]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at > self.ttl_seconds:
            return None
        return entry.candles

    async def get_candles(self, account_id: int, symbol: str) -> List[Candle]:
        """Get recent candles, oldest first; [] when the fetch fails."""
        key = (account_id, symbol)
        cached = self._fresh(key)
        if cached is not None:
            return cached

        async with self._lock_for(key):
            # Another tick may have filled the key while we waited
            cached = self._fresh(key)
            if cached is not None:
                return cached

            try:
                candles = await self.exchange_manager.get_candlesticks(account_id, symbol, self.interval, self.limit)
            except Exception as e:
                logger.error(f"Error fetching market data for {symbol} on account {account_id}: {e}")
                return []

            candles = list(candles)
            if candles:
                self._entries[key] = CacheEntry(candles, self._clock())
            return candles

    def invalidate(self, key: Optional[CacheKey] = None) -> None:
        """Drop one key, or every key when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
