"""Exchange service for interacting with crypto exchanges via ccxt."""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
from dataclasses import dataclass
from enum import Enum

import ccxt.async_support as ccxt

logger = logging.getLogger(__name__)


class OrderSide(str, Enum):
    """Order side enumeration."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type enumeration."""
    MARKET = "market"
    LIMIT = "limit"


class TimeInForce(str, Enum):
    """How long a limit order stays on the book."""
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


@dataclass
class OrderRequest:
    """Order the engine wants placed."""
    symbol: str
    side: OrderSide
    type: OrderType
    amount: float
    price: Optional[float] = None
    time_in_force: TimeInForce = TimeInForce.GTC

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.type.value,
            "amount": self.amount,
            "price": self.price,
            "time_in_force": self.time_in_force.value,
        }


@dataclass
class ExchangeOrder:
    """Exchange order result."""
    id: str
    symbol: str
    side: str
    type: str
    amount: float
    price: float
    cost: float
    fee: float
    fee_currency: str
    status: str
    timestamp: datetime
    filled: float
    remaining: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "amount": self.amount,
            "price": self.price,
            "cost": self.cost,
            "fee": self.fee,
            "fee_currency": self.fee_currency,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "filled": self.filled,
            "remaining": self.remaining,
        }


@dataclass
class Balance:
    """Account balance for a currency."""
    currency: str
    free: float
    used: float
    total: float


@dataclass
class Ticker:
    """Market ticker data."""
    symbol: str
    bid: float
    ask: float
    last: float
    volume: float
    timestamp: datetime


@dataclass(frozen=True)
class Candle:
    """One OHLCV candlestick."""
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


class ExchangeService:
    """Service for interacting with a crypto exchange through ccxt."""

    def __init__(self, exchange_id: str = "binance", credentials: Optional[Dict[str, Any]] = None):
        """Initialize the exchange service.

        Args:
            exchange_id: The ccxt exchange identifier (e.g., 'binance', 'kraken')
            credentials: api_key / api_secret / sandbox / retry settings
        """
        self.exchange_id = exchange_id
        self.exchange: Optional[ccxt.Exchange] = None
        self._credentials: Dict[str, Any] = dict(credentials or {})
        self._connected = False
        self._retry_count = self._credentials.get("retry_count", 3)
        self._retry_delay = self._credentials.get("retry_delay", 1.0)

    async def connect(self) -> bool:
        """Connect to the exchange.

        Returns:
            True if connection successful, False otherwise.
        """
        try:
            exchange_class = getattr(ccxt, self.exchange_id, None)
            if not exchange_class:
                logger.error(f"Exchange {self.exchange_id} not supported by ccxt")
                return False

            self.exchange = exchange_class({
                "apiKey": self._credentials.get("api_key", ""),
                "secret": self._credentials.get("api_secret", ""),
                "enableRateLimit": True,
                "options": {
                    "defaultType": "spot",
                }
            })
            if self._credentials.get("sandbox", False):
                self.exchange.set_sandbox_mode(True)

            # Test connection by loading markets
            await self._execute_with_retry(self.exchange.load_markets)
            self._connected = True
            logger.info(f"Connected to {self.exchange_id} exchange")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to {self.exchange_id}: {e}")
            self._connected = False
            return False

    async def disconnect(self) -> None:
        """Disconnect from the exchange."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None
            self._connected = False
            logger.info(f"Disconnected from {self.exchange_id}")

    def is_connected(self) -> bool:
        """Check if connected to exchange."""
        return self._connected and self.exchange is not None

    async def test_connection(self) -> bool:
        """Connect if needed and report whether the exchange is reachable."""
        if self.is_connected():
            return True
        return await self.connect()

    async def _execute_with_retry(self, func, *args, **kwargs):
        """Execute a read-only exchange call with retry on transient errors.

        Args:
            func: The async function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            The result of the function

        Raises:
            The last exception if all retries fail
        """
        last_exception = None

        for attempt in range(self._retry_count):
            try:
                return await func(*args, **kwargs)
            except ccxt.RateLimitExceeded as e:
                logger.warning(f"Rate limit exceeded, waiting... (attempt {attempt + 1})")
                await asyncio.sleep(self._retry_delay * (attempt + 1) * 2)
                last_exception = e
            except ccxt.NetworkError as e:
                logger.warning(f"Network error, retrying... (attempt {attempt + 1}): {e}")
                await asyncio.sleep(self._retry_delay * (attempt + 1))
                last_exception = e

        raise last_exception

    def _require_connection(self) -> None:
        if not self.is_connected():
            raise ConnectionError(f"Not connected to {self.exchange_id}")

    async def get_ticker(self, symbol: str) -> Optional[Ticker]:
        """Get current ticker for a symbol.

        Args:
            symbol: Trading pair symbol (e.g., 'BTC/USDT')

        Returns:
            Ticker data or None if failed
        """
        if not self.is_connected():
            logger.error("Not connected to exchange")
            return None

        try:
            ticker = await self._execute_with_retry(
                self.exchange.fetch_ticker, symbol
            )
            return Ticker(
                symbol=ticker["symbol"],
                bid=ticker.get("bid", 0) or 0,
                ask=ticker.get("ask", 0) or 0,
                last=ticker.get("last", 0) or 0,
                volume=ticker.get("baseVolume", 0) or 0,
                timestamp=datetime.fromtimestamp(ticker["timestamp"] / 1000) if ticker.get("timestamp") else datetime.utcnow(),
            )
        except Exception as e:
            logger.error(f"Failed to get ticker for {symbol}: {e}")
            return None

    async def get_candlesticks(self, symbol: str, interval: str = "1m", limit: int = 100) -> List[Candle]:
        """Get recent OHLCV candles, oldest first.

        Raises:
            ConnectionError: If not connected
            ccxt.BaseError: If the exchange call fails
        """
        self._require_connection()
        rows = await self._execute_with_retry(
            self.exchange.fetch_ohlcv, symbol, interval, None, limit
        )
        return [
            Candle(
                symbol=symbol,
                timestamp=datetime.utcfromtimestamp(row[0] / 1000),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5] or 0),
            )
            for row in rows
        ]

    async def get_all_balances(self) -> Dict[str, Balance]:
        """Get all non-zero balances.

        Raises:
            ConnectionError: If not connected
            ccxt.BaseError: If the exchange call fails
        """
        self._require_connection()
        balance = await self._execute_with_retry(self.exchange.fetch_balance)
        result = {}
        for currency, total in balance.get("total", {}).items():
            if total and total > 0:
                result[currency] = Balance(
                    currency=currency,
                    free=balance.get(currency, {}).get("free", 0) or 0,
                    used=balance.get(currency, {}).get("used", 0) or 0,
                    total=total,
                )
        return result

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        """Submit an order.

        Not retried here: the caller owns the retry policy for side-effecting
        calls.

        Raises:
            ConnectionError: If not connected
            ccxt.BaseError: If the exchange rejects the order
        """
        self._require_connection()
        params = {}
        price = None
        if request.type == OrderType.LIMIT:
            price = request.price
            params["timeInForce"] = request.time_in_force.value

        order = await self.exchange.create_order(
            request.symbol,
            request.type.value,
            request.side.value,
            request.amount,
            price,
            params,
        )
        return self._parse_order(order)

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        """Cancel a pending order.

        Args:
            order_id: The exchange order ID
            symbol: Trading pair symbol

        Returns:
            True if cancelled successfully
        """
        if not self.is_connected():
            logger.error("Not connected to exchange")
            return False

        try:
            await self._execute_with_retry(
                self.exchange.cancel_order, order_id, symbol
            )
            logger.info(f"Cancelled order {order_id} for {symbol}")
            return True
        except Exception as e:
            logger.error(f"Failed to cancel order {order_id}: {e}")
            return False

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        """Get all open orders.

        Raises:
            ConnectionError: If not connected
            ccxt.BaseError: If the exchange call fails
        """
        self._require_connection()
        orders = await self._execute_with_retry(
            self.exchange.fetch_open_orders, symbol
        )
        return [self._parse_order(o) for o in orders]

    def _parse_order(self, order: Dict[str, Any]) -> ExchangeOrder:
        """Parse ccxt order response to ExchangeOrder."""
        fee = order.get("fee", {}) or {}
        return ExchangeOrder(
            id=str(order.get("id", "")),
            symbol=order.get("symbol", ""),
            side=order.get("side", ""),
            type=order.get("type", ""),
            amount=order.get("amount", 0) or 0,
            price=order.get("price", 0) or order.get("average", 0) or 0,
            cost=order.get("cost", 0) or 0,
            fee=fee.get("cost", 0) or 0,
            fee_currency=fee.get("currency", "USDT"),
            status=order.get("status", "unknown"),
            timestamp=datetime.fromtimestamp(order["timestamp"] / 1000) if order.get("timestamp") else datetime.utcnow(),
            filled=order.get("filled", 0) or 0,
            remaining=order.get("remaining", 0) or 0,
        )


class SimulatedExchangeService(ExchangeService):
    """Simulated exchange for dry runs and tests.

    Market orders fill at the touch. Limit orders fill immediately when
    marketable and otherwise rest on a local book until the simulated price
    crosses them or they are cancelled. Funds for resting orders are reserved.
    """

    FEE_RATE = 0.001
    SPREAD = 0.001

    MOCK_PRICES = {
        "BTC/USDT": 45000.0,
        "ETH/USDT": 2500.0,
        "SOL/USDT": 100.0,
        "XRP/USDT": 0.55,
        "ADA/USDT": 0.45,
        "DOGE/USDT": 0.08,
    }

    def __init__(self, initial_balance: float = 10000.0, quote_currency: str = "USDT"):
        """Initialize simulated exchange.

        Args:
            initial_balance: Initial quote balance for simulation
            quote_currency: Currency the initial balance is credited in
        """
        super().__init__(exchange_id="simulated")
        self._free: Dict[str, float] = {quote_currency: initial_balance}
        self._used: Dict[str, float] = {}
        self._prices: Dict[str, float] = dict(self.MOCK_PRICES)
        self._orders: Dict[str, ExchangeOrder] = {}
        self._order_counter = 0
        self._connected = True

    async def connect(self) -> bool:
        """Simulated connection always succeeds."""
        self._connected = True
        logger.info("Connected to simulated exchange")
        return True

    async def disconnect(self) -> None:
        """Simulated disconnect."""
        self._connected = False
        logger.info("Disconnected from simulated exchange")

    def is_connected(self) -> bool:
        return self._connected

    def set_price(self, symbol: str, price: float) -> None:
        """Move the simulated market and fill any crossed resting orders."""
        self._prices[self._normalize(symbol)] = price
        self._match_resting_orders(self._normalize(symbol))

    def set_balance(self, currency: str, amount: float) -> None:
        """Set simulated free balance for testing."""
        self._free[currency] = amount

    def _normalize(self, symbol: str) -> str:
        if "/" in symbol:
            return symbol
        for quote in ("USDT", "USDC", "USD"):
            if symbol.endswith(quote) and len(symbol) > len(quote):
                return f"{symbol[:-len(quote)]}/{quote}"
        return symbol

    def _price(self, symbol: str) -> float:
        return self._prices.get(self._normalize(symbol), 100.0)

    async def get_ticker(self, symbol: str) -> Optional[Ticker]:
        """Get simulated ticker around the current mock price."""
        price = self._price(symbol)
        spread = price * self.SPREAD

        return Ticker(
            symbol=symbol,
            bid=price - spread,
            ask=price + spread,
            last=price,
            volume=1000000.0,
            timestamp=datetime.utcnow(),
        )

    async def get_candlesticks(self, symbol: str, interval: str = "1m", limit: int = 100) -> List[Candle]:
        """Deterministic oscillating series that ends at the current price."""
        price = self._price(symbol)
        now = datetime.utcnow().replace(second=0, microsecond=0)
        candles = []
        for i in range(limit):
            offset = limit - 1 - i
            # Amplitude 0.5%, period 24 candles; the last close is the mock price
            close = price * (1 + 0.005 * math.sin(-offset * 2 * math.pi / 24))
            open_ = price * (1 + 0.005 * math.sin(-(offset + 1) * 2 * math.pi / 24))
            candles.append(Candle(
                symbol=symbol,
                timestamp=now - timedelta(minutes=offset),
                open=open_,
                high=max(open_, close) * 1.0005,
                low=min(open_, close) * 0.9995,
                close=close,
                volume=10.0 + (i % 7),
            ))
        return candles

    async def get_all_balances(self) -> Dict[str, Balance]:
        """Get simulated balances, including funds reserved by resting orders."""
        result = {}
        for currency in set(self._free) | set(self._used):
            free = self._free.get(currency, 0.0)
            used = self._used.get(currency, 0.0)
            if free + used > 0:
                result[currency] = Balance(currency=currency, free=free, used=used, total=free + used)
        return result

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        """Place a simulated order.

        Raises:
            ValueError: On a non-positive amount or insufficient balance
        """
        if request.amount <= 0:
            raise ValueError("Order amount must be positive")

        symbol = self._normalize(request.symbol)
        base, quote = symbol.split("/")
        ticker = await self.get_ticker(symbol)
        touch = ticker.ask if request.side == OrderSide.BUY else ticker.bid

        if request.type == OrderType.LIMIT and request.price is None:
            raise ValueError("Limit orders need a price")

        if request.type == OrderType.MARKET:
            marketable = True
            price = touch
        else:
            price = request.price
            marketable = price >= touch if request.side == OrderSide.BUY else price <= touch

        self._order_counter += 1
        order = ExchangeOrder(
            id=f"sim_{self._order_counter}",
            symbol=symbol,
            side=request.side.value,
            type=request.type.value,
            amount=request.amount,
            price=price,
            cost=0.0,
            fee=0.0,
            fee_currency=quote,
            status="open",
            timestamp=datetime.utcnow(),
            filled=0.0,
            remaining=request.amount,
        )

        # Reserve funds up front; a fill moves them from used to the other asset
        if request.side == OrderSide.BUY:
            reserve_currency, reserve_amount = quote, request.amount * price * (1 + self.FEE_RATE)
        else:
            reserve_currency, reserve_amount = base, request.amount
        if self._free.get(reserve_currency, 0.0) < reserve_amount:
            raise ValueError(f"Insufficient simulated {reserve_currency} balance")
        self._free[reserve_currency] = self._free.get(reserve_currency, 0.0) - reserve_amount
        self._used[reserve_currency] = self._used.get(reserve_currency, 0.0) + reserve_amount

        self._orders[order.id] = order
        if marketable:
            self._fill(order)
        elif request.time_in_force != TimeInForce.GTC:
            # IOC/FOK orders that cannot fill now are cancelled right away
            self._release(order)
            order.status = "canceled"
        return order

    def _fill(self, order: ExchangeOrder) -> None:
        base, quote = order.symbol.split("/")
        cost = order.amount * order.price
        fee = cost * self.FEE_RATE
        if order.side == OrderSide.BUY.value:
            reserved = order.amount * order.price * (1 + self.FEE_RATE)
            self._used[quote] = self._used.get(quote, 0.0) - reserved
            self._free[quote] = self._free.get(quote, 0.0) + reserved - cost - fee
            self._free[base] = self._free.get(base, 0.0) + order.amount
        else:
            self._used[base] = self._used.get(base, 0.0) - order.amount
            self._free[quote] = self._free.get(quote, 0.0) + cost - fee
        order.cost = cost
        order.fee = fee
        order.filled = order.amount
        order.remaining = 0.0
        order.status = "closed"

    def _release(self, order: ExchangeOrder) -> None:
        base, quote = order.symbol.split("/")
        if order.side == OrderSide.BUY.value:
            currency, amount = quote, order.amount * order.price * (1 + self.FEE_RATE)
        else:
            currency, amount = base, order.amount
        self._used[currency] = self._used.get(currency, 0.0) - amount
        self._free[currency] = self._free.get(currency, 0.0) + amount

    def _match_resting_orders(self, symbol: str) -> None:
        price = self._price(symbol)
        for order in list(self._orders.values()):
            if order.symbol != symbol or order.status != "open":
                continue
            if (order.side == OrderSide.BUY.value and price <= order.price) or \
                    (order.side == OrderSide.SELL.value and price >= order.price):
                self._fill(order)

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        """Cancel a resting simulated order."""
        order = self._orders.get(order_id)
        if order is None or order.status != "open":
            return False
        self._release(order)
        order.status = "canceled"
        return True

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        """Get resting simulated orders."""
        wanted = self._normalize(symbol) if symbol else None
        return [
            order for order in self._orders.values()
            if order.status == "open" and (wanted is None or order.symbol == wanted)
        ]

    async def get_order(self, order_id: str) -> Optional[ExchangeOrder]:
        """Get a simulated order by id."""
        return self._orders.get(order_id)
