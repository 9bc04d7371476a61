"""Exchange manager - routes calls to the exchange service behind an account."""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy import select

from ..models import ExchangeAccount, async_session_maker
from .config import config_service
from .exchange import (
    Balance,
    Candle,
    ExchangeOrder,
    ExchangeService,
    OrderRequest,
    SimulatedExchangeService,
    Ticker,
)

logger = logging.getLogger(__name__)


class ExchangeAccountNotFound(LookupError):
    """No exchange account exists for the requested id."""


class ExchangeManager:
    """Keeps one connected exchange service per exchange account.

    Services are created on first use from the ``exchange_accounts`` table, or
    registered directly with :meth:`register` (tests, simulations).
    """

    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory or async_session_maker
        self._adapters: Dict[int, ExchangeService] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def register(self, account_id: int, service: ExchangeService) -> None:
        """Attach an already-built service to an account id."""
        self._adapters[account_id] = service

    def _lock_for(self, account_id: int) -> asyncio.Lock:
        if account_id not in self._locks:
            self._locks[account_id] = asyncio.Lock()
        return self._locks[account_id]

    async def get_adapter(self, account_id: int) -> ExchangeService:
        """Return the connected service for an account, creating it on first use.

        Raises:
            ExchangeAccountNotFound: If the account does not exist
            ConnectionError: If the exchange cannot be reached
        """
        adapter = self._adapters.get(account_id)
        if adapter is not None:
            return adapter

        async with self._lock_for(account_id):
            adapter = self._adapters.get(account_id)
            if adapter is not None:
                return adapter

            async with self._session_factory() as session:
                result = await session.execute(
                    select(ExchangeAccount).where(ExchangeAccount.id == account_id)
                )
                account = result.scalar_one_or_none()

            if account is None:
                raise ExchangeAccountNotFound(f"Exchange account {account_id} not found")

            if account.is_simulated:
                adapter = SimulatedExchangeService(initial_balance=account.initial_balance or 0.0)
            else:
                credentials = config_service.exchange_credentials(account.exchange_id)
                credentials.setdefault("api_key", account.api_key or "")
                credentials.setdefault("api_secret", account.api_secret or "")
                credentials.setdefault("sandbox", bool(account.sandbox))
                adapter = ExchangeService(account.exchange_id, credentials)

            if not await adapter.connect():
                raise ConnectionError(f"Could not connect exchange account {account_id} ({account.exchange_id})")

            self._adapters[account_id] = adapter
            logger.info(f"Exchange account {account_id}: connected ({account.exchange_id})")
            return adapter

    async def get_candlesticks(self, account_id: int, symbol: str, interval: str, limit: int) -> List[Candle]:
        adapter = await self.get_adapter(account_id)
        return await adapter.get_candlesticks(symbol, interval, limit)

    async def get_account_balances(self, account_id: int) -> List[Balance]:
        adapter = await self.get_adapter(account_id)
        balances = await adapter.get_all_balances()
        return list(balances.values())

    async def get_ticker(self, account_id: int, symbol: str) -> Ticker:
        """Get a ticker.

        Raises:
            LookupError: If the exchange returned no ticker
        """
        adapter = await self.get_adapter(account_id)
        ticker = await adapter.get_ticker(symbol)
        if ticker is None:
            raise LookupError(f"No ticker for {symbol} on account {account_id}")
        return ticker

    async def get_open_orders(self, account_id: int, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        adapter = await self.get_adapter(account_id)
        return await adapter.get_open_orders(symbol)

    async def create_order(self, account_id: int, request: OrderRequest) -> ExchangeOrder:
        adapter = await self.get_adapter(account_id)
        return await adapter.create_order(request)

    async def cancel_order(self, account_id: int, order_id: str, symbol: str) -> bool:
        adapter = await self.get_adapter(account_id)
        return await adapter.cancel_order(order_id, symbol)

    async def test_connection(self, account_id: int) -> bool:
        """Check that the account's exchange is reachable."""
        try:
            adapter = await self.get_adapter(account_id)
        except (ExchangeAccountNotFound, ConnectionError) as e:
            logger.warning(f"Exchange account {account_id}: connection test failed: {e}")
            return False
        return await adapter.test_connection()

    async def close_all(self) -> None:
        """Disconnect every adapter."""
        for account_id, adapter in list(self._adapters.items()):
            try:
                await adapter.disconnect()
            except Exception as e:
                logger.error(f"Exchange account {account_id}: error while disconnecting: {e}")
        self._adapters.clear()


# Global exchange manager instance
exchange_manager = ExchangeManager()
