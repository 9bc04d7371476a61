"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient, ASGITransport

from botengine.models import Bot, BotStatus, ExchangeAccount, async_session_maker, configure_database, init_db
from botengine.services.bot_config import (
    BotConfig,
    ExecutionConfig,
    IndicatorConfig,
    MarketConfig,
    RiskConfig,
    StrategyConfig,
)
from botengine.services.bot_store import BotStore
from botengine.services.config import config_service
from botengine.services.exchange import Candle, SimulatedExchangeService
from botengine.services.exchange_manager import ExchangeManager
from botengine.services.scheduler import BotScheduler
from botengine.services.strategies import BotContext


T0 = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def engine_config(tmp_path):
    """Fast retries and per-test bot log directory."""
    config_service.load_dict({
        "engine": {
            "retry_base_delay_seconds": 0,
            "stop_timeout_seconds": 2.0,
            "market_data_ttl_seconds": 5.0,
        },
        "logging": {"bot_logs_dir": str(tmp_path / "logs")},
    })
    yield
    config_service.load_dict({})


@pytest.fixture
async def test_db(tmp_path):
    """Fresh SQLite database file for each test."""
    engine = configure_database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db()
    yield engine
    await engine.dispose()


@pytest.fixture
def sim_exchange():
    return SimulatedExchangeService(initial_balance=10000.0)


@pytest.fixture
def exchange_mgr(sim_exchange):
    manager = ExchangeManager()
    manager.register(1, sim_exchange)
    return manager


@pytest.fixture
def store(test_db):
    return BotStore()


@pytest.fixture
async def scheduler(store, exchange_mgr):
    scheduler = BotScheduler(store=store, exchange_manager=exchange_mgr, stop_timeout=2.0)
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
async def exchange_account(test_db):
    async with async_session_maker() as session:
        account = ExchangeAccount(id=1, name="Paper", exchange_id="binance", is_simulated=True)
        session.add(account)
        await session.commit()
        return account


@pytest.fixture
def make_bot(exchange_account):
    """Factory persisting a bot on the simulated account.

    Cooldown defaults to a minute so tests drive ticks by hand.
    """
    async def _make(
        strategy="grid",
        parameters=None,
        symbol="BTC/USDT",
        risk=None,
        execution=None,
        status=BotStatus.CREATED,
        name="Test Bot",
    ):
        if parameters is None:
            parameters = {"upperPrice": 50000, "lowerPrice": 40000, "gridLevels": 10, "orderAmount": 0.01}
        async with async_session_maker() as session:
            bot = Bot(
                name=name,
                symbol=symbol,
                exchange_account_id=exchange_account.id,
                strategy=strategy,
                strategy_params=parameters,
                strategy_indicators=[],
                risk_config=risk if risk is not None else {"max_position_size": 1.0, "risk_per_trade": 0.1},
                execution_config=execution if execution is not None else {"cooldown_period": 60},
                status=status,
            )
            session.add(bot)
            await session.commit()
            return bot

    return _make


@pytest.fixture
async def client(test_db, scheduler):
    """Test client bound to the test database and scheduler."""
    from botengine.main import app
    from botengine.routers.bots import get_scheduler

    app.dependency_overrides[get_scheduler] = lambda: scheduler

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_candles():
    """Factory for one-minute candles closing at the given prices."""
    def _make(closes, symbol="BTC/USDT", start=T0, volume=10.0):
        candles = []
        previous = closes[0] if closes else None
        for i, close in enumerate(closes):
            candles.append(Candle(
                symbol=symbol,
                timestamp=start + timedelta(minutes=i),
                open=previous,
                high=max(previous, close) * 1.001,
                low=min(previous, close) * 0.999,
                close=close,
                volume=volume,
            ))
            previous = close
        return candles

    return _make


@pytest.fixture
def make_config():
    def _make(
        strategy_type="grid",
        parameters=None,
        indicators=(),
        conditions=None,
        symbol="BTC/USDT",
        risk=None,
        execution=None,
        bot_id=1,
    ):
        return BotConfig(
            id=bot_id,
            name="Test Bot",
            strategy=StrategyConfig(
                type=strategy_type,
                parameters=parameters or {},
                indicators=tuple(IndicatorConfig(**i) if isinstance(i, dict) else i for i in indicators),
                conditions=conditions,
            ),
            market=MarketConfig(symbol=symbol, exchange_account_id=1),
            risk=risk or RiskConfig(max_position_size=1.0),
            execution=execution or ExecutionConfig(),
        )

    return _make


@pytest.fixture
def make_context(make_candles):
    """Factory for a BotContext whose last candle closes at ``price``."""
    def _make(config, price, closes=None, balances=None, positions=None, timestamp=T0, trades=(), orders=(), history=()):
        if closes is None:
            closes = [price] * 30
        return BotContext(
            bot=config,
            market_data=make_candles(closes, symbol=config.market.symbol),
            current_price=price,
            balances=balances if balances is not None else {"USDT": 10000.0},
            positions=positions or {},
            orders=orders,
            trades=trades,
            history=history,
            timestamp=timestamp,
        )

    return _make
