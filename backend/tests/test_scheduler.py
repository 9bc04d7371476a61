"""Tests for the bot scheduler: lifecycle, ticks and registry."""

import asyncio
from datetime import datetime, timedelta

import pytest

from botengine.models import BotStatus, ExecutionAction, ExecutionStatus, Trade, TradeSide, async_session_maker
from botengine.services.errors import ConfigurationError
from botengine.services.strategies import STRATEGY_REGISTRY, Signal, Strategy, StrategyKind


class AlwaysBuy(Strategy):
    name = "AlwaysBuy"

    async def on_initialize(self):
        self.fills = []

    async def evaluate(self, context):
        return Signal.buy(reason="always buy", timestamp=context.timestamp)

    def on_fill(self, signal, order):
        self.fills.append(order.id)


class AlwaysHold(Strategy):
    name = "AlwaysHold"

    async def on_initialize(self):
        pass

    async def evaluate(self, context):
        return self.hold(context, "nothing to do")


class AlwaysSell(AlwaysBuy):
    async def evaluate(self, context):
        return Signal.sell(reason="always sell", timestamp=context.timestamp)


class Exploding(AlwaysBuy):
    async def evaluate(self, context):
        raise RuntimeError("indicator blew up")


class GatedBuy(AlwaysBuy):
    """Blocks inside evaluate until released."""

    async def on_initialize(self):
        await super().on_initialize()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def evaluate(self, context):
        self.entered.set()
        await self.release.wait()
        return await super().evaluate(context)


@pytest.fixture
def use_strategy(monkeypatch):
    """Swap the class registered for grid bots."""
    def _use(cls):
        monkeypatch.setitem(STRATEGY_REGISTRY, StrategyKind.GRID, cls)
    return _use


def history(executions):
    """(action, status) pairs, newest first."""
    return [(e.action, e.status) for e in executions]


# ============================================================================
# Start / Stop
# ============================================================================


class TestStartStop:
    async def test_start_then_stop(self, scheduler, store, make_bot):
        bot = await make_bot()

        await scheduler.start(bot.id)
        assert scheduler.is_running(bot.id)
        assert (await store.load_bot(bot.id)).status == BotStatus.RUNNING

        await scheduler.stop(bot.id)
        assert not scheduler.is_registered(bot.id)
        assert scheduler.registered_bot_ids() == []

        stored = await store.load_bot(bot.id)
        assert stored.status == BotStatus.STOPPED
        assert stored.stopped_at is not None
        assert history(await store.list_executions(bot.id)) == [
            (ExecutionAction.STOP, ExecutionStatus.SUCCESS),
            (ExecutionAction.START, ExecutionStatus.SUCCESS),
        ]

    async def test_start_record_describes_config(self, scheduler, store, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)

        record = (await store.list_executions(bot.id))[0]
        assert record.details["config"]["strategy"] == "grid"
        assert record.details["config"]["symbol"] == "BTC/USDT"

    async def test_double_start_rejected(self, scheduler, store, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        task = scheduler._bots[bot.id].task

        with pytest.raises(ConfigurationError, match="already running"):
            await scheduler.start(bot.id)

        assert scheduler._bots[bot.id].task is task
        assert scheduler.is_running(bot.id)
        assert history(await store.list_executions(bot.id))[0] == (ExecutionAction.START, ExecutionStatus.FAILED)

    async def test_start_missing_bot(self, scheduler):
        with pytest.raises(ConfigurationError, match="Bot not found"):
            await scheduler.start(9999)

    async def test_stop_unregistered_bot(self, scheduler, store, make_bot):
        bot = await make_bot()
        with pytest.raises(ConfigurationError):
            await scheduler.stop(bot.id)

        record = (await store.list_executions(bot.id))[0]
        assert (record.action, record.status) == (ExecutionAction.STOP, ExecutionStatus.FAILED)
        assert record.details["error"] == "ConfigurationError"

    async def test_stop_cleans_up_strategy(self, scheduler, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        strategy = scheduler.get_strategy(bot.id)
        assert strategy.is_initialized

        await scheduler.stop(bot.id)
        assert not strategy.is_initialized
        assert scheduler.get_strategy(bot.id) is None

    async def test_restart_after_stop(self, scheduler, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        await scheduler.stop(bot.id)
        await scheduler.start(bot.id)
        assert scheduler.is_running(bot.id)

    async def test_strategy_init_failure(self, scheduler, store, make_bot):
        bot = await make_bot(parameters={"upperPrice": 40000, "lowerPrice": 50000, "gridLevels": 10, "orderAmount": 0.01})

        with pytest.raises(ConfigurationError, match="Failed to initialize strategy"):
            await scheduler.start(bot.id)

        assert not scheduler.is_registered(bot.id)
        assert (await store.load_bot(bot.id)).status == BotStatus.CREATED
        assert history(await store.list_executions(bot.id)) == [(ExecutionAction.START, ExecutionStatus.FAILED)]

    async def test_invalid_policy_rejected(self, scheduler, make_bot):
        bot = await make_bot(risk={"max_position_size": 0})
        with pytest.raises(ConfigurationError, match="Invalid max position size"):
            await scheduler.start(bot.id)

    async def test_unknown_exchange_account(self, scheduler, store, make_bot):
        bot = await make_bot()
        await store.update_config(bot.id, {"exchange_account_id": 99})

        with pytest.raises(ConfigurationError, match="Exchange account unavailable"):
            await scheduler.start(bot.id)
        assert not scheduler.is_registered(bot.id)

    async def test_shutdown_stops_everything(self, scheduler, store, make_bot):
        first = await make_bot(name="One")
        second = await make_bot(name="Two")
        await scheduler.start(first.id)
        await scheduler.start(second.id)

        assert await scheduler.shutdown() == {}
        assert scheduler.registered_bot_ids() == []
        for bot in (first, second):
            assert (await store.load_bot(bot.id)).status == BotStatus.STOPPED

    async def test_resume_on_startup(self, scheduler, store, make_bot):
        running = await make_bot(status=BotStatus.RUNNING)
        created = await make_bot(name="Idle")

        assert await scheduler.resume_bots_on_startup() == 1
        assert scheduler.is_running(running.id)
        assert not scheduler.is_registered(created.id)
        assert history(await store.list_executions(running.id)) == [(ExecutionAction.START, ExecutionStatus.SUCCESS)]

    async def test_start_bot_left_running_without_loop(self, scheduler, store, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING)

        await scheduler.start(bot.id)

        assert scheduler.is_running(bot.id)
        assert history(await store.list_executions(bot.id)) == [(ExecutionAction.START, ExecutionStatus.SUCCESS)]

    async def test_stop_bot_left_running_without_loop(self, scheduler, store, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING)

        await scheduler.stop(bot.id)

        stored = await store.load_bot(bot.id)
        assert stored.status == BotStatus.STOPPED
        assert stored.stopped_at is not None
        assert history(await store.list_executions(bot.id)) == [(ExecutionAction.STOP, ExecutionStatus.SUCCESS)]

    async def test_failed_resume_marks_bot_stopped(self, scheduler, store, make_bot):
        broken = await make_bot(
            status=BotStatus.RUNNING,
            parameters={"upperPrice": 40000, "lowerPrice": 50000, "gridLevels": 10, "orderAmount": 0.01},
        )

        assert await scheduler.resume_bots_on_startup() == 0

        assert not scheduler.is_registered(broken.id)
        assert (await store.load_bot(broken.id)).status == BotStatus.STOPPED
        assert history(await store.list_executions(broken.id)) == [(ExecutionAction.START, ExecutionStatus.FAILED)]

        # A stopped bot can be fixed and started again
        await store.update_config(broken.id, {"strategy": {"parameters": {"upperPrice": 50000, "lowerPrice": 40000}}})
        await scheduler.start(broken.id)
        assert scheduler.is_running(broken.id)


# ============================================================================
# Pause / Resume / Config updates
# ============================================================================


class TestPauseResume:
    async def test_pause_keeps_strategy(self, scheduler, store, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        strategy = scheduler.get_strategy(bot.id)

        await scheduler.pause(bot.id)
        assert scheduler.is_registered(bot.id)
        assert not scheduler.is_running(bot.id)
        assert (await store.load_bot(bot.id)).status == BotStatus.PAUSED

        await scheduler.resume(bot.id)
        assert scheduler.is_running(bot.id)
        assert scheduler.get_strategy(bot.id) is strategy
        assert history(await store.list_executions(bot.id))[:2] == [
            (ExecutionAction.RESUME, ExecutionStatus.SUCCESS),
            (ExecutionAction.PAUSE, ExecutionStatus.SUCCESS),
        ]

    async def test_pause_requires_running(self, scheduler, make_bot):
        bot = await make_bot()
        with pytest.raises(ConfigurationError, match="not running"):
            await scheduler.pause(bot.id)

    async def test_resume_requires_paused(self, scheduler, store, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        with pytest.raises(ConfigurationError, match="not paused"):
            await scheduler.resume(bot.id)
        assert history(await store.list_executions(bot.id))[0] == (ExecutionAction.RESUME, ExecutionStatus.FAILED)

    async def test_stop_while_paused(self, scheduler, store, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        await scheduler.pause(bot.id)
        await scheduler.stop(bot.id)

        assert not scheduler.is_registered(bot.id)
        assert (await store.load_bot(bot.id)).status == BotStatus.STOPPED

    async def test_start_while_paused_starts_fresh(self, scheduler, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        strategy = scheduler.get_strategy(bot.id)
        await scheduler.pause(bot.id)

        await scheduler.start(bot.id)
        assert scheduler.is_running(bot.id)
        assert scheduler.get_strategy(bot.id) is not strategy


class TestUpdateConfig:
    async def test_running_bot_restarts_with_new_config(self, scheduler, store, make_bot, use_strategy):
        use_strategy(AlwaysHold)
        bot = await make_bot()
        await scheduler.start(bot.id)
        old_strategy = scheduler.get_strategy(bot.id)

        updated = await scheduler.update_config(bot.id, {"strategy": {"parameters": {"gridLevels": 20}}})

        assert updated.status == BotStatus.RUNNING
        assert updated.strategy_params["gridLevels"] == 20
        assert updated.strategy_params["upperPrice"] == 50000
        assert scheduler.is_running(bot.id)
        new_strategy = scheduler.get_strategy(bot.id)
        assert new_strategy is not old_strategy
        assert new_strategy.param("gridLevels") == 20
        assert history(await store.list_executions(bot.id)) == [
            (ExecutionAction.START, ExecutionStatus.SUCCESS),
            (ExecutionAction.STOP, ExecutionStatus.SUCCESS),
            (ExecutionAction.START, ExecutionStatus.SUCCESS),
        ]

    async def test_stopped_bot_only_persists(self, scheduler, store, make_bot):
        bot = await make_bot()
        updated = await scheduler.update_config(bot.id, {"name": "Renamed", "risk": {"max_daily_loss": 50}})

        assert updated.name == "Renamed"
        assert updated.risk_config == {"max_position_size": 1.0, "risk_per_trade": 0.1, "max_daily_loss": 50}
        assert not scheduler.is_registered(bot.id)
        assert await store.list_executions(bot.id) == []

    async def test_paused_bot_rebuilt_on_resume(self, scheduler, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)
        await scheduler.pause(bot.id)

        await scheduler.update_config(bot.id, {"strategy": {"parameters": {"gridLevels": 5}}})
        assert not scheduler.is_registered(bot.id)

        await scheduler.resume(bot.id)
        assert scheduler.is_running(bot.id)
        assert scheduler.get_strategy(bot.id).param("gridLevels") == 5

    async def test_bad_config_leaves_bot_stopped(self, scheduler, store, make_bot):
        bot = await make_bot()
        await scheduler.start(bot.id)

        with pytest.raises(ConfigurationError):
            await scheduler.update_config(bot.id, {"strategy": {"parameters": {"lowerPrice": 60000}}})

        assert not scheduler.is_registered(bot.id)
        assert (await store.load_bot(bot.id)).status == BotStatus.STOPPED
        assert history(await store.list_executions(bot.id))[0] == (ExecutionAction.START, ExecutionStatus.FAILED)

    async def test_missing_bot(self, scheduler):
        with pytest.raises(ConfigurationError, match="Bot not found"):
            await scheduler.update_config(9999, {"name": "x"})


# ============================================================================
# Ticks
# ============================================================================


class TestTicks:
    async def test_hold_submits_nothing(self, scheduler, store, make_bot, use_strategy):
        use_strategy(AlwaysHold)
        bot = await make_bot()
        await scheduler.start(bot.id)

        for _ in range(3):
            assert await scheduler.execute_bot_iteration(bot.id) is None

        assert ExecutionAction.TRADE not in [a for a, _ in history(await store.list_executions(bot.id))]
        assert await store.list_trades(bot.id) == []

    async def test_buy_is_sized_submitted_and_recorded(self, scheduler, store, sim_exchange, make_bot, use_strategy):
        use_strategy(AlwaysBuy)
        bot = await make_bot()
        await scheduler.start(bot.id)

        order = await scheduler.execute_bot_iteration(bot.id)

        assert order is not None
        assert order.status == "closed"
        # 10% of 10000 USDT at the last simulated close
        assert order.amount == pytest.approx(1000.0 / 45000.0)
        assert scheduler.get_strategy(bot.id).fills == [order.id]

        trades = await store.list_trades(bot.id)
        assert len(trades) == 1
        assert trades[0].side == TradeSide.BUY
        assert history(await store.list_executions(bot.id))[0] == (ExecutionAction.TRADE, ExecutionStatus.SUCCESS)

        balances = await sim_exchange.get_all_balances()
        assert balances["BTC"].free == pytest.approx(order.amount)

    async def test_trade_log_written_for_simulated_account(self, scheduler, make_bot, use_strategy):
        use_strategy(AlwaysBuy)
        bot = await make_bot()
        await scheduler.start(bot.id)
        await scheduler.execute_bot_iteration(bot.id)

        bot_logger = scheduler._bots[bot.id].bot_logger
        assert bot_logger.is_simulated
        assert bot_logger.trade_log_path.name == "trades_simulated.csv"
        assert bot_logger.trade_log_path.exists()

    async def test_overlapping_ticks_submit_once(self, scheduler, store, make_bot, use_strategy):
        use_strategy(GatedBuy)
        bot = await make_bot()
        await scheduler.start(bot.id)
        strategy = scheduler.get_strategy(bot.id)

        first = asyncio.create_task(scheduler.execute_bot_iteration(bot.id))
        await asyncio.wait_for(strategy.entered.wait(), timeout=1.0)

        assert await scheduler.execute_bot_iteration(bot.id) is None

        strategy.release.set()
        assert await first is not None
        assert len(await store.list_trades(bot.id)) == 1

    async def test_stop_waits_for_tick_in_flight(self, scheduler, store, make_bot, use_strategy):
        use_strategy(GatedBuy)
        bot = await make_bot()
        await scheduler.start(bot.id)
        strategy = scheduler.get_strategy(bot.id)

        tick = asyncio.create_task(scheduler.execute_bot_iteration(bot.id))
        await asyncio.wait_for(strategy.entered.wait(), timeout=1.0)
        stop = asyncio.create_task(scheduler.stop(bot.id))

        await asyncio.sleep(0.05)
        assert not stop.done()
        assert strategy.is_initialized

        strategy.release.set()
        order = await tick
        await asyncio.wait_for(stop, timeout=1.0)

        assert order is not None
        assert strategy.fills == [order.id]
        assert not strategy.is_initialized
        assert len(await store.list_trades(bot.id)) == 1
        assert (await store.load_bot(bot.id)).status == BotStatus.STOPPED

    async def test_dca_books_what_was_traded(self, scheduler, store, make_bot):
        bot = await make_bot(
            strategy="dca",
            parameters={"totalAmount": 5000, "targetPrice": 45000, "orderCount": 5, "priceDeviation": 0.1},
            risk={"max_position_size": 1.0, "risk_per_trade": 0.02},
        )
        await scheduler.start(bot.id)
        strategy = scheduler.get_strategy(bot.id)

        order = await scheduler.execute_bot_iteration(bot.id)
        assert order is not None
        # Sized down from the 1000 USDT entry to 2% of the balance
        assert order.amount == pytest.approx(200.0 / 45000.0)

        trades = await store.list_trades(bot.id)
        assert len(trades) == 1
        assert strategy.executed_count == 1
        assert strategy.total_acquired == pytest.approx(trades[0].amount)
        assert strategy.total_invested == pytest.approx(trades[0].amount * trades[0].price)
        assert strategy.average_price == pytest.approx(trades[0].price)

    async def test_risk_rejection_recorded(self, scheduler, store, make_bot, use_strategy):
        use_strategy(AlwaysSell)
        bot = await make_bot()
        await scheduler.start(bot.id)

        assert await scheduler.execute_bot_iteration(bot.id) is None

        record = (await store.list_executions(bot.id))[0]
        assert (record.action, record.status) == (ExecutionAction.TRADE, ExecutionStatus.FAILED)
        assert record.details["error"] == "RiskLimitError"
        assert scheduler.is_running(bot.id)

    async def test_strategy_error_recorded_and_bot_keeps_running(self, scheduler, store, make_bot, use_strategy):
        use_strategy(Exploding)
        bot = await make_bot()
        await scheduler.start(bot.id)

        assert await scheduler.execute_bot_iteration(bot.id) is None

        record = (await store.list_executions(bot.id))[0]
        assert record.status == ExecutionStatus.FAILED
        assert record.details["error"] == "RuntimeError"
        assert "indicator blew up" in record.error
        assert scheduler.is_running(bot.id)

    async def test_exchange_failure_recorded_once(self, scheduler, store, sim_exchange, make_bot, use_strategy):
        use_strategy(AlwaysBuy)
        bot = await make_bot(execution={"cooldown_period": 60, "retry_attempts": 2})
        await scheduler.start(bot.id)

        async def reject(request):
            raise ConnectionError("exchange unreachable")

        sim_exchange.create_order = reject
        assert await scheduler.execute_bot_iteration(bot.id) is None

        failed = [e for e in await store.list_executions(bot.id) if e.action == ExecutionAction.TRADE]
        assert len(failed) == 1
        assert failed[0].status == ExecutionStatus.FAILED
        assert failed[0].details["error"] == "ConnectionError"

    async def test_iteration_of_unregistered_bot(self, scheduler):
        assert await scheduler.execute_bot_iteration(9999) is None

    async def test_loop_ticks_on_cooldown(self, scheduler, store, make_bot, use_strategy):
        use_strategy(AlwaysBuy)
        bot = await make_bot(execution={"cooldown_period": 0.05})
        await scheduler.start(bot.id)

        for _ in range(100):
            if await store.list_trades(bot.id):
                break
            await asyncio.sleep(0.02)

        await scheduler.stop(bot.id)
        assert await store.list_trades(bot.id)
        assert not scheduler.is_registered(bot.id)


class TestContextAndQueries:
    async def test_build_context(self, scheduler, sim_exchange, make_bot, make_config):
        bot = await make_bot()
        sim_exchange.set_balance("BTC", 0.5)
        config = make_config(bot_id=bot.id)

        context = await scheduler.build_context(config)

        assert context.current_price == pytest.approx(45000.0)
        assert context.market_data[-1].close == context.current_price
        assert context.positions == {"BTC": 0.5}
        assert context.quote_balance == pytest.approx(10000.0)
        assert context.trades == ()

    async def test_context_carries_full_trade_history(self, scheduler, store, make_bot, make_config):
        bot = await make_bot()
        async with async_session_maker() as session:
            session.add(Trade(
                bot_id=bot.id,
                symbol="BTC/USDT",
                side=TradeSide.SELL,
                amount=0.1,
                price=44000.0,
                fee=0.0,
                pnl=25.0,
                executed_at=datetime.utcnow() - timedelta(days=3),
            ))
            await session.commit()
        await store.record_trade(bot.id, "BTC/USDT", TradeSide.BUY, 0.1, 45000.0)

        context = await scheduler.build_context(make_config(bot_id=bot.id))

        assert [t.side for t in context.trades] == [TradeSide.BUY]
        assert [t.side for t in context.history] == [TradeSide.SELL, TradeSide.BUY]

    async def test_status_and_performance(self, scheduler, store, make_bot):
        bot = await make_bot()
        assert await scheduler.get_status(bot.id) == BotStatus.CREATED

        await store.record_trade(bot.id, "BTC/USDT", TradeSide.BUY, 0.1, 100.0)
        await store.record_trade(bot.id, "BTC/USDT", TradeSide.SELL, 0.1, 110.0, pnl=1.0)
        performance = await scheduler.get_performance(bot.id)
        assert performance.total_trades == 2
        assert performance.net_profit == pytest.approx(1.0)

    async def test_queries_on_missing_bot(self, scheduler):
        with pytest.raises(ConfigurationError):
            await scheduler.get_status(9999)
        with pytest.raises(ConfigurationError):
            await scheduler.get_performance(9999)

    async def test_catalog_passthrough(self, scheduler):
        assert "grid" in scheduler.list_available_strategies()
        assert scheduler.get_strategy_default_config("dca")["orderCount"] > 0
        assert not scheduler.validate_strategy_config("grid", {"upperPrice": 1, "lowerPrice": 2}).valid
