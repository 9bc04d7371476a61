"""Tests for trading strategies and the strategy catalog."""

from datetime import datetime, timedelta

import pytest

from botengine.services.errors import ConfigurationError, StrategyError
from botengine.services.exchange import ExchangeOrder
from botengine.services.strategies import (
    STRATEGY_REGISTRY,
    SignalType,
    StrategyKind,
    create_strategy,
    get_strategy_default_config,
    get_strategy_description,
    list_available_strategies,
    supported_strategy_names,
    validate_strategy_config,
)
from botengine.services.strategies.dca import DCAStrategy
from botengine.services.strategies.grid import GridStrategy
from botengine.services.strategies.mean_reversion import MeanReversionStrategy
from botengine.services.strategies.trend_following import TrendFollowingStrategy

T0 = datetime(2024, 1, 1, 12, 0, 0)


def fill_for(signal, order_id="order_1"):
    """Exchange order accepted for ``signal`` at its reference price."""
    amount = signal.amount or 0.01
    price = signal.price or 0.0
    return ExchangeOrder(
        id=order_id,
        symbol="BTC/USDT",
        side=signal.type.value.lower(),
        type="market",
        amount=amount,
        price=price,
        cost=amount * price,
        fee=0.0,
        fee_currency="USDT",
        status="closed",
        timestamp=signal.timestamp,
        filled=amount,
        remaining=0.0,
    )


# ============================================================================
# Shared Contract
# ============================================================================


class TestStrategyContract:
    async def test_uninitialized_strategy_holds(self, make_config, make_context):
        strategy = GridStrategy(bot_id=1)
        signal = await strategy.execute(make_context(make_config(), 45000.0))
        assert signal.type == SignalType.HOLD
        assert "not initialized" in signal.reason

    async def test_empty_market_data_holds(self, make_config, make_context):
        config = make_config(parameters={"upperPrice": 50000, "lowerPrice": 40000, "gridLevels": 10, "orderAmount": 0.01})
        strategy = GridStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        signal = await strategy.execute(make_context(config, 45000.0, closes=[]))
        assert signal.type == SignalType.HOLD
        assert "No market data" in signal.reason

    async def test_non_positive_price_holds(self, make_config, make_context):
        config = make_config(parameters={"upperPrice": 50000, "lowerPrice": 40000, "gridLevels": 10, "orderAmount": 0.01})
        strategy = GridStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        signal = await strategy.execute(make_context(config, 0.0, closes=[45000.0] * 10))
        assert signal.type == SignalType.HOLD

    async def test_cleanup_marks_uninitialized(self, make_config):
        config = make_config(parameters={"upperPrice": 50000, "lowerPrice": 40000, "gridLevels": 10, "orderAmount": 0.01})
        strategy = GridStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        await strategy.cleanup()
        assert not strategy.is_initialized
        assert strategy.levels == []

    async def test_indicators_and_conditions(self, make_config, make_context):
        config = make_config(
            parameters={"upperPrice": 50000, "lowerPrice": 40000, "gridLevels": 10, "orderAmount": 0.01},
            indicators=[{"name": "sma", "parameters": {"period": 5}}, {"name": "rsi"}, {"name": "unknown"}],
            conditions={"type": "AND", "conditions": [{"indicator": "sma_5", "operator": "GREATER_THAN", "value": 100}]},
        )
        strategy = GridStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        context = make_context(config, 110.0, closes=[110.0] * 10)

        indicators = strategy.calculate_indicators(context)

        assert indicators["sma_5"] == pytest.approx(110.0)
        # Not enough data for RSI(14): neutral value
        assert indicators["rsi"] == 50.0
        assert "unknown" not in indicators
        assert strategy.evaluate_conditions(indicators)


# ============================================================================
# Grid
# ============================================================================


class TestGridStrategy:
    PARAMS = {"upperPrice": 50000, "lowerPrice": 40000, "gridLevels": 10, "orderAmount": 0.01}

    @pytest.fixture
    async def grid(self, make_config):
        config = make_config(parameters=self.PARAMS)
        strategy = GridStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        return strategy, config

    async def test_ladder_alternates_sides(self, grid):
        strategy, _ = grid
        assert len(strategy.levels) == 10
        assert strategy.levels[0].price == pytest.approx(40000)
        assert strategy.levels[-1].price == pytest.approx(50000)
        assert [lv.side for lv in strategy.levels[:2]] == [SignalType.BUY, SignalType.SELL]

    async def test_sweep_fills_each_level_once(self, grid, make_context):
        strategy, config = grid
        up = [40000 + 500 * i for i in range(21)]
        down = list(reversed(up))

        buys, sells = [], []
        for price in up:
            signal = await strategy.execute(make_context(config, float(price), positions={}))
            if signal.type == SignalType.BUY:
                buys.append(signal.price)
                strategy.on_fill(signal, fill_for(signal))
            assert signal.type != SignalType.SELL

        for price in down:
            signal = await strategy.execute(make_context(config, float(price), positions={"BTC": 1.0}))
            if signal.type == SignalType.SELL:
                sells.append(signal.price)
                strategy.on_fill(signal, fill_for(signal))
            assert signal.type != SignalType.BUY

        buy_levels = [lv.price for lv in strategy.levels if lv.side == SignalType.BUY]
        sell_levels = [lv.price for lv in strategy.levels if lv.side == SignalType.SELL]
        assert sorted(buys) == pytest.approx(buy_levels)
        assert sorted(sells) == pytest.approx(sell_levels)
        assert all(lv.filled for lv in strategy.levels)

        # Re-feeding a price never re-fills a level
        for price in (45000.0, 45000.0, 40000.0):
            signal = await strategy.execute(make_context(config, price, positions={"BTC": 1.0}))
            assert signal.type == SignalType.HOLD

    async def test_level_without_fill_is_offered_again(self, grid, make_context):
        strategy, config = grid
        first = await strategy.execute(make_context(config, 40000.0, positions={}))
        assert first.type == SignalType.BUY
        assert not strategy.levels[0].filled

        # Order never reached the exchange: the same level comes back
        retry = await strategy.execute(make_context(config, 40000.0, positions={}))
        assert retry.type == SignalType.BUY
        assert retry.price == pytest.approx(first.price)

        strategy.on_fill(retry, fill_for(retry, "order_7"))
        assert strategy.levels[0].filled
        assert strategy.levels[0].order_id == "order_7"

        after = await strategy.execute(make_context(config, 40000.0, positions={}))
        assert after.type == SignalType.HOLD

    async def test_outside_range_holds(self, grid, make_context):
        strategy, config = grid
        signal = await strategy.execute(make_context(config, 60000.0))
        assert signal.type == SignalType.HOLD
        assert "outside grid range" in signal.reason

    async def test_sell_level_needs_holdings(self, grid, make_context):
        strategy, config = grid
        sell_price = strategy.levels[1].price
        signal = await strategy.execute(make_context(config, sell_price, positions={}))
        assert signal.type == SignalType.HOLD
        assert not strategy.levels[1].filled

    async def test_invalid_range_rejected(self, make_config):
        config = make_config(parameters={"upperPrice": 40000, "lowerPrice": 50000, "gridLevels": 10, "orderAmount": 0.01})
        with pytest.raises(StrategyError):
            await GridStrategy(bot_id=1).initialize(config.strategy)

    async def test_rebalance_after_drift(self, grid, make_context):
        strategy, config = grid
        await strategy.execute(make_context(config, 45000.0, timestamp=T0))
        # Far from the centre but too soon: no rebalance
        await strategy.execute(make_context(config, 49500.0, timestamp=T0 + timedelta(seconds=60)))
        assert strategy.lower_price == 40000

        await strategy.execute(make_context(config, 49500.0, timestamp=T0 + timedelta(seconds=400)))
        assert strategy.center == pytest.approx(49500.0)
        assert strategy.upper_price - strategy.lower_price == pytest.approx(10000)


# ============================================================================
# Dollar Cost Averaging
# ============================================================================


class TestDCAStrategy:
    PARAMS = {"totalAmount": 10000, "targetPrice": 100, "orderCount": 5, "priceDeviation": 0.1}

    @pytest.fixture
    async def dca(self, make_config):
        config = make_config(strategy_type="dca", parameters=self.PARAMS, symbol="SOL/USDT")
        strategy = DCAStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        return strategy, config

    async def test_plan_sorted_around_target(self, dca):
        strategy, _ = dca
        targets = [entry.target_price for entry in strategy.entries]
        assert targets == pytest.approx([96, 98, 100, 102, 104])
        assert all(entry.quote_amount == pytest.approx(2000) for entry in strategy.entries)

    async def test_executes_plan_with_consistent_totals(self, dca, make_context):
        strategy, config = dca
        prices = [99.0, 99.0, 100.0, 101.0, 102.0]
        signals = []
        for i, price in enumerate(prices):
            context = make_context(config, price, timestamp=T0 + timedelta(minutes=10 * i))
            signal = await strategy.execute(context)
            assert signal.type == SignalType.BUY
            strategy.on_fill(signal, fill_for(signal, f"order_{i}"))
            signals.append(signal)

        invested = sum(s.amount * s.price for s in signals)
        acquired = sum(s.amount for s in signals)

        assert strategy.total_invested <= 10000 + 1e-9
        assert strategy.total_invested == pytest.approx(invested)
        assert strategy.total_acquired == pytest.approx(sum(2000 / p for p in prices))
        assert strategy.total_acquired == pytest.approx(acquired)
        assert strategy.average_price == pytest.approx(strategy.total_invested / strategy.total_acquired)

        done = await strategy.execute(make_context(config, 99.0, timestamp=T0 + timedelta(hours=2)))
        assert done.type == SignalType.HOLD
        assert strategy.is_completed

    async def test_orders_are_spaced(self, dca, make_context):
        strategy, config = dca
        first = await strategy.execute(make_context(config, 99.0, timestamp=T0))
        strategy.on_fill(first, fill_for(first))
        second = await strategy.execute(make_context(config, 99.0, timestamp=T0 + timedelta(seconds=30)))
        assert first.type == SignalType.BUY
        assert second.type == SignalType.HOLD
        assert strategy.executed_count == 1

    async def test_entry_waits_for_fill(self, dca, make_context):
        strategy, config = dca
        signal = await strategy.execute(make_context(config, 99.0, timestamp=T0))
        assert signal.type == SignalType.BUY
        assert strategy.executed_count == 0
        assert strategy.total_invested == 0

        # No fill came back, so the same entry is offered on the next tick
        retry = await strategy.execute(make_context(config, 99.0, timestamp=T0 + timedelta(seconds=30)))
        assert retry.type == SignalType.BUY
        assert retry.amount == pytest.approx(signal.amount)
        assert not strategy.entries[0].executed

    async def test_books_the_filled_amount(self, dca, make_context):
        strategy, config = dca
        signal = await strategy.execute(make_context(config, 99.0, timestamp=T0))
        order = fill_for(signal)
        order.filled = signal.amount / 4
        order.price = 99.5
        strategy.on_fill(signal, order)

        assert strategy.executed_count == 1
        assert strategy.entries[0].executed
        assert strategy.total_acquired == pytest.approx(signal.amount / 4)
        assert strategy.total_invested == pytest.approx(signal.amount / 4 * 99.5)
        assert strategy.average_price == pytest.approx(99.5)
        assert strategy.entries[0].executed_price == pytest.approx(99.5)

    async def test_insufficient_balance_holds(self, dca, make_context):
        strategy, config = dca
        signal = await strategy.execute(make_context(config, 99.0, balances={"USDT": 100.0}))
        assert signal.type == SignalType.HOLD
        assert "Insufficient balance" in signal.reason

    async def test_invalid_configuration(self, make_config):
        config = make_config(strategy_type="dca", parameters={"totalAmount": 0, "targetPrice": 100, "orderCount": 5})
        with pytest.raises(StrategyError):
            await DCAStrategy(bot_id=1).initialize(config.strategy)


# ============================================================================
# Mean Reversion and Trend Following
# ============================================================================


class TestMeanReversionStrategy:
    CLOSES = [100.0, 101.0] * 15 + [85.0]

    @pytest.fixture
    async def strategy(self, make_config):
        config = make_config(strategy_type="mean-reversion", parameters={"period": 20, "entryThreshold": 2})
        strategy = MeanReversionStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        return strategy, config

    async def test_oversold_drop_buys(self, strategy, make_context):
        strategy, config = strategy
        signal = await strategy.execute(make_context(config, 85.0, closes=self.CLOSES))
        assert signal.type == SignalType.BUY
        assert signal.amount > 0
        assert strategy.z_score <= -2

    async def test_exits_when_price_returns_to_mean(self, strategy, make_context):
        strategy, config = strategy
        entry = await strategy.execute(make_context(config, 85.0, closes=self.CLOSES))
        strategy.on_fill(entry, fill_for(entry))
        assert strategy.position is not None

        exit_signal = await strategy.execute(make_context(config, 100.0, closes=self.CLOSES))
        assert exit_signal.type == SignalType.SELL
        assert "reverted to mean" in exit_signal.reason

        strategy.on_fill(exit_signal, fill_for(exit_signal, "order_2"))
        assert strategy.position is None
        assert strategy.winning_trades == 1

    async def test_atr_stop_closes_losing_position(self, make_config, make_context):
        config = make_config(
            strategy_type="mean-reversion",
            parameters={"period": 20, "entryThreshold": 2, "atrStopMultiplier": 2},
        )
        strategy = MeanReversionStrategy(bot_id=1)
        await strategy.initialize(config.strategy)

        entry = await strategy.execute(make_context(config, 85.0, closes=self.CLOSES))
        strategy.on_fill(entry, fill_for(entry))
        atr = strategy.position.entry_atr
        assert atr > 0
        stop_price = 85.0 - 2 * atr

        assert strategy.check_atr_stop(make_context(config, stop_price + 0.5, closes=self.CLOSES)) is None

        signal = await strategy.execute(make_context(config, stop_price - 0.5, closes=self.CLOSES))
        assert signal.type == SignalType.SELL
        assert signal.reason.startswith("Stop loss hit")
        assert signal.amount == pytest.approx(entry.amount)

    async def test_no_atr_stop_without_multiplier(self, strategy, make_context):
        strategy, config = strategy
        entry = await strategy.execute(make_context(config, 85.0, closes=self.CLOSES))
        strategy.on_fill(entry, fill_for(entry))
        assert strategy.check_atr_stop(make_context(config, 1.0, closes=self.CLOSES)) is None

    async def test_flat_market_holds(self, strategy, make_context):
        strategy, config = strategy
        signal = await strategy.execute(make_context(config, 100.0, closes=[100.0] * 30))
        assert signal.type == SignalType.HOLD


class TestTrendFollowingStrategy:
    async def test_fast_period_must_be_below_slow(self, make_config):
        config = make_config(strategy_type="trend-following", parameters={"fastPeriod": 30, "slowPeriod": 10})
        with pytest.raises(StrategyError):
            await TrendFollowingStrategy(bot_id=1).initialize(config.strategy)

    async def test_insufficient_data_holds(self, make_config, make_context):
        config = make_config(strategy_type="trend-following")
        strategy = TrendFollowingStrategy(bot_id=1)
        await strategy.initialize(config.strategy)
        signal = await strategy.execute(make_context(config, 100.0, closes=[100.0] * 20))
        assert signal.type == SignalType.HOLD
        assert "Insufficient data" in signal.reason


# ============================================================================
# Registry and Catalog
# ============================================================================


class TestStrategyCatalog:
    def test_every_kind_is_registered(self):
        assert set(STRATEGY_REGISTRY) == set(StrategyKind)
        assert list_available_strategies() == [kind.value for kind in StrategyKind]

    @pytest.mark.parametrize("alias,kind", [
        ("dollar-cost-averaging", StrategyKind.DCA),
        ("trend", StrategyKind.TREND_FOLLOWING),
        ("sentiment", StrategyKind.SENTIMENT_BASED),
        ("ml", StrategyKind.ML_PREDICTION),
        ("GRID", StrategyKind.GRID),
    ])
    def test_aliases_resolve(self, alias, kind):
        assert StrategyKind.parse(alias) == kind

    def test_supported_names_include_aliases(self):
        names = supported_strategy_names()
        assert "grid" in names
        assert "dollar-cost-averaging" in names

    def test_create_strategy_returns_registered_class(self):
        assert isinstance(create_strategy("grid", bot_id=3), GridStrategy)
        assert isinstance(create_strategy(StrategyKind.DCA), DCAStrategy)

    def test_unknown_kind_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown strategy type"):
            create_strategy("martingale")

    def test_descriptions(self):
        assert get_strategy_description("grid").startswith("Grid Trading")
        assert get_strategy_description("nope") == "Unknown strategy type"

    def test_default_config_is_a_copy(self):
        config = get_strategy_default_config("arbitrage")
        config["exchanges"].append(99)
        assert get_strategy_default_config("arbitrage")["exchanges"] == [1, 2]
        assert get_strategy_default_config("nope") == {}

    @pytest.mark.parametrize("kind", [kind.value for kind in StrategyKind])
    def test_defaults_validate(self, kind):
        result = validate_strategy_config(kind, get_strategy_default_config(kind))
        assert result.valid, result.errors

    def test_validation_collects_errors(self):
        result = validate_strategy_config("grid", {"upperPrice": 100, "lowerPrice": 200, "gridLevels": 1, "orderAmount": 0})
        assert not result.valid
        assert "Upper price must be greater than lower price" in result.errors
        assert "Grid levels must be at least 2" in result.errors
        assert "Order amount must be positive" in result.errors

    def test_risk_per_trade_rule_applies_to_every_kind(self):
        result = validate_strategy_config("mean-reversion", {**get_strategy_default_config("mean-reversion"), "riskPerTrade": 2})
        assert result.errors == ["Risk per trade must be between 0 and 1"]

    def test_unknown_kind_is_invalid(self):
        result = validate_strategy_config("nope", {})
        assert not result.valid
        assert result.errors[0].startswith("Strategy creation failed")
