"""Tests for performance reporting and the backtester."""

import pytest

from botengine.models import Trade, TradeSide
from botengine.services.backtester import backtest_strategy
from botengine.services.bot_config import StrategyConfig
from botengine.services.performance import (
    average_cost,
    compute_performance,
    max_drawdown,
    realized_pnl,
    sharpe_ratio,
)
from botengine.services.strategies import Signal, Strategy, create_strategy


def trade(side, amount, price, pnl=None, fee=0.0):
    return Trade(bot_id=1, symbol="BTC/USDT", side=side, amount=amount, price=price, pnl=pnl, fee=fee)


# ============================================================================
# Performance
# ============================================================================


class TestComputePerformance:
    def test_no_trades_is_all_zero(self):
        perf = compute_performance([])
        assert perf.total_trades == 0
        assert perf.win_rate == 0.0
        assert perf.sharpe_ratio == 0.0

    def test_counts_and_totals(self):
        trades = [
            trade(TradeSide.BUY, 1.0, 100.0),
            trade(TradeSide.SELL, 1.0, 110.0, pnl=10.0, fee=0.5),
            trade(TradeSide.BUY, 1.0, 100.0),
            trade(TradeSide.SELL, 1.0, 96.0, pnl=-4.0),
        ]
        perf = compute_performance(trades)

        assert perf.total_trades == 4
        assert perf.winning_trades == 1
        assert perf.losing_trades == 1
        assert perf.total_profit == pytest.approx(9.5)
        assert perf.total_loss == pytest.approx(4.0)
        assert perf.net_profit == pytest.approx(5.5)
        assert perf.profit_factor == pytest.approx(9.5 / 4.0)
        assert 0 <= perf.win_rate <= 1

    def test_only_wins_has_zero_profit_factor_and_drawdown(self):
        perf = compute_performance([trade(TradeSide.SELL, 1, 10, pnl=5), trade(TradeSide.SELL, 1, 10, pnl=3)])
        assert perf.profit_factor == 0.0
        assert perf.max_drawdown == 0.0
        assert perf.win_rate == 1.0

    def test_to_dict_uses_snake_case(self):
        data = compute_performance([]).to_dict()
        assert {"total_trades", "win_rate", "net_profit", "max_drawdown", "sharpe_ratio"} <= set(data)


class TestMetrics:
    def test_max_drawdown_from_peak(self):
        # cumulative 10, 15, 9, 12: worst fall is 6 from a peak of 15
        assert max_drawdown([10, 5, -6, 3]) == pytest.approx(6 / 15)

    def test_drawdown_before_any_profit_is_ignored(self):
        assert max_drawdown([-5, -5]) == 0.0

    def test_sharpe_needs_two_points_and_spread(self):
        assert sharpe_ratio([5.0]) == 0.0
        assert sharpe_ratio([2.0, 2.0, 2.0]) == 0.0
        assert sharpe_ratio([1.0, 3.0]) == pytest.approx(2.0)

    def test_average_cost_moves_only_on_buys(self):
        trades = [
            trade(TradeSide.BUY, 1.0, 100.0),
            trade(TradeSide.BUY, 1.0, 200.0),
            trade(TradeSide.SELL, 1.0, 180.0),
        ]
        held, entry = average_cost(trades)
        assert held == pytest.approx(1.0)
        assert entry == pytest.approx(150.0)

    def test_realized_pnl(self):
        trades = [trade(TradeSide.BUY, 2.0, 100.0)]
        assert realized_pnl(trades, 1.0, 120.0) == pytest.approx(20.0)
        assert realized_pnl(trades, 5.0, 120.0) == pytest.approx(40.0)
        assert realized_pnl([], 1.0, 120.0) is None


# ============================================================================
# Backtester
# ============================================================================


class ScriptedStrategy(Strategy):
    """Buys and sells at fixed prices."""

    name = "Scripted"

    async def on_initialize(self):
        self.fills = []

    async def evaluate(self, context):
        if context.current_price == self.param("buyAt"):
            return Signal.buy(reason="scripted entry", timestamp=context.timestamp)
        if context.current_price == self.param("sellAt"):
            return Signal.sell(reason="scripted exit", timestamp=context.timestamp)
        return self.hold(context, "waiting")

    def on_fill(self, signal, order):
        self.fills.append((signal.type.value, order.price))


class TestBacktester:
    def candles(self, make_candles):
        closes = [100.0] * 10 + [90.0, 100.0, 120.0, 100.0, 110.0, 100.0]
        return make_candles(closes)

    async def test_round_trip(self, make_candles):
        strategy = ScriptedStrategy()
        config = StrategyConfig(type="scripted", parameters={"buyAt": 90.0, "sellAt": 120.0})

        result = await backtest_strategy(strategy, config, self.candles(make_candles), window=5)

        assert result.total_trades == 1
        assert result.winning_trades == 1
        # 10% of 10000 at 90, sold at 120
        size = 1000.0 / 90.0
        assert result.net_profit == pytest.approx(size * 30.0)
        assert result.final_balance == pytest.approx(10000.0 + size * 30.0)
        assert result.win_rate == 1.0
        assert result.average_hold_seconds == pytest.approx(120.0)
        assert strategy.fills == [("BUY", 90.0), ("SELL", 120.0)]
        assert not strategy.is_initialized

    async def test_open_position_not_counted(self, make_candles):
        strategy = ScriptedStrategy()
        config = StrategyConfig(type="scripted", parameters={"buyAt": 110.0, "sellAt": 999.0})

        result = await backtest_strategy(strategy, config, self.candles(make_candles), window=5)

        assert result.total_trades == 0
        assert result.final_balance == 10000.0
        assert "trades" not in result.to_dict()

    async def test_sell_while_flat_is_ignored(self, make_candles):
        strategy = ScriptedStrategy()
        config = StrategyConfig(type="scripted", parameters={"buyAt": 999.0, "sellAt": 120.0})

        result = await backtest_strategy(strategy, config, self.candles(make_candles), window=5)
        assert result.total_trades == 0
        assert strategy.fills == []

    async def test_losing_trade_drawdown(self, make_candles):
        strategy = ScriptedStrategy()
        config = StrategyConfig(type="scripted", parameters={"buyAt": 120.0, "sellAt": 90.0})
        closes = [100.0] * 10 + [120.0, 100.0, 90.0]

        result = await backtest_strategy(strategy, config, make_candles(closes), window=5)

        loss = 1000.0 / 120.0 * 30.0
        assert result.losing_trades == 1
        assert result.largest_loss == pytest.approx(-loss)
        assert result.max_drawdown == pytest.approx(loss / 10000.0)

    async def test_registered_strategy_runs(self, make_candles):
        strategy = create_strategy("mean-reversion")
        config = StrategyConfig(type="mean-reversion", parameters={"period": 10, "entryThreshold": 2.0})
        closes = [100.0 + (i % 2) for i in range(40)] + [85.0, 90.0, 100.0, 101.0]

        result = await backtest_strategy(strategy, config, make_candles(closes), window=20)

        assert result.total_trades >= 0
        assert result.final_balance > 0
