"""Bot scheduler: lifecycle of running bots and their periodic ticks."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..models import Bot, BotExecution, BotStatus, ExecutionAction, ExecutionStatus
from .bot_config import BotConfig, validate_bot_config
from .bot_store import BotStore, bot_store
from .config import config_service
from .errors import BotError, ConfigurationError, ExecutionError
from .exchange import ExchangeOrder, SimulatedExchangeService
from .exchange_manager import ExchangeManager, exchange_manager as default_exchange_manager
from .execution import ExecutionPipeline
from .logging_service import BotLoggingService
from .market_data import MarketDataCache
from .performance import BotPerformance, compute_performance
from .risk_gate import RiskGate
from .strategies import (
    BotContext,
    Strategy,
    StrategyValidationResult,
    create_strategy,
    get_strategy_default_config,
    get_strategy_description,
    list_available_strategies,
    split_symbol,
    supported_strategy_names,
    validate_strategy_config,
)
from .strategies.base import SignalType

logger = logging.getLogger(__name__)


@dataclass
class BotRuntimeEntry:
    """Live bookkeeping for one registered bot.

    ``lock`` is held for the whole of a tick; a tick that finds it held
    is skipped. ``task`` is None while the bot is paused.
    """
    config: BotConfig
    strategy: Strategy
    bot_logger: BotLoggingService
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


def _describe(config: BotConfig) -> Dict[str, Any]:
    return {
        "name": config.name,
        "strategy": config.strategy.type,
        "symbol": config.market.symbol,
        "exchange_account_id": config.market.exchange_account_id,
        "cooldown_period": config.execution.cooldown_period,
        "order_type": config.execution.order_type.value,
        "max_position_size": config.risk.max_position_size,
        "risk_per_trade": config.risk.risk_per_trade,
    }


class BotScheduler:
    """Owns the registry of running bots.

    Every lifecycle call is serialized per bot and appends an execution
    record, SUCCESS or FAILED, before returning or re-raising.
    """

    def __init__(
        self,
        store: Optional[BotStore] = None,
        exchange_manager: Optional[ExchangeManager] = None,
        market_data: Optional[MarketDataCache] = None,
        risk_gate: Optional[RiskGate] = None,
        pipeline: Optional[ExecutionPipeline] = None,
        stop_timeout: Optional[float] = None,
    ):
        self.store = store or bot_store
        self.exchange_manager = exchange_manager or default_exchange_manager
        self.market_data = market_data or MarketDataCache(self.exchange_manager)
        self.risk_gate = risk_gate or RiskGate()
        self.pipeline = pipeline or ExecutionPipeline(self.exchange_manager, self.store)
        self._stop_timeout = stop_timeout
        self._bots: Dict[int, BotRuntimeEntry] = {}
        self._lifecycle_locks: Dict[int, asyncio.Lock] = {}

    @property
    def stop_timeout(self) -> float:
        if self._stop_timeout is not None:
            return self._stop_timeout
        return config_service.get("engine.stop_timeout_seconds")

    def _lifecycle_lock(self, bot_id: int) -> asyncio.Lock:
        if bot_id not in self._lifecycle_locks:
            self._lifecycle_locks[bot_id] = asyncio.Lock()
        return self._lifecycle_locks[bot_id]

    # ------------------------------------------------------------------
    # Registry inspection
    # ------------------------------------------------------------------

    def is_registered(self, bot_id: int) -> bool:
        return bot_id in self._bots

    def is_running(self, bot_id: int) -> bool:
        entry = self._bots.get(bot_id)
        return entry is not None and entry.is_running

    def registered_bot_ids(self) -> List[int]:
        return sorted(self._bots)

    def get_strategy(self, bot_id: int) -> Optional[Strategy]:
        entry = self._bots.get(bot_id)
        return entry.strategy if entry else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, bot_id: int) -> None:
        """Start a bot.

        Raises:
            ConfigurationError: If the bot is missing, already running,
                misconfigured, or its strategy fails to initialize
        """
        async with self._lifecycle_lock(bot_id):
            await self._start(bot_id)

    async def stop(self, bot_id: int) -> None:
        """Stop a registered bot and release its strategy.

        Raises:
            ConfigurationError: If the bot is not registered
        """
        async with self._lifecycle_lock(bot_id):
            await self._stop(bot_id)

    async def pause(self, bot_id: int) -> None:
        """Stop ticking but keep the configuration and strategy state.

        Raises:
            ConfigurationError: If the bot is not running
        """
        async with self._lifecycle_lock(bot_id):
            try:
                entry = self._bots.get(bot_id)
                if entry is None or not entry.is_running:
                    raise ConfigurationError(f"Bot is not running: {bot_id}", bot_id)

                await self._halt(entry)
                # Let an in-flight tick finish before reporting PAUSED
                async with entry.lock:
                    pass

                await self.store.update_status(bot_id, BotStatus.PAUSED)
                entry.bot_logger.log_activity("Bot paused")
                await self._record(bot_id, ExecutionAction.PAUSE, ExecutionStatus.SUCCESS)
                logger.info(f"Bot {bot_id}: paused")
            except Exception as e:
                await self._record_failure(bot_id, ExecutionAction.PAUSE, e)
                raise

    async def resume(self, bot_id: int) -> None:
        """Resume a paused bot, rebuilding its strategy if it was evicted.

        Raises:
            ConfigurationError: If the bot is missing or not paused
        """
        async with self._lifecycle_lock(bot_id):
            try:
                bot = await self.store.load_bot(bot_id)
                if bot is None:
                    raise ConfigurationError(f"Bot not found: {bot_id}", bot_id)
                if bot.status != BotStatus.PAUSED:
                    raise ConfigurationError(f"Bot is not paused: {bot_id}", bot_id)

                entry = self._bots.get(bot_id)
                if entry is None:
                    entry = await self._build_entry(bot)
                    self._bots[bot_id] = entry

                await self.store.update_status(bot_id, BotStatus.RUNNING)
                self._launch(entry)
                entry.bot_logger.log_activity("Bot resumed")
                await self._record(bot_id, ExecutionAction.RESUME, ExecutionStatus.SUCCESS)
                logger.info(f"Bot {bot_id}: resumed")
            except Exception as e:
                await self._record_failure(bot_id, ExecutionAction.RESUME, e)
                raise

    async def update_config(self, bot_id: int, partial: Mapping[str, Any]) -> Bot:
        """Merge a partial configuration; a running bot is restarted with it.

        The restart holds the bot's tick lock across stop and start, so no
        tick runs on a half-replaced configuration. The bot is unavailable
        for one in-flight tick plus strategy initialization.

        Raises:
            ConfigurationError: If the bot is missing or the new
                configuration cannot start
        """
        async with self._lifecycle_lock(bot_id):
            bot = await self.store.update_config(bot_id, partial)
            entry = self._bots.get(bot_id)
            if entry is None:
                return bot

            if not entry.is_running:
                # Paused: drop the stale strategy so resume rebuilds it
                await self._discard(bot_id, entry)
                return bot

            started = time.monotonic()
            logger.info(f"Bot {bot_id}: restarting with updated configuration")
            async with entry.lock:
                await self._stop(bot_id, lock_held=True)
                await self._start(bot_id)
            gap = time.monotonic() - started
            logger.info(f"Bot {bot_id}: restarted after configuration update ({gap:.3f}s unavailable)")
            return await self.store.load_bot(bot_id)

    async def shutdown(self) -> Dict[int, str]:
        """Stop every registered bot.

        Returns:
            Stop failures by bot id; empty when every bot stopped
        """
        failures: Dict[int, str] = {}
        bot_ids = self.registered_bot_ids()
        if not bot_ids:
            logger.info("No bots to stop on shutdown")
            return failures

        logger.info(f"Stopping {len(bot_ids)} bot(s)")
        for bot_id in bot_ids:
            try:
                await self.stop(bot_id)
            except Exception as e:
                logger.error(f"Bot {bot_id}: error stopping on shutdown: {e}")
                failures[bot_id] = str(e)

        logger.info(f"Shutdown complete, {len(bot_ids) - len(failures)} bot(s) stopped")
        return failures

    async def resume_bots_on_startup(self) -> int:
        """Restart every bot persisted as RUNNING.

        Returns:
            Number of bots restarted
        """
        bots = await self.store.list_bots_by_status(BotStatus.RUNNING)
        if not bots:
            logger.info("No bots to resume on startup")
            return 0

        logger.info(f"Found {len(bots)} bot(s) to resume")
        resumed = 0
        for bot in bots:
            try:
                async with self._lifecycle_lock(bot.id):
                    await self._start(bot.id, restoring=True)
                resumed += 1
            except Exception as e:
                logger.error(f"Failed to resume bot {bot.id}: {e}")
                # No loop was started, so the bot must not stay RUNNING
                await self._mark_stopped(bot.id)

        logger.info(f"Resumed {resumed} bot(s) on startup")
        return resumed

    # ------------------------------------------------------------------
    # Lifecycle internals
    # ------------------------------------------------------------------

    async def _start(self, bot_id: int, restoring: bool = False) -> None:
        try:
            entry = self._bots.get(bot_id)
            if entry is not None and entry.is_running:
                raise ConfigurationError(f"Bot is already running: {bot_id}", bot_id)

            bot = await self.store.load_bot(bot_id)
            if bot is None:
                raise ConfigurationError(f"Bot not found: {bot_id}", bot_id)
            if bot.status == BotStatus.RUNNING and not restoring:
                logger.warning(f"Bot {bot_id}: persisted as running without a loop, starting it again")

            if entry is not None:
                # Registered while paused: start over with a fresh strategy
                await self._discard(bot_id, entry)

            entry = await self._build_entry(bot)
            await self.store.update_status(bot_id, BotStatus.RUNNING)
            self._bots[bot_id] = entry
            self._launch(entry)

            message = "Bot resumed after server restart" if restoring else (
                f"Bot started with strategy '{entry.config.strategy.type}' on {entry.config.market.symbol}"
            )
            entry.bot_logger.log_activity(message)
            await self._record(bot_id, ExecutionAction.START, ExecutionStatus.SUCCESS, {"config": _describe(entry.config)})
            logger.info(f"Bot {bot_id}: started ({entry.config.name})")
        except Exception as e:
            await self._record_failure(bot_id, ExecutionAction.START, e)
            raise

    async def _stop(self, bot_id: int, lock_held: bool = False) -> None:
        try:
            entry = self._bots.get(bot_id)
            if entry is None:
                await self._stop_orphan(bot_id)
                return

            await self._halt(entry)
            if lock_held:
                await self._discard(bot_id, entry)
            else:
                async with entry.lock:
                    await self._discard(bot_id, entry)

            await self.store.update_status(bot_id, BotStatus.STOPPED)
            entry.bot_logger.log_activity("Bot stopped")
            await self._record(bot_id, ExecutionAction.STOP, ExecutionStatus.SUCCESS)
            logger.info(f"Bot {bot_id}: stopped")
        except Exception as e:
            await self._record_failure(bot_id, ExecutionAction.STOP, e)
            raise

    async def _stop_orphan(self, bot_id: int) -> None:
        """Stop a bot persisted as running or paused that has no registry entry."""
        bot = await self.store.load_bot(bot_id)
        if bot is None or bot.status not in (BotStatus.RUNNING, BotStatus.PAUSED):
            raise ConfigurationError(f"Bot is not running: {bot_id}", bot_id)

        await self.store.update_status(bot_id, BotStatus.STOPPED)
        await self._record(bot_id, ExecutionAction.STOP, ExecutionStatus.SUCCESS)
        logger.info(f"Bot {bot_id}: stopped (no active loop)")

    async def _mark_stopped(self, bot_id: int) -> None:
        try:
            await self.store.update_status(bot_id, BotStatus.STOPPED)
        except Exception as e:
            logger.error(f"Bot {bot_id}: failed to mark stopped: {e}")

    async def _build_entry(self, bot: Bot) -> BotRuntimeEntry:
        config = BotConfig.from_model(bot)
        validate_bot_config(config, supported_strategy_names())

        strategy = create_strategy(config.strategy.type, self.exchange_manager, bot.id)
        try:
            await strategy.initialize(config.strategy)
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize strategy {config.strategy.type}: {e}", bot.id) from e

        try:
            adapter = await self.exchange_manager.get_adapter(config.market.exchange_account_id)
        except (LookupError, ConnectionError) as e:
            await strategy.cleanup()
            raise ConfigurationError(f"Exchange account unavailable: {e}", bot.id) from e

        bot_logger = BotLoggingService(bot.id, config.name, isinstance(adapter, SimulatedExchangeService))
        return BotRuntimeEntry(config=config, strategy=strategy, bot_logger=bot_logger)

    def _launch(self, entry: BotRuntimeEntry) -> None:
        entry.stop_event = asyncio.Event()
        entry.task = asyncio.create_task(self._run_bot_loop(entry))

    async def _halt(self, entry: BotRuntimeEntry) -> None:
        """Signal the loop to end and wait for it, cancelling on timeout."""
        entry.stop_event.set()
        task, entry.task = entry.task, None
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(task, timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Bot {entry.config.id}: loop did not stop within {self.stop_timeout}s, cancelled")
            task.cancel()

    async def _discard(self, bot_id: int, entry: BotRuntimeEntry) -> None:
        """Clean up the strategy and drop the registry entry."""
        try:
            await entry.strategy.cleanup()
        except Exception as e:
            logger.error(f"Bot {bot_id}: error cleaning up strategy: {e}")
        self._bots.pop(bot_id, None)

    async def _record(
        self,
        bot_id: int,
        action: ExecutionAction,
        status: ExecutionStatus,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        try:
            await self.store.append_execution(bot_id, action, status, details, error)
        except Exception as e:
            logger.error(f"Bot {bot_id}: failed to record {action.value} {status.value}: {e}")

    async def _record_failure(self, bot_id: int, action: ExecutionAction, error: Exception) -> None:
        message = error.message if isinstance(error, BotError) else str(error)
        await self._record(
            bot_id, action, ExecutionStatus.FAILED,
            {"error": type(error).__name__, "message": message},
            error=message,
        )

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def _run_bot_loop(self, entry: BotRuntimeEntry) -> None:
        bot_id = entry.config.id
        cooldown = entry.config.execution.cooldown_period
        logger.info(f"Bot {bot_id}: Starting execution loop every {cooldown}s")

        while True:
            try:
                await asyncio.wait_for(entry.stop_event.wait(), timeout=cooldown)
                break
            except asyncio.TimeoutError:
                pass
            await self._tick(entry)

        logger.info(f"Bot {bot_id}: Execution loop ended")

    async def execute_bot_iteration(self, bot_id: int) -> Optional[ExchangeOrder]:
        """Run one tick for a registered bot.

        Returns:
            The submitted order, or None when nothing was submitted
        """
        entry = self._bots.get(bot_id)
        if entry is None:
            return None
        return await self._tick(entry)

    async def _tick(self, entry: BotRuntimeEntry) -> Optional[ExchangeOrder]:
        bot_id = entry.config.id
        if entry.stop_event.is_set():
            return None
        if entry.lock.locked():
            logger.debug(f"Bot {bot_id}: previous tick still running, skipping")
            return None

        async with entry.lock:
            if entry.stop_event.is_set():
                return None
            try:
                return await self._iterate(entry)
            except ExecutionError as e:
                # Already recorded by the pipeline
                logger.error(f"Bot {bot_id}: {e.message}")
            except Exception as e:
                message = e.message if isinstance(e, BotError) else str(e)
                logger.error(f"Bot {bot_id}: Error in execution loop: {type(e).__name__}: {message}")
                entry.bot_logger.log_activity(f"Tick failed: {type(e).__name__}: {message}", "ERROR")
                await self._record_failure(bot_id, ExecutionAction.TRADE, e)
            return None

    async def build_context(self, config: BotConfig) -> BotContext:
        """Gather candles, balances, open orders, today's trades and trade history."""
        account_id = config.market.exchange_account_id
        symbol = config.market.symbol

        candles = await self.market_data.get_candles(account_id, symbol)
        balances = {b.currency: b.free for b in await self.exchange_manager.get_account_balances(account_id)}
        quote = split_symbol(symbol)[1]
        positions = {asset: amount for asset, amount in balances.items() if asset != quote and amount > 0}
        orders = await self.exchange_manager.get_open_orders(account_id, symbol)

        now = datetime.utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        trades = await self.store.list_trades_since(config.id, start_of_day)
        history = await self.store.list_trades(config.id)

        return BotContext(
            bot=config,
            market_data=candles,
            current_price=candles[-1].close if candles else 0.0,
            balances=balances,
            positions=positions,
            orders=orders,
            trades=trades,
            history=history,
            timestamp=now,
        )

    async def _iterate(self, entry: BotRuntimeEntry) -> Optional[ExchangeOrder]:
        bot_id = entry.config.id
        context = await self.build_context(entry.config)
        signal = await entry.strategy.execute(context)

        if signal.type == SignalType.HOLD:
            logger.debug(f"Bot {bot_id}: HOLD - {signal.reason}")
            return None

        logger.info(f"Bot {bot_id}: {signal.type.value} signal - {signal.reason}")
        request = self.risk_gate.size_order(signal, context)
        order = await self.pipeline.submit(bot_id, signal, context, request, entry.bot_logger)
        entry.strategy.on_fill(signal, order)
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, bot_id: int) -> BotStatus:
        """Persisted lifecycle status.

        Raises:
            ConfigurationError: If the bot does not exist
        """
        bot = await self.store.load_bot(bot_id)
        if bot is None:
            raise ConfigurationError(f"Bot not found: {bot_id}", bot_id)
        return bot.status

    async def get_performance(self, bot_id: int) -> BotPerformance:
        """Performance over every recorded trade.

        Raises:
            ConfigurationError: If the bot does not exist
        """
        if await self.store.load_bot(bot_id) is None:
            raise ConfigurationError(f"Bot not found: {bot_id}", bot_id)
        return compute_performance(await self.store.list_trades(bot_id))

    async def get_executions(self, bot_id: int, limit: Optional[int] = None) -> List[BotExecution]:
        """Execution records, newest first."""
        return await self.store.list_executions(bot_id, limit)

    # ------------------------------------------------------------------
    # Strategy catalog
    # ------------------------------------------------------------------

    def list_available_strategies(self) -> List[str]:
        return list_available_strategies()

    def get_strategy_description(self, strategy_type: str) -> str:
        return get_strategy_description(strategy_type)

    def get_strategy_default_config(self, strategy_type: str) -> Dict[str, Any]:
        return get_strategy_default_config(strategy_type)

    def validate_strategy_config(self, strategy_type: str, config: Any) -> StrategyValidationResult:
        return validate_strategy_config(strategy_type, config)


# Global bot scheduler instance
bot_scheduler = BotScheduler()
