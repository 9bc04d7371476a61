"""Bot management router."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    get_session,
    Bot,
    BotExecution,
    BotStatus,
    ExchangeAccount,
    ExecutionAction,
    ExecutionStatus,
    Trade,
)
from ..services.bot_config import build_execution_config, build_risk_config
from ..services.errors import ConfigurationError
from ..services.scheduler import BotScheduler, bot_scheduler
from ..services.strategies import StrategyKind

router = APIRouter()


def get_scheduler() -> BotScheduler:
    """Dependency for the bot scheduler."""
    return bot_scheduler


# Pydantic schemas
class IndicatorSchema(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timeframe: str = "1m"


class StrategySchema(BaseModel):
    """Strategy descriptor."""
    type: str = Field(..., min_length=1, max_length=50)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    indicators: List[IndicatorSchema] = Field(default_factory=list)
    conditions: Optional[Dict[str, Any]] = None


class StrategyUpdate(BaseModel):
    type: Optional[str] = Field(default=None, min_length=1, max_length=50)
    parameters: Optional[Dict[str, Any]] = None
    indicators: Optional[List[IndicatorSchema]] = None
    conditions: Optional[Dict[str, Any]] = None


class BotCreate(BaseModel):
    """Schema for creating a bot."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    symbol: str = Field(..., min_length=1, max_length=50)
    exchange_account_id: int = Field(..., gt=0)
    strategy: StrategySchema
    risk: Dict[str, Any] = Field(default_factory=dict)
    execution: Dict[str, Any] = Field(default_factory=dict)


class BotConfigUpdate(BaseModel):
    """Partial configuration. Omitted fields keep their stored value."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    symbol: Optional[str] = Field(default=None, min_length=1, max_length=50)
    exchange_account_id: Optional[int] = Field(default=None, gt=0)
    strategy: Optional[StrategyUpdate] = None
    risk: Optional[Dict[str, Any]] = None
    execution: Optional[Dict[str, Any]] = None


class BotResponse(BaseModel):
    """Schema for bot response."""
    id: int
    name: str
    description: Optional[str]
    symbol: str
    exchange_account_id: Optional[int]
    strategy: str
    strategy_params: Dict[str, Any]
    strategy_indicators: List[Dict[str, Any]]
    strategy_conditions: Optional[Dict[str, Any]]
    risk_config: Dict[str, Any]
    execution_config: Dict[str, Any]
    status: BotStatus
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime]
    paused_at: Optional[datetime]
    stopped_at: Optional[datetime]

    class Config:
        from_attributes = True


class BotStatusResponse(BaseModel):
    bot_id: int
    status: BotStatus
    registered: bool
    running: bool


class ExecutionResponse(BaseModel):
    """Schema for one execution record."""
    id: int
    bot_id: int
    action: ExecutionAction
    status: ExecutionStatus
    details: Optional[Dict[str, Any]]
    error: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


async def _get_bot_or_404(session: AsyncSession, bot_id: int) -> Bot:
    result = await session.execute(select(Bot).where(Bot.id == bot_id))
    bot = result.scalar_one_or_none()
    if not bot:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bot with id {bot_id} not found"
        )
    return bot


def _bad_request(e: ConfigurationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


def _normalize_strategy_type(value: str) -> str:
    try:
        return StrategyKind.parse(value).value
    except ConfigurationError as e:
        raise _bad_request(e)


def _check_policies(risk: Optional[Dict[str, Any]], execution: Optional[Dict[str, Any]]) -> None:
    try:
        if risk:
            build_risk_config(risk)
        if execution:
            build_execution_config(execution)
    except ConfigurationError as e:
        raise _bad_request(e)


@router.get("", response_model=List[BotResponse])
async def list_bots(
    session: AsyncSession = Depends(get_session),
    status_filter: Optional[BotStatus] = None,
    skip: int = 0,
    limit: int = 100,
):
    """List all bots with optional filtering."""
    query = select(Bot).order_by(Bot.id)
    if status_filter:
        query = query.where(Bot.status == status_filter)
    query = query.offset(skip).limit(limit)

    result = await session.execute(query)
    return result.scalars().all()


@router.post("", response_model=BotResponse, status_code=status.HTTP_201_CREATED)
async def create_bot(
    bot_data: BotCreate,
    session: AsyncSession = Depends(get_session),
):
    """Create a new bot. It stays CREATED until started."""
    strategy_type = _normalize_strategy_type(bot_data.strategy.type)
    _check_policies(bot_data.risk, bot_data.execution)

    account = await session.get(ExchangeAccount, bot_data.exchange_account_id)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Exchange account {bot_data.exchange_account_id} not found"
        )

    bot = Bot(
        name=bot_data.name,
        description=bot_data.description,
        symbol=bot_data.symbol,
        exchange_account_id=bot_data.exchange_account_id,
        strategy=strategy_type,
        strategy_params=bot_data.strategy.parameters,
        strategy_indicators=[i.model_dump() for i in bot_data.strategy.indicators],
        strategy_conditions=bot_data.strategy.conditions,
        risk_config=bot_data.risk,
        execution_config=bot_data.execution,
        status=BotStatus.CREATED,
    )

    session.add(bot)
    await session.commit()
    await session.refresh(bot)
    return bot


@router.get("/{bot_id}", response_model=BotResponse)
async def get_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
):
    """Get a specific bot by ID."""
    return await _get_bot_or_404(session, bot_id)


@router.delete("/{bot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Delete a bot with its history. Bot must not be running."""
    bot = await _get_bot_or_404(session, bot_id)

    if scheduler.is_running(bot_id) or bot.status == BotStatus.RUNNING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete a running bot. Stop it first."
        )
    if scheduler.is_registered(bot_id):
        await scheduler.stop(bot_id)

    await session.execute(delete(BotExecution).where(BotExecution.bot_id == bot_id))
    await session.execute(delete(Trade).where(Trade.bot_id == bot_id))
    await session.execute(delete(Bot).where(Bot.id == bot_id))
    await session.commit()


async def _run_lifecycle(session: AsyncSession, bot_id: int, operation) -> Bot:
    bot = await _get_bot_or_404(session, bot_id)
    try:
        await operation(bot_id)
    except ConfigurationError as e:
        raise _bad_request(e)
    await session.refresh(bot)
    return bot


@router.post("/{bot_id}/start", response_model=BotResponse)
async def start_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Start a bot."""
    return await _run_lifecycle(session, bot_id, scheduler.start)


@router.post("/{bot_id}/stop", response_model=BotResponse)
async def stop_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Stop a bot and release its strategy."""
    return await _run_lifecycle(session, bot_id, scheduler.stop)


@router.post("/{bot_id}/pause", response_model=BotResponse)
async def pause_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Pause a running bot, keeping its strategy state."""
    return await _run_lifecycle(session, bot_id, scheduler.pause)


@router.post("/{bot_id}/resume", response_model=BotResponse)
async def resume_bot(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Resume a paused bot."""
    return await _run_lifecycle(session, bot_id, scheduler.resume)


@router.get("/{bot_id}/status", response_model=BotStatusResponse)
async def get_bot_status(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Persisted status plus the scheduler's view of the bot."""
    bot = await _get_bot_or_404(session, bot_id)
    return BotStatusResponse(
        bot_id=bot_id,
        status=bot.status,
        registered=scheduler.is_registered(bot_id),
        running=scheduler.is_running(bot_id),
    )


@router.get("/{bot_id}/performance")
async def get_bot_performance(
    bot_id: int,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Performance metrics over every recorded trade."""
    await _get_bot_or_404(session, bot_id)
    performance = await scheduler.get_performance(bot_id)
    return performance.to_dict()


@router.get("/{bot_id}/executions", response_model=List[ExecutionResponse])
async def get_bot_executions(
    bot_id: int,
    limit: int = 100,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Execution records, newest first."""
    await _get_bot_or_404(session, bot_id)
    return await scheduler.get_executions(bot_id, limit)


@router.patch("/{bot_id}/config", response_model=BotResponse)
async def update_bot_config(
    bot_id: int,
    config_data: BotConfigUpdate,
    session: AsyncSession = Depends(get_session),
    scheduler: BotScheduler = Depends(get_scheduler),
):
    """Merge a partial configuration. A running bot restarts with it."""
    bot = await _get_bot_or_404(session, bot_id)

    partial = config_data.model_dump(exclude_unset=True)
    strategy = partial.get("strategy") or {}
    for key in ("type", "parameters", "indicators"):
        if key in strategy and strategy[key] is None:
            strategy.pop(key)
    if "type" in strategy:
        strategy["type"] = _normalize_strategy_type(strategy["type"])
    _check_policies(partial.get("risk"), partial.get("execution"))

    try:
        await scheduler.update_config(bot_id, partial)
    except ConfigurationError as e:
        raise _bad_request(e)

    await session.refresh(bot)
    return bot
