"""Strategy catalog router."""

from typing import Any, Dict, List
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from ..services.errors import ConfigurationError
from ..services.strategies import (
    StrategyKind,
    get_strategy_default_config,
    get_strategy_description,
    list_available_strategies,
    validate_strategy_config,
)

router = APIRouter()


class StrategyInfo(BaseModel):
    """Schema for one catalog entry."""
    type: str
    description: str
    default_config: Dict[str, Any]


class ValidationResponse(BaseModel):
    valid: bool
    errors: List[str]


def _resolve(strategy_type: str) -> StrategyKind:
    try:
        return StrategyKind.parse(strategy_type)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get("", response_model=List[StrategyInfo])
async def list_strategies():
    """List every available strategy with its description and defaults."""
    return [
        StrategyInfo(
            type=kind,
            description=get_strategy_description(kind),
            default_config=get_strategy_default_config(kind),
        )
        for kind in list_available_strategies()
    ]


@router.get("/{strategy_type}", response_model=StrategyInfo)
async def get_strategy(strategy_type: str):
    """Describe one strategy. Aliases resolve to the canonical type."""
    kind = _resolve(strategy_type)
    return StrategyInfo(
        type=kind.value,
        description=get_strategy_description(kind.value),
        default_config=get_strategy_default_config(kind.value),
    )


@router.get("/{strategy_type}/default-config")
async def get_default_config(strategy_type: str) -> Dict[str, Any]:
    """Default parameters for a strategy."""
    return get_strategy_default_config(_resolve(strategy_type).value)


@router.post("/{strategy_type}/validate", response_model=ValidationResponse)
async def validate_config(strategy_type: str, config: Dict[str, Any]):
    """Check parameters against a strategy's rules.

    Unknown types are reported as an invalid result rather than a 404.
    """
    return validate_strategy_config(strategy_type, config).to_dict()
