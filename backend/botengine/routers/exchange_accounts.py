"""Exchange account router."""

from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session, ExchangeAccount

router = APIRouter()


class ExchangeAccountCreate(BaseModel):
    """Schema for creating an exchange account."""
    name: str = Field(..., min_length=1, max_length=255)
    exchange_id: str = Field(default="binance", min_length=1, max_length=50)
    api_key: Optional[str] = Field(default=None, max_length=255)
    api_secret: Optional[str] = Field(default=None, max_length=255)
    sandbox: bool = False
    is_simulated: bool = True
    initial_balance: float = Field(default=10000.0, ge=0)


class ExchangeAccountResponse(BaseModel):
    """Schema for exchange account response. Credentials are never returned."""
    id: int
    name: str
    exchange_id: str
    sandbox: bool
    is_simulated: bool
    initial_balance: float
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("", response_model=List[ExchangeAccountResponse])
async def list_exchange_accounts(session: AsyncSession = Depends(get_session)):
    """List all exchange accounts."""
    result = await session.execute(select(ExchangeAccount).order_by(ExchangeAccount.id))
    return result.scalars().all()


@router.post("", response_model=ExchangeAccountResponse, status_code=status.HTTP_201_CREATED)
async def create_exchange_account(
    account_data: ExchangeAccountCreate,
    session: AsyncSession = Depends(get_session),
):
    """Create an exchange account."""
    if not account_data.is_simulated and not (account_data.api_key and account_data.api_secret):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Live exchange accounts need an API key and secret"
        )

    account = ExchangeAccount(**account_data.model_dump())
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account
