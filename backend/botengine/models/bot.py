"""Bot model for configured trading bots."""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


class BotStatus(str, Enum):
    """Bot lifecycle status."""
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Bot(Base):
    """Trading bot model.

    Strategy parameters and the risk/execution policies are stored as JSON
    blobs so partial config updates can be merged key by key.
    """
    __tablename__ = "bots"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Market
    symbol = Column(String(50), nullable=False)
    exchange_account_id = Column(Integer, ForeignKey("exchange_accounts.id"), nullable=True, index=True)

    # Strategy descriptor
    strategy = Column(String(50), nullable=False)
    strategy_params = Column(JSON, default=dict)
    strategy_indicators = Column(JSON, default=list)
    strategy_conditions = Column(JSON, nullable=True)

    # Policies
    risk_config = Column(JSON, default=dict)
    execution_config = Column(JSON, default=dict)

    # Status
    status = Column(SQLEnum(BotStatus), default=BotStatus.CREATED)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)

    # Relationships
    exchange_account = relationship("ExchangeAccount", back_populates="bots")
    executions = relationship("BotExecution", back_populates="bot", cascade="all, delete-orphan")
    trades = relationship("Trade", back_populates="bot", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Bot(id={self.id}, name='{self.name}', status={self.status.value})>"
