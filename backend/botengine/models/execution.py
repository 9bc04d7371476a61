"""Bot execution record - append-only audit log of lifecycle and trade attempts."""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, Text, DateTime, JSON, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


class ExecutionAction(str, Enum):
    """What the engine attempted."""
    START = "START"
    STOP = "STOP"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    TRADE = "TRADE"


class ExecutionStatus(str, Enum):
    """Outcome of the attempt."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class BotExecution(Base):
    """One audit entry. Rows are only ever inserted, never updated."""
    __tablename__ = "bot_executions"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    action = Column(SQLEnum(ExecutionAction), nullable=False, index=True)
    status = Column(SQLEnum(ExecutionStatus), nullable=False)
    details = Column(JSON, default=dict)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    bot = relationship("Bot", back_populates="executions")

    def __repr__(self):
        return (
            f"<BotExecution(id={self.id}, bot_id={self.bot_id}, "
            f"action={self.action.value}, status={self.status.value})>"
        )
