"""Trade model - orders the engine submitted successfully.

Trades feed performance reporting and the daily-loss check of the risk gate.
A SELL carries the realized P&L against the bot's average entry price; BUYs
leave ``pnl`` empty because nothing is realized yet.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


class TradeSide(str, Enum):
    """Trade side enumeration."""
    BUY = "buy"
    SELL = "sell"


class Trade(Base):
    """Executed order for a bot."""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    exchange_order_id = Column(String(100), nullable=True)

    symbol = Column(String(50), nullable=False, index=True)
    side = Column(SQLEnum(TradeSide), nullable=False, index=True)
    amount = Column(Float, nullable=False)   # base asset
    price = Column(Float, nullable=False)
    fee = Column(Float, default=0.0)          # quote asset
    pnl = Column(Float, nullable=True)        # realized, before fees

    strategy_used = Column(String(50), nullable=True)
    reason = Column(String(500), nullable=True)
    executed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    bot = relationship("Bot", back_populates="trades")

    @property
    def net_pnl(self) -> float:
        """Realized P&L after fees; 0 for opening trades."""
        if self.pnl is None:
            return 0.0
        return self.pnl - (self.fee or 0.0)

    def __repr__(self):
        return (
            f"<Trade(id={self.id}, bot_id={self.bot_id}, side={self.side.value}, "
            f"amount={self.amount}, price={self.price})>"
        )
