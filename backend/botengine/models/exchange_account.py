"""Exchange account model - credentials and routing for one exchange connection."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime
from sqlalchemy.orm import relationship

from .database import Base


class ExchangeAccount(Base):
    """A connection to one exchange, real or simulated."""
    __tablename__ = "exchange_accounts"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    exchange_id = Column(String(50), nullable=False)  # ccxt id, e.g. "binance"

    api_key = Column(String(255), nullable=True)
    api_secret = Column(String(255), nullable=True)
    sandbox = Column(Boolean, default=False)

    # Simulated accounts never touch a real exchange
    is_simulated = Column(Boolean, default=True)
    initial_balance = Column(Float, default=10000.0)

    created_at = Column(DateTime, default=datetime.utcnow)

    bots = relationship("Bot", back_populates="exchange_account")

    def __repr__(self):
        mode = "simulated" if self.is_simulated else "live"
        return f"<ExchangeAccount(id={self.id}, exchange='{self.exchange_id}', {mode})>"
