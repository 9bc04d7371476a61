# API Routers

from . import bots, exchange_accounts, health, strategies

__all__ = ["bots", "exchange_accounts", "health", "strategies"]
