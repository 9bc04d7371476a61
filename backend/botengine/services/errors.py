"""Error taxonomy for the bot engine."""

from typing import Optional


class BotError(Exception):
    """Base class for all bot engine errors."""

    code = "BOT_ERROR"

    def __init__(self, message: str, bot_id: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.bot_id = bot_id
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "bot_id": self.bot_id,
        }


class ConfigurationError(BotError):
    """Bad or missing bot/strategy configuration, or an invalid lifecycle transition."""

    code = "CONFIGURATION_ERROR"


class StrategyError(BotError):
    """Strategy parameter or precondition violation."""

    code = "STRATEGY_ERROR"


class RiskLimitError(BotError):
    """Order sizing produced a non-positive or out-of-policy amount."""

    code = "RISK_LIMIT_ERROR"


class ExecutionError(BotError):
    """Exchange call failed after exhausting retries."""

    code = "EXECUTION_ERROR"
