"""Per-bot file logging: an activity log and a CSV trade log."""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
from dataclasses import dataclass

from .config import config_service

logger = logging.getLogger(__name__)

# Used when logging.bot_logs_dir is not configured
DEFAULT_LOGS_DIR = Path(__file__).parent.parent.parent / "logs"

TRADE_LOG_HEADER = [
    'timestamp', 'bot_id', 'bot_name', 'order_id', 'side', 'order_type',
    'symbol', 'amount', 'price', 'fees', 'status', 'strategy', 'reason',
    'is_simulated', 'pnl'
]


@dataclass
class TradeLogEntry:
    """Represents a trade log entry."""
    timestamp: datetime
    bot_id: int
    bot_name: str
    order_id: str
    side: str
    order_type: str
    symbol: str
    amount: float
    price: float
    fees: float
    status: str
    strategy: str
    reason: str
    is_simulated: bool
    pnl: Optional[float] = None


def logs_base_dir() -> Path:
    configured = config_service.get("logging.bot_logs_dir")
    return Path(configured) if configured else DEFAULT_LOGS_DIR


class BotLoggingService:
    """Service for managing per-bot log files under ``<logs>/<bot_id>/``."""

    def __init__(
        self,
        bot_id: int,
        bot_name: str = "",
        is_simulated: bool = False,
        base_dir: Optional[Union[str, Path]] = None,
    ):
        """Initialize logging service for a bot.

        Args:
            bot_id: The bot ID
            bot_name: The bot name for log entries
            is_simulated: Whether the bot trades on a simulated account
            base_dir: Root logs directory, defaults to the configured one
        """
        self.bot_id = bot_id
        self.bot_name = bot_name
        self.is_simulated = is_simulated
        self.bot_log_dir = Path(base_dir or logs_base_dir()) / str(bot_id)

        self._ensure_log_directory()

    def _ensure_log_directory(self) -> None:
        try:
            self.bot_log_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Bot {self.bot_id}: Log directory ensured at {self.bot_log_dir}")
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to create log directory: {e}")

    @property
    def trade_log_path(self) -> Path:
        name = "trades_simulated.csv" if self.is_simulated else "trades.csv"
        return self.bot_log_dir / name

    @property
    def activity_log_path(self) -> Path:
        return self.bot_log_dir / "activity.log"

    def log_trade(self, entry: TradeLogEntry) -> None:
        """Append a trade to the bot's CSV trade log.

        Args:
            entry: Trade log entry to write
        """
        log_file = self.trade_log_path
        write_header = not log_file.exists()

        try:
            with open(log_file, 'a', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)

                if write_header:
                    writer.writerow(TRADE_LOG_HEADER)

                writer.writerow([
                    entry.timestamp.isoformat(),
                    entry.bot_id,
                    entry.bot_name,
                    entry.order_id,
                    entry.side,
                    entry.order_type,
                    entry.symbol,
                    f"{entry.amount:.8f}",
                    f"{entry.price:.8f}",
                    f"{entry.fees:.8f}",
                    entry.status,
                    entry.strategy,
                    entry.reason,
                    entry.is_simulated,
                    f"{entry.pnl:.2f}" if entry.pnl is not None else ""
                ])

            logger.debug(f"Bot {self.bot_id}: Logged trade {entry.order_id} to {log_file.name}")

        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log trade: {e}")

    def log_activity(self, message: str, level: str = "INFO") -> None:
        """Log general bot activity to the activity log.

        Args:
            message: Log message
            level: Log level (DEBUG, INFO, WARNING, ERROR)
        """
        try:
            with open(self.activity_log_path, 'a', encoding='utf-8') as f:
                timestamp = datetime.utcnow().isoformat()
                prefix = "[SIMULATED] " if self.is_simulated else ""
                f.write(f"{timestamp} [{level}] {prefix}{message}\n")

        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log activity: {e}")
