"""Bot engine FastAPI application.

Runs trading bots in-process and exposes their lifecycle, history and the
strategy catalog over HTTP.
"""

import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import configure_database, init_db
from .routers import bots, exchange_accounts, health, strategies
from .services.config import config_service, configure_logging, ConfigValidationException
from .services.exchange_manager import exchange_manager
from .services.scheduler import bot_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Validate configuration
    try:
        config_service.load_and_validate()
    except ConfigValidationException as e:
        logger.critical(f"FATAL: {e}")
        logger.critical("Server cannot start with invalid configuration.")
        sys.exit(1)
    configure_logging(config_service)

    database_url = config_service.get("database.url")
    if database_url:
        configure_database(database_url, echo=config_service.get("database.echo", False))

    await init_db()
    logger.info("Database initialized")

    # Auto-resume bots that were running when the server stopped
    if config_service.get("engine.resume_on_startup"):
        try:
            resumed_count = await bot_scheduler.resume_bots_on_startup()
            if resumed_count > 0:
                logger.info(f"Resumed {resumed_count} bot(s) from previous session")
        except Exception as e:
            logger.warning(f"Failed to resume bots: {e}")

    yield

    logger.info("Initiating graceful shutdown...")
    failures = await bot_scheduler.shutdown()
    for bot_id, error in failures.items():
        logger.warning(f"Bot {bot_id}: not stopped cleanly: {error}")

    await exchange_manager.close_all()
    logger.info("Graceful shutdown complete")


app = FastAPI(
    title="Bot Engine API",
    description="Trading bot orchestration API",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(exchange_accounts.router, prefix="/api/exchange-accounts", tags=["Exchange Accounts"])
app.include_router(bots.router, prefix="/api/bots", tags=["Bots"])
app.include_router(strategies.router, prefix="/api/strategies", tags=["Strategies"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "Bot Engine API", "docs": "/docs"}
