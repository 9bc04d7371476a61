"""Database configuration and session management."""

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./botengine.db"

engine: AsyncEngine = create_async_engine(DEFAULT_DATABASE_URL, echo=False)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


def configure_database(url: str, echo: bool = False) -> AsyncEngine:
    """Rebind the shared session factory to a different database.

    The session factory object is kept, so modules that imported it keep
    working after the switch.

    Args:
        url: SQLAlchemy async database URL
        echo: Whether to log emitted SQL

    Returns:
        The new engine
    """
    global engine
    engine = create_async_engine(url, echo=echo)
    async_session_maker.configure(bind=engine)
    logger.info(f"Database bound to {url}")
    return engine


async def get_session() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with async_session_maker() as session:
        yield session


async def init_db():
    """Create all tables on the current engine."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
