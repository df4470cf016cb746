"""
Database session management with SQLAlchemy async
"""

from functools import lru_cache
from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
from models.base import Base
import logging

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create (once per URL) the async engine used by SQL-backed stores"""
    url = database_url or settings.DATABASE_URL
    return create_async_engine(
        url,
        echo=settings.ENVIRONMENT == "development" and settings.LOG_LEVEL.upper() == "DEBUG",
        poolclass=NullPool,  # For async, connection pooling handled differently
        future=True
    )


def get_session_maker(engine: Optional[AsyncEngine] = None) -> async_sessionmaker:
    """Session factory bound to the given (or default) engine"""
    return async_sessionmaker(
        engine or get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


async def init_models(engine: Optional[AsyncEngine] = None):
    """Create checkpoint and operation log tables if they are missing"""
    import models.checkpoint  # noqa: F401
    import models.operation  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Migration bookkeeping tables ready")
