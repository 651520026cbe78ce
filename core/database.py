"""
Database session management with SQLAlchemy async
"""

from functools import lru_cache
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create the process-wide async engine on first use"""
    logger.debug("Creating database engine")
    return create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        poolclass=NullPool,  # For async, connection pooling handled differently
        hide_parameters=True,  # keep order data out of errors and logs
        future=True
    )


def get_session_factory(engine: AsyncEngine = None) -> async_sessionmaker:
    """Session factory bound to the given engine (default: process engine)"""
    return async_sessionmaker(
        engine or get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )

