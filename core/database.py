"""
Database engine and session management with SQLAlchemy async
"""

from typing import AsyncIterator, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine for the target store"""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=False,
        poolclass=NullPool,  # For async, connection pooling handled differently
        future=True
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to the given engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine for the status API, created on first use"""
    global _engine, _session_maker
    if _engine is None:
        _engine = create_engine()
        _session_maker = create_session_maker(_engine)
        logger.debug("Created database engine")
    return _engine


def get_session_maker() -> async_sessionmaker:
    get_engine()
    return _session_maker


async def get_session() -> AsyncIterator[AsyncSession]:
    """Get database session"""
    async with get_session_maker()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None
