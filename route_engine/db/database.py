"""
Database connection and session management for the route engine.

Uses SQLAlchemy async for FastAPI compatibility. The engine is built
lazily on first use so importing the models (Alembic, unit tests) never
needs a reachable database or an installed async driver.
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from route_engine.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Constraint names must match alembic/versions
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    metadata = MetaData(naming_convention=convention)


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine (asyncpg) from settings."""
    return create_async_engine(
        settings.database_url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating the engine once."""
    global _engine, _session_maker
    if _session_maker is None:
        _engine = build_engine(get_settings())
        _session_maker = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_maker


async def dispose_engine() -> None:
    """Close pooled connections (application shutdown)."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for FastAPI routes to get database session.

    One session is one transaction: it commits when the endpoint returns
    and rolls back on any exception, so a failed mutation leaves nothing
    behind.
    """
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.debug("Request transaction rolled back")
            raise
