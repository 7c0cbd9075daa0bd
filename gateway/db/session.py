"""
Database Session Management - Async SQLAlchemy session factories.

Provides separate read (replica) and write (primary) sessions. The usage
ledger takes the two context managers below as its session factories, so
it can open sessions after a streaming response has started.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gateway.config import settings
from gateway.observability.tracing import instrument_sqlalchemy

# Global engine instances and their session factories, created lazily
_engines: dict[str, AsyncEngine] = {}
_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def _create_engine(url: str) -> AsyncEngine:
    engine = create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        echo=settings.log_level == "DEBUG",
    )
    instrument_sqlalchemy(engine)
    return engine


def get_write_engine() -> AsyncEngine:
    """Get or create the write database engine (primary)."""
    if "write" not in _engines:
        _engines["write"] = _create_engine(settings.database_url)
    return _engines["write"]


def get_read_engine() -> AsyncEngine:
    """Get or create the read database engine (replica, or primary if none)."""
    if "read" not in _engines:
        _engines["read"] = _create_engine(settings.read_database_url)
    return _engines["read"]


def _session_factory(role: str) -> async_sessionmaker[AsyncSession]:
    if role not in _factories:
        engine = get_write_engine() if role == "write" else get_read_engine()
        _factories[role] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _factories[role]


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session for write operations.

    Usage:
        async with get_write_session() as session:
            await session.execute(...)
            await session.commit()
    """
    async with _session_factory("write")() as session:
        yield session


@asynccontextmanager
async def get_read_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session for read operations (from replica).

    Usage:
        async with get_read_session() as session:
            result = await session.execute(...)
    """
    async with _session_factory("read")() as session:
        yield session


async def close_engines() -> None:
    """Close all database engines (for graceful shutdown)."""
    for engine in _engines.values():
        await engine.dispose()
    _engines.clear()
    _factories.clear()
