"""
Database Session Management - Async SQLAlchemy engines and session factories.

The write engine targets the primary. The read engine targets the replica
when DATABASE_READ_URL is set and is otherwise the write engine itself,
so a single-database deployment keeps one connection pool.

Engines are created with hide_parameters so bound values (session tokens,
fingerprints) never appear in exception messages that end up in logs.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings
from app.observability.tracing import instrument_sqlalchemy

_write_engine: AsyncEngine | None = None
_read_engine: AsyncEngine | None = None
_write_session_factory: async_sessionmaker[AsyncSession] | None = None
_read_session_factory: async_sessionmaker[AsyncSession] | None = None


def _create_engine(url: str) -> AsyncEngine:
    engine = create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        hide_parameters=True,
        echo=settings.log_level.upper() == "DEBUG",
    )
    instrument_sqlalchemy(engine)
    return engine


def _session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Services hand out snapshots after commit, so rows must stay loaded
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_write_engine() -> AsyncEngine:
    """Primary engine, created on first use."""
    global _write_engine
    if _write_engine is None:
        _write_engine = _create_engine(settings.database_url)
    return _write_engine


def get_read_engine() -> AsyncEngine:
    """Replica engine, or the primary engine when no replica is configured."""
    global _read_engine
    if _read_engine is None:
        if settings.database_read_url:
            _read_engine = _create_engine(settings.database_read_url)
        else:
            _read_engine = get_write_engine()
    return _read_engine


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    global _write_session_factory
    if _write_session_factory is None:
        _write_session_factory = _session_factory(get_write_engine())
    return _write_session_factory


def get_read_session_factory() -> async_sessionmaker[AsyncSession]:
    global _read_session_factory
    if _read_session_factory is None:
        _read_session_factory = _session_factory(get_read_engine())
    return _read_session_factory


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a primary database session.

    Usage:
        @router.post("/v1/devices/login")
        async def login(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with get_write_session_factory()() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for a replica session (primary when none is configured)."""
    async with get_read_session_factory()() as session:
        yield session


async def close_engines() -> None:
    """Dispose all engines (graceful shutdown and maintenance scripts)."""
    global _write_engine, _read_engine, _write_session_factory, _read_session_factory

    if _read_engine is not None and _read_engine is not _write_engine:
        await _read_engine.dispose()
    if _write_engine is not None:
        await _write_engine.dispose()

    _write_engine = None
    _read_engine = None
    _write_session_factory = None
    _read_session_factory = None
