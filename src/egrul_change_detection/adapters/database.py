"""Database engines for the change detection service.

Two connections are managed here:
- the change database (change_events, entity_snapshots), read and written
- the registry database (companies, entrepreneurs, ...), read only

Both may point at the same server. Engines are module-level and initialized
once by the application lifespan handler.

Key exports:
- init_db(...)              - create the change database engine
- init_registry_db(...)     - create the registry database engine
- close_db()                - dispose both engines
- get_session_factory()     - session factory of the change database
- get_registry_session_factory() - session factory of the registry database
- create_schema()           - create missing change database tables
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from egrul_change_detection.adapters.tables import Base
from egrul_change_detection.observability import get_logger

logger = get_logger(__name__)

# Module-level engines and session factories, initialized by init_db() / init_registry_db()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_registry_engine: AsyncEngine | None = None
_registry_session_factory: async_sessionmaker[AsyncSession] | None = None


def _build_engine(url: str, pool_size: int, max_overflow: int, pool_timeout: int) -> AsyncEngine:
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        echo=False,
        pool_pre_ping=True,
    )


def _build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_timeout: int = 30,
) -> None:
    """Initialize the change database engine and session factory.

    Args:
        database_url: SQLAlchemy async URL of the change database.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.
    """
    global _engine, _session_factory  # noqa: PLW0603

    logger.info("Initializing change database engine", pool_size=pool_size, max_overflow=max_overflow)
    _engine = _build_engine(database_url, pool_size, max_overflow, pool_timeout)
    _session_factory = _build_session_factory(_engine)


async def init_registry_db(
    registry_database_url: str,
    pool_size: int = 5,
    max_overflow: int = 2,
    pool_timeout: int = 30,
) -> None:
    """Initialize the read-only registry database engine and session factory.

    Args:
        registry_database_url: SQLAlchemy async URL of the registry database.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        pool_timeout: Seconds to wait for a connection before raising.
    """
    global _registry_engine, _registry_session_factory  # noqa: PLW0603

    logger.info("Initializing registry database engine", pool_size=pool_size)
    _registry_engine = _build_engine(registry_database_url, pool_size, max_overflow, pool_timeout)
    _registry_session_factory = _build_session_factory(_registry_engine)


async def close_db() -> None:
    """Dispose both engines. Safe to call when they were never initialized."""
    global _engine, _session_factory, _registry_engine, _registry_session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing change database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None
    if _registry_engine is not None:
        logger.info("Disposing registry database engine")
        await _registry_engine.dispose()
        _registry_engine = None
        _registry_session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the change database session factory.

    Raises:
        RuntimeError: If init_db() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Change database has not been initialized. "
            "Call init_db() in the application lifespan handler."
        )
    return _session_factory


def get_registry_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the registry database session factory.

    Raises:
        RuntimeError: If init_registry_db() has not been called yet.
    """
    if _registry_session_factory is None:
        raise RuntimeError(
            "Registry database has not been initialized. "
            "Call init_registry_db() in the application lifespan handler."
        )
    return _registry_session_factory


async def create_schema() -> None:
    """Create the change database tables that do not exist yet.

    Raises:
        RuntimeError: If init_db() has not been called yet.
    """
    if _engine is None:
        raise RuntimeError("Change database has not been initialized.")
    async with _engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info("Change database schema ensured")
