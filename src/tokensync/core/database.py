"""Database engine and session factory setup."""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel


def create_engine(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create async engine for PostgreSQL (psycopg) or SQLite (aiosqlite).

    SQLite engines use the dialect's default pool, which does not accept
    sizing arguments.
    """
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=False)

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # SQL is not logged (use structlog instead)
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Connection URL (postgresql+psycopg://... or sqlite+aiosqlite://...)
        pool_size: Maximum number of connections in the pool (PostgreSQL only)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_engine(db_url, pool_size)

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )


async def create_schema(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Create all tables registered on SQLModel metadata.

    Used for SQLite deployments and tests; PostgreSQL deployments run Alembic.
    """
    import tokensync.models  # noqa: F401

    engine = session_factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def dialect_insert(session: AsyncSession):
    """Return the dialect-specific ``insert`` supporting ON CONFLICT clauses.

    Both PostgreSQL and SQLite implement ``on_conflict_do_nothing`` and
    ``on_conflict_do_update`` with the same signature.
    """
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


def max_bind_params(session: AsyncSession) -> int:
    """Upper bound on bind parameters per statement for the session's dialect."""
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return 999
    return 65535
