"""pytest fixtures for tokensync tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped database (SQLite file, or PostgreSQL when
  TOKENSYNC_TEST_POSTGRES=1) with the schema created
- uow_factory: Function-scoped UnitOfWork factory
- settings: Test settings with delays disabled
- rpc: In-memory fake provider
"""

import os
import subprocess
from pathlib import Path
from typing import AsyncGenerator

# Settings() runs at import time of tokensync.app; skip production validation
os.environ["APP_ENV"] = "test"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakes import FakeRpc  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from tokensync.core.config import Settings  # noqa: E402
from tokensync.core.database import create_schema, setup_db_session  # noqa: E402
from tokensync.uow import create_uow_factory  # noqa: E402

USE_POSTGRES = os.environ.get("TOKENSYNC_TEST_POSTGRES") == "1"
PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_tokensync",
    ).with_bind_ports(5432, None) as container:
        db_url = container.get_connection_url(driver="psycopg")

        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            ["alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )

        yield container


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(
    request, tmp_path
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory over an empty schema.

    SQLite: a fresh database file per test, schema from SQLModel metadata.
    PostgreSQL: the shared container, tables truncated after each test.
    """
    if USE_POSTGRES:
        container = request.getfixturevalue("postgres_container")
        factory = setup_db_session(container.get_connection_url(driver="psycopg"), pool_size=5)
    else:
        factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
        await create_schema(factory)

    yield factory

    if USE_POSTGRES:
        async with factory() as session:
            await session.execute(
                text("TRUNCATE events, current_state, sync_status, contracts RESTART IDENTITY")
            )
            await session.commit()

    await factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Plain session for tests that talk to repositories directly."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture
async def without_identity_index(session_factory):
    """Drop the unique event identity index so duplicate rows can be written.

    Simulates data written before the index existed.
    """
    async with session_factory() as session:
        await session.execute(text("DROP INDEX uq_events_identity"))
        await session.commit()

    yield

    if USE_POSTGRES:
        async with session_factory() as session:
            await session.execute(text("DELETE FROM events"))
            await session.execute(
                text(
                    "CREATE UNIQUE INDEX uq_events_identity "
                    "ON events (transaction_hash, log_index, batch_index)"
                )
            )
            await session.commit()


@pytest.fixture
def settings() -> Settings:
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        SYNC_CHUNK_DELAY_SECONDS=0,
        SYNC_RETRY_BACKOFF_SECONDS=0,
        MAX_QUEUED_JOBS=10,
    )


@pytest.fixture
def rpc() -> FakeRpc:
    return FakeRpc()
