"""Unit of Work pattern for tokensync.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokensync.repositories.contract import ContractRepository
from tokensync.repositories.current_state import CurrentStateRepository
from tokensync.repositories.event import EventRepository
from tokensync.repositories.sync_status import SyncStatusRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages database transactions and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            inserted = await uow.events.insert_many(rows)
            await uow.sync_status.advance(contract, from_block, to_block)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(self, session: AsyncSession, batch_size: int = 500):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
            batch_size: Rows per bulk INSERT statement
        """
        self.session = session

        self.events = EventRepository(session, batch_size=batch_size)
        self.balances = CurrentStateRepository(session, batch_size=batch_size)
        self.sync_status = SyncStatusRepository(session)
        self.contracts = ContractRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit on clean exit, roll back on exception, always close the session.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession], batch_size: int = 500):
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory
        batch_size: Rows per bulk INSERT statement

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.contracts.add(contract)
    """

    async def _create_uow():
        """Create a new UnitOfWork instance with a new session."""
        session = session_factory()
        return UnitOfWork(session, batch_size=batch_size)

    return _create_uow
