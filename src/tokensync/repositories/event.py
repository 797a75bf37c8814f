"""Event repository for tokensync.

Provides idempotent persistence and read access for normalized transfer events.
"""

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokensync.core.database import dialect_insert, max_bind_params
from tokensync.models.event import Event

IDENTITY_COLUMNS = ["transaction_hash", "log_index", "batch_index"]


@dataclass(frozen=True)
class DuplicateGroup:
    """Rows sharing one event identity."""

    transaction_hash: str
    log_index: int
    batch_index: int
    count: int


class EventRepository:
    """Repository for Event rows.

    Inserts are insert-or-ignore on the (transaction_hash, log_index, batch_index)
    identity, so re-inserting an already stored event is a no-op.
    """

    def __init__(self, session: AsyncSession, batch_size: int = 500):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
            batch_size: Maximum rows per INSERT statement
        """
        self.session = session
        self.batch_size = batch_size

    async def insert_many(self, rows: Sequence[dict[str, Any]]) -> int:
        """Insert events, silently skipping identities that already exist.

        Rows are written in statements of at most ``batch_size`` rows (fewer on
        SQLite, whose bind parameter ceiling is low).

        Query explanation:
        - INSERT ... VALUES (...), (...): Multi-row insert per batch
        - ON CONFLICT (transaction_hash, log_index, batch_index) DO NOTHING

        Args:
            rows: Event column mappings (see ``TransferEvent.to_row``)

        Returns:
            Number of rows actually inserted
        """
        if not rows:
            return 0

        width = len(rows[0]) or 1
        per_statement = max(1, min(self.batch_size, max_bind_params(self.session) // width))
        insert = dialect_insert(self.session)

        inserted = 0
        for start in range(0, len(rows), per_statement):
            batch = list(rows[start : start + per_statement])
            stmt = insert(Event).values(batch)
            stmt = stmt.on_conflict_do_nothing(index_elements=IDENTITY_COLUMNS)
            result = await self.session.execute(stmt)
            inserted += max(result.rowcount or 0, 0)  # type: ignore[attr-defined]

        await self.session.flush()
        return inserted

    async def add(self, event: Event) -> Event:
        """Persist a single event without conflict handling.

        Raises IntegrityError if the identity is already stored.
        """
        self.session.add(event)
        await self.session.flush()
        return event

    async def exists(self, transaction_hash: str, log_index: int, batch_index: int = 0) -> bool:
        result = await self.session.execute(
            select(Event.id).where(  # type: ignore[call-overload]
                Event.transaction_hash == transaction_hash.lower(),
                Event.log_index == log_index,
                Event.batch_index == batch_index,
            )
        )
        return result.first() is not None

    async def count(
        self,
        contract_address: str,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> int:
        """Count stored events for a contract, optionally within a block range (inclusive)."""
        stmt = select(func.count()).select_from(Event).where(
            Event.contract_address == contract_address.lower()  # type: ignore[arg-type]
        )
        if from_block is not None:
            stmt = stmt.where(Event.block_number >= from_block)  # type: ignore[arg-type]
        if to_block is not None:
            stmt = stmt.where(Event.block_number <= to_block)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def get_max_block(self, contract_address: str) -> int | None:
        """Highest block number with a stored event, or None when there are none."""
        result = await self.session.execute(
            select(func.max(Event.block_number)).where(
                Event.contract_address == contract_address.lower()  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def get_min_block(self, contract_address: str) -> int | None:
        result = await self.session.execute(
            select(func.min(Event.block_number)).where(
                Event.contract_address == contract_address.lower()  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def get_distinct_blocks(
        self,
        contract_address: str,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> list[int]:
        """Return the sorted distinct block numbers holding events for a contract."""
        stmt = (
            select(Event.block_number)
            .where(Event.contract_address == contract_address.lower())  # type: ignore[arg-type]
            .distinct()
            .order_by(Event.block_number)
        )
        if from_block is not None:
            stmt = stmt.where(Event.block_number >= from_block)  # type: ignore[arg-type]
        if to_block is not None:
            stmt = stmt.where(Event.block_number <= to_block)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_events(
        self,
        contract_address: str,
        from_block: int | None = None,
        to_block: int | None = None,
        address: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Event]:
        """List events in chain order with pagination.

        Args:
            contract_address: Contract to list events for
            from_block: Inclusive lower block bound
            to_block: Inclusive upper block bound
            address: Only events where this address is sender or recipient
            limit: Maximum number of events to return
            offset: Number of events to skip

        Returns:
            Events ordered by (block_number, log_index, batch_index)
        """
        stmt = select(Event).where(Event.contract_address == contract_address.lower())  # type: ignore[arg-type]
        if from_block is not None:
            stmt = stmt.where(Event.block_number >= from_block)  # type: ignore[arg-type]
        if to_block is not None:
            stmt = stmt.where(Event.block_number <= to_block)  # type: ignore[arg-type]
        if address is not None:
            holder = address.lower()
            stmt = stmt.where(
                (Event.from_address == holder) | (Event.to_address == holder)  # type: ignore[arg-type]
            )
        stmt = (
            stmt.order_by(Event.block_number, Event.log_index, Event.batch_index)
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def iter_transfers(self, contract_address: str) -> AsyncIterator[Any]:
        """Stream (from_address, to_address, token_id, amount, block_number) in chain order.

        Ordering is (block_number, log_index, batch_index) so a replay sees
        transfers exactly as the chain applied them.
        """
        stmt = (
            select(
                Event.from_address,
                Event.to_address,
                Event.token_id,
                Event.amount,
                Event.block_number,
            )
            .where(Event.contract_address == contract_address.lower())  # type: ignore[arg-type]
            .order_by(Event.block_number, Event.log_index, Event.batch_index, Event.id)
        )
        result = await self.session.stream(stmt)
        async for row in result:
            yield row

    async def find_duplicates(self, contract_address: str) -> list[DuplicateGroup]:
        """Find identities stored more than once for a contract.

        Only possible for data written before the unique identity index existed.

        Query explanation:
        - GROUP BY transaction_hash, log_index, batch_index
        - HAVING COUNT(*) > 1
        """
        result = await self.session.execute(
            select(
                Event.transaction_hash,
                Event.log_index,
                Event.batch_index,
                func.count().label("count"),
            )
            .where(Event.contract_address == contract_address.lower())  # type: ignore[arg-type]
            .group_by(Event.transaction_hash, Event.log_index, Event.batch_index)
            .having(func.count() > 1)
            .order_by(Event.transaction_hash, Event.log_index, Event.batch_index)
        )
        return [
            DuplicateGroup(
                transaction_hash=row.transaction_hash,
                log_index=row.log_index,
                batch_index=row.batch_index,
                count=row.count,
            )
            for row in result.all()
        ]

    async def remove_duplicates(self, contract_address: str) -> int:
        """Delete duplicate rows, keeping the lowest id of each identity group.

        Query explanation:
        - Subquery: MIN(id) per identity for the contract (the rows to keep)
        - DELETE: every other row of the contract

        Returns:
            Number of rows deleted
        """
        contract = contract_address.lower()
        keep = (
            select(func.min(Event.id))
            .where(Event.contract_address == contract)  # type: ignore[arg-type]
            .group_by(Event.transaction_hash, Event.log_index, Event.batch_index)
        )
        result = await self.session.execute(
            delete(Event).where(
                Event.contract_address == contract,  # type: ignore[arg-type]
                Event.id.not_in(keep),  # type: ignore[union-attr]
            )
        )
        await self.session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]
