"""SyncStatus repository for tokensync.

Provides UPSERT-based access to the per-contract sync checkpoint.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokensync.core.database import dialect_insert
from tokensync.models.sync_status import CheckpointStatus, SyncStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncStatusRepository:
    """Repository for SyncStatus checkpoints.

    Every write is an INSERT ... ON CONFLICT (contract_address) DO UPDATE so
    callers never need to know whether a checkpoint row exists yet.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, contract_address: str) -> SyncStatus | None:
        """Retrieve the checkpoint for a contract, None if it was never synced."""
        result = await self.session.execute(
            select(SyncStatus).where(SyncStatus.contract_address == contract_address.lower())  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_last_synced_block(self, contract_address: str) -> int | None:
        status = await self.get(contract_address)
        return status.last_synced_block if status else None

    async def _upsert(self, contract_address: str, **values: Any) -> None:
        """Insert or update the checkpoint row with the given column values.

        Query explanation:
        - INSERT: Create the row on first write
        - ON CONFLICT (contract_address): Row already exists
        - DO UPDATE: Overwrite only the supplied columns plus sync_timestamp
        """
        values["sync_timestamp"] = _utcnow()
        insert = dialect_insert(self.session)
        stmt = insert(SyncStatus).values(contract_address=contract_address.lower(), **values)
        stmt = stmt.on_conflict_do_update(index_elements=["contract_address"], set_=values)
        await self.session.execute(stmt)
        await self.session.flush()
        # Keep identity-mapped instances in line with the row just written
        self.session.expire_all()

    async def set_last_synced_block(self, contract_address: str, block_number: int) -> None:
        await self._upsert(contract_address, last_synced_block=block_number)

    async def advance(
        self,
        contract_address: str,
        from_block: int,
        to_block: int,
        baseline: int | None = None,
    ) -> int | None:
        """Move the checkpoint to ``to_block`` if the range is contiguous with it.

        The checkpoint only ever covers a gap-free prefix: a range starting
        after ``last_synced_block + 1`` leaves it untouched, and it never moves
        backwards.

        Args:
            contract_address: Contract being synced
            from_block: First block of the committed range
            to_block: Last block of the committed range
            baseline: Block treated as already synced when the checkpoint is
                missing or lower (a stale checkpoint below the deployment block)

        Returns:
            Checkpoint value after the call (None if still unset)
        """
        current = await self.get_last_synced_block(contract_address)
        last = current
        if baseline is not None and (last is None or baseline > last):
            last = baseline
        if last is None or from_block > last + 1 or to_block <= last:
            return current

        await self._upsert(contract_address, last_synced_block=to_block)
        return to_block

    async def mark_processing(self, contract_address: str) -> None:
        await self._upsert(
            contract_address,
            status=CheckpointStatus.PROCESSING,
            started_at=_utcnow(),
            completed_at=None,
            error_message=None,
        )

    async def mark_completed(self, contract_address: str) -> None:
        await self._upsert(
            contract_address,
            status=CheckpointStatus.COMPLETED,
            completed_at=_utcnow(),
            error_message=None,
        )

    async def mark_failed(self, contract_address: str, error_message: str) -> None:
        """Record a failed job; the checkpoint block is left as committed."""
        await self._upsert(
            contract_address,
            status=CheckpointStatus.FAILED,
            completed_at=_utcnow(),
            error_message=error_message,
        )
