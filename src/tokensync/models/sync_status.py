"""SyncStatus entity - Per-contract resumable sync checkpoint."""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel


class CheckpointStatus(str, Enum):
    """Checkpoint lifecycle status."""

    NEVER_SYNCED = "never_synced"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncStatus(SQLModel, table=True):
    """SyncStatus records the last block durably synced for a contract.

    last_synced_block only covers a contiguous prefix of the contract's
    history; the next auto-resumed job starts at last_synced_block + 1.
    """

    __tablename__ = "sync_status"  # type: ignore[assignment]

    contract_address: str = Field(primary_key=True, max_length=42)
    last_synced_block: int | None = Field(default=None, sa_column=Column(BigInteger))
    status: CheckpointStatus = Field(default=CheckpointStatus.NEVER_SYNCED)
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    error_message: str | None = Field(default=None)
    sync_timestamp: datetime = Field(default_factory=datetime.utcnow)
