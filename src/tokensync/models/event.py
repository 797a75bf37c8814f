"""Event entity - Immutable ERC-721/ERC-1155 transfer facts."""

from datetime import datetime

from pydantic import field_validator
from sqlalchemy import BigInteger, Column, Index, Integer
from sqlmodel import Field, SQLModel

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Event(SQLModel, table=True):
    """Event is one normalized Transfer-family log.

    Identity is (transaction_hash, log_index, batch_index); batch_index is 0
    for Transfer and TransferSingle logs and the position inside the ids array
    for TransferBatch sub-events. Rows are never updated.
    """

    __tablename__ = "events"  # type: ignore[assignment]
    __table_args__ = (
        Index(
            "uq_events_identity",
            "transaction_hash",
            "log_index",
            "batch_index",
            unique=True,
        ),
        Index("ix_events_contract_block", "contract_address", "block_number"),
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(
            BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
        ),
    )
    contract_address: str = Field(max_length=42)
    transaction_hash: str = Field(max_length=66)
    log_index: int
    batch_index: int = Field(default=0)
    block_number: int = Field(sa_column=Column(BigInteger, nullable=False))
    block_timestamp: int = Field(sa_column=Column(BigInteger, nullable=False))
    event_type: str = Field(default="Transfer", max_length=32)
    from_address: str = Field(max_length=42, index=True)
    to_address: str = Field(max_length=42, index=True)
    token_id: str = Field(max_length=78)  # uint256 as decimal string
    amount: str = Field(max_length=78)  # uint256 as decimal string
    operator: str = Field(max_length=42)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("contract_address", "from_address", "to_address", "operator")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        """Addresses are stored lower-cased."""
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("Address must be 0x followed by 40 hex characters")
        return v.lower()

    @field_validator("transaction_hash")
    @classmethod
    def validate_tx_hash(cls, v: str) -> str:
        """Validate Ethereum transaction hash format (0x + 64 hex characters)."""
        if not v.startswith("0x") or len(v) != 66:
            raise ValueError("Transaction hash must be in format 0x followed by 64 hex characters")
        try:
            int(v[2:], 16)
        except ValueError:
            raise ValueError("Transaction hash must contain valid hexadecimal characters")
        return v.lower()
