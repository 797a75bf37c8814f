"""CurrentState entity - Materialized per-holder balances derived from events."""

from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel


class CurrentState(SQLModel, table=True):
    """CurrentState holds one positive balance per (contract, holder, token).

    Rows are owned by the state reconciler: deleted and rebuilt in full from
    the events table, never edited in place. Zero balances are not stored.
    """

    __tablename__ = "current_state"  # type: ignore[assignment]

    contract_address: str = Field(primary_key=True, max_length=42)
    address: str = Field(primary_key=True, max_length=42, index=True)
    token_id: str = Field(primary_key=True, max_length=78)
    balance: str = Field(max_length=78)  # uint256 as decimal string
    last_updated_block: int = Field(sa_column=Column(BigInteger, nullable=False))
