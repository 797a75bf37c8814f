"""Contract entity - Registry of indexed token contracts."""

from datetime import datetime
from enum import Enum

from pydantic import field_validator
from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel


class ContractType(str, Enum):
    """Supported token standards."""

    ERC721 = "ERC721"
    ERC1155 = "ERC1155"


class Contract(SQLModel, table=True):
    """Contract stores the token standard and deployment block used to plan syncs."""

    __tablename__ = "contracts"  # type: ignore[assignment]

    address: str = Field(primary_key=True, max_length=42)
    contract_type: ContractType
    deployment_block: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    name: str | None = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate and lower-case contract address."""
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("Contract address must be 0x followed by 40 hex characters")
        return v.lower()
