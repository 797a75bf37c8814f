"""Contract repository for tokensync.

Provides data access methods for the registry of indexed token contracts.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokensync.models.contract import Contract


class ContractRepository:
    """Repository for Contract entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, address: str) -> Contract | None:
        """Retrieve a registered contract by address (case-insensitive).

        Args:
            address: Contract address

        Returns:
            Contract if registered, None otherwise
        """
        result = await self.session.execute(
            select(Contract).where(Contract.address == address.lower())  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, contract: Contract) -> Contract:
        """Persist new contract to database.

        Args:
            contract: Contract entity to persist

        Returns:
            Persisted contract
        """
        contract.address = contract.address.lower()
        self.session.add(contract)
        await self.session.flush()
        return contract

    async def list_all(self) -> list[Contract]:
        """Retrieve all registered contracts ordered by address."""
        result = await self.session.execute(select(Contract).order_by(Contract.address))
        return list(result.scalars().all())
