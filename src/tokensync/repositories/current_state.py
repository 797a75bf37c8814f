"""CurrentState repository for tokensync.

Provides access to the derived per-holder balance table.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Numeric, cast, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokensync.core.database import max_bind_params
from tokensync.models.current_state import CurrentState


@dataclass(frozen=True)
class BalanceTotals:
    """Aggregates over one contract's balances."""

    holders: int
    unique_tokens: int
    total_supply: int


class CurrentStateRepository:
    """Repository for CurrentState rows.

    The table is a pure function of the event table: the reconciler replaces a
    contract's rows wholesale, nothing else writes to it.
    """

    def __init__(self, session: AsyncSession, batch_size: int = 500):
        self.session = session
        self.batch_size = batch_size

    async def delete_for_contract(self, contract_address: str) -> int:
        """Remove every balance row of a contract.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(CurrentState).where(
                CurrentState.contract_address == contract_address.lower()  # type: ignore[arg-type]
            )
        )
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def insert_many(self, rows: Sequence[dict[str, Any]]) -> int:
        """Bulk insert balance rows in the given order.

        Args:
            rows: Mappings with contract_address, address, token_id, balance, last_updated_block

        Returns:
            Number of rows inserted
        """
        if not rows:
            return 0

        width = len(rows[0]) or 1
        per_statement = max(1, min(self.batch_size, max_bind_params(self.session) // width))
        table = CurrentState.__table__  # type: ignore[attr-defined]
        for start in range(0, len(rows), per_statement):
            batch = list(rows[start : start + per_statement])
            await self.session.execute(table.insert().values(batch))

        await self.session.flush()
        return len(rows)

    async def get_balance(self, contract_address: str, address: str, token_id: str) -> int:
        """Balance of one holder for one token, 0 when absent."""
        result = await self.session.execute(
            select(CurrentState.balance).where(  # type: ignore[call-overload]
                CurrentState.contract_address == contract_address.lower(),
                CurrentState.address == address.lower(),
                CurrentState.token_id == token_id,
            )
        )
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else 0

    async def list_for_contract(self, contract_address: str) -> list[CurrentState]:
        """All balance rows of a contract in (address, token_id) order."""
        result = await self.session.execute(
            select(CurrentState)
            .where(CurrentState.contract_address == contract_address.lower())  # type: ignore[arg-type]
            .order_by(CurrentState.address, CurrentState.token_id)
        )
        return list(result.scalars().all())

    async def list_holders(
        self,
        contract_address: str,
        token_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CurrentState]:
        """List balance rows, largest balance first.

        Args:
            contract_address: Contract to list holders for
            token_id: Restrict to a single token id
            limit: Maximum number of rows to return
            offset: Number of rows to skip

        Returns:
            Rows ordered by balance DESC, then address and token_id
        """
        stmt = select(CurrentState).where(
            CurrentState.contract_address == contract_address.lower()  # type: ignore[arg-type]
        )
        if token_id is not None:
            stmt = stmt.where(CurrentState.token_id == token_id)  # type: ignore[arg-type]
        stmt = (
            stmt.order_by(
                cast(CurrentState.balance, Numeric(78, 0)).desc(),
                CurrentState.address,
                CurrentState.token_id,
            )
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_totals(self, contract_address: str) -> BalanceTotals:
        """Distinct holders, distinct token ids and summed balance of a contract.

        Balances are summed in Python to keep uint256 precision.
        """
        contract = contract_address.lower()
        result = await self.session.execute(
            select(
                func.count(func.distinct(CurrentState.address)),
                func.count(func.distinct(CurrentState.token_id)),
            ).where(CurrentState.contract_address == contract)  # type: ignore[arg-type]
        )
        holders, unique_tokens = result.one()

        balances = await self.session.execute(
            select(CurrentState.balance).where(CurrentState.contract_address == contract)  # type: ignore[call-overload]
        )
        total_supply = sum(int(balance) for balance in balances.scalars())
        return BalanceTotals(
            holders=holders or 0, unique_tokens=unique_tokens or 0, total_supply=total_supply
        )
