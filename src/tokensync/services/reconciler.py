"""State reconciler: rebuilds current balances by replaying the event log.

The rebuild is the definition of current state. It deletes a contract's
balance rows and re-derives them from every stored event, ordered by
(block_number, log_index, batch_index), inside a single transaction.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from tokensync.models.event import ZERO_ADDRESS

logger = structlog.get_logger()


@dataclass(frozen=True)
class NegativeBalance:
    """A holder balance that replay drove below zero (an ingestion gap)."""

    address: str
    token_id: str
    balance: int
    block_number: int


@dataclass(frozen=True)
class ConservationViolation:
    """A token whose stored holdings differ from minted minus burned."""

    token_id: str
    held: int
    minted: int
    burned: int

    @property
    def expected(self) -> int:
        return self.minted - self.burned


@dataclass
class BalanceReplay:
    """Signed running balances keyed by (holder, token_id)."""

    balances: dict[tuple[str, str], int] = field(default_factory=dict)
    last_block: dict[tuple[str, str], int] = field(default_factory=dict)
    events_replayed: int = 0
    minted: dict[str, int] = field(default_factory=dict)
    burned: dict[str, int] = field(default_factory=dict)

    def apply(
        self, from_address: str, to_address: str, token_id: str, amount: int, block_number: int
    ) -> None:
        self.events_replayed += 1
        if from_address == ZERO_ADDRESS:
            self.minted[token_id] = self.minted.get(token_id, 0) + amount
        else:
            key = (from_address, token_id)
            self.balances[key] = self.balances.get(key, 0) - amount
            self.last_block[key] = block_number
        if to_address == ZERO_ADDRESS:
            self.burned[token_id] = self.burned.get(token_id, 0) + amount
        else:
            key = (to_address, token_id)
            self.balances[key] = self.balances.get(key, 0) + amount
            self.last_block[key] = block_number

    def negative_balances(self) -> list[NegativeBalance]:
        return [
            NegativeBalance(
                address=address,
                token_id=token_id,
                balance=balance,
                block_number=self.last_block[(address, token_id)],
            )
            for (address, token_id), balance in sorted(self.balances.items())
            if balance < 0
        ]

    def conservation_violations(self) -> list[ConservationViolation]:
        """Tokens whose positive holder balances do not add up to minted - burned.

        Negative balances are dropped from ``current_state``, so any ingestion
        gap that drove a holder below zero shows up here as excess supply.
        """
        held: dict[str, int] = {}
        for (_, token_id), balance in self.balances.items():
            if balance > 0:
                held[token_id] = held.get(token_id, 0) + balance

        violations = []
        for token_id in sorted(set(held) | set(self.minted) | set(self.burned)):
            violation = ConservationViolation(
                token_id=token_id,
                held=held.get(token_id, 0),
                minted=self.minted.get(token_id, 0),
                burned=self.burned.get(token_id, 0),
            )
            if violation.held != violation.expected:
                violations.append(violation)
        return violations

    def rows(self, contract_address: str) -> list[dict[str, Any]]:
        """Positive balances as ``current_state`` rows, in (address, token_id) order."""
        ordered = sorted(
            ((address, token_id), balance)
            for (address, token_id), balance in self.balances.items()
            if balance > 0
        )
        return [
            {
                "contract_address": contract_address,
                "address": address,
                "token_id": token_id,
                "balance": str(balance),
                "last_updated_block": self.last_block[(address, token_id)],
            }
            for (address, token_id), balance in ordered
        ]


def replay_transfers(transfers: Iterable[Any]) -> BalanceReplay:
    """Replay already-ordered transfer rows (from, to, token_id, amount, block)."""
    replay = BalanceReplay()
    for row in transfers:
        replay.apply(row[0], row[1], row[2], int(row[3]), row[4])
    return replay


@dataclass(frozen=True)
class RebuildResult:
    """Summary of one rebuild."""

    contract_address: str
    holders: int
    unique_tokens: int
    total_supply: int
    rows_written: int
    events_replayed: int
    negative_balances: list[NegativeBalance]
    conservation_violations: list[ConservationViolation] = field(default_factory=list)


class StateReconciler:
    """Rebuilds ``current_state`` for one contract at a time."""

    def __init__(self, uow_factory):
        self.uow_factory = uow_factory

    async def rebuild(self, contract_address: str) -> RebuildResult:
        """Replace the contract's balance rows with a fresh replay of its events.

        Readers see either the previous table or the rebuilt one: the delete
        and the inserts commit together.
        """
        contract = contract_address.lower()
        logger.info("reconciler.rebuild_started", contract=contract)

        async with await self.uow_factory() as uow:
            replay = BalanceReplay()
            async for row in uow.events.iter_transfers(contract):
                replay.apply(
                    row.from_address,
                    row.to_address,
                    row.token_id,
                    int(row.amount),
                    row.block_number,
                )

            negatives = replay.negative_balances()
            for negative in negatives:
                logger.warning(
                    "reconciler.negative_balance",
                    contract=contract,
                    address=negative.address,
                    token_id=negative.token_id,
                    balance=str(negative.balance),
                    block_number=negative.block_number,
                )

            violations = replay.conservation_violations()
            for violation in violations:
                logger.warning(
                    "reconciler.conservation_violation",
                    contract=contract,
                    token_id=violation.token_id,
                    held=str(violation.held),
                    minted=str(violation.minted),
                    burned=str(violation.burned),
                )

            rows = replay.rows(contract)
            deleted = await uow.balances.delete_for_contract(contract)
            await uow.balances.insert_many(rows)

        result = RebuildResult(
            contract_address=contract,
            holders=len({row["address"] for row in rows}),
            unique_tokens=len({row["token_id"] for row in rows}),
            total_supply=sum(int(row["balance"]) for row in rows),
            rows_written=len(rows),
            events_replayed=replay.events_replayed,
            negative_balances=negatives,
            conservation_violations=violations,
        )
        logger.info(
            "reconciler.rebuild_completed",
            contract=contract,
            events_replayed=result.events_replayed,
            rows_deleted=deleted,
            rows_written=result.rows_written,
            holders=result.holders,
            unique_tokens=result.unique_tokens,
            total_supply=str(result.total_supply),
            negative_balances=len(negatives),
            conservation_violations=len(violations),
        )
        return result
