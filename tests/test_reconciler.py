"""State reconciler tests.

Balances are a pure function of the event log: replay is deterministic,
conserves supply per token and never stores zero or negative balances.
"""

import pytest
from fakes import ALICE, BOB, CAROL, CONTRACT, event_row, mint_row

from tokensync.models.event import ZERO_ADDRESS
from tokensync.services.reconciler import BalanceReplay, StateReconciler, replay_transfers


def test_replay_mint_then_transfer():
    replay = replay_transfers(
        [
            (ZERO_ADDRESS, ALICE, "1", 100, 10),
            (ALICE, BOB, "1", 40, 11),
        ]
    )

    assert replay.balances == {(ALICE, "1"): 60, (BOB, "1"): 40}
    assert replay.minted == {"1": 100}
    assert replay.burned == {}
    assert replay.events_replayed == 2


def test_replay_burn_reduces_holder_and_counts_burned():
    replay = replay_transfers(
        [
            (ZERO_ADDRESS, ALICE, "7", 5, 1),
            (ALICE, ZERO_ADDRESS, "7", 2, 2),
        ]
    )

    assert replay.balances == {(ALICE, "7"): 3}
    assert replay.burned == {"7": 2}


def test_rows_skip_zero_balances_and_are_sorted():
    replay = replay_transfers(
        [
            (ZERO_ADDRESS, BOB, "2", 1, 1),
            (ZERO_ADDRESS, ALICE, "1", 1, 2),
            (BOB, CAROL, "2", 1, 3),
        ]
    )

    rows = replay.rows(CONTRACT)

    assert [(r["address"], r["token_id"], r["balance"]) for r in rows] == [
        (ALICE, "1", "1"),
        (CAROL, "2", "1"),
    ]
    assert rows[1]["last_updated_block"] == 3


def test_negative_balances_are_reported_not_stored():
    replay = BalanceReplay()
    replay.apply(ALICE, BOB, "1", 1, 50)

    negatives = replay.negative_balances()

    assert [(n.address, n.token_id, n.balance, n.block_number) for n in negatives] == [
        (ALICE, "1", -1, 50)
    ]
    assert [r["address"] for r in replay.rows(CONTRACT)] == [BOB]


def test_supply_is_conserved_per_token():
    transfers = [
        (ZERO_ADDRESS, ALICE, "1", 100, 1),
        (ZERO_ADDRESS, BOB, "2", 10, 1),
        (ALICE, BOB, "1", 30, 2),
        (BOB, CAROL, "1", 5, 3),
        (ALICE, ZERO_ADDRESS, "1", 20, 4),
        (BOB, ALICE, "2", 10, 5),
    ]
    replay = replay_transfers(transfers)

    for token_id in ("1", "2"):
        held = sum(
            balance for (_, token), balance in replay.balances.items() if token == token_id
        )
        assert held == replay.minted.get(token_id, 0) - replay.burned.get(token_id, 0)
    assert replay.conservation_violations() == []


def test_transfer_without_recorded_mint_breaks_conservation():
    replay = replay_transfers(
        [
            (ZERO_ADDRESS, ALICE, "1", 10, 1),
            (BOB, CAROL, "1", 4, 2),
        ]
    )

    violations = replay.conservation_violations()

    assert [(v.token_id, v.held, v.expected) for v in violations] == [("1", 14, 10)]


@pytest.mark.asyncio
async def test_rebuild_writes_current_state(uow_factory):
    async with await uow_factory() as uow:
        await uow.events.insert_many(
            [
                mint_row(100, 0, ALICE, 1, amount=100),
                event_row(101, 0, ALICE, BOB, 1, amount=40),
            ]
        )

    result = await StateReconciler(uow_factory).rebuild(CONTRACT)

    assert result.holders == 2
    assert result.unique_tokens == 1
    assert result.total_supply == 100
    assert result.rows_written == 2
    assert result.events_replayed == 2
    assert result.negative_balances == []
    assert result.conservation_violations == []

    async with await uow_factory() as uow:
        assert await uow.balances.get_balance(CONTRACT, ALICE, "1") == 60
        assert await uow.balances.get_balance(CONTRACT, BOB, "1") == 40


@pytest.mark.asyncio
async def test_rebuild_is_deterministic_and_replaces_stale_rows(uow_factory):
    async with await uow_factory() as uow:
        await uow.events.insert_many(
            [
                mint_row(100, 0, ALICE, 1),
                mint_row(100, 1, ALICE, 2),
                event_row(102, 0, ALICE, CAROL, 2),
            ]
        )
        await uow.balances.insert_many(
            [
                {
                    "contract_address": CONTRACT,
                    "address": BOB,
                    "token_id": "99",
                    "balance": "5",
                    "last_updated_block": 1,
                }
            ]
        )

    reconciler = StateReconciler(uow_factory)
    await reconciler.rebuild(CONTRACT)
    async with await uow_factory() as uow:
        first = [
            (r.address, r.token_id, r.balance, r.last_updated_block)
            for r in await uow.balances.list_for_contract(CONTRACT)
        ]

    await reconciler.rebuild(CONTRACT)
    async with await uow_factory() as uow:
        second = [
            (r.address, r.token_id, r.balance, r.last_updated_block)
            for r in await uow.balances.list_for_contract(CONTRACT)
        ]

    assert first == second
    assert first == [(ALICE, "1", "1", 100), (CAROL, "2", "1", 102)]


@pytest.mark.asyncio
async def test_rebuild_with_ingestion_gap_reports_negative_balance(uow_factory):
    """A transfer out of a holder whose incoming transfer was never stored."""
    async with await uow_factory() as uow:
        await uow.events.insert_many([event_row(200, 0, ALICE, BOB, 5)])

    result = await StateReconciler(uow_factory).rebuild(CONTRACT)

    assert [(n.address, n.balance) for n in result.negative_balances] == [(ALICE, -1)]
    assert [(v.token_id, v.held, v.minted, v.burned) for v in result.conservation_violations] == [
        ("5", 1, 0, 0)
    ]
    async with await uow_factory() as uow:
        rows = await uow.balances.list_for_contract(CONTRACT)
    assert [(r.address, r.balance) for r in rows] == [(BOB, "1")]


@pytest.mark.asyncio
async def test_rebuild_of_empty_contract_clears_rows(uow_factory):
    result = await StateReconciler(uow_factory).rebuild(CONTRACT)

    assert result.rows_written == 0
    assert result.total_supply == 0


@pytest.mark.asyncio
async def test_duplicate_cleanup_leaves_rebuilt_state_unchanged(uow_factory):
    rows = [
        mint_row(100, 0, ALICE, 1, amount=10),
        event_row(101, 0, ALICE, BOB, 1, amount=3),
        event_row(102, 0, BOB, CAROL, 1, amount=1),
    ]
    async with await uow_factory() as uow:
        await uow.events.insert_many(rows)
    async with await uow_factory() as uow:
        assert await uow.events.insert_many(rows) == 0

    reconciler = StateReconciler(uow_factory)
    await reconciler.rebuild(CONTRACT)
    async with await uow_factory() as uow:
        before = [
            (r.address, r.token_id, r.balance, r.last_updated_block)
            for r in await uow.balances.list_for_contract(CONTRACT)
        ]
        assert await uow.events.remove_duplicates(CONTRACT) == 0
        assert await uow.events.find_duplicates(CONTRACT) == []

    await reconciler.rebuild(CONTRACT)
    async with await uow_factory() as uow:
        after = [
            (r.address, r.token_id, r.balance, r.last_updated_block)
            for r in await uow.balances.list_for_contract(CONTRACT)
        ]

    assert after == before
    assert before == [(ALICE, "1", "7", 101), (BOB, "1", "2", 102), (CAROL, "1", "1", 102)]
