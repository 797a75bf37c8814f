"""Repository tests for events, checkpoints, balances and contracts."""

import pytest
from fakes import ALICE, BOB, CAROL, CONTRACT, event_row, mint_row, tx_hash

from tokensync.models.contract import Contract, ContractType
from tokensync.models.event import Event
from tokensync.models.sync_status import CheckpointStatus
from tokensync.repositories import (
    ContractRepository,
    CurrentStateRepository,
    EventRepository,
    SyncStatusRepository,
)

OTHER_CONTRACT = "0x" + "cd" * 20


class TestEventRepository:
    @pytest.mark.asyncio
    async def test_insert_many_ignores_existing_identities(self, session):
        repo = EventRepository(session)
        rows = [mint_row(100, 0, ALICE, 1), mint_row(100, 1, ALICE, 2), mint_row(101, 0, BOB, 3)]

        first = await repo.insert_many(rows)
        second = await repo.insert_many(rows)

        assert first == 3
        assert second == 0
        assert await repo.count(CONTRACT) == 3

    @pytest.mark.asyncio
    async def test_batch_index_is_part_of_identity(self, session):
        repo = EventRepository(session)
        rows = [
            event_row(100, 4, ALICE, BOB, 1, amount=5, batch_index=0),
            event_row(100, 4, ALICE, BOB, 2, amount=6, batch_index=1),
        ]

        assert await repo.insert_many(rows) == 2
        assert await repo.exists(tx_hash(100, 4), 4, batch_index=1)
        assert not await repo.exists(tx_hash(100, 4), 4, batch_index=2)

    @pytest.mark.asyncio
    async def test_insert_many_splits_large_batches(self, session):
        """More rows than fit in one statement's bind parameters on any dialect."""
        repo = EventRepository(session, batch_size=500)
        rows = [mint_row(1000 + i, 0, ALICE, i) for i in range(1200)]

        assert await repo.insert_many(rows) == 1200
        assert await repo.count(CONTRACT) == 1200
        assert await repo.get_max_block(CONTRACT) == 2199

    @pytest.mark.asyncio
    async def test_insert_many_with_no_rows(self, session):
        assert await EventRepository(session).insert_many([]) == 0

    @pytest.mark.asyncio
    async def test_count_and_blocks_are_scoped_by_contract_and_range(self, session):
        repo = EventRepository(session)
        await repo.insert_many(
            [
                mint_row(100, 0, ALICE, 1),
                mint_row(100, 1, ALICE, 2),
                mint_row(150, 0, ALICE, 3),
                mint_row(300, 0, ALICE, 4),
                event_row(200, 0, ALICE, BOB, 9, contract=OTHER_CONTRACT),
            ]
        )

        assert await repo.count(CONTRACT) == 4
        assert await repo.count(CONTRACT, 100, 150) == 3
        assert await repo.get_distinct_blocks(CONTRACT) == [100, 150, 300]
        assert await repo.get_distinct_blocks(CONTRACT, from_block=120) == [150, 300]
        assert await repo.get_max_block(CONTRACT) == 300
        assert await repo.get_min_block(CONTRACT) == 100
        assert await repo.get_max_block("0x" + "00" * 19 + "01") is None

    @pytest.mark.asyncio
    async def test_list_events_in_chain_order_with_holder_filter(self, session):
        repo = EventRepository(session)
        await repo.insert_many(
            [
                event_row(200, 0, ALICE, CAROL, 1),
                mint_row(100, 2, ALICE, 1),
                event_row(100, 3, ALICE, BOB, 1, batch_index=1),
                event_row(100, 3, ALICE, BOB, 2, batch_index=0),
            ]
        )

        events = await repo.list_events(CONTRACT)
        bob_events = await repo.list_events(CONTRACT, address=BOB)
        paged = await repo.list_events(CONTRACT, limit=2, offset=1)

        assert [(e.block_number, e.log_index, e.batch_index) for e in events] == [
            (100, 2, 0),
            (100, 3, 0),
            (100, 3, 1),
            (200, 0, 0),
        ]
        assert len(bob_events) == 2
        assert [(e.log_index, e.batch_index) for e in paged] == [(3, 0), (3, 1)]

    @pytest.mark.asyncio
    async def test_iter_transfers_streams_in_replay_order(self, session):
        repo = EventRepository(session)
        await repo.insert_many([event_row(101, 0, ALICE, BOB, 1), mint_row(100, 0, ALICE, 1)])

        rows = [tuple(row) async for row in repo.iter_transfers(CONTRACT)]

        assert [row[4] for row in rows] == [100, 101]
        assert rows[1][:4] == (ALICE, BOB, "1", "1")


def duplicate_event(block_number: int, log_index: int, recipient: str = ALICE) -> Event:
    return Event(**mint_row(block_number, log_index, recipient, block_number))


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_find_and_remove_duplicates(self, uow_factory, without_identity_index):
        async with await uow_factory() as uow:
            for event in [
                duplicate_event(100, 0),
                duplicate_event(100, 0),
                duplicate_event(100, 0),
                duplicate_event(101, 0),
                duplicate_event(102, 0),
                duplicate_event(102, 0),
            ]:
                await uow.events.add(event)

        async with await uow_factory() as uow:
            groups = await uow.events.find_duplicates(CONTRACT)

        assert [(g.transaction_hash, g.count) for g in groups] == [
            (tx_hash(100, 0), 3),
            (tx_hash(102, 0), 2),
        ]

        async with await uow_factory() as uow:
            removed = await uow.events.remove_duplicates(CONTRACT)

        async with await uow_factory() as uow:
            assert removed == 3
            assert await uow.events.count(CONTRACT) == 3
            assert await uow.events.find_duplicates(CONTRACT) == []

    @pytest.mark.asyncio
    async def test_no_duplicates_with_identity_index(self, session):
        repo = EventRepository(session)
        await repo.insert_many([mint_row(100, 0, ALICE, 1), mint_row(100, 0, ALICE, 1)])

        assert await repo.find_duplicates(CONTRACT) == []
        assert await repo.remove_duplicates(CONTRACT) == 0


class TestSyncStatusRepository:
    @pytest.mark.asyncio
    async def test_advance_requires_baseline_or_checkpoint(self, session):
        repo = SyncStatusRepository(session)

        assert await repo.advance(CONTRACT, 1000, 1999) is None
        assert await repo.get(CONTRACT) is None

    @pytest.mark.asyncio
    async def test_advance_only_for_contiguous_ranges(self, session):
        repo = SyncStatusRepository(session)

        assert await repo.advance(CONTRACT, 1000, 1999, baseline=999) == 1999
        assert await repo.advance(CONTRACT, 2000, 2999) == 2999
        # Out-of-order range leaves a hole: checkpoint stays
        assert await repo.advance(CONTRACT, 5000, 5999) == 2999
        # Older range never moves it backwards
        assert await repo.advance(CONTRACT, 100, 500) == 2999
        # Overlapping range extends it
        assert await repo.advance(CONTRACT, 2500, 3500) == 3500
        assert await repo.get_last_synced_block(CONTRACT) == 3500

    @pytest.mark.asyncio
    async def test_stale_checkpoint_yields_to_baseline(self, session):
        repo = SyncStatusRepository(session)
        await repo.set_last_synced_block(CONTRACT, 10)

        assert await repo.advance(CONTRACT, 1000, 1999, baseline=999) == 1999

    @pytest.mark.asyncio
    async def test_status_transitions_keep_checkpoint(self, session):
        repo = SyncStatusRepository(session)
        await repo.mark_processing(CONTRACT)
        await repo.set_last_synced_block(CONTRACT, 1500)

        await repo.mark_failed(CONTRACT, "provider unavailable")
        failed = await repo.get(CONTRACT)

        assert failed.status == CheckpointStatus.FAILED
        assert failed.error_message == "provider unavailable"
        assert failed.last_synced_block == 1500
        assert failed.started_at is not None

        await repo.mark_completed(CONTRACT)
        completed = await repo.get(CONTRACT)

        assert completed.status == CheckpointStatus.COMPLETED
        assert completed.error_message is None
        assert completed.last_synced_block == 1500


def balance_row(address: str, token_id: str, balance: int, block: int = 100) -> dict:
    return {
        "contract_address": CONTRACT,
        "address": address,
        "token_id": token_id,
        "balance": str(balance),
        "last_updated_block": block,
    }


class TestCurrentStateRepository:
    @pytest.mark.asyncio
    async def test_list_holders_orders_by_numeric_balance(self, session):
        repo = CurrentStateRepository(session)
        await repo.insert_many(
            [
                balance_row(ALICE, "1", 9),
                balance_row(BOB, "1", 40),
                balance_row(CAROL, "1", 100),
                balance_row(ALICE, "2", 40),
            ]
        )

        holders = await repo.list_holders(CONTRACT)
        token_two = await repo.list_holders(CONTRACT, token_id="2")

        assert [(h.address, h.token_id) for h in holders] == [
            (CAROL, "1"),
            (ALICE, "2"),
            (BOB, "1"),
            (ALICE, "1"),
        ]
        assert [h.address for h in token_two] == [ALICE]

    @pytest.mark.asyncio
    async def test_totals_and_balance_lookup(self, session):
        repo = CurrentStateRepository(session)
        big = 2**255
        await repo.insert_many(
            [balance_row(ALICE, "1", big), balance_row(BOB, "1", 1), balance_row(BOB, "2", 2)]
        )

        totals = await repo.get_totals(CONTRACT)

        assert totals.holders == 2
        assert totals.unique_tokens == 2
        assert totals.total_supply == big + 3
        assert await repo.get_balance(CONTRACT, ALICE, "1") == big
        assert await repo.get_balance(CONTRACT, ALICE, "2") == 0

    @pytest.mark.asyncio
    async def test_delete_for_contract(self, session):
        repo = CurrentStateRepository(session)
        await repo.insert_many([balance_row(ALICE, "1", 1), balance_row(BOB, "1", 1)])

        assert await repo.delete_for_contract(CONTRACT) == 2
        assert await repo.list_for_contract(CONTRACT) == []


class TestContractRepository:
    @pytest.mark.asyncio
    async def test_add_lower_cases_address(self, session):
        repo = ContractRepository(session)
        await repo.add(
            Contract(
                address="0x" + "AB" * 20, contract_type=ContractType.ERC1155, deployment_block=7
            )
        )

        contract = await repo.get(CONTRACT)

        assert contract is not None
        assert contract.contract_type == ContractType.ERC1155
        assert contract.deployment_block == 7
        assert [c.address for c in await repo.list_all()] == [CONTRACT]
