"""Sync pipeline tests: resume point, chunk commits and checkpoint safety."""

from contextlib import aclosing

import pytest
from fakes import ALICE, BOB, CONTRACT, FakeRpc, SleepRecorder, erc721_log, mint_row

from tokensync.models.contract import Contract, ContractType
from tokensync.models.event import ZERO_ADDRESS
from tokensync.services.blockchain.log_fetcher import LogFetcher
from tokensync.services.exceptions import ProviderPermanentError
from tokensync.services.gap_detector import Gap
from tokensync.services.sync_pipeline import SyncPipeline


def make_contract(deployment_block: int = 1000) -> Contract:
    return Contract(
        address=CONTRACT, contract_type=ContractType.ERC721, deployment_block=deployment_block
    )


def make_pipeline(uow_factory, rpc: FakeRpc, chunk_size: int = 2000) -> SyncPipeline:
    fetcher = LogFetcher(
        rpc, chunk_size=chunk_size, chunk_delay=0, retry_backoff=0, sleep=SleepRecorder()
    )
    return SyncPipeline(uow_factory, fetcher)


async def run_range(pipeline: SyncPipeline, contract: Contract, start: int, end: int, **kwargs):
    async with aclosing(pipeline.sync_range(contract, start, end, **kwargs)) as outcomes:
        return [outcome async for outcome in outcomes]


CHAIN = [
    erc721_log(1000, 0, ZERO_ADDRESS, ALICE, 1),
    erc721_log(1500, 0, ZERO_ADDRESS, ALICE, 2),
    erc721_log(2500, 0, ALICE, BOB, 1),
    erc721_log(4999, 0, ZERO_ADDRESS, BOB, 3),
]


class TestResumePoint:
    @pytest.mark.asyncio
    async def test_nothing_stored_starts_at_deployment(self, uow_factory):
        pipeline = make_pipeline(uow_factory, FakeRpc())

        assert await pipeline.resume_point(make_contract(1000)) == 1000

    @pytest.mark.asyncio
    async def test_checkpoint_resumes_next_block(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.sync_status.set_last_synced_block(CONTRACT, 1000)
        pipeline = make_pipeline(uow_factory, FakeRpc())

        assert await pipeline.resume_point(make_contract(0)) == 1001

    @pytest.mark.asyncio
    async def test_checkpoint_below_deployment_is_stale(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.sync_status.set_last_synced_block(CONTRACT, 5)
        pipeline = make_pipeline(uow_factory, FakeRpc())

        assert await pipeline.resume_point(make_contract(1000)) == 1000

    @pytest.mark.asyncio
    async def test_events_from_deployment_without_checkpoint_resume_after_max_block(
        self, uow_factory
    ):
        async with await uow_factory() as uow:
            await uow.events.insert_many([mint_row(1000, 0, ALICE, 1), mint_row(1300, 0, ALICE, 2)])
        pipeline = make_pipeline(uow_factory, FakeRpc())

        assert await pipeline.resume_point(make_contract(1000)) == 1301

    @pytest.mark.asyncio
    async def test_events_after_deployment_without_checkpoint_restart_at_deployment(
        self, uow_factory
    ):
        async with await uow_factory() as uow:
            await uow.events.insert_many([mint_row(1200, 0, ALICE, 1), mint_row(1300, 0, ALICE, 2)])
            await uow.sync_status.mark_completed(CONTRACT)
        pipeline = make_pipeline(uow_factory, FakeRpc())

        assert await pipeline.resume_point(make_contract(1000)) == 1000


@pytest.mark.asyncio
async def test_sync_range_commits_chunks_and_advances_checkpoint(uow_factory):
    rpc = FakeRpc(logs=CHAIN)
    pipeline = make_pipeline(uow_factory, rpc)

    outcomes = await run_range(pipeline, make_contract(1000), 1000, 4999)

    assert [(o.from_block, o.to_block) for o in outcomes] == [
        (1000, 2999),
        (3000, 4999),
    ]
    assert [o.inserted for o in outcomes] == [3, 1]
    assert [o.checkpoint for o in outcomes] == [2999, 4999]
    async with await uow_factory() as uow:
        assert await uow.events.count(CONTRACT) == 4
        assert await uow.sync_status.get_last_synced_block(CONTRACT) == 4999


@pytest.mark.asyncio
async def test_resync_of_same_range_inserts_nothing(uow_factory):
    pipeline = make_pipeline(uow_factory, FakeRpc(logs=CHAIN))
    contract = make_contract(1000)
    await run_range(pipeline, contract, 1000, 4999)

    outcomes = await run_range(pipeline, contract, 1000, 4999)

    assert sum(o.fetched for o in outcomes) == 4
    assert sum(o.inserted for o in outcomes) == 0
    async with await uow_factory() as uow:
        assert await uow.events.count(CONTRACT) == 4
        assert await uow.sync_status.get_last_synced_block(CONTRACT) == 4999


@pytest.mark.asyncio
async def test_failed_chunk_keeps_committed_prefix(uow_factory):
    rpc = FakeRpc(logs=CHAIN)
    rpc.range_errors[(3000, 4999)] = ProviderPermanentError("invalid params")
    pipeline = make_pipeline(uow_factory, rpc)

    with pytest.raises(ProviderPermanentError):
        await run_range(pipeline, make_contract(1000), 1000, 4999)

    async with await uow_factory() as uow:
        assert await uow.events.count(CONTRACT) == 3
        assert await uow.sync_status.get_last_synced_block(CONTRACT) == 2999
    assert await pipeline.resume_point(make_contract(1000)) == 3000


@pytest.mark.asyncio
async def test_range_ahead_of_checkpoint_does_not_advance_it(uow_factory):
    pipeline = make_pipeline(uow_factory, FakeRpc(logs=CHAIN))
    contract = make_contract(1000)
    await run_range(pipeline, contract, 1000, 1999)

    outcomes = await run_range(pipeline, contract, 4000, 4999)

    assert outcomes[0].inserted == 1
    assert outcomes[0].checkpoint == 1999
    async with await uow_factory() as uow:
        assert await uow.sync_status.get_last_synced_block(CONTRACT) == 1999


@pytest.mark.asyncio
async def test_interrupted_job_resumes_after_checkpoint_without_duplicates(uow_factory):
    pipeline = make_pipeline(uow_factory, FakeRpc(logs=CHAIN))
    contract = make_contract(1000)
    async with await uow_factory() as uow:
        await uow.events.insert_many([mint_row(1000, 0, ALICE, 1), mint_row(1500, 0, ALICE, 2)])
        await uow.sync_status.set_last_synced_block(CONTRACT, 1000)

    start = await pipeline.resume_point(contract)
    outcomes = await run_range(pipeline, contract, start, 4999)

    assert start == 1001
    assert outcomes[0].from_block == 1001
    assert sum(o.fetched for o in outcomes) == 3
    assert sum(o.inserted for o in outcomes) == 2
    async with await uow_factory() as uow:
        assert await uow.events.count(CONTRACT) == 4
        assert await uow.sync_status.get_last_synced_block(CONTRACT) == 4999


@pytest.mark.asyncio
async def test_explicit_range_before_first_sync_leaves_checkpoint_unset(uow_factory):
    pipeline = make_pipeline(uow_factory, FakeRpc(logs=CHAIN))
    contract = make_contract(1000)

    outcomes = await run_range(pipeline, contract, 2000, 3999)

    assert [o.checkpoint for o in outcomes] == [None]
    assert await pipeline.resume_point(contract) == 1000

    outcomes = await run_range(pipeline, contract, 1000, 4999)

    assert sum(o.inserted for o in outcomes) == 3
    assert outcomes[-1].checkpoint == 4999


@pytest.mark.asyncio
async def test_fill_gaps_inserts_without_touching_checkpoint(uow_factory):
    rpc = FakeRpc(logs=CHAIN)
    pipeline = make_pipeline(uow_factory, rpc)
    contract = make_contract(1000)
    async with await uow_factory() as uow:
        await uow.events.insert_many([mint_row(1000, 0, ALICE, 1), mint_row(4999, 0, BOB, 3)])
        await uow.sync_status.set_last_synced_block(CONTRACT, 4999)

    inserted = await pipeline.fill_gaps(contract, [Gap(1001, 4998)])

    assert inserted == 2
    assert rpc.get_logs_calls == [(1001, 3000), (3001, 4998)]
    async with await uow_factory() as uow:
        assert await uow.events.count(CONTRACT) == 4
        assert await uow.sync_status.get_last_synced_block(CONTRACT) == 4999
