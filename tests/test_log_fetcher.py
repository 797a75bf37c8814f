"""LogFetcher tests: chunking, range bisection, retries and the timestamp pool."""

import pytest
from fakes import (
    ALICE,
    BASE_TIMESTAMP,
    BOB,
    CONTRACT,
    FakeRpc,
    SleepRecorder,
    erc721_log,
    erc1155_batch_log,
    erc1155_single_log,
)

from tokensync.models.event import ZERO_ADDRESS
from tokensync.services.blockchain.decoder import (
    TRANSFER_BATCH_TOPIC,
    TRANSFER_SINGLE_TOPIC,
    TRANSFER_TOPIC,
)
from tokensync.services.blockchain.log_fetcher import LogFetcher, iter_ranges
from tokensync.services.exceptions import (
    ProviderPermanentError,
    ProviderRangeTooLargeError,
    ProviderRateLimitError,
    ProviderTransientError,
)

ERC721_TOPICS = [TRANSFER_TOPIC]
ERC1155_TOPICS = [TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC]


def make_fetcher(rpc: FakeRpc, **kwargs) -> tuple[LogFetcher, SleepRecorder]:
    sleep = SleepRecorder()
    kwargs.setdefault("chunk_delay", 0)
    return LogFetcher(rpc, sleep=sleep, **kwargs), sleep


def test_iter_ranges_covers_range_without_overlap():
    assert list(iter_ranges(0, 4999, 2000)) == [(0, 1999), (2000, 3999), (4000, 4999)]
    assert list(iter_ranges(10, 10, 2000)) == [(10, 10)]
    assert list(iter_ranges(11, 10, 2000)) == []


def test_iter_ranges_rejects_non_positive_chunk():
    with pytest.raises(ValueError):
        list(iter_ranges(0, 10, 0))


@pytest.mark.asyncio
async def test_fetch_chunk_decodes_sorts_and_timestamps():
    rpc = FakeRpc(
        logs=[
            erc721_log(120, 0, ALICE, BOB, 2),
            erc721_log(100, 5, ZERO_ADDRESS, ALICE, 2),
            erc721_log(100, 1, ZERO_ADDRESS, ALICE, 1),
        ]
    )
    fetcher, _ = make_fetcher(rpc)

    chunk = await fetcher.fetch_chunk(CONTRACT, 0, 1999, ERC721_TOPICS)

    assert [(e.block_number, e.log_index) for e in chunk.events] == [(100, 1), (100, 5), (120, 0)]
    assert chunk.timestamps == {100: BASE_TIMESTAMP + 1200, 120: BASE_TIMESTAMP + 1440}
    assert chunk.raw_logs == 3
    assert [row["block_timestamp"] for row in chunk.rows()] == [
        BASE_TIMESTAMP + 1200,
        BASE_TIMESTAMP + 1200,
        BASE_TIMESTAMP + 1440,
    ]


@pytest.mark.asyncio
async def test_unrecognized_logs_are_skipped_not_fatal():
    bad = erc1155_batch_log(50, 0, ALICE, BOB, [1, 2], [1])
    good = erc1155_single_log(50, 1, ALICE, BOB, 1, 3)
    fetcher, _ = make_fetcher(FakeRpc(logs=[bad, good]))

    chunk = await fetcher.fetch_chunk(CONTRACT, 0, 100, ERC1155_TOPICS)

    assert chunk.skipped == 1
    assert [e.amount for e in chunk.events] == [3]


@pytest.mark.asyncio
async def test_iter_chunks_pauses_between_chunks_only():
    rpc = FakeRpc()
    fetcher, sleep = make_fetcher(rpc, chunk_size=2000, chunk_delay=0.1)

    chunks = [c async for c in fetcher.iter_chunks(CONTRACT, 0, 4999, ERC721_TOPICS)]

    assert [(c.from_block, c.to_block) for c in chunks] == [(0, 1999), (2000, 3999), (4000, 4999)]
    assert rpc.get_logs_calls == [(0, 1999), (2000, 3999), (4000, 4999)]
    assert sleep.calls == [0.1, 0.1]


@pytest.mark.asyncio
async def test_fetch_logs_merges_chunks_in_chain_order():
    rpc = FakeRpc(
        logs=[
            erc721_log(2500, 0, ALICE, BOB, 1),
            erc721_log(10, 0, ZERO_ADDRESS, ALICE, 1),
            erc721_log(4999, 3, BOB, ZERO_ADDRESS, 1),
        ]
    )
    fetcher, _ = make_fetcher(rpc, chunk_size=2000)

    events = await fetcher.fetch_logs(CONTRACT, 0, 4999, ERC721_TOPICS)

    assert [(e.block_number, e.from_address, e.to_address) for e in events] == [
        (10, ZERO_ADDRESS, ALICE),
        (2500, ALICE, BOB),
        (4999, BOB, ZERO_ADDRESS),
    ]
    assert len(rpc.get_logs_calls) == 3


@pytest.mark.asyncio
async def test_range_too_large_is_bisected():
    rpc = FakeRpc(
        logs=[erc721_log(10, 0, ZERO_ADDRESS, ALICE, 1), erc721_log(1500, 0, ZERO_ADDRESS, BOB, 2)],
        range_limit=1000,
    )
    fetcher, _ = make_fetcher(rpc, chunk_size=2000, min_split_size=500)

    chunk = await fetcher.fetch_chunk(CONTRACT, 0, 1999, ERC721_TOPICS)

    assert rpc.get_logs_calls == [(0, 1999), (0, 999), (1000, 1999)]
    assert [e.token_id for e in chunk.events] == [1, 2]
    assert (chunk.from_block, chunk.to_block) == (0, 1999)


@pytest.mark.asyncio
async def test_range_at_min_split_size_is_not_bisected():
    rpc = FakeRpc(range_limit=100)
    fetcher, _ = make_fetcher(rpc, chunk_size=2000, min_split_size=1000)

    with pytest.raises(ProviderRangeTooLargeError):
        await fetcher.fetch_chunk(CONTRACT, 0, 1999, ERC721_TOPICS)

    assert rpc.get_logs_calls == [(0, 1999), (0, 999)]


@pytest.mark.asyncio
async def test_transient_errors_are_retried_after_backoff():
    rpc = FakeRpc(logs=[erc721_log(10, 0, ZERO_ADDRESS, ALICE, 1)])
    rpc.errors = [
        ProviderTransientError("timeout"),
        ProviderRateLimitError("429 Too Many Requests"),
    ]
    fetcher, sleep = make_fetcher(rpc, retry_backoff=10.0)

    chunk = await fetcher.fetch_chunk(CONTRACT, 0, 100, ERC721_TOPICS)

    assert len(chunk.events) == 1
    assert len(rpc.get_logs_calls) == 3
    assert sleep.calls == [10.0, 10.0]


@pytest.mark.asyncio
async def test_transient_error_raised_when_attempts_exhausted():
    rpc = FakeRpc()
    rpc.errors = [ProviderTransientError("timeout")] * 3
    fetcher, sleep = make_fetcher(rpc, max_attempts=3, retry_backoff=1.0)

    with pytest.raises(ProviderTransientError):
        await fetcher.fetch_chunk(CONTRACT, 0, 100, ERC721_TOPICS)

    assert len(rpc.get_logs_calls) == 3
    assert sleep.calls == [1.0, 1.0]


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    rpc = FakeRpc()
    rpc.errors = [ProviderPermanentError("invalid address")]
    fetcher, sleep = make_fetcher(rpc)

    with pytest.raises(ProviderPermanentError):
        await fetcher.fetch_chunk(CONTRACT, 0, 100, ERC721_TOPICS)

    assert len(rpc.get_logs_calls) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_block_timestamp_cache_evicts_least_recently_used():
    rpc = FakeRpc()
    fetcher, _ = make_fetcher(rpc, block_cache_size=2)

    await fetcher.get_block_timestamps([1, 2])
    await fetcher.get_block_timestamps([1])
    await fetcher.get_block_timestamps([3])
    result = await fetcher.get_block_timestamps([2, 1])

    assert rpc.timestamp_calls == [1, 2, 3, 2]
    assert result == {1: BASE_TIMESTAMP + 12, 2: BASE_TIMESTAMP + 24}


@pytest.mark.asyncio
async def test_block_timestamp_lookups_are_bounded():
    rpc = FakeRpc()
    fetcher, _ = make_fetcher(rpc, block_fetch_concurrency=2)

    result = await fetcher.get_block_timestamps(range(1, 9))

    assert len(result) == 8
    assert sorted(rpc.timestamp_calls) == list(range(1, 9))
    assert rpc.max_in_flight == 2


@pytest.mark.asyncio
async def test_count_onchain_transfers_counts_batch_entries():
    rpc = FakeRpc(
        logs=[
            erc1155_single_log(10, 0, ZERO_ADDRESS, ALICE, 1, 5),
            erc1155_batch_log(11, 0, ALICE, BOB, [1, 2, 3], [1, 1, 1]),
        ]
    )
    fetcher, _ = make_fetcher(rpc)

    assert await fetcher.count_onchain_transfers(CONTRACT, 0, 100, ERC1155_TOPICS) == 4
    assert rpc.timestamp_calls == []
