"""Chunked transfer log retrieval.

``LogFetcher`` walks a block range in fixed-size chunks. Each chunk is fetched
with ``eth_getLogs``; when the provider refuses a range as too large the span is
bisected and both halves fetched, and transient provider failures are retried
after a fixed backoff. Logs are decoded and stamped with their block timestamp
(fetched through a bounded pool and cached).
"""

import asyncio
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from tokensync.core.config import Settings
from tokensync.services.blockchain.decoder import TransferEvent, Unrecognized, decode_log
from tokensync.services.exceptions import ProviderRangeTooLargeError, TransientError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class FetchedChunk:
    """Decoded events of one block range, in chain order."""

    from_block: int
    to_block: int
    events: list[TransferEvent] = field(default_factory=list)
    timestamps: dict[int, int] = field(default_factory=dict)
    raw_logs: int = 0
    skipped: int = 0

    @property
    def block_count(self) -> int:
        return self.to_block - self.from_block + 1

    def rows(self) -> list[dict[str, Any]]:
        """Event rows ready for ``EventRepository.insert_many``."""
        return [event.to_row(self.timestamps.get(event.block_number, 0)) for event in self.events]


def iter_ranges(from_block: int, to_block: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Split ``[from_block, to_block]`` into consecutive inclusive chunks."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    start = from_block
    while start <= to_block:
        end = min(start + chunk_size - 1, to_block)
        yield start, end
        start = end + 1


class LogFetcher:
    """Fetches and decodes transfer logs for one contract at a time.

    Args:
        rpc: Object implementing ``get_logs`` and ``get_block_timestamp`` (RpcClient)
        chunk_size: Blocks per ``eth_getLogs`` request
        min_split_size: Spans at or below this size are never bisected
        chunk_delay: Seconds to pause between successful chunks
        retry_backoff: Seconds to wait before retrying a transient failure
        max_attempts: Attempts per request before a transient failure is raised
        block_fetch_concurrency: Parallel block timestamp lookups
        block_cache_size: Block timestamps kept in the LRU cache
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        rpc: Any,
        chunk_size: int = 2000,
        min_split_size: int = 1000,
        chunk_delay: float = 0.1,
        retry_backoff: float = 10.0,
        max_attempts: int = 5,
        block_fetch_concurrency: int = 5,
        block_cache_size: int = 10_000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.rpc = rpc
        self.chunk_size = chunk_size
        self.min_split_size = min_split_size
        self.chunk_delay = chunk_delay
        self.retry_backoff = retry_backoff
        self.max_attempts = max(1, max_attempts)
        self.block_fetch_concurrency = max(1, block_fetch_concurrency)
        self.block_cache_size = block_cache_size
        self._sleep = sleep
        self._timestamps: OrderedDict[int, int] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings, rpc: Any) -> "LogFetcher":
        return cls(
            rpc,
            chunk_size=settings.sync_chunk_size,
            min_split_size=settings.sync_min_split_size,
            chunk_delay=settings.sync_chunk_delay_seconds,
            retry_backoff=settings.sync_retry_backoff_seconds,
            max_attempts=settings.sync_max_attempts,
            block_fetch_concurrency=settings.block_fetch_concurrency,
            block_cache_size=settings.block_cache_size,
        )

    async def fetch_logs(
        self, address: str, from_block: int, to_block: int, topics: list[str]
    ) -> list[TransferEvent]:
        """Fetch and decode every transfer in ``[from_block, to_block]``."""
        events: list[TransferEvent] = []
        async for chunk in self.iter_chunks(address, from_block, to_block, topics):
            events.extend(chunk.events)
        return events

    async def iter_chunks(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: list[str],
        chunk_size: int | None = None,
    ) -> AsyncIterator[FetchedChunk]:
        """Yield one ``FetchedChunk`` per chunk, pausing between chunks.

        Raises:
            ProviderError: A chunk could not be fetched (attempts exhausted,
                unsplittable range or permanent provider error)
        """
        ranges = list(iter_ranges(from_block, to_block, chunk_size or self.chunk_size))
        for position, (start, end) in enumerate(ranges):
            yield await self.fetch_chunk(address, start, end, topics)
            if self.chunk_delay and position < len(ranges) - 1:
                await self._sleep(self.chunk_delay)

    async def fetch_chunk(
        self, address: str, from_block: int, to_block: int, topics: list[str]
    ) -> FetchedChunk:
        logs = await self._fetch_span(address, from_block, to_block, topics)

        events: list[TransferEvent] = []
        skipped = 0
        for log in logs:
            decoded = decode_log(log)
            if isinstance(decoded, Unrecognized):
                skipped += 1
                logger.debug("fetcher.log_skipped", topic=decoded.topic, reason=decoded.reason)
                continue
            events.extend(decoded)

        events.sort(key=lambda e: (e.block_number, e.log_index, e.batch_index))
        timestamps = await self.get_block_timestamps(e.block_number for e in events)

        logger.info(
            "fetcher.chunk_fetched",
            contract=address,
            from_block=from_block,
            to_block=to_block,
            logs=len(logs),
            events=len(events),
            skipped=skipped,
        )
        return FetchedChunk(
            from_block=from_block,
            to_block=to_block,
            events=events,
            timestamps=timestamps,
            raw_logs=len(logs),
            skipped=skipped,
        )

    async def count_onchain_transfers(
        self, address: str, from_block: int, to_block: int, topics: list[str]
    ) -> int:
        """Number of transfer records the chain holds for the range.

        A TransferBatch log counts once per id, matching stored event rows.
        """
        logs = await self._fetch_span(address, from_block, to_block, topics)
        count = 0
        for log in logs:
            decoded = decode_log(log)
            if not isinstance(decoded, Unrecognized):
                count += len(decoded)
        return count

    async def _fetch_span(
        self, address: str, from_block: int, to_block: int, topics: list[str]
    ) -> list[Any]:
        try:
            return await self._with_retry(
                lambda: self.rpc.get_logs(address, from_block, to_block, topics),
                operation="get_logs",
                from_block=from_block,
                to_block=to_block,
            )
        except ProviderRangeTooLargeError:
            span = to_block - from_block + 1
            if span <= self.min_split_size:
                logger.error(
                    "fetcher.range_unsplittable",
                    contract=address,
                    from_block=from_block,
                    to_block=to_block,
                    min_split_size=self.min_split_size,
                )
                raise

            mid = from_block + span // 2 - 1
            logger.info(
                "fetcher.range_split",
                contract=address,
                from_block=from_block,
                to_block=to_block,
                mid=mid,
            )
            left = await self._fetch_span(address, from_block, mid, topics)
            right = await self._fetch_span(address, mid + 1, to_block, topics)
            return left + right

    async def _with_retry(
        self, call: Callable[[], Awaitable[T]], operation: str, **context: Any
    ) -> T:
        attempts = 0
        while True:
            try:
                return await call()
            except TransientError as e:
                attempts += 1
                if attempts >= self.max_attempts:
                    logger.error(
                        "fetcher.attempts_exhausted",
                        operation=operation,
                        attempts=attempts,
                        error=str(e),
                        **context,
                    )
                    raise
                logger.warning(
                    "fetcher.retry",
                    operation=operation,
                    attempt=attempts,
                    backoff_seconds=self.retry_backoff,
                    error=str(e),
                    error_type=type(e).__name__,
                    **context,
                )
                await self._sleep(self.retry_backoff)

    async def get_block_timestamps(self, block_numbers: Iterable[int]) -> dict[int, int]:
        """Resolve block timestamps, at most ``block_fetch_concurrency`` lookups at a time."""
        result: dict[int, int] = {}
        missing: list[int] = []
        for number in sorted(set(block_numbers)):
            if number in self._timestamps:
                self._timestamps.move_to_end(number)
                result[number] = self._timestamps[number]
            else:
                missing.append(number)

        if not missing:
            return result

        semaphore = asyncio.Semaphore(self.block_fetch_concurrency)

        async def fetch(number: int) -> tuple[int, int]:
            async with semaphore:
                timestamp = await self._with_retry(
                    lambda: self.rpc.get_block_timestamp(number),
                    operation="get_block",
                    block_number=number,
                )
                return number, timestamp

        for number, timestamp in await asyncio.gather(*(fetch(n) for n in missing)):
            self._remember(number, timestamp)
            result[number] = timestamp
        return result

    def _remember(self, block_number: int, timestamp: int) -> None:
        self._timestamps[block_number] = timestamp
        self._timestamps.move_to_end(block_number)
        while len(self._timestamps) > self.block_cache_size:
            self._timestamps.popitem(last=False)
