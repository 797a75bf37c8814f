"""Gap detection over stored event blocks.

Two detectors:

- ``find_gaps`` looks for holes in the sorted distinct block numbers holding
  events. Holes up to ``max_gap_size`` blocks are reported as gaps; larger
  holes are reported separately as needing a full re-sync.
- ``find_missing_chunks`` compares, chunk by chunk, the transfer count the
  chain reports against the stored count. It costs RPC calls but also catches
  silently truncated chunks whose blocks look covered.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from tokensync.services.blockchain.log_fetcher import LogFetcher, iter_ranges
from tokensync.services.exceptions import ProviderError

logger = structlog.get_logger()


@dataclass(frozen=True)
class Gap:
    """Inclusive block range with no stored events."""

    start_block: int
    end_block: int

    @property
    def size(self) -> int:
        return self.end_block - self.start_block + 1


@dataclass
class GapReport:
    contract_address: str
    max_gap_size: int
    blocks_scanned: int
    gaps: list[Gap] = field(default_factory=list)
    oversized: list[Gap] = field(default_factory=list)

    @property
    def total_gaps(self) -> int:
        return len(self.gaps) + len(self.oversized)

    @property
    def missing_blocks(self) -> int:
        return sum(g.size for g in self.gaps) + sum(g.size for g in self.oversized)


@dataclass(frozen=True)
class ChunkComparison:
    """Stored vs on-chain transfer count for one block range.

    ``onchain_count`` is None when the provider could not answer for the range.
    """

    from_block: int
    to_block: int
    onchain_count: int | None
    stored_count: int

    @property
    def missing(self) -> int:
        return (self.onchain_count or 0) - self.stored_count

    @property
    def mismatched(self) -> bool:
        return self.onchain_count is not None and self.onchain_count != self.stored_count


def split_gaps(blocks: Sequence[int], max_gap_size: int) -> tuple[list[Gap], list[Gap]]:
    """Find holes between consecutive sorted distinct block numbers.

    Returns:
        (gaps no larger than max_gap_size, larger gaps)
    """
    gaps: list[Gap] = []
    oversized: list[Gap] = []
    for previous, current in zip(blocks, blocks[1:]):
        if current - previous <= 1:
            continue
        gap = Gap(start_block=previous + 1, end_block=current - 1)
        if gap.size <= max_gap_size:
            gaps.append(gap)
        else:
            oversized.append(gap)
    return gaps, oversized


class GapDetector:
    """Runs both gap detectors for a contract."""

    def __init__(
        self,
        uow_factory,
        fetcher: LogFetcher | None = None,
        max_gap_size: int = 100_000,
        missing_chunk_size: int = 5000,
        chunk_delay: float = 0.15,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.uow_factory = uow_factory
        self.fetcher = fetcher
        self.max_gap_size = max_gap_size
        self.missing_chunk_size = missing_chunk_size
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    async def find_gaps(
        self,
        contract_address: str,
        max_gap_size: int | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> GapReport:
        """Report block-sequence holes for a contract.

        Args:
            contract_address: Contract to scan
            max_gap_size: Largest hole reported as a fillable gap (default from settings)
            from_block: Only consider events from this block on
            to_block: Only consider events up to this block

        Returns:
            GapReport with fillable gaps and oversized gaps
        """
        limit = max_gap_size if max_gap_size is not None else self.max_gap_size
        contract = contract_address.lower()
        async with await self.uow_factory() as uow:
            blocks = await uow.events.get_distinct_blocks(contract, from_block, to_block)

        gaps, oversized = split_gaps(blocks, limit)
        report = GapReport(
            contract_address=contract,
            max_gap_size=limit,
            blocks_scanned=len(blocks),
            gaps=gaps,
            oversized=oversized,
        )

        if report.total_gaps:
            logger.warning(
                "gaps.detected",
                contract=contract,
                gaps=len(gaps),
                oversized=len(oversized),
                missing_blocks=report.missing_blocks,
            )
        else:
            logger.info("gaps.none", contract=contract, blocks_scanned=len(blocks))
        return report

    async def find_missing_chunks(
        self,
        contract_address: str,
        topics: list[str],
        from_block: int,
        to_block: int,
        chunk_size: int | None = None,
    ) -> list[ChunkComparison]:
        """Compare on-chain and stored transfer counts chunk by chunk.

        Returns:
            Every chunk whose counts differ or could not be checked
        """
        if self.fetcher is None:
            raise RuntimeError("find_missing_chunks requires a LogFetcher")

        contract = contract_address.lower()
        ranges = list(iter_ranges(from_block, to_block, chunk_size or self.missing_chunk_size))
        flagged: list[ChunkComparison] = []

        for position, (start, end) in enumerate(ranges):
            async with await self.uow_factory() as uow:
                stored = await uow.events.count(contract, start, end)

            try:
                onchain: int | None = await self.fetcher.count_onchain_transfers(
                    contract, start, end, topics
                )
            except ProviderError as e:
                logger.warning(
                    "gaps.chunk_unchecked",
                    contract=contract,
                    from_block=start,
                    to_block=end,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                onchain = None

            comparison = ChunkComparison(
                from_block=start, to_block=end, onchain_count=onchain, stored_count=stored
            )
            if comparison.mismatched or onchain is None:
                flagged.append(comparison)
                if comparison.mismatched:
                    logger.warning(
                        "gaps.chunk_mismatch",
                        contract=contract,
                        from_block=start,
                        to_block=end,
                        onchain=onchain,
                        stored=stored,
                    )

            if self.chunk_delay and position < len(ranges) - 1:
                await self._sleep(self.chunk_delay)

        logger.info(
            "gaps.chunk_comparison_completed",
            contract=contract,
            chunks=len(ranges),
            flagged=len(flagged),
        )
        return flagged
