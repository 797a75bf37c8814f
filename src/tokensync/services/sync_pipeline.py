"""Fetch -> decode -> store pipeline with checkpoint advancement.

Each chunk's event inserts and its checkpoint advance commit in one
transaction, so the checkpoint never covers blocks whose events are not
durably stored.
"""

from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from dataclasses import dataclass

import structlog

from tokensync.models.contract import Contract
from tokensync.services.blockchain.decoder import topics_for
from tokensync.services.blockchain.log_fetcher import LogFetcher
from tokensync.services.gap_detector import Gap

logger = structlog.get_logger()


@dataclass(frozen=True)
class ChunkOutcome:
    """Result of one committed chunk."""

    from_block: int
    to_block: int
    fetched: int
    inserted: int
    checkpoint: int | None

    @property
    def block_count(self) -> int:
        return self.to_block - self.from_block + 1


class SyncPipeline:
    """Drives LogFetcher chunks into the event store."""

    def __init__(self, uow_factory, fetcher: LogFetcher):
        self.uow_factory = uow_factory
        self.fetcher = fetcher

    async def resume_point(self, contract: Contract) -> int:
        """First block the next auto-resumed sync should fetch.

        - checkpoint present: checkpoint + 1 (never below the deployment block)
        - no checkpoint, events stored from the deployment block on: highest
          stored event block + 1
        - otherwise: the deployment block

        Events that start after the deployment block were written by an
        explicit-range job and say nothing about the blocks before them.
        """
        async with await self.uow_factory() as uow:
            checkpoint = await uow.sync_status.get_last_synced_block(contract.address)
            min_block = max_block = None
            if checkpoint is None:
                min_block = await uow.events.get_min_block(contract.address)
                if min_block is not None and min_block <= contract.deployment_block:
                    max_block = await uow.events.get_max_block(contract.address)

        if checkpoint is not None:
            if checkpoint < contract.deployment_block:
                logger.warning(
                    "sync.stale_checkpoint",
                    contract=contract.address,
                    checkpoint=checkpoint,
                    deployment_block=contract.deployment_block,
                )
                return contract.deployment_block
            return checkpoint + 1

        if max_block is not None:
            return max(max_block + 1, contract.deployment_block)
        if min_block is not None:
            logger.info(
                "sync.resume_from_deployment",
                contract=contract.address,
                first_stored_block=min_block,
                deployment_block=contract.deployment_block,
            )
        return contract.deployment_block

    async def sync_range(
        self,
        contract: Contract,
        from_block: int,
        to_block: int,
        advance_checkpoint: bool = True,
    ) -> AsyncIterator[ChunkOutcome]:
        """Sync ``[from_block, to_block]``, yielding after each committed chunk.

        Args:
            contract: Registered contract
            from_block: First block (inclusive)
            to_block: Last block (inclusive)
            advance_checkpoint: Move the checkpoint when chunks are contiguous with it

        Yields:
            ChunkOutcome per chunk, after its transaction committed
        """
        baseline = (await self.resume_point(contract)) - 1 if advance_checkpoint else None
        topics = topics_for(contract.contract_type.value)

        async with aclosing(
            self.fetcher.iter_chunks(contract.address, from_block, to_block, topics)
        ) as chunks:
            async for chunk in chunks:
                checkpoint = None
                async with await self.uow_factory() as uow:
                    inserted = await uow.events.insert_many(chunk.rows())
                    if advance_checkpoint:
                        checkpoint = await uow.sync_status.advance(
                            contract.address, chunk.from_block, chunk.to_block, baseline
                        )

                logger.info(
                    "sync.chunk_committed",
                    contract=contract.address,
                    from_block=chunk.from_block,
                    to_block=chunk.to_block,
                    fetched=len(chunk.events),
                    inserted=inserted,
                    checkpoint=checkpoint,
                )
                yield ChunkOutcome(
                    from_block=chunk.from_block,
                    to_block=chunk.to_block,
                    fetched=len(chunk.events),
                    inserted=inserted,
                    checkpoint=checkpoint,
                )

    async def fill_gaps(self, contract: Contract, gaps: Iterable[Gap]) -> int:
        """Re-fetch each gap without touching the checkpoint.

        Returns:
            Number of events inserted across all gaps
        """
        inserted = 0
        for gap in gaps:
            logger.info(
                "sync.gap_fill_started",
                contract=contract.address,
                start_block=gap.start_block,
                end_block=gap.end_block,
            )
            async with aclosing(
                self.sync_range(contract, gap.start_block, gap.end_block, advance_checkpoint=False)
            ) as outcomes:
                async for outcome in outcomes:
                    inserted += outcome.inserted
        return inserted
