"""Sync job scheduler.

One job runs at a time; further submissions wait in a bounded FIFO queue.
Each job resolves the contract, computes its block range, drives the sync
pipeline chunk by chunk and finally rebuilds current balances. Progress is
written to a ``ProgressStore`` that pollers read without blocking the job.
"""

import asyncio
import time
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from tokensync.models.contract import ContractType
from tokensync.services.contract_registry import ContractRegistry
from tokensync.services.exceptions import JobNotFoundError, SchedulerFullError
from tokensync.services.gap_detector import GapDetector
from tokensync.services.reconciler import RebuildResult, StateReconciler
from tokensync.services.sync_pipeline import SyncPipeline

logger = structlog.get_logger()


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class SyncRequest:
    """What to sync.

    ``from_block=None`` resumes from the checkpoint, ``to_block=None`` means the chain head.
    """

    contract_address: str
    from_block: int | None = None
    to_block: int | None = None
    contract_type: ContractType | None = None
    deployment_block: int | None = None
    fill_gaps: bool = False


@dataclass
class SyncJob:
    id: str
    request: SyncRequest
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    start_block: int | None = None
    end_block: int | None = None
    current_block: int | None = None
    events_found: int = 0
    events_inserted: int = 0
    chunks_processed: int = 0
    error: str | None = None
    rebuild: RebuildResult | None = None
    cancel_requested: bool = False
    finished_monotonic: float | None = None

    @property
    def contract_address(self) -> str:
        return self.request.contract_address

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES


@dataclass
class Progress:
    """Pollable progress of the job currently syncing a contract."""

    job_id: str
    is_processing: bool
    start_block: int
    end_block: int
    current_block: int
    events_found: int = 0
    eta_seconds: float | None = None

    @property
    def total_blocks(self) -> int:
        return max(self.end_block - self.start_block + 1, 0)

    @property
    def blocks_done(self) -> int:
        if self.current_block < self.start_block:
            return 0
        return min(self.current_block - self.start_block + 1, self.total_blocks)

    @property
    def progress_percent(self) -> float:
        if self.total_blocks == 0:
            return 100.0
        return round(self.blocks_done / self.total_blocks * 100, 2)


class ProgressStore:
    """Progress keyed by contract address; only the scheduler writes to it."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, Progress] = {}
        self._started: dict[str, float] = {}

    def start(self, contract_address: str, job_id: str, start_block: int, end_block: int) -> None:
        self._entries[contract_address] = Progress(
            job_id=job_id,
            is_processing=True,
            start_block=start_block,
            end_block=end_block,
            current_block=start_block - 1,
        )
        self._started[contract_address] = self._clock()

    def update(self, contract_address: str, current_block: int, events_found: int) -> Progress:
        """Record the last committed block and refresh the ETA from observed seconds per block."""
        progress = self._entries[contract_address]
        progress.current_block = current_block
        progress.events_found = events_found

        done = progress.blocks_done
        if done > 0:
            elapsed = self._clock() - self._started[contract_address]
            remaining = progress.total_blocks - done
            progress.eta_seconds = round(elapsed / done * remaining, 1)
        return progress

    def finish(self, contract_address: str) -> None:
        progress = self._entries.get(contract_address)
        if progress is not None:
            progress.is_processing = False
            progress.eta_seconds = 0.0 if progress.blocks_done == progress.total_blocks else None

    def get(self, contract_address: str) -> Progress | None:
        return self._entries.get(contract_address.lower())


class SyncScheduler:
    """Serializes sync jobs through a single worker.

    Example:
        scheduler = SyncScheduler(uow_factory, pipeline, registry, reconciler, rpc)
        worker = asyncio.create_task(scheduler.run())
        job, position = scheduler.submit(SyncRequest(contract_address=address))
    """

    def __init__(
        self,
        uow_factory,
        pipeline: SyncPipeline,
        registry: ContractRegistry,
        reconciler: StateReconciler,
        rpc: Any,
        gap_detector: GapDetector | None = None,
        max_queued_jobs: int = 100,
        eviction_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.uow_factory = uow_factory
        self.pipeline = pipeline
        self.registry = registry
        self.reconciler = reconciler
        self.rpc = rpc
        self.gap_detector = gap_detector
        self.eviction_seconds = eviction_seconds
        self._clock = clock

        self.progress = ProgressStore(clock=clock)
        self._queue: asyncio.Queue[SyncJob] = asyncio.Queue(maxsize=max_queued_jobs)
        self._jobs: dict[str, SyncJob] = {}
        self._current: SyncJob | None = None
        self._last_job_ts = 0

    @property
    def queue_length(self) -> int:
        return self._queue.qsize()

    @property
    def is_processing(self) -> bool:
        return self._current is not None

    def _new_job_id(self, contract_address: str) -> str:
        # Millisecond timestamp, bumped so ids stay unique within one millisecond
        ts = max(int(time.time() * 1000), self._last_job_ts + 1)
        self._last_job_ts = ts
        return f"sync-{contract_address}-{ts}"

    def _create_job(self, request: SyncRequest) -> SyncJob:
        request = replace(request, contract_address=request.contract_address.lower())
        return SyncJob(id=self._new_job_id(request.contract_address), request=request)

    def submit(self, request: SyncRequest) -> tuple[SyncJob, int]:
        """Queue a job.

        Returns:
            (job, position) where position is the job's 1-based place in the queue

        Raises:
            SchedulerFullError: ``max_queued_jobs`` jobs are already waiting
        """
        self.evict_expired()
        job = self._create_job(request)

        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            raise SchedulerFullError(f"Sync queue is full ({self._queue.maxsize} jobs waiting)")

        self._jobs[job.id] = job
        position = self._queue.qsize()
        logger.info(
            "scheduler.job_queued",
            job_id=job.id,
            contract=job.contract_address,
            from_block=job.request.from_block,
            to_block=job.request.to_block,
            position=position,
        )
        return job, position

    def get_job(self, job_id: str) -> SyncJob:
        """Raises JobNotFoundError for unknown or evicted ids."""
        self.evict_expired()
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def get_progress(self, contract_address: str) -> Progress | None:
        return self.progress.get(contract_address)

    def cancel(self, job_id: str) -> SyncJob:
        """Cancel a queued job, or ask a running job to stop after its current chunk."""
        job = self.get_job(job_id)
        if job.is_finished:
            return job

        job.cancel_requested = True
        if job.status == JobStatus.QUEUED:
            self._finish(job, JobStatus.CANCELLED)
        logger.info("scheduler.job_cancel_requested", job_id=job.id, status=job.status.value)
        return job

    def evict_expired(self) -> int:
        """Forget finished jobs older than ``eviction_seconds``."""
        now = self._clock()
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.finished_monotonic is not None
            and now - job.finished_monotonic >= self.eviction_seconds
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("scheduler.jobs_evicted", count=len(expired))
        return len(expired)

    async def run(self) -> None:
        """Worker loop: process queued jobs one at a time, forever."""
        logger.info("scheduler.started")
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def run_now(self, request: SyncRequest) -> SyncJob:
        """Run a job immediately in the caller's task (command line)."""
        job = self._create_job(request)
        self._jobs[job.id] = job
        await self.process(job)
        return job

    async def process(self, job: SyncJob) -> None:
        if job.is_finished:
            return

        address = job.contract_address
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.now(timezone.utc)
        self._current = job
        logger.info("scheduler.job_started", job_id=job.id, contract=address)

        try:
            request = job.request
            contract = await self.registry.resolve(
                address,
                contract_type=request.contract_type,
                deployment_block=request.deployment_block,
            )
            async with await self.uow_factory() as uow:
                await uow.sync_status.mark_processing(address)

            start = (
                request.from_block
                if request.from_block is not None
                else await self.pipeline.resume_point(contract)
            )
            if request.to_block is not None:
                end = request.to_block
            else:
                end = await self.rpc.get_block_number()
            job.start_block, job.end_block = start, end
            job.current_block = start - 1
            self.progress.start(address, job.id, start, end)

            if start > end:
                logger.info("scheduler.up_to_date", job_id=job.id, contract=address, head=end)
            else:
                async with aclosing(self.pipeline.sync_range(contract, start, end)) as outcomes:
                    async for outcome in outcomes:
                        job.current_block = outcome.to_block
                        job.events_found += outcome.fetched
                        job.events_inserted += outcome.inserted
                        job.chunks_processed += 1
                        progress = self.progress.update(address, outcome.to_block, job.events_found)
                        logger.debug(
                            "scheduler.job_progress",
                            job_id=job.id,
                            current_block=outcome.to_block,
                            progress=progress.progress_percent,
                            eta_seconds=progress.eta_seconds,
                        )
                        if job.cancel_requested and outcome.to_block < end:
                            break

            # A cancel that arrives once the whole range is stored still completes the job
            if job.cancel_requested and job.current_block < end:
                async with await self.uow_factory() as uow:
                    await uow.sync_status.mark_failed(address, "cancelled")
                self._finish(job, JobStatus.CANCELLED)
                logger.info(
                    "scheduler.job_cancelled", job_id=job.id, current_block=job.current_block
                )
                return

            if request.fill_gaps and self.gap_detector is not None:
                report = await self.gap_detector.find_gaps(address)
                filled = await self.pipeline.fill_gaps(contract, report.gaps)
                job.events_inserted += filled

            job.rebuild = await self.reconciler.rebuild(address)

            async with await self.uow_factory() as uow:
                await uow.sync_status.mark_completed(address)

            self._finish(job, JobStatus.COMPLETED)
            logger.info(
                "scheduler.job_completed",
                job_id=job.id,
                contract=address,
                events_found=job.events_found,
                events_inserted=job.events_inserted,
                chunks=job.chunks_processed,
            )

        except Exception as e:
            job.error = str(e) or type(e).__name__
            self._finish(job, JobStatus.FAILED)
            logger.error(
                "scheduler.job_failed",
                job_id=job.id,
                contract=address,
                error=job.error,
                error_type=type(e).__name__,
                current_block=job.current_block,
            )
            try:
                async with await self.uow_factory() as uow:
                    await uow.sync_status.mark_failed(address, job.error)
            except Exception as mark_error:
                logger.error(
                    "scheduler.checkpoint_update_failed",
                    job_id=job.id,
                    error=str(mark_error),
                    error_type=type(mark_error).__name__,
                )

        finally:
            self.progress.finish(address)
            self._current = None

    def _finish(self, job: SyncJob, status: JobStatus) -> None:
        job.status = status
        job.finished_at = datetime.now(timezone.utc)
        job.finished_monotonic = self._clock()
