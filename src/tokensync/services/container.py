"""Wiring of the sync services, shared by the web application and the CLI."""

from dataclasses import dataclass
from typing import Any

from tokensync.core.config import Settings
from tokensync.services.blockchain.log_fetcher import LogFetcher
from tokensync.services.blockchain.rpc import RpcClient
from tokensync.services.contract_registry import ContractRegistry
from tokensync.services.cross_validator import CrossValidator
from tokensync.services.gap_detector import GapDetector
from tokensync.services.rate_limit import RateGovernor, RequestQueue
from tokensync.services.reconciler import StateReconciler
from tokensync.services.scheduler import SyncScheduler
from tokensync.services.sync_pipeline import SyncPipeline


@dataclass
class ServiceContainer:
    rpc: Any
    queue: RequestQueue | None
    fetcher: LogFetcher
    pipeline: SyncPipeline
    registry: ContractRegistry
    reconciler: StateReconciler
    gap_detector: GapDetector
    validator: CrossValidator
    scheduler: SyncScheduler

    async def close(self) -> None:
        if self.queue is not None:
            await self.queue.close()


def build_request_queue(settings: Settings) -> RequestQueue:
    """Rate-governed queue every RPC call is submitted through."""
    governor = RateGovernor(
        limit=settings.rpc_rate_limit,
        window_ms=settings.rpc_rate_window_ms,
        strategy=settings.rpc_rate_strategy,
    )
    return RequestQueue(
        governor,
        key="rpc",
        retry_attempts=settings.rpc_queue_retry_attempts,
        retry_delay=settings.rpc_queue_retry_delay_seconds,
        max_size=settings.rpc_queue_max_size,
        cleanup_interval=settings.rpc_rate_window_ms / 1000 * 60,
    )


def build_services(settings: Settings, uow_factory, rpc: Any | None = None) -> ServiceContainer:
    """Create every service from settings.

    Args:
        settings: Application settings
        uow_factory: UnitOfWork factory
        rpc: RPC client to use; a rate-governed ``RpcClient`` is built when None
    """
    queue = None
    if rpc is None:
        queue = build_request_queue(settings)
        rpc = RpcClient.from_settings(settings, queue=queue)

    fetcher = LogFetcher.from_settings(settings, rpc)
    pipeline = SyncPipeline(uow_factory, fetcher)
    registry = ContractRegistry(uow_factory, rpc)
    reconciler = StateReconciler(uow_factory)
    gap_detector = GapDetector(
        uow_factory,
        fetcher=fetcher,
        max_gap_size=settings.max_gap_size,
        missing_chunk_size=settings.missing_chunk_size,
    )
    validator = CrossValidator(uow_factory, rpc, gap_detector)
    scheduler = SyncScheduler(
        uow_factory,
        pipeline,
        registry,
        reconciler,
        rpc,
        gap_detector=gap_detector,
        max_queued_jobs=settings.max_queued_jobs,
        eviction_seconds=settings.job_eviction_seconds,
    )
    return ServiceContainer(
        rpc=rpc,
        queue=queue,
        fetcher=fetcher,
        pipeline=pipeline,
        registry=registry,
        reconciler=reconciler,
        gap_detector=gap_detector,
        validator=validator,
        scheduler=scheduler,
    )
