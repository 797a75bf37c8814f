"""Sync control API endpoints.

- POST /sync - Queue a sync job for a contract
- GET /status/{job_id} - Job state snapshot
- GET /progress/{contract_address} - Progress of the contract's current/last job
- POST /jobs/{job_id}/cancel - Cooperative cancellation between chunks

Submitting never waits for the sync itself; callers poll status/progress.
"""

from datetime import datetime
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, status
from pydantic import Field, field_validator

from tokensync.api.dependencies import get_scheduler
from tokensync.api.schemas import ApiModel, validate_address
from tokensync.models.contract import ContractType
from tokensync.services.exceptions import JobNotFoundError, SchedulerFullError
from tokensync.services.scheduler import SyncJob, SyncRequest, SyncScheduler

logger = structlog.get_logger()
router = APIRouter(tags=["sync"])


# Request/Response Models


class SyncJobRequest(ApiModel):
    """Request body for POST /sync."""

    contract_address: str = Field(..., description="Token contract address (0x + 40 hex)")
    from_block: int | Literal["auto"] = Field(
        default="auto", description='First block, or "auto" to resume from the checkpoint'
    )
    to_block: int | Literal["latest"] = Field(
        default="latest", description='Last block, or "latest" for the current head'
    )
    contract_type: ContractType | None = Field(
        default=None, description="Token standard; detected via ERC-165 when omitted"
    )
    deployment_block: int | None = Field(
        default=None, ge=0, description="Deployment block; detected via eth_getCode when omitted"
    )

    @field_validator("contract_address")
    @classmethod
    def check_address(cls, v: str) -> str:
        return validate_address(v)

    @field_validator("from_block", "to_block")
    @classmethod
    def check_block(cls, v: int | str) -> int | str:
        if isinstance(v, int) and v < 0:
            raise ValueError("Block numbers must be non-negative")
        return v


class SyncJobCreated(ApiModel):
    job_id: str
    position: int


class RebuildSummary(ApiModel):
    holders: int
    unique_tokens: int
    total_supply: str
    negative_balances: int
    conservation_violations: int


class JobResponse(ApiModel):
    """Snapshot of one sync job."""

    job_id: str
    contract_address: str
    status: str
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    start_block: int | None = None
    end_block: int | None = None
    current_block: int | None = None
    events_found: int
    events_inserted: int
    chunks_processed: int
    error: str | None = None
    rebuild: RebuildSummary | None = None

    @classmethod
    def from_job(cls, job: SyncJob) -> "JobResponse":
        rebuild = None
        if job.rebuild is not None:
            rebuild = RebuildSummary(
                holders=job.rebuild.holders,
                unique_tokens=job.rebuild.unique_tokens,
                total_supply=str(job.rebuild.total_supply),
                negative_balances=len(job.rebuild.negative_balances),
                conservation_violations=len(job.rebuild.conservation_violations),
            )
        return cls(
            job_id=job.id,
            contract_address=job.contract_address,
            status=job.status.value,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            start_block=job.start_block,
            end_block=job.end_block,
            current_block=job.current_block,
            events_found=job.events_found,
            events_inserted=job.events_inserted,
            chunks_processed=job.chunks_processed,
            error=job.error,
            rebuild=rebuild,
        )


class ProgressResponse(ApiModel):
    is_processing: bool
    job_id: str | None = None
    current_block: int | None = None
    total_blocks: int = 0
    progress: float = 0.0
    events_found: int = 0
    eta_seconds: float | None = None


# API Endpoints


@router.post("/sync", response_model=SyncJobCreated, status_code=status.HTTP_202_ACCEPTED)
async def create_sync_job(
    request: SyncJobRequest,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> SyncJobCreated:
    """Queue a sync job and return its id immediately.

    Raises:
        HTTPException 422: Invalid address or block range
        HTTPException 503: Job queue is full

    Example:
        POST /sync
        {"contractAddress": "0x300e7a5fb0ab08af367d5fb3915930791bb08c2b", "fromBlock": "auto"}

        Response 202:
        {"jobId": "sync-0x300e...-1718000000000", "position": 1}
    """
    from_block = None if request.from_block == "auto" else request.from_block
    to_block = None if request.to_block == "latest" else request.to_block
    if from_block is not None and to_block is not None and from_block > to_block:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="fromBlock must not exceed toBlock",
        )

    try:
        job, position = scheduler.submit(
            SyncRequest(
                contract_address=request.contract_address,
                from_block=from_block,
                to_block=to_block,
                contract_type=request.contract_type,
                deployment_block=request.deployment_block,
            )
        )
    except SchedulerFullError as e:
        logger.warning("sync.queue_full", contract=request.contract_address)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return SyncJobCreated(job_id=job.id, position=position)


@router.get("/status/{job_id}", response_model=JobResponse)
async def get_job_status(
    job_id: str,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> JobResponse:
    """Return the job snapshot; 404 once the job is unknown or evicted."""
    try:
        job = scheduler.get_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobResponse.from_job(job)


@router.get("/progress/{contract_address}", response_model=ProgressResponse)
async def get_progress(
    contract_address: str = Path(..., min_length=42, max_length=42),
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> ProgressResponse:
    """Progress of the contract's running (or most recent) job."""
    progress = scheduler.get_progress(contract_address)
    if progress is None:
        return ProgressResponse(is_processing=False)

    return ProgressResponse(
        is_processing=progress.is_processing,
        job_id=progress.job_id,
        current_block=progress.current_block,
        total_blocks=progress.total_blocks,
        progress=progress.progress_percent,
        events_found=progress.events_found,
        eta_seconds=progress.eta_seconds,
    )


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> JobResponse:
    """Cancel a queued job, or stop a running one after its current chunk."""
    try:
        job = scheduler.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobResponse.from_job(job)
