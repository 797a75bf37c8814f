"""Read-only query endpoints over the event log and current balances.

- GET /contracts/{address}/holders - Current balances, largest first
- GET /contracts/{address}/events - Stored events in chain order
- GET /contracts/{address}/gaps - Block-sequence gap report
- GET /contracts/{address}/validate - Cross-validation against the chain
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from tokensync.api.dependencies import (
    get_gap_detector,
    get_registry,
    get_uow_factory,
    get_validator,
)
from tokensync.api.schemas import ApiModel, validate_address
from tokensync.services.contract_registry import ContractRegistry
from tokensync.services.cross_validator import CrossValidator
from tokensync.services.exceptions import ProviderError
from tokensync.services.gap_detector import GapDetector

logger = structlog.get_logger()
router = APIRouter(prefix="/contracts", tags=["contracts"])


def contract_path(address: str = Path(..., description="Token contract address")) -> str:
    try:
        return validate_address(address)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


# Response Models


class HolderDTO(ApiModel):
    address: str
    token_id: str
    balance: str
    last_updated_block: int


class HoldersResponse(ApiModel):
    contract_address: str
    holders: list[HolderDTO]
    total_holders: int
    unique_tokens: int
    total_supply: str
    limit: int
    offset: int


class EventDTO(ApiModel):
    transaction_hash: str
    log_index: int
    batch_index: int
    block_number: int
    block_timestamp: int
    event_type: str
    from_address: str
    to_address: str
    token_id: str
    amount: str
    operator: str


class EventsResponse(ApiModel):
    contract_address: str
    events: list[EventDTO]
    total: int
    limit: int
    offset: int


class GapDTO(ApiModel):
    start_block: int
    end_block: int
    size: int


class GapsResponse(ApiModel):
    contract_address: str
    max_gap_size: int
    blocks_scanned: int
    gaps: list[GapDTO]
    oversized: list[GapDTO]
    missing_blocks: int


class ValidationResponse(ApiModel):
    contract_address: str
    contract_type: str
    onchain_supply: str | None
    db_supply: str
    diff_percent: float
    accuracy: str
    duplicates: int
    gaps: int
    holders: int
    unique_tokens: int
    health_score: int


# API Endpoints


@router.get("/{address}/holders", response_model=HoldersResponse)
async def list_holders(
    address: str = Depends(contract_path),
    token_id: str | None = Query(default=None, alias="tokenId"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    uow_factory=Depends(get_uow_factory),
) -> HoldersResponse:
    """Current balances ordered by balance descending, then holder address."""
    async with await uow_factory() as uow:
        rows = await uow.balances.list_holders(
            address, token_id=token_id, limit=limit, offset=offset
        )
        totals = await uow.balances.get_totals(address)

    return HoldersResponse(
        contract_address=address,
        holders=[
            HolderDTO(
                address=row.address,
                token_id=row.token_id,
                balance=row.balance,
                last_updated_block=row.last_updated_block,
            )
            for row in rows
        ],
        total_holders=totals.holders,
        unique_tokens=totals.unique_tokens,
        total_supply=str(totals.total_supply),
        limit=limit,
        offset=offset,
    )


@router.get("/{address}/events", response_model=EventsResponse)
async def list_events(
    address: str = Depends(contract_path),
    from_block: int | None = Query(default=None, alias="fromBlock", ge=0),
    to_block: int | None = Query(default=None, alias="toBlock", ge=0),
    holder: str | None = Query(
        default=None, description="Only events sent or received by this address"
    ),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    uow_factory=Depends(get_uow_factory),
) -> EventsResponse:
    """Stored events ordered by (blockNumber, logIndex, batchIndex)."""
    async with await uow_factory() as uow:
        events = await uow.events.list_events(
            address,
            from_block=from_block,
            to_block=to_block,
            address=holder,
            limit=limit,
            offset=offset,
        )
        total = await uow.events.count(address, from_block, to_block)

    return EventsResponse(
        contract_address=address,
        events=[
            EventDTO(
                transaction_hash=e.transaction_hash,
                log_index=e.log_index,
                batch_index=e.batch_index,
                block_number=e.block_number,
                block_timestamp=e.block_timestamp,
                event_type=e.event_type,
                from_address=e.from_address,
                to_address=e.to_address,
                token_id=e.token_id,
                amount=e.amount,
                operator=e.operator,
            )
            for e in events
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{address}/gaps", response_model=GapsResponse)
async def get_gaps(
    address: str = Depends(contract_path),
    max_gap_size: int | None = Query(default=None, alias="maxGapSize", ge=1),
    gap_detector: GapDetector = Depends(get_gap_detector),
) -> GapsResponse:
    """Block-sequence gap report for the contract's stored events."""
    report = await gap_detector.find_gaps(address, max_gap_size=max_gap_size)
    return GapsResponse(
        contract_address=report.contract_address,
        max_gap_size=report.max_gap_size,
        blocks_scanned=report.blocks_scanned,
        gaps=[
            GapDTO(start_block=g.start_block, end_block=g.end_block, size=g.size)
            for g in report.gaps
        ],
        oversized=[
            GapDTO(start_block=g.start_block, end_block=g.end_block, size=g.size)
            for g in report.oversized
        ],
        missing_blocks=report.missing_blocks,
    )


@router.get("/{address}/validate", response_model=ValidationResponse)
async def validate_contract(
    address: str = Depends(contract_path),
    registry: ContractRegistry = Depends(get_registry),
    validator: CrossValidator = Depends(get_validator),
) -> ValidationResponse:
    """Cross-validate stored supply against the chain and report a health score.

    Raises:
        HTTPException 404: Contract is not registered
        HTTPException 502: Provider failed during the on-chain read
    """
    contract = await registry.get(address)
    if contract is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Contract {address} is not registered"
        )

    try:
        report = await validator.verify(address, contract.contract_type)
    except ProviderError as e:
        logger.error(
            "validate.provider_error", contract=address, error=str(e), error_type=type(e).__name__
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return ValidationResponse(
        contract_address=report.contract_address,
        contract_type=report.contract_type.value,
        onchain_supply=str(report.onchain_supply) if report.onchain_supply is not None else None,
        db_supply=str(report.db_supply),
        diff_percent=report.diff_percent,
        accuracy=report.accuracy.value,
        duplicates=report.duplicates,
        gaps=report.gaps,
        holders=report.holders,
        unique_tokens=report.unique_tokens,
        health_score=report.health_score,
    )
