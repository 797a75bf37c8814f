"""FastAPI dependencies for accessing application services.

Every service is created once in the application lifespan and stored on
``app.state``; these dependencies hand them to route handlers.
"""

from typing import Callable

from fastapi import Request

from tokensync.services.contract_registry import ContractRegistry
from tokensync.services.cross_validator import CrossValidator
from tokensync.services.gap_detector import GapDetector
from tokensync.services.scheduler import SyncScheduler
from tokensync.uow import UnitOfWork


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.events.count(contract)
    """
    return request.app.state.uow_factory


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.scheduler


def get_registry(request: Request) -> ContractRegistry:
    return request.app.state.registry


def get_gap_detector(request: Request) -> GapDetector:
    return request.app.state.gap_detector


def get_validator(request: Request) -> CrossValidator:
    return request.app.state.validator
