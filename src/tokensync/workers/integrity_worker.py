"""Integrity worker: periodic duplicate audit and repair.

Every INTEGRITY_CHECK_INTERVAL_SECONDS, for each registered contract:
1. Look for event identities stored more than once
2. If any, delete all but the lowest-id row of each group
3. Rebuild the contract's current balances from the repaired log
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from tokensync.core.config import Settings
from tokensync.services.reconciler import StateReconciler
from tokensync.uow import create_uow_factory

logger = structlog.get_logger()

ERROR_BACKOFF_SECONDS = 5


@dataclass(frozen=True)
class IntegrityResult:
    contract_address: str
    duplicate_groups: int
    rows_removed: int
    rebuilt: bool


async def check_contract(
    uow_factory, reconciler: StateReconciler, contract_address: str
) -> IntegrityResult:
    """Audit one contract and repair duplicates if any were found."""
    async with await uow_factory() as uow:
        groups = await uow.events.find_duplicates(contract_address)
        removed = await uow.events.remove_duplicates(contract_address) if groups else 0

    if not groups:
        return IntegrityResult(contract_address, 0, 0, False)

    logger.warning(
        "integrity.duplicates_removed",
        contract=contract_address,
        groups=len(groups),
        rows_removed=removed,
    )
    await reconciler.rebuild(contract_address)
    return IntegrityResult(contract_address, len(groups), removed, True)


async def run_integrity_pass(uow_factory, reconciler: StateReconciler) -> list[IntegrityResult]:
    """Check every registered contract once."""
    async with await uow_factory() as uow:
        contracts = await uow.contracts.list_all()

    results = []
    for contract in contracts:
        results.append(await check_contract(uow_factory, reconciler, contract.address))

    logger.info(
        "integrity.pass_completed",
        contracts=len(results),
        repaired=sum(1 for r in results if r.rebuilt),
    )
    return results


async def run_integrity_worker(session_factory: Callable, settings: Settings) -> None:
    """Main worker loop for the integrity check.

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (check interval, batch size)
    """
    interval = settings.integrity_check_interval_seconds
    uow_factory = create_uow_factory(session_factory, batch_size=settings.db_batch_size)
    reconciler = StateReconciler(uow_factory)

    logger.info("worker.started", worker="integrity", interval_seconds=interval)

    try:
        while True:
            try:
                await asyncio.sleep(interval)
                await run_integrity_pass(uow_factory, reconciler)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="integrity",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="integrity")
        raise
