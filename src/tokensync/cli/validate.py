"""CLI command for auditing and repairing a contract's stored data.

Usage:
    python -m tokensync.cli validate --contract ADDR [OPTIONS]

Steps:
1. Report duplicate event identities (removed with --fix)
2. Report block-sequence gaps
3. With --deep, compare on-chain and stored transfer counts chunk by chunk
4. Rebuild current balances from the event log
5. Cross-validate against the chain and print the health score

Exit codes: 0 (health score >= 90), 2 (health score below 90), 1 (error)
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from tokensync.cli.common import (
    add_common_arguments,
    close_services,
    contract_address,
    load_settings,
    open_services,
)
from tokensync.services.blockchain.decoder import topics_for
from tokensync.services.exceptions import ServiceError

logger = structlog.get_logger()

HEALTHY_SCORE = 90


def add_arguments(parser: ArgumentParser) -> None:
    add_common_arguments(parser)

    parser.add_argument(
        "--fix",
        action="store_true",
        help="Delete duplicate events (keeping the first stored row) before the rebuild",
    )

    parser.add_argument(
        "--deep",
        action="store_true",
        help="Also compare transfer counts with the chain chunk by chunk (slow, uses RPC quota)",
    )


async def run(args: Namespace) -> int:
    """Run the validate command.

    Returns:
        Exit code: 0 (healthy), 2 (needs attention), 1 (error)
    """
    settings = load_settings(args.verbose)

    try:
        address = contract_address(args.contract)
    except ValueError as e:
        logger.error("cli_validate.invalid_contract", error=str(e))
        return 1

    session_factory, services = await open_services(settings)
    try:
        contract = await services.registry.get(address)
        if contract is None:
            logger.error(
                "cli_validate.error",
                message=f"Contract {address} is not registered. Run `sync` first.",
            )
            return 1

        uow_factory = services.pipeline.uow_factory
        async with await uow_factory() as uow:
            duplicates = await uow.events.find_duplicates(address)
            last_synced = await uow.sync_status.get_last_synced_block(address)

        logger.info(
            "cli_validate.duplicates",
            groups=len(duplicates),
            extra_rows=sum(group.count - 1 for group in duplicates),
        )
        for group in duplicates[:10]:
            logger.info(
                "cli_validate.duplicate",
                tx_hash=group.transaction_hash,
                log_index=group.log_index,
                batch_index=group.batch_index,
                count=group.count,
            )

        if duplicates and args.fix:
            async with await uow_factory() as uow:
                removed = await uow.events.remove_duplicates(address)
            logger.info("cli_validate.duplicates_removed", rows_removed=removed)

        gap_report = await services.gap_detector.find_gaps(address)
        for gap in gap_report.gaps[:10]:
            logger.info(
                "cli_validate.gap",
                start_block=gap.start_block,
                end_block=gap.end_block,
                size=gap.size,
            )

        if args.deep:
            if last_synced is None:
                logger.warning("cli_validate.deep_skipped", reason="no checkpoint")
            else:
                flagged = await services.gap_detector.find_missing_chunks(
                    address,
                    topics_for(contract.contract_type),
                    contract.deployment_block,
                    last_synced,
                )
                for chunk in flagged:
                    logger.warning(
                        "cli_validate.chunk_flagged",
                        from_block=chunk.from_block,
                        to_block=chunk.to_block,
                        onchain=chunk.onchain_count,
                        stored=chunk.stored_count,
                    )

        rebuild = await services.reconciler.rebuild(address)
        report = await services.validator.verify(address, contract.contract_type)

    except ServiceError as e:
        logger.error("cli_validate.error", error=str(e), error_type=type(e).__name__)
        return 1

    except Exception as e:
        logger.error("cli_validate.fatal_error", error=str(e), exc_info=True)
        return 1

    finally:
        await close_services(session_factory, services)

    logger.info(
        "cli_validate.complete",
        contract=address,
        contract_type=report.contract_type.value,
        holders=rebuild.holders,
        unique_tokens=rebuild.unique_tokens,
        negative_balances=len(rebuild.negative_balances),
        conservation_violations=len(rebuild.conservation_violations),
        onchain_supply=str(report.onchain_supply) if report.onchain_supply is not None else None,
        db_supply=str(report.db_supply),
        diff_percent=report.diff_percent,
        accuracy=report.accuracy.value,
        duplicates=report.duplicates,
        gaps=report.gaps,
        health_score=report.health_score,
    )
    return 0 if report.health_score >= HEALTHY_SCORE else 2


def main(argv: list[str] | None = None) -> int:
    parser = ArgumentParser(description="Audit, repair and cross-validate one contract")
    add_arguments(parser)
    return asyncio.run(run(parser.parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
