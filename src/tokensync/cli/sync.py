"""CLI command for running one sync job in-process.

Usage:
    python -m tokensync.cli sync --contract ADDR [OPTIONS]

Examples:
    # Resume from the checkpoint (or the deployment block) up to the head
    python -m tokensync.cli sync --contract 0x300e7a5fb0ab08af367d5fb3915930791bb08c2b

    # Specific block range
    python -m tokensync.cli sync --contract 0x300e... --from-block 12345000 --to-block 12346000

    # Sync, then refetch every fillable gap found in the stored log
    python -m tokensync.cli sync --contract 0x300e... --fill-gaps -v
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
from tokensync.services.scheduler import JobStatus, SyncRequest

logger = structlog.get_logger()


def block_or_keyword(keyword: str):
    def parse(value: str) -> int | None:
        if value == keyword:
            return None
        number = int(value)
        if number < 0:
            raise ValueError(value)
        return number

    parse.__name__ = f"block number or {keyword!r}"
    return parse


def add_arguments(parser: ArgumentParser) -> None:
    add_common_arguments(parser)

    parser.add_argument(
        "--from-block",
        type=block_or_keyword("auto"),
        default=None,
        help='Starting block number or "auto" to resume from the checkpoint (default: auto)',
    )

    parser.add_argument(
        "--to-block",
        type=block_or_keyword("latest"),
        default=None,
        help='Ending block number or "latest" (default: latest)',
    )

    parser.add_argument(
        "--fill-gaps",
        action="store_true",
        help="After syncing, refetch block ranges missing between stored events",
    )


async def run(args: Namespace) -> int:
    """Run the sync command.

    Returns:
        Exit code: 0 (job completed), 1 (job failed or error)
    """
    settings = load_settings(args.verbose)

    try:
        address = contract_address(args.contract)
    except ValueError as e:
        logger.error("cli_sync.invalid_contract", error=str(e))
        return 1

    explicit = args.from_block is not None and args.to_block is not None
    if explicit and args.from_block > args.to_block:
        logger.error("cli_sync.invalid_range", from_block=args.from_block, to_block=args.to_block)
        return 1

    logger.info(
        "cli_sync.start",
        contract=address,
        from_block=args.from_block if args.from_block is not None else "auto",
        to_block=args.to_block if args.to_block is not None else "latest",
        fill_gaps=args.fill_gaps,
    )

    session_factory, services = await open_services(settings)
    try:
        job = await services.scheduler.run_now(
            SyncRequest(
                contract_address=address,
                from_block=args.from_block,
                to_block=args.to_block,
                fill_gaps=args.fill_gaps,
            )
        )
    except KeyboardInterrupt:
        logger.warning("cli_sync.interrupted", message="Sync interrupted by user")
        return 1
    finally:
        await close_services(session_factory, services)

    if job.status != JobStatus.COMPLETED:
        logger.error("cli_sync.failed", job_id=job.id, status=job.status.value, error=job.error)
        return 1

    summary = {}
    if job.rebuild is not None:
        summary = {
            "holders": job.rebuild.holders,
            "unique_tokens": job.rebuild.unique_tokens,
            "total_supply": str(job.rebuild.total_supply),
        }
    logger.info(
        "cli_sync.complete",
        job_id=job.id,
        start_block=job.start_block,
        end_block=job.end_block,
        events_found=job.events_found,
        events_inserted=job.events_inserted,
        chunks=job.chunks_processed,
        **summary,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = ArgumentParser(description="Sync token transfer events for one contract")
    add_arguments(parser)
    return asyncio.run(run(parser.parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
