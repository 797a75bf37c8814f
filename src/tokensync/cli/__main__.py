"""CLI entry point for tokensync.cli module.

Enables execution via: python -m tokensync.cli {sync,validate} ...
"""

import asyncio
from argparse import ArgumentParser

from tokensync.cli import sync, validate

COMMANDS = {
    "sync": (sync, "Sync token transfer events for one contract"),
    "validate": (validate, "Audit, repair and cross-validate one contract"),
}


def main(argv: list[str] | None = None) -> int:
    parser = ArgumentParser(prog="tokensync", description="ERC-721/ERC-1155 transfer indexer")
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (module, help_text) in COMMANDS.items():
        module.add_arguments(subparsers.add_parser(name, help=help_text, description=help_text))

    args = parser.parse_args(argv)
    module, _ = COMMANDS[args.command]
    return asyncio.run(module.run(args))


if __name__ == "__main__":
    raise SystemExit(main())
