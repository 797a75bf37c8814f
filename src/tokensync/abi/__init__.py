"""ABI fragments for read calls against token contracts.

``ERC721.json`` holds the transfer event, ``totalSupply``, ``balanceOf`` and
ERC-165 ``supportsInterface``. ``supportsInterface`` is also how ERC-1155
contracts are detected, so one file serves both standards.
"""

import json
from functools import lru_cache
from pathlib import Path

ABI_DIR = Path(__file__).parent


@lru_cache(maxsize=None)
def get_contract_abi(name: str = "ERC721") -> list[dict]:
    """Load ``<name>.json`` from this package.

    Raises:
        FileNotFoundError: No ABI file with that name
    """
    abi_path = ABI_DIR / f"{name}.json"
    if not abi_path.exists():
        raise FileNotFoundError(f"ABI file not found: {abi_path}")
    return json.loads(abi_path.read_text())
