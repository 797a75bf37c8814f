"""Token standard and deployment block detection."""

from typing import Any

import structlog

from tokensync.models.contract import ContractType

logger = structlog.get_logger()

# ERC-165 interface ids
ERC721_INTERFACE_ID = "0x80ac58cd"
ERC1155_INTERFACE_ID = "0xd9b67a26"


async def detect_contract_type(rpc: Any, address: str) -> ContractType | None:
    """Detect the token standard via ERC-165 ``supportsInterface``.

    Returns:
        ContractType, or None when the contract advertises neither interface
    """
    if await rpc.supports_interface(address, ERC1155_INTERFACE_ID):
        return ContractType.ERC1155
    if await rpc.supports_interface(address, ERC721_INTERFACE_ID):
        return ContractType.ERC721
    return None


async def find_deployment_block(rpc: Any, address: str, head: int | None = None) -> int | None:
    """Binary search for the first block at which the contract has code.

    Args:
        rpc: Object implementing ``get_code`` and ``get_block_number``
        address: Contract address
        head: Upper bound of the search (defaults to the current block)

    Returns:
        Deployment block, or None if there is no code at ``head``
    """
    if head is None:
        head = await rpc.get_block_number()

    if not await rpc.get_code(address, head):
        return None

    low, high = 0, head
    while low < high:
        mid = (low + high) // 2
        if await rpc.get_code(address, mid):
            high = mid
        else:
            low = mid + 1

    logger.info("contract.deployment_block_found", contract=address, deployment_block=low)
    return low
