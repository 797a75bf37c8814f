"""Async JSON-RPC client over web3.py.

All provider access goes through ``RpcClient``: calls run the synchronous
``Web3`` API in a worker thread, optionally through a rate-governed
``RequestQueue``, and every raw failure is classified into the provider error
taxonomy in ``tokensync.services.exceptions``.
"""

import asyncio
from collections.abc import Callable
from typing import Any

import structlog
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from tokensync.abi import get_contract_abi
from tokensync.core.config import Settings
from tokensync.services.exceptions import (
    ProviderError,
    ProviderPermanentError,
    ProviderRangeTooLargeError,
    ProviderRateLimitError,
    ProviderTransientError,
)
from tokensync.services.rate_limit import RequestQueue

logger = structlog.get_logger()

# Provider wording for "narrow the block range" across Alchemy, Infura, QuickNode and geth
RANGE_TOO_LARGE_MARKERS = (
    "response size",
    "query returned more than",
    "too many results",
    "more than 10000 results",
    "block range is too large",
    "range too large",
    "exceed maximum block range",
    "log response size exceeded",
)

RATE_LIMIT_MARKERS = (
    "429",
    "rate limit",
    "too many requests",
    "-32005",
    "capacity exceeded",
)

PERMANENT_MARKERS = (
    "-32601",
    "-32602",
    "method not found",
    "not supported",
    "invalid argument",
    "invalid params",
    "invalid address",
    "unsupported chain",
)


def classify_error(exc: BaseException) -> ProviderError:
    """Map a raw web3/requests failure onto the provider error taxonomy.

    Args:
        exc: Exception raised by web3.py or its HTTP transport

    Returns:
        ProviderRangeTooLargeError, ProviderRateLimitError,
        ProviderPermanentError or ProviderTransientError (the default)
    """
    if isinstance(exc, ProviderError):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()

    if any(marker in lowered for marker in RANGE_TOO_LARGE_MARKERS):
        return ProviderRangeTooLargeError(message)

    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if status_code == 429 or any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return ProviderRateLimitError(message)

    if any(marker in lowered for marker in PERMANENT_MARKERS):
        return ProviderPermanentError(message)

    return ProviderTransientError(message)


class RpcClient:
    """Async facade over a synchronous ``Web3`` instance.

    Example:
        rpc = RpcClient.from_settings(settings, queue=queue)
        head = await rpc.get_block_number()
        logs = await rpc.get_logs(address, 100, 200, [TRANSFER_TOPIC])
    """

    def __init__(self, w3: Web3, queue: RequestQueue | None = None):
        """Initialize client.

        Args:
            w3: Web3 instance with an HTTP provider
            queue: Rate-governed queue every call is submitted through (optional)
        """
        self.w3 = w3
        self.queue = queue

    @classmethod
    def from_settings(cls, settings: Settings, queue: RequestQueue | None = None) -> "RpcClient":
        w3 = Web3(
            Web3.HTTPProvider(
                settings.rpc_url, request_kwargs={"timeout": settings.rpc_timeout_seconds}
            )
        )
        return cls(w3, queue=queue)

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        async def run() -> Any:
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except Exception as e:
                raise classify_error(e) from e

        if self.queue is not None:
            return await self.queue.submit(run)
        return await run()

    async def get_block_number(self) -> int:
        return int(await self._call(lambda: self.w3.eth.block_number))

    async def get_logs(
        self, address: str, from_block: int, to_block: int, topics: list[str]
    ) -> list[Any]:
        """``eth_getLogs`` for one contract, matching any of ``topics`` at position 0."""
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(address),
            "topics": [topics],
        }
        return list(await self._call(self.w3.eth.get_logs, params))

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self._call(self.w3.eth.get_block, block_number)
        return int(block["timestamp"])

    async def get_code(self, address: str, block_number: int | str = "latest") -> bytes:
        code = await self._call(
            self.w3.eth.get_code, Web3.to_checksum_address(address), block_number
        )
        return bytes(code)

    async def total_supply(self, address: str) -> int | None:
        """Live ``totalSupply()``; None when the contract does not implement it."""
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(address), abi=get_contract_abi("ERC721")
        )

        def call() -> int | None:
            try:
                return int(contract.functions.totalSupply().call())
            except (ContractLogicError, BadFunctionCallOutput):
                return None

        return await self._call(call)

    async def supports_interface(self, address: str, interface_id: str) -> bool:
        """ERC-165 ``supportsInterface``; False when the call reverts or returns nothing."""
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(address), abi=get_contract_abi("ERC721")
        )
        selector = bytes.fromhex(interface_id.removeprefix("0x"))

        def call() -> bool:
            try:
                return bool(contract.functions.supportsInterface(selector).call())
            except (ContractLogicError, BadFunctionCallOutput):
                return False

        return await self._call(call)
