"""Contract registry: look up or detect and persist indexed contracts."""

from typing import Any

import structlog

from tokensync.models.contract import Contract, ContractType
from tokensync.services.blockchain.contract_detector import (
    detect_contract_type,
    find_deployment_block,
)
from tokensync.services.exceptions import ContractNotRegisteredError

logger = structlog.get_logger()


class ContractRegistry:
    """Resolves a contract address to its registry row, registering it on first use."""

    def __init__(self, uow_factory, rpc: Any):
        self.uow_factory = uow_factory
        self.rpc = rpc

    async def get(self, address: str) -> Contract | None:
        async with await self.uow_factory() as uow:
            return await uow.contracts.get(address)

    async def resolve(
        self,
        address: str,
        contract_type: ContractType | None = None,
        deployment_block: int | None = None,
        name: str | None = None,
    ) -> Contract:
        """Return the registered contract, detecting and storing it if unknown.

        Caller-supplied ``contract_type`` and ``deployment_block`` skip the
        corresponding on-chain detection.

        Raises:
            ContractNotRegisteredError: The token standard could not be detected
        """
        address = address.lower()
        existing = await self.get(address)
        if existing is not None:
            return existing

        if contract_type is None:
            contract_type = await detect_contract_type(self.rpc, address)
            if contract_type is None:
                raise ContractNotRegisteredError(
                    f"Contract {address} supports neither ERC-721 nor ERC-1155 (ERC-165)"
                )

        if deployment_block is None:
            deployment_block = await find_deployment_block(self.rpc, address)
            if deployment_block is None:
                logger.warning("contract.deployment_block_unknown", contract=address)
                deployment_block = 0

        async with await self.uow_factory() as uow:
            existing = await uow.contracts.get(address)
            if existing is not None:
                return existing
            contract = await uow.contracts.add(
                Contract(
                    address=address,
                    contract_type=contract_type,
                    deployment_block=deployment_block,
                    name=name,
                )
            )

        logger.info(
            "contract.registered",
            contract=address,
            contract_type=contract_type.value,
            deployment_block=deployment_block,
        )
        return contract
