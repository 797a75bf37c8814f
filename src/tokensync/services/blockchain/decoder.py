"""Transfer event decoding for ERC-721 and ERC-1155 logs.

Turns raw ``eth_getLogs`` entries into ``TransferEvent`` records:

- ERC-721 ``Transfer(address indexed from, address indexed to, uint256 indexed tokenId)``
- ERC-1155 ``TransferSingle(address indexed operator, address indexed from,
  address indexed to, uint256 id, uint256 value)``
- ERC-1155 ``TransferBatch(address indexed operator, address indexed from,
  address indexed to, uint256[] ids, uint256[] values)``

A batch log expands into one event per id, sharing the log index and numbered
by ``batch_index``. Any other log decodes to ``Unrecognized`` and is skipped.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils.abi import event_signature_to_log_topic

from tokensync.models.event import ZERO_ADDRESS


def _to_hex(value: Any) -> str:
    """Normalize HexBytes/bytes/str to a lower-case 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


TRANSFER_TOPIC = _to_hex(event_signature_to_log_topic("Transfer(address,address,uint256)"))
TRANSFER_SINGLE_TOPIC = _to_hex(
    event_signature_to_log_topic("TransferSingle(address,address,address,uint256,uint256)")
)
TRANSFER_BATCH_TOPIC = _to_hex(
    event_signature_to_log_topic("TransferBatch(address,address,address,uint256[],uint256[])")
)


class EventKind(str, Enum):
    """Log shape a transfer event was decoded from."""

    TRANSFER = "Transfer"
    TRANSFER_SINGLE = "TransferSingle"
    TRANSFER_BATCH = "TransferBatch"


@dataclass(frozen=True)
class TransferEvent:
    """One normalized token movement.

    ``token_id`` and ``amount`` are Python ints; they are converted to decimal
    strings only when stored.
    """

    contract_address: str
    transaction_hash: str
    log_index: int
    batch_index: int
    block_number: int
    kind: EventKind
    from_address: str
    to_address: str
    token_id: int
    amount: int
    operator: str

    @property
    def identity(self) -> tuple[str, int, int]:
        return (self.transaction_hash, self.log_index, self.batch_index)

    @property
    def is_mint(self) -> bool:
        return self.from_address == ZERO_ADDRESS

    @property
    def is_burn(self) -> bool:
        return self.to_address == ZERO_ADDRESS

    def to_row(self, block_timestamp: int) -> dict[str, Any]:
        """Column mapping for ``EventRepository.insert_many``."""
        return {
            "contract_address": self.contract_address,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "batch_index": self.batch_index,
            "block_number": self.block_number,
            "block_timestamp": block_timestamp,
            "event_type": "Transfer",
            "from_address": self.from_address,
            "to_address": self.to_address,
            "token_id": str(self.token_id),
            "amount": str(self.amount),
            "operator": self.operator,
        }


@dataclass(frozen=True)
class Unrecognized:
    """A log that is not part of the supported transfer family."""

    topic: str | None
    reason: str


def _topic_address(topic: Any) -> str:
    # Indexed addresses are left-padded to 32 bytes
    return "0x" + _to_hex(topic)[-40:]


def decode_log(log: Mapping[str, Any]) -> list[TransferEvent] | Unrecognized:
    """Decode one raw log into transfer events.

    Args:
        log: ``eth_getLogs`` entry (web3 AttributeDict or plain dict with hex strings)

    Returns:
        A list of events (one, or one per id for TransferBatch), or Unrecognized
    """
    topics = list(log.get("topics") or [])
    if not topics:
        return Unrecognized(topic=None, reason="anonymous log")

    topic0 = _to_hex(topics[0])
    if log.get("removed"):
        return Unrecognized(topic=topic0, reason="removed by reorg")

    contract = _to_hex(log["address"])
    tx_hash = _to_hex(log["transactionHash"])
    log_index = int(log["logIndex"])
    block_number = int(log["blockNumber"])

    if topic0 == TRANSFER_TOPIC:
        # ERC-20 Transfer shares the signature but indexes only two topics
        if len(topics) != 4:
            return Unrecognized(topic=topic0, reason="Transfer without indexed tokenId")
        sender = _topic_address(topics[1])
        return [
            TransferEvent(
                contract_address=contract,
                transaction_hash=tx_hash,
                log_index=log_index,
                batch_index=0,
                block_number=block_number,
                kind=EventKind.TRANSFER,
                from_address=sender,
                to_address=_topic_address(topics[2]),
                token_id=int(_to_hex(topics[3]), 16),
                amount=1,
                operator=sender,
            )
        ]

    if topic0 not in (TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC):
        return Unrecognized(topic=topic0, reason="unsupported topic")

    if len(topics) != 4:
        return Unrecognized(topic=topic0, reason="unexpected topic count")

    operator = _topic_address(topics[1])
    sender = _topic_address(topics[2])
    recipient = _topic_address(topics[3])
    try:
        data = _to_bytes(log.get("data") or b"")
        if topic0 == TRANSFER_SINGLE_TOPIC:
            token_id, value = abi_decode(["uint256", "uint256"], data)
            ids, values = [token_id], [value]
            kind = EventKind.TRANSFER_SINGLE
        else:
            ids, values = abi_decode(["uint256[]", "uint256[]"], data)
            kind = EventKind.TRANSFER_BATCH
    except (DecodingError, ValueError) as e:
        return Unrecognized(topic=topic0, reason=f"malformed data: {e}")

    if len(ids) != len(values):
        return Unrecognized(topic=topic0, reason="ids and values length mismatch")

    return [
        TransferEvent(
            contract_address=contract,
            transaction_hash=tx_hash,
            log_index=log_index,
            batch_index=i,
            block_number=block_number,
            kind=kind,
            from_address=sender,
            to_address=recipient,
            token_id=int(token_id),
            amount=int(value),
            operator=operator,
        )
        for i, (token_id, value) in enumerate(zip(ids, values))
    ]


def topics_for(contract_type: str) -> list[str]:
    """Topic0 values to request from ``eth_getLogs`` for a token standard."""
    if contract_type == "ERC1155":
        return [TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC]
    return [TRANSFER_TOPIC]
