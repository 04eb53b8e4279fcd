"""
Contract call surfaces used by the relay.

Only two pieces of the token contract are needed: the ``Bridge`` event
emitted on the source chain and the ``mint`` function called on the
destination chain.
"""

from typing import Union

from eth_abi import decode
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address

from ..core.types import BridgeEvent, EventFilter, FunctionCall, RawLog
from ..errors import ValidationError

BRIDGE_EVENT_SIGNATURE = "Bridge(address,uint256)"
BRIDGE_EVENT_TOPIC = encode_hex(keccak(text=BRIDGE_EVENT_SIGNATURE))

TOKEN_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "user", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "amount", "type": "uint256"},
        ],
        "name": "Bridge",
        "type": "event",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "amount", "type": "uint256"}],
        "name": "bridge",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "amount", "type": "uint256"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return decode_hex(value)


def bridge_event_filter(contract_address: str) -> EventFilter:
    """Filter matching ``Bridge`` logs of one token contract."""
    return EventFilter(
        address=to_checksum_address(contract_address), topics=(BRIDGE_EVENT_TOPIC,)
    )


def is_bridge_log(log: RawLog) -> bool:
    return bool(log.topics) and log.topics[0].lower() == BRIDGE_EVENT_TOPIC


def decode_bridge_log(log: RawLog, chain_id: int) -> BridgeEvent:
    """Decode a raw ``Bridge`` log into a ``BridgeEvent``.

    Raises ``ValidationError`` for logs that are not well-formed ``Bridge``
    events.
    """
    if not is_bridge_log(log):
        raise ValidationError(
            f"Log {log.transaction_hash}:{log.log_index} is not a Bridge event",
            field="topics",
            value=log.topics,
        )
    if len(log.topics) != 2:
        raise ValidationError(
            "Bridge event must carry exactly one indexed topic",
            field="topics",
            value=log.topics,
        )

    user_topic = _as_bytes(log.topics[1])
    if len(user_topic) != 32:
        raise ValidationError("Malformed user topic", field="topics", value=log.topics)

    try:
        (amount,) = decode(["uint256"], _as_bytes(log.data))
    except Exception as e:
        raise ValidationError(
            f"Malformed Bridge event data: {e}", field="data", value=log.data, cause=e
        ) from e

    return BridgeEvent(
        source_chain_id=chain_id,
        tx_hash=log.transaction_hash,
        log_index=log.log_index,
        user=to_checksum_address(user_topic[-20:]),
        amount=amount,
        block_number=log.block_number,
        block_hash=log.block_hash,
    )


def mint_call(contract_address: str, event: BridgeEvent) -> FunctionCall:
    """The destination-chain call crediting ``event.user`` with ``event.amount``."""
    return FunctionCall(
        contract_address=to_checksum_address(contract_address),
        function_name="mint",
        args=(event.user, event.amount),
    )
