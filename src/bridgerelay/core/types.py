"""
Relay types and data structures for bridgerelay.

This module defines the core types shared by the chain clients, the event
ledger, the relay workers and the reconciliation scanner.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from eth_utils import add_0x_prefix, encode_hex, is_address, to_checksum_address

from ..errors import ValidationError

UINT256_MAX = 2**256 - 1

EventIdentity = Tuple[int, str, int]


def normalize_hash(value: Union[str, bytes]) -> str:
    """Normalize a transaction or block hash to lowercase ``0x`` hex."""
    if isinstance(value, (bytes, bytearray)):
        return encode_hex(bytes(value)).lower()
    return add_0x_prefix(value).lower()


class RelayStatus(Enum):
    """Relay record status states."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ORPHANED = "orphaned"

    @property
    def is_terminal(self) -> bool:
        return self in (RelayStatus.CONFIRMED, RelayStatus.FAILED)


class ConfirmationStatus(Enum):
    """Outcome of waiting for a destination transaction."""

    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Direction:
    """One relay direction: events on the source chain become mints on the destination."""

    source_chain_id: int
    dest_chain_id: int

    @property
    def label(self) -> str:
        return f"{self.source_chain_id}->{self.dest_chain_id}"

    def reversed(self) -> "Direction":
        return Direction(self.dest_chain_id, self.source_chain_id)


@dataclass(frozen=True)
class BridgeEvent:
    """A ``Bridge(user, amount)`` log observed on a source chain.

    Uniquely identified by ``(source_chain_id, tx_hash, log_index)``.
    """

    source_chain_id: int
    tx_hash: str
    log_index: int
    user: str
    amount: int
    block_number: int
    block_hash: str

    def __post_init__(self):
        if not is_address(self.user):
            raise ValidationError(
                f"Invalid user address: {self.user}", field="user", value=self.user
            )
        if not isinstance(self.amount, int) or not 0 <= self.amount <= UINT256_MAX:
            raise ValidationError(
                f"Amount out of uint256 range: {self.amount}",
                field="amount",
                value=self.amount,
            )
        if self.log_index < 0 or self.block_number < 0:
            raise ValidationError(
                "Block number and log index must be non-negative",
                field="block_number",
                value=(self.block_number, self.log_index),
            )
        # Canonical forms so that identity comparisons are exact.
        object.__setattr__(self, "user", to_checksum_address(self.user))
        object.__setattr__(self, "tx_hash", normalize_hash(self.tx_hash))
        object.__setattr__(self, "block_hash", normalize_hash(self.block_hash))

    @property
    def identity(self) -> EventIdentity:
        return (self.source_chain_id, self.tx_hash, self.log_index)

    @property
    def order_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source_chain_id": self.source_chain_id,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "user": self.user,
            "amount": str(self.amount),
            "block_number": self.block_number,
            "block_hash": self.block_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BridgeEvent":
        """Create from dictionary."""
        return cls(
            source_chain_id=int(data["source_chain_id"]),
            tx_hash=data["tx_hash"],
            log_index=int(data["log_index"]),
            user=data["user"],
            amount=int(data["amount"]),
            block_number=int(data["block_number"]),
            block_hash=data["block_hash"],
        )


@dataclass
class RelayRecord:
    """Relay progress of one bridge event, owned by the event ledger."""

    record_id: int
    event: BridgeEvent
    dest_chain_id: int
    status: RelayStatus = RelayStatus.PENDING
    dest_tx_hash: Optional[str] = None
    dest_nonce: Optional[int] = None
    submit_count: int = 0
    last_error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def direction(self) -> Direction:
        return Direction(self.event.source_chain_id, self.dest_chain_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "record_id": self.record_id,
            "event": self.event.to_dict(),
            "dest_chain_id": self.dest_chain_id,
            "status": self.status.value,
            "dest_tx_hash": self.dest_tx_hash,
            "dest_nonce": self.dest_nonce,
            "submit_count": self.submit_count,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ChainCursor:
    """Reconciliation progress on one chain."""

    chain_id: int
    last_scanned_block: int
    last_scanned_block_hash: Optional[str] = None

    def advanced_to(self, block_number: int, block_hash: str) -> "ChainCursor":
        return replace(
            self,
            last_scanned_block=block_number,
            last_scanned_block_hash=normalize_hash(block_hash),
        )


@dataclass(frozen=True)
class ObservationResult:
    """Result of recording an observed event in the ledger."""

    inserted: bool
    record: RelayRecord
    rederived: bool = False


@dataclass
class RawLog:
    """Undecoded log entry as delivered by a chain client."""

    address: str
    topics: List[str]
    data: str
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    removed: bool = False


@dataclass(frozen=True)
class EventFilter:
    """Log filter: emitting contract plus topic constraints."""

    address: str
    topics: Tuple[Optional[str], ...] = ()

    def to_params(self, from_block: int, to_block: int) -> Dict[str, Any]:
        """Build ``eth_getLogs`` filter parameters."""
        params: Dict[str, Any] = {
            "address": to_checksum_address(self.address),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if self.topics:
            params["topics"] = list(self.topics)
        return params


@dataclass(frozen=True)
class FunctionCall:
    """A contract function invocation to be sent as a transaction."""

    contract_address: str
    function_name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class SignedTransaction:
    """A locally signed transaction, not yet broadcast."""

    tx_hash: str
    raw_transaction: bytes
    nonce: int
    chain_id: int


@dataclass(frozen=True)
class TxHandle:
    """Handle of a broadcast transaction."""

    tx_hash: str
    nonce: int
    chain_id: int
    sent_at: float = field(default_factory=time.time)


@dataclass
class ConfirmationResult:
    """Outcome of ``await_confirmation``."""

    status: ConfirmationStatus
    receipt: Optional[Dict[str, Any]] = None
    confirmations: int = 0

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED
