"""Core relay types."""

from .types import (
    UINT256_MAX,
    BridgeEvent,
    ChainCursor,
    ConfirmationResult,
    ConfirmationStatus,
    Direction,
    EventFilter,
    EventIdentity,
    FunctionCall,
    ObservationResult,
    RawLog,
    RelayRecord,
    RelayStatus,
    SignedTransaction,
    TxHandle,
    normalize_hash,
)

__all__ = [
    "UINT256_MAX",
    "BridgeEvent",
    "ChainCursor",
    "ConfirmationResult",
    "ConfirmationStatus",
    "Direction",
    "EventFilter",
    "EventIdentity",
    "FunctionCall",
    "ObservationResult",
    "RawLog",
    "RelayRecord",
    "RelayStatus",
    "SignedTransaction",
    "TxHandle",
    "normalize_hash",
]
