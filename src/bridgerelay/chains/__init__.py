"""
Chain integration for bridgerelay.

This package provides:
- The ``ChainClient`` contract and its web3.py implementation
- Decoding of ``Bridge`` logs and construction of ``mint`` calls
- Relayer key management
"""

from .abi import (
    BRIDGE_EVENT_SIGNATURE,
    BRIDGE_EVENT_TOPIC,
    TOKEN_ABI,
    bridge_event_filter,
    decode_bridge_log,
    is_bridge_log,
    mint_call,
)
from .client import ChainClient, Web3ChainClient
from .keys import KeyManager

__all__ = [
    "BRIDGE_EVENT_SIGNATURE",
    "BRIDGE_EVENT_TOPIC",
    "TOKEN_ABI",
    "bridge_event_filter",
    "decode_bridge_log",
    "is_bridge_log",
    "mint_call",
    "ChainClient",
    "Web3ChainClient",
    "KeyManager",
]
