"""
Relay pipeline for bridgerelay.

This package provides:
- The live event listener and the reconciliation scanner, one per chain
- The relay worker, one per direction
- The service wiring both directions over one ledger
"""

from .listener import EventListener
from .scanner import ReconciliationScanner
from .service import BridgeRelayService
from .worker import RelayWorker

__all__ = [
    "BridgeRelayService",
    "EventListener",
    "ReconciliationScanner",
    "RelayWorker",
]
