"""
Relay service for bridgerelay.

Wires both directions of the bridge: per chain a live listener and a
reconciliation scanner, per direction a relay worker, all sharing one event
ledger. Also the operator surface: status, re-submission of FAILED records,
the recovery pass and record inspection.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional

from ..chains.client import ChainClient, Web3ChainClient
from ..chains.keys import KeyManager
from ..config import ChainConfig, RelayConfig
from ..core.types import Direction, RelayRecord
from ..errors import AlertManager, ConfigurationError, ReorgDepthExceeded
from ..logging import LogContext, get_logger
from ..storage.ledger import EventLedger
from .listener import EventListener
from .scanner import ReconciliationScanner
from .worker import RelayWorker

logger = get_logger(__name__)


class BridgeRelayService:
    """Both relay directions over a shared ledger."""

    def __init__(
        self,
        config: RelayConfig,
        clients: Mapping[int, ChainClient],
        ledger: Optional[EventLedger] = None,
        alerts: Optional[AlertManager] = None,
    ):
        config.validate()
        self.config = config
        self.chains: Dict[int, ChainConfig] = {
            config.chain_a.chain_id: config.chain_a,
            config.chain_b.chain_id: config.chain_b,
        }
        missing = set(self.chains) - set(clients)
        if missing:
            raise ConfigurationError(
                f"No chain client for chain ids {sorted(missing)}", config_key="clients"
            )

        self.clients = dict(clients)
        self.alerts = alerts or AlertManager()
        a, b = config.chain_a.chain_id, config.chain_b.chain_id
        self.directions = [Direction(a, b), Direction(b, a)]
        self.ledger = ledger or EventLedger(
            config.ledger, routes={d.source_chain_id: d.dest_chain_id for d in self.directions}
        )

        self.listeners: Dict[int, EventListener] = {}
        self.scanners: Dict[int, ReconciliationScanner] = {}
        for chain_id, chain in self.chains.items():
            self.listeners[chain_id] = EventListener(
                self.ledger,
                self.clients[chain_id],
                chain.contract_address,
                alerts=self.alerts,
                poll_interval=chain.poll_interval,
                max_range=chain.max_log_range,
            )
            self.scanners[chain_id] = ReconciliationScanner(
                self.ledger,
                self.clients[chain_id],
                chain.contract_address,
                config=config.scanner,
                alerts=self.alerts,
                start_block=chain.start_block,
                on_halt=self._on_halt,
            )

        # Workers are keyed by source chain.
        self.workers: Dict[int, RelayWorker] = {
            d.source_chain_id: RelayWorker(
                self.ledger,
                self.clients[d.dest_chain_id],
                d,
                self.chains[d.dest_chain_id].contract_address,
                config=config.worker,
                alerts=self.alerts,
            )
            for d in self.directions
        }

        self.halted: Dict[int, str] = {}
        self._running = False
        self._stop_requested: Optional[asyncio.Event] = None
        self._halt_tasks: List[asyncio.Task] = []

    @classmethod
    def from_config(
        cls, config: RelayConfig, keys: Optional[KeyManager] = None, **kwargs
    ) -> "BridgeRelayService":
        """Service talking JSON-RPC to the configured endpoints."""
        clients = {
            chain.chain_id: Web3ChainClient(chain, keys=keys)
            for chain in (config.chain_a, config.chain_b)
        }
        return cls(config, clients, **kwargs)

    @property
    def is_running(self) -> bool:
        return self._running

    def open(self) -> "BridgeRelayService":
        """Open the ledger; enough for the operator commands."""
        self.ledger.open()
        return self

    def close(self) -> None:
        self.ledger.close()

    async def start(self) -> None:
        """Start workers, scanners and listeners."""
        if self._running:
            return

        self.open()
        for client in self.clients.values():
            if isinstance(client, Web3ChainClient):
                await client.verify_chain_id()

        self._running = True
        self._stop_requested = asyncio.Event()
        # Workers first: they reconcile what a previous run left SUBMITTED.
        for worker in self.workers.values():
            await worker.start()
        for scanner in self.scanners.values():
            await scanner.start()
        for listener in self.listeners.values():
            await listener.start()
        logger.info(
            f"Relay running: {', '.join(d.label for d in self.directions)}",
            context=LogContext(component="service"),
        )

    async def stop(self) -> None:
        """Stop everything; in-progress submissions reach the ledger first."""
        if not self._running:
            return

        self._running = False
        for listener in self.listeners.values():
            await listener.stop()
        for scanner in self.scanners.values():
            await scanner.stop()
        for worker in self.workers.values():
            await worker.stop()
        if self._halt_tasks:
            await asyncio.gather(*self._halt_tasks, return_exceptions=True)
            self._halt_tasks.clear()
        logger.info("Relay stopped", context=LogContext(component="service"))

    def request_stop(self) -> None:
        """Ask ``run_forever`` to shut down (safe from a signal handler)."""
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def run_forever(self) -> None:
        """Run until ``request_stop`` is called, then shut down gracefully."""
        await self.start()
        try:
            await self._stop_requested.wait()
        finally:
            await self.stop()
            self.close()

    def _on_halt(self, chain_id: int, error: ReorgDepthExceeded) -> None:
        """Stop the processing of events from a chain that forked too deep."""
        self.halted[chain_id] = str(error)
        self._halt_tasks.append(asyncio.create_task(self._halt_chain(chain_id)))

    async def _halt_chain(self, chain_id: int) -> None:
        await self.listeners[chain_id].stop()
        await self.workers[chain_id].stop()
        logger.critical(
            f"Chain {chain_id} halted pending operator review",
            context=LogContext(component="service", chain_id=chain_id),
        )

    # Operator surface

    def status(self) -> Dict[str, Any]:
        """Counts, outstanding records, scan cursors and halted chains."""
        cursors = {}
        for chain_id in self.chains:
            cursor = self.ledger.get_cursor(chain_id)
            cursors[str(chain_id)] = (
                {
                    "last_scanned_block": cursor.last_scanned_block,
                    "last_scanned_block_hash": cursor.last_scanned_block_hash,
                }
                if cursor
                else None
            )
        return {
            "counts": self.ledger.stats(),
            "outstanding": [record.to_dict() for record in self.ledger.outstanding()],
            "cursors": cursors,
            "halted": {str(chain_id): reason for chain_id, reason in self.halted.items()},
        }

    def resubmit(self, record_id: int) -> RelayRecord:
        """Return a FAILED record to PENDING with a fresh retry budget."""
        record = self.ledger.requeue(record_id)
        logger.info(
            "Record requeued by operator",
            context=LogContext(component="service", record_id=record_id),
        )
        self._wake_worker(record)
        return record

    def rederive_failed(self, source_chain_id: Optional[int] = None) -> List[RelayRecord]:
        """Recovery pass: every FAILED record back to PENDING."""
        records = self.ledger.rederive_failed(source_chain_id)
        logger.info(
            f"Recovery pass requeued {len(records)} failed records",
            context=LogContext(component="service", chain_id=source_chain_id),
        )
        for record in records:
            self._wake_worker(record)
        return records

    def show(self, record_id: int) -> Dict[str, Any]:
        """A record with its mint attempts and transition history."""
        data = self.ledger.get(record_id).to_dict()
        data["attempts"] = [
            {"dest_tx_hash": a.dest_tx_hash, "dest_nonce": a.dest_nonce, "created_at": a.created_at}
            for a in self.ledger.attempts(record_id)
        ]
        data["history"] = self.ledger.history(record_id)
        return data

    def _wake_worker(self, record: RelayRecord) -> None:
        worker = self.workers.get(record.event.source_chain_id)
        if worker is not None:
            worker.wake()


__all__ = ["BridgeRelayService"]
