"""
Live event listener for bridgerelay.

Pumps the log subscription of one chain into the event ledger. The listener
is the fast path only: duplicates are absorbed by the ledger, and anything it
misses while disconnected is backfilled by the reconciliation scanner.
"""

import asyncio
from typing import Optional

from ..chains.abi import bridge_event_filter, decode_bridge_log, is_bridge_log
from ..chains.client import ChainClient
from ..core.types import ObservationResult, RawLog
from ..errors import (
    Alert,
    AlertKind,
    AlertManager,
    ConnectionLost,
    ErrorSeverity,
    RelayError,
    ValidationError,
)
from ..logging import LogContext, get_logger
from ..storage.ledger import EventLedger

logger = get_logger(__name__)


class EventListener:
    """Records ``Bridge`` events of one chain as they are mined."""

    def __init__(
        self,
        ledger: EventLedger,
        client: ChainClient,
        contract_address: str,
        alerts: Optional[AlertManager] = None,
        poll_interval: float = 2.0,
        max_range: int = 1000,
        restart_delay: float = 5.0,
    ):
        self.ledger = ledger
        self.client = client
        self.chain_id = client.chain_id
        self.alerts = alerts or AlertManager()
        self.poll_interval = poll_interval
        self.max_range = max_range
        self.restart_delay = restart_delay
        self.event_filter = bridge_event_filter(contract_address)

        self.observed = 0
        self._resume_block: Optional[int] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._context = LogContext(component="listener", chain_id=self.chain_id)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start listening."""
        if self._running:
            return

        self._running = True
        if self._resume_block is None:
            try:
                self._resume_block = await self.client.block_number()
            except ConnectionLost as e:
                logger.warning(f"Head unavailable at start: {e}", context=self._context)
        self._task = asyncio.create_task(self._run())
        logger.info(f"Listener for chain {self.chain_id} started", context=self._context)

    async def stop(self) -> None:
        """Stop listening."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Listener for chain {self.chain_id} stopped", context=self._context)

    async def _run(self) -> None:
        """Subscription loop; restarts the subscription when it is lost."""
        while self._running:
            try:
                if self._resume_block is None:
                    self._resume_block = await self.client.block_number()
                async for log in self.client.subscribe(
                    self.event_filter,
                    from_block=self._resume_block,
                    poll_interval=self.poll_interval,
                    max_range=self.max_range,
                    on_progress=self._advance,
                ):
                    self.handle_log(log)
                    # Resume at the last delivered block; the ledger drops repeats.
                    self._resume_block = log.block_number
            except ConnectionLost as e:
                logger.error(f"Subscription lost: {e}", context=self._context)
                self.alerts.emit(
                    Alert(
                        kind=AlertKind.SUBSCRIPTION_LOST,
                        message=(
                            f"Live subscription on chain {self.chain_id} lost; "
                            f"retrying in {self.restart_delay}s"
                        ),
                        severity=ErrorSeverity.MEDIUM,
                        chain_id=self.chain_id,
                        details=e.to_dict(),
                    )
                )
            except RelayError as e:
                logger.error(f"Listener error: {e}", context=self._context, exception=e)

            if self._running:
                await asyncio.sleep(self.restart_delay)

    def _advance(self, next_block: int) -> None:
        self._resume_block = next_block

    def handle_log(self, log: RawLog) -> Optional[ObservationResult]:
        """Decode one delivered log and record it."""
        if log.removed:
            # Reorged away; the scanner orphans whatever was recorded from it.
            logger.debug(
                f"Ignoring removed log {log.transaction_hash}:{log.log_index}",
                context=self._context,
            )
            return None
        if not is_bridge_log(log):
            return None

        try:
            event = decode_bridge_log(log, self.chain_id)
        except ValidationError as e:
            logger.warning(f"Skipping malformed Bridge log: {e}", context=self._context)
            return None

        result = self.ledger.record_observed(event)
        if result.inserted:
            self.observed += 1
        return result


__all__ = ["EventListener"]
