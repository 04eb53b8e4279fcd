"""
Reconciliation scanner for bridgerelay.

One scanner per chain walks the chain history behind the live listener. It
backfills events the listener missed, and it is the component that notices
reorganizations: the block hash stored with the scan cursor must still be
the canonical hash at that height, otherwise everything above the fork base
is orphaned and scanned again.
"""

import asyncio
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..chains.abi import bridge_event_filter, decode_bridge_log, is_bridge_log
from ..chains.client import ChainClient
from ..config import ScannerConfig
from ..core.types import BridgeEvent, ChainCursor, EventIdentity, RelayStatus
from ..errors import (
    Alert,
    AlertKind,
    AlertManager,
    ConflictError,
    ConnectionLost,
    ErrorSeverity,
    RelayError,
    ReorgDepthExceeded,
    ReorgDetected,
    ValidationError,
)
from ..logging import LogContext, get_logger
from ..storage.ledger import EventLedger

logger = get_logger(__name__)


class ReconciliationScanner:
    """Backfills and reorg detection for one chain."""

    def __init__(
        self,
        ledger: EventLedger,
        client: ChainClient,
        contract_address: str,
        config: Optional[ScannerConfig] = None,
        alerts: Optional[AlertManager] = None,
        start_block: Optional[int] = None,
        on_halt: Optional[Callable[[int, ReorgDepthExceeded], None]] = None,
    ):
        self.ledger = ledger
        self.client = client
        self.chain_id = client.chain_id
        self.config = config or ScannerConfig()
        self.alerts = alerts or AlertManager()
        self.start_block = start_block
        self.on_halt = on_halt
        self.event_filter = bridge_event_filter(contract_address)

        self.halted = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._unresolved_alerted: Set[int] = set()
        self._context = LogContext(component="scanner", chain_id=self.chain_id)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scanner loop."""
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Scanner for chain {self.chain_id} started", context=self._context)

    async def stop(self) -> None:
        """Stop the scanner."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info(f"Scanner for chain {self.chain_id} stopped", context=self._context)

    async def _run(self) -> None:
        """Main scanner loop."""
        while self._running:
            try:
                await self.scan_once()
            except ReorgDepthExceeded as e:
                self._halt(e)
                return
            except ConnectionLost as e:
                logger.warning(f"Scan interrupted: {e}", context=self._context)
            except RelayError as e:
                logger.error(f"Scan error: {e}", context=self._context, exception=e)
            except Exception as e:
                logger.exception(f"Unexpected scan error: {e}", context=self._context)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _halt(self, error: ReorgDepthExceeded) -> None:
        self.halted = True
        self._running = False
        logger.critical(f"Halting chain {self.chain_id}: {error}", context=self._context)
        self.alerts.emit(
            Alert(
                kind=AlertKind.REORG_DEPTH_EXCEEDED,
                message=(
                    f"Reorganization on chain {self.chain_id} deeper than "
                    f"{self.config.max_reorg_depth} blocks; processing halted"
                ),
                severity=ErrorSeverity.CRITICAL,
                chain_id=self.chain_id,
                details=error.to_dict(),
            )
        )
        if self.on_halt is not None:
            self.on_halt(self.chain_id, error)

    async def scan_once(self) -> int:
        """One reconciliation pass: reorg check, then scan up to head.

        Returns the number of blocks scanned. Raises ``ReorgDepthExceeded``
        when the chain forked deeper than ``max_reorg_depth``.
        """
        if self.halted:
            raise ReorgDepthExceeded(
                f"Chain {self.chain_id} is halted", chain_id=self.chain_id
            )

        cursor = await self._load_cursor()
        try:
            await self.verify_cursor(cursor)
        except ReorgDetected as e:
            cursor = await self.rollback(cursor, e)

        scanned = 0
        head = await self.client.block_number()
        while cursor.last_scanned_block < head and (self._running or self._task is None):
            from_block = cursor.last_scanned_block + 1
            to_block = min(head, from_block + self.config.batch_size - 1)
            next_cursor = await self.scan_range(cursor, from_block, to_block)
            if next_cursor is None:
                # The range changed under us; retry on the next pass.
                break
            scanned += to_block - from_block + 1
            cursor = next_cursor

        self._check_unresolved(cursor)
        return scanned

    async def _load_cursor(self) -> ChainCursor:
        cursor = self.ledger.get_cursor(self.chain_id)
        if cursor is not None:
            return cursor

        if self.start_block is not None:
            block = self.start_block - 1
        else:
            block = await self.client.block_number()
        block_hash = await self.client.get_block_hash(block) if block >= 0 else None
        cursor = ChainCursor(self.chain_id, block, block_hash)
        self.ledger.save_cursor(cursor)
        logger.info(f"Scan cursor initialized at block {block}", context=self._context)
        return cursor

    async def verify_cursor(self, cursor: ChainCursor) -> None:
        """Raise ``ReorgDetected`` if the cursor block is no longer canonical."""
        if cursor.last_scanned_block_hash is None:
            return
        actual = await self.client.get_block_hash(cursor.last_scanned_block)
        if actual != cursor.last_scanned_block_hash:
            raise ReorgDetected(
                f"Block {cursor.last_scanned_block} on chain {self.chain_id} changed from "
                f"{cursor.last_scanned_block_hash} to {actual}",
                chain_id=self.chain_id,
                block_number=cursor.last_scanned_block,
                expected_hash=cursor.last_scanned_block_hash,
                actual_hash=actual,
            )

    async def rollback(self, cursor: ChainCursor, reorg: ReorgDetected) -> ChainCursor:
        """Find the fork base, orphan everything above it and rewind the cursor."""
        logger.warning(str(reorg), context=self._context)
        tip = cursor.last_scanned_block
        max_depth = self.config.max_reorg_depth

        fork_base: Optional[Tuple[int, Optional[str]]] = None
        for number, stored_hash in self.ledger.checkpoints(self.chain_id, below=tip):
            if tip - number > max_depth:
                break
            if await self.client.get_block_hash(number) == stored_hash:
                fork_base = (number, stored_hash)
                break

        if fork_base is None:
            oldest = tip - max_depth
            checkpoints = self.ledger.checkpoints(self.chain_id, below=tip)
            if checkpoints and checkpoints[-1][0] <= oldest:
                raise ReorgDepthExceeded(
                    f"No canonical checkpoint within {max_depth} blocks of {tip} "
                    f"on chain {self.chain_id}",
                    chain_id=self.chain_id,
                    depth=tip - checkpoints[-1][0],
                    max_depth=max_depth,
                )
            # History shorter than the window: rescan all of it.
            base = max(oldest, (self.start_block - 1) if self.start_block is not None else -1)
            fork_base = (base, await self.client.get_block_hash(base) if base >= 0 else None)

        base, base_hash = fork_base
        orphaned = self.ledger.orphan_from(
            self.chain_id, base + 1, reason=f"reorg below block {tip}, fork base {base}"
        )
        self.ledger.prune_checkpoints(self.chain_id, above=base)
        rewound = ChainCursor(self.chain_id, base, base_hash)
        self.ledger.save_cursor(rewound)

        logger.warning(
            f"Rolled back to block {base} (depth {tip - base}), "
            f"orphaned {len(orphaned)} records",
            context=self._context,
        )
        return rewound

    async def scan_range(
        self, cursor: ChainCursor, from_block: int, to_block: int
    ) -> Optional[ChainCursor]:
        """Reconcile the ledger with the canonical logs of one block range.

        Returns the advanced cursor, or None if the range end changed while
        it was being read.
        """
        end_hash = await self.client.get_block_hash(to_block)
        logs = await self.client.get_logs(self.event_filter, from_block, to_block)
        if end_hash is None or await self.client.get_block_hash(to_block) != end_hash:
            return None

        events: Dict[EventIdentity, BridgeEvent] = {}
        for log in logs:
            if log.removed or not is_bridge_log(log):
                continue
            try:
                event = decode_bridge_log(log, self.chain_id)
            except ValidationError as e:
                logger.warning(f"Skipping malformed Bridge log: {e}", context=self._context)
                continue
            events[event.identity] = event

        # Records observed from blocks that are no longer canonical.
        for record in self.ledger.records_in_range(self.chain_id, from_block, to_block):
            canonical = events.get(record.event.identity)
            if canonical is None or canonical.block_hash != record.event.block_hash:
                self._orphan(record, "event not in canonical logs")

        for event in sorted(events.values(), key=lambda e: e.order_key):
            existing = self.ledger.find(*event.identity)
            if (
                existing is not None
                and existing.status != RelayStatus.ORPHANED
                and existing.event.block_hash != event.block_hash
            ):
                self._orphan(existing, f"event moved to block {event.block_number}")
            result = self.ledger.record_observed(event)
            if result.inserted:
                logger.info(
                    f"Backfilled event at block {event.block_number}",
                    context=LogContext(
                        component="scanner",
                        chain_id=self.chain_id,
                        record_id=result.record.record_id,
                        tx_hash=event.tx_hash,
                    ),
                )

        advanced = cursor.advanced_to(to_block, end_hash)
        self.ledger.save_cursor(advanced)
        self.ledger.prune_checkpoints(self.chain_id, keep=self.config.max_reorg_depth + 1)
        return advanced

    def _orphan(self, record, reason: str) -> None:
        try:
            self.ledger.orphan(record, reason)
        except ConflictError:
            return
        logger.warning(
            f"Orphaned record: {reason}",
            context=LogContext(
                component="scanner", chain_id=self.chain_id, record_id=record.record_id
            ),
        )

    def _check_unresolved(self, cursor: ChainCursor) -> List[int]:
        """Alert on orphans buried deeper than any reorg the scanner tolerates."""
        horizon = cursor.last_scanned_block - self.config.max_reorg_depth
        alerted = []
        for record in self.ledger.list_by_status(
            RelayStatus.ORPHANED, source_chain_id=self.chain_id
        ):
            if record.event.block_number > horizon or record.record_id in self._unresolved_alerted:
                continue
            self._unresolved_alerted.add(record.record_id)
            alerted.append(record.record_id)
            self.alerts.emit(
                Alert(
                    kind=AlertKind.ORPHANED_UNRESOLVED,
                    message=(
                        f"Bridge event {record.event.tx_hash}:{record.event.log_index} "
                        "did not reappear on the canonical chain"
                    ),
                    severity=ErrorSeverity.HIGH,
                    chain_id=self.chain_id,
                    record_id=record.record_id,
                    details={"reason": record.last_error, "event": record.event.to_dict()},
                )
            )
        return alerted


__all__ = ["ReconciliationScanner"]
