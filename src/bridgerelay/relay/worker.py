"""
Relay worker for bridgerelay.

One worker per direction drains the PENDING records of its source chain in
source-event order and mints the bridged amount on the destination chain.
Every mint is signed first, recorded in the ledger with its hash and nonce,
and only then broadcast, so a crash at any point leaves enough on record to
find the transaction again instead of minting twice.
"""

import asyncio
import time
from typing import Dict, List, Optional, Set

from ..chains.abi import mint_call
from ..chains.client import ChainClient
from ..config import WorkerConfig
from ..core.types import (
    ConfirmationResult,
    ConfirmationStatus,
    Direction,
    RelayRecord,
    RelayStatus,
    TxHandle,
)
from ..errors import (
    Alert,
    AlertKind,
    AlertManager,
    ConflictError,
    ConnectionLost,
    ErrorSeverity,
    RelayError,
    RetryPolicy,
    SubmissionError,
)
from ..logging import LogContext, get_logger
from ..storage.ledger import EventLedger, MintAttempt

logger = get_logger(__name__)

# Node messages meaning the nonce was already used by a mined transaction.
_NONCE_USED = ("nonce too low", "nonce has already been used", "replacement transaction underpriced")


class RelayWorker:
    """Mints on the destination chain for one relay direction."""

    def __init__(
        self,
        ledger: EventLedger,
        dest_client: ChainClient,
        direction: Direction,
        contract_address: str,
        config: Optional[WorkerConfig] = None,
        alerts: Optional[AlertManager] = None,
    ):
        self.ledger = ledger
        self.dest_client = dest_client
        self.direction = direction
        self.contract_address = contract_address
        self.config = config or WorkerConfig()
        self.alerts = alerts or AlertManager()
        self.retry_policy = RetryPolicy(
            max_retries=self.config.max_submit_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._inflight: Dict[int, asyncio.Task] = {}
        self._backoff: Dict[int, float] = {}
        self._failures: Dict[int, int] = {}
        self._fresh_nonce: Set[int] = set()
        self._context = LogContext(
            component="relay_worker",
            chain_id=direction.dest_chain_id,
            direction=direction.label,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker loop."""
        if self._running:
            return

        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Relay worker {self.direction.label} started", context=self._context)

    async def stop(self) -> None:
        """Stop the worker.

        A submission already under way reaches its ledger update before the
        loop exits. Confirmation waits are cancelled; their records stay
        SUBMITTED and are reconciled at the next start.
        """
        if not self._running:
            return

        self._running = False
        self.wake()
        if self._task:
            await self._task
            self._task = None
        await self._cancel_inflight()
        logger.info(f"Relay worker {self.direction.label} stopped", context=self._context)

    def wake(self) -> None:
        """Cut the current idle wait short."""
        if self._wake is not None:
            self._wake.set()

    async def _run(self) -> None:
        """Main worker loop."""
        while self._running:
            try:
                await self.reconcile_submitted()
                progressed = await self.drain()
            except ConnectionLost as e:
                logger.warning(
                    f"Destination chain unreachable, pausing: {e}", context=self._context
                )
                progressed = False
            except RelayError as e:
                logger.error(f"Relay worker error: {e}", context=self._context, exception=e)
                progressed = False
            except Exception as e:
                logger.exception(f"Unexpected relay worker error: {e}", context=self._context)
                progressed = False

            if not progressed:
                await self._sleep(self.config.poll_interval)

    async def _sleep(self, seconds: float) -> None:
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    # Submission

    async def drain(self) -> bool:
        """Submit PENDING records in source order until one has to wait.

        Returns True if at least one record left PENDING.
        """
        progressed = False
        for record in self.ledger.next_pending(
            self.direction.source_chain_id, limit=self.config.batch_size
        ):
            if not self._running and self._task is not None:
                break

            record = self.ledger.get(record.record_id)
            if record.status != RelayStatus.PENDING:
                continue

            # Later records wait for this one: mints go out in source order.
            not_before = self._backoff.get(record.record_id, 0.0)
            if time.monotonic() < not_before:
                await self._sleep(not_before - time.monotonic())
                return True

            if not await self.submit(record):
                break
            progressed = True
        return progressed

    async def submit(self, record: RelayRecord) -> bool:
        """Mint for one PENDING record.

        Returns True once the record has left PENDING, False when it stays
        PENDING and should be retried after a backoff.
        """
        context = self._record_context(record)
        nonce: Optional[int] = None

        attempts = self.ledger.attempts(record.record_id)
        if attempts:
            resolved, nonce = await self._resolve_attempts(record, attempts)
            if resolved:
                return True
            if record.record_id in self._fresh_nonce:
                nonce = None

        call = mint_call(self.contract_address, record.event)
        try:
            signed = await self.dest_client.prepare_transaction(call, nonce=nonce)
        except ConnectionLost as e:
            self._schedule_retry(record, str(e))
            return False
        except SubmissionError as e:
            return self._record_failure(record, RelayStatus.PENDING, str(e))

        try:
            record = self.ledger.transition(
                record.record_id,
                RelayStatus.PENDING,
                RelayStatus.SUBMITTED,
                dest_tx_hash=signed.tx_hash,
                dest_nonce=signed.nonce,
                last_error=None,
            )
        except ConflictError as e:
            logger.info(f"Record moved before submission: {e}", context=context)
            return True

        try:
            handle = await self.dest_client.broadcast(signed)
        except ConnectionLost as e:
            # The transaction may or may not have reached the node; it is on
            # record and is looked up again before the next attempt.
            self._move(record, RelayStatus.PENDING, last_error=str(e))
            self._schedule_retry(record, str(e))
            return False
        except SubmissionError as e:
            if any(marker in str(e).lower() for marker in _NONCE_USED):
                self._fresh_nonce.add(record.record_id)
                self._move(record, RelayStatus.PENDING, last_error=str(e))
                self._schedule_retry(record, str(e))
                return False
            return self._record_failure(record, RelayStatus.SUBMITTED, str(e))

        self._fresh_nonce.discard(record.record_id)
        self._failures.pop(record.record_id, None)
        self._backoff.pop(record.record_id, None)
        logger.info(
            f"Submitted mint of {record.event.amount} to {record.event.user}",
            context=LogContext(
                component="relay_worker",
                chain_id=self.direction.dest_chain_id,
                direction=self.direction.label,
                record_id=record.record_id,
                tx_hash=handle.tx_hash,
            ),
        )
        self._track(record, handle)
        return True

    async def _resolve_attempts(self, record: RelayRecord, attempts: List[MintAttempt]):
        """Look up earlier mint transactions of a PENDING record.

        Returns ``(True, None)`` if one of them succeeded or is still pooled
        (the record is then tracked again), otherwise ``(False, nonce)`` with
        the nonce a new transaction must reuse, or None for a fresh one.
        """
        reusable_nonce: Optional[int] = None
        consumed: Set[int] = set()

        for attempt in reversed(attempts):
            receipt = await self.dest_client.get_receipt(attempt.dest_tx_hash)
            if receipt is not None:
                if receipt.get("status") == 0:
                    consumed.add(attempt.dest_nonce)
                    continue
                self._adopt(record, attempt, "earlier mint was mined")
                return True, None

            if await self.dest_client.get_transaction(attempt.dest_tx_hash) is not None:
                self._adopt(record, attempt, "earlier mint is still pending")
                return True, None

            if reusable_nonce is None and attempt.dest_nonce not in consumed:
                reusable_nonce = attempt.dest_nonce

        return False, reusable_nonce

    def _adopt(self, record: RelayRecord, attempt: MintAttempt, reason: str) -> None:
        try:
            record = self.ledger.transition(
                record.record_id,
                RelayStatus.PENDING,
                RelayStatus.SUBMITTED,
                dest_tx_hash=attempt.dest_tx_hash,
                dest_nonce=attempt.dest_nonce,
                detail=reason,
            )
        except ConflictError as e:
            logger.info(f"Record moved while resolving attempts: {e}", context=self._context)
            return

        logger.warning(
            f"Not resubmitting: {reason}",
            context=self._record_context(record, attempt.dest_tx_hash),
        )
        self._track(
            record,
            TxHandle(
                tx_hash=attempt.dest_tx_hash,
                nonce=attempt.dest_nonce,
                chain_id=self.direction.dest_chain_id,
            ),
        )

    # Confirmation

    def _track(self, record: RelayRecord, handle: TxHandle) -> None:
        if record.record_id in self._inflight:
            return
        task = asyncio.create_task(self._confirm(record, handle))
        self._inflight[record.record_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(record.record_id, None))

    async def _confirm(self, record: RelayRecord, handle: TxHandle) -> None:
        context = self._record_context(record, handle.tx_hash)
        try:
            result = await self.dest_client.await_confirmation(
                handle,
                self.config.min_confirmations,
                timeout=self.config.confirmation_timeout,
                poll_interval=self.config.confirmation_poll_interval,
            )
            self.apply_confirmation(record, handle.tx_hash, result)
        except ConnectionLost as e:
            logger.warning(
                f"Lost destination chain while awaiting confirmation: {e}", context=context
            )
        except RelayError as e:
            # The record stays SUBMITTED; the confirmation sweep picks it up again.
            logger.error(
                f"Confirmation tracking failed: {e}", context=context, exception=e
            )

    def apply_confirmation(
        self, record: RelayRecord, tx_hash: str, result: ConfirmationResult
    ) -> None:
        """Move a SUBMITTED record according to the outcome of its mint."""
        context = self._record_context(record, tx_hash)
        if result.status == ConfirmationStatus.CONFIRMED:
            try:
                self.ledger.transition(
                    record.record_id,
                    RelayStatus.SUBMITTED,
                    RelayStatus.CONFIRMED,
                    dest_tx_hash=tx_hash,
                    last_error=None,
                    detail=f"{result.confirmations} confirmations",
                )
            except ConflictError as e:
                logger.info(f"Confirmed record was moved meanwhile: {e}", context=context)
                return
            logger.info(
                f"Mint confirmed with {result.confirmations} confirmations", context=context
            )
        elif result.status == ConfirmationStatus.REVERTED:
            self._record_failure(record, RelayStatus.SUBMITTED, f"mint {tx_hash} reverted")
            self.wake()
        else:
            logger.warning(
                f"No confirmation after {self.config.confirmation_timeout}s, "
                "leaving record submitted",
                context=context,
            )

    async def reconcile_submitted(self) -> None:
        """Reconcile SUBMITTED records no confirmation task is waiting on.

        Runs before any new submission: these are records left by a previous
        run, records whose wait timed out and records re-derived after a
        reorg.
        """
        for record in self.ledger.submitted(self.direction.source_chain_id):
            if record.record_id in self._inflight:
                continue
            context = self._record_context(record)

            if not record.dest_tx_hash:
                self._move(record, RelayStatus.PENDING, last_error="no transaction on record")
                continue

            result = await self.dest_client.check_confirmation(
                record.dest_tx_hash, self.config.min_confirmations
            )
            if result is not None:
                self.apply_confirmation(record, record.dest_tx_hash, result)
                continue

            known = await self.dest_client.get_receipt(record.dest_tx_hash) is not None
            if not known:
                known = await self.dest_client.get_transaction(record.dest_tx_hash) is not None
            if known:
                self._track(
                    record,
                    TxHandle(
                        tx_hash=record.dest_tx_hash,
                        nonce=record.dest_nonce,
                        chain_id=self.direction.dest_chain_id,
                    ),
                )
                continue

            logger.warning(
                f"Mint {record.dest_tx_hash} unknown to the destination chain, "
                "returning record to pending",
                context=context,
            )
            self._move(record, RelayStatus.PENDING, last_error="transaction not found")

    async def wait_for_confirmations(self) -> None:
        """Wait for every outstanding confirmation task."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def _cancel_inflight(self) -> None:
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    # Failure handling

    def _record_failure(self, record: RelayRecord, from_status: RelayStatus, error: str) -> bool:
        """Count a failed submission; FAILED once the budget is spent."""
        context = self._record_context(record)
        exhausted = record.submit_count + 1 >= self.config.max_submit_attempts
        to_status = RelayStatus.FAILED if exhausted else RelayStatus.PENDING

        try:
            updated = self.ledger.transition(
                record.record_id,
                from_status,
                to_status,
                last_error=error,
                increment_submit_count=True,
            )
        except ConflictError as e:
            logger.info(f"Record moved before failure was recorded: {e}", context=context)
            return True

        if exhausted:
            logger.error(
                f"Giving up after {updated.submit_count} failed submissions: {error}",
                context=context,
            )
            self._backoff.pop(record.record_id, None)
            self._failures.pop(record.record_id, None)
            self.alerts.emit(
                Alert(
                    kind=AlertKind.RELAY_FAILED,
                    message=(
                        f"Mint of {record.event.amount} to {record.event.user} failed "
                        f"{updated.submit_count} times; operator action required"
                    ),
                    severity=ErrorSeverity.HIGH,
                    chain_id=self.direction.dest_chain_id,
                    record_id=record.record_id,
                    details={"last_error": error, "event": record.event.to_dict()},
                )
            )
            return True

        logger.warning(
            f"Submission {updated.submit_count}/{self.config.max_submit_attempts} "
            f"failed: {error}",
            context=context,
        )
        self._schedule_retry(updated, error)
        return False

    def _schedule_retry(self, record: RelayRecord, error: str) -> None:
        failures = self._failures.get(record.record_id, 0) + 1
        self._failures[record.record_id] = failures
        delay = self.retry_policy.get_delay(failures)
        self._backoff[record.record_id] = time.monotonic() + delay
        logger.debug(
            f"Retrying in {delay:.2f}s after: {error}", context=self._record_context(record)
        )

    def _move(self, record: RelayRecord, to_status: RelayStatus, last_error: str) -> None:
        try:
            self.ledger.transition(
                record.record_id, record.status, to_status, last_error=last_error
            )
        except ConflictError as e:
            logger.info(f"Record moved meanwhile: {e}", context=self._record_context(record))

    def _record_context(self, record: RelayRecord, tx_hash: Optional[str] = None) -> LogContext:
        return LogContext(
            component="relay_worker",
            chain_id=self.direction.dest_chain_id,
            direction=self.direction.label,
            record_id=record.record_id,
            tx_hash=tx_hash or record.dest_tx_hash,
        )


__all__ = ["RelayWorker"]
