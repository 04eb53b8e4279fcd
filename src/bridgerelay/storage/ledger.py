"""Event ledger for bridgerelay.

The ledger is the only state shared between the relay's tasks. It keeps one
``RelayRecord`` per observed bridge event, keyed by ``(source chain, tx hash,
log index)``, and every status change goes through ``transition``: a
compare-and-swap that fails with ``ConflictError`` when another task moved
the record first. It also stores the reconciliation cursors and block-hash
checkpoints the scanners need to detect reorganizations.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ..config import LedgerConfig
from ..core.types import (
    BridgeEvent,
    ChainCursor,
    ObservationResult,
    RelayRecord,
    RelayStatus,
    normalize_hash,
)
from ..errors import ConflictError, RecordNotFound, ValidationError
from ..logging import LogContext, get_logger
from .database import SQLiteBackend

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[RelayStatus, Tuple[RelayStatus, ...]] = {
    # PENDING -> PENDING records a failed attempt that never produced a transaction.
    RelayStatus.PENDING: (
        RelayStatus.PENDING,
        RelayStatus.SUBMITTED,
        RelayStatus.FAILED,
        RelayStatus.ORPHANED,
    ),
    RelayStatus.SUBMITTED: (
        RelayStatus.CONFIRMED,
        RelayStatus.PENDING,
        RelayStatus.FAILED,
        RelayStatus.ORPHANED,
    ),
    RelayStatus.CONFIRMED: (RelayStatus.ORPHANED,),
    RelayStatus.FAILED: (RelayStatus.PENDING, RelayStatus.ORPHANED),
    RelayStatus.ORPHANED: (RelayStatus.PENDING,),
}

_UNSET: Any = object()

_RECORD_COLUMNS = (
    "record_id, source_chain_id, tx_hash, log_index, user, amount, block_number, "
    "block_hash, dest_chain_id, status, dest_tx_hash, dest_nonce, submit_count, "
    "last_error, created_at, updated_at"
)


@dataclass(frozen=True)
class MintAttempt:
    """A destination transaction signed for a record."""

    dest_tx_hash: str
    dest_nonce: int
    created_at: float


def _row_to_record(row: Dict[str, Any]) -> RelayRecord:
    event = BridgeEvent(
        source_chain_id=row["source_chain_id"],
        tx_hash=row["tx_hash"],
        log_index=row["log_index"],
        user=row["user"],
        amount=int(row["amount"]),
        block_number=row["block_number"],
        block_hash=row["block_hash"],
    )
    return RelayRecord(
        record_id=row["record_id"],
        event=event,
        dest_chain_id=row["dest_chain_id"],
        status=RelayStatus(row["status"]),
        dest_tx_hash=row["dest_tx_hash"],
        dest_nonce=row["dest_nonce"],
        submit_count=row["submit_count"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class EventLedger:
    """Durable, identity-keyed store of relay records."""

    def __init__(
        self,
        config: LedgerConfig,
        routes: Mapping[int, int],
        page_size: int = 100,
    ):
        """
        Args:
            config: storage configuration
            routes: source chain id -> destination chain id
            page_size: rows fetched per page by the lazy iterators
        """
        self.config = config
        self.routes = dict(routes)
        self.page_size = page_size
        self.db = SQLiteBackend(config)

    def open(self) -> "EventLedger":
        self.db.connect()
        return self

    def close(self) -> None:
        self.db.disconnect()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Observation

    def record_observed(self, event: BridgeEvent) -> ObservationResult:
        """Record an observed event.

        Idempotent per event identity. An ORPHANED record whose burn is seen
        again on the canonical chain is re-derived: its block coordinates and
        log index are replaced and it returns to PENDING, keeping its mint
        attempts.
        """
        dest_chain_id = self.routes.get(event.source_chain_id)
        if dest_chain_id is None:
            raise ValidationError(
                f"No relay route from chain {event.source_chain_id}",
                field="source_chain_id",
                value=event.source_chain_id,
            )

        now = time.time()
        with self.db.transaction():
            existing = self.find(*event.identity)
            if existing is not None and existing.status != RelayStatus.ORPHANED:
                return ObservationResult(inserted=False, record=existing)

            predecessor = self._find_reincluded(event)
            if predecessor is not None:
                if predecessor.status != RelayStatus.ORPHANED:
                    predecessor = self.orphan(
                        predecessor, f"transaction re-included in block {event.block_number}"
                    )
                record = self._rederive(predecessor, event, now, occupant=existing)
                return ObservationResult(inserted=False, record=record, rederived=True)

            if existing is not None:
                # An orphan of another log in the same transaction holds this index.
                self._release_log_index(existing)

            result = self.db.execute_query(
                """
                INSERT INTO relay_records (
                    source_chain_id, tx_hash, log_index, user, amount, block_number,
                    block_hash, dest_chain_id, status, submit_count, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    event.source_chain_id,
                    event.tx_hash,
                    event.log_index,
                    event.user,
                    str(event.amount),
                    event.block_number,
                    event.block_hash,
                    dest_chain_id,
                    RelayStatus.PENDING.value,
                    now,
                    now,
                ),
            )

            record_id = result.last_row_id
            self._log_transition(record_id, None, RelayStatus.PENDING, None, "observed")
            record = self.get(record_id)
            logger.info(
                f"Observed bridge of {event.amount} for {event.user} "
                f"at block {event.block_number}",
                context=LogContext(
                    component="ledger",
                    chain_id=event.source_chain_id,
                    record_id=record_id,
                    tx_hash=event.tx_hash,
                ),
            )
            return ObservationResult(inserted=True, record=record)

    def _find_reincluded(self, event: BridgeEvent) -> Optional[RelayRecord]:
        """The record an event re-derives after its transaction was re-included.

        A reorganization can place the same burn transaction in another block
        and at another log index. Any record of that transaction with the same
        payload that is ORPHANED, or that still points at a different block,
        stands for the same burn. The exact log index is preferred.
        """
        return self._fetch_one(
            "WHERE source_chain_id = ? AND tx_hash = ? AND user = ? AND amount = ? "
            "AND (status = ? OR block_hash != ?) "
            "ORDER BY log_index = ? DESC, log_index LIMIT 1",
            (
                event.source_chain_id,
                event.tx_hash,
                event.user,
                str(event.amount),
                RelayStatus.ORPHANED.value,
                event.block_hash,
                event.log_index,
            ),
        )

    def _release_log_index(self, orphan: RelayRecord) -> None:
        """Move an orphan off its log index, past every index of its transaction."""
        self.db.execute_query(
            """
            UPDATE relay_records
               SET log_index = (
                   SELECT MAX(log_index) + 1 FROM relay_records
                    WHERE source_chain_id = ? AND tx_hash = ?)
             WHERE record_id = ?
            """,
            (orphan.event.source_chain_id, orphan.event.tx_hash, orphan.record_id),
        )
        logger.debug(
            f"Released log index {orphan.event.log_index} of orphaned record",
            context=LogContext(
                component="ledger",
                chain_id=orphan.event.source_chain_id,
                record_id=orphan.record_id,
            ),
        )

    def _rederive(
        self,
        orphan: RelayRecord,
        event: BridgeEvent,
        now: float,
        occupant: Optional[RelayRecord] = None,
    ) -> RelayRecord:
        if occupant is not None and occupant.record_id != orphan.record_id:
            self._release_log_index(occupant)
        self.db.execute_query(
            """
            UPDATE relay_records
               SET log_index = ?, block_number = ?, block_hash = ?, status = ?,
                   last_error = NULL, updated_at = ?
             WHERE record_id = ? AND status = ?
            """,
            (
                event.log_index,
                event.block_number,
                event.block_hash,
                RelayStatus.PENDING.value,
                now,
                orphan.record_id,
                RelayStatus.ORPHANED.value,
            ),
        )
        self._log_transition(
            orphan.record_id,
            RelayStatus.ORPHANED,
            RelayStatus.PENDING,
            orphan.dest_tx_hash,
            f"re-derived from block {event.block_number} log {event.log_index} "
            f"({event.block_hash})",
        )
        logger.info(
            f"Re-derived orphaned record from canonical block {event.block_number}",
            context=LogContext(
                component="ledger",
                chain_id=event.source_chain_id,
                record_id=orphan.record_id,
            ),
        )
        return self.get(orphan.record_id)

    # Transitions

    def transition(
        self,
        record_id: int,
        from_status: RelayStatus,
        to_status: RelayStatus,
        *,
        dest_tx_hash: Optional[str] = _UNSET,
        dest_nonce: Optional[int] = _UNSET,
        last_error: Optional[str] = _UNSET,
        increment_submit_count: bool = False,
        reset_submit_count: bool = False,
        detail: Optional[str] = None,
    ) -> RelayRecord:
        """Compare-and-swap the status of a record.

        Raises ``ConflictError`` if the record is not currently in
        ``from_status`` and ``RecordNotFound`` if it does not exist. A
        ``dest_tx_hash`` given together with ``dest_nonce`` is also kept as a
        mint attempt of the record.
        """
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise ValidationError(
                f"Illegal transition {from_status.value} -> {to_status.value}",
                field="status",
                value=(from_status.value, to_status.value),
            )

        assignments = ["status = ?", "updated_at = ?"]
        values: List[Any] = [to_status.value, time.time()]
        if dest_tx_hash is not _UNSET:
            dest_tx_hash = normalize_hash(dest_tx_hash) if dest_tx_hash else None
            assignments.append("dest_tx_hash = ?")
            values.append(dest_tx_hash)
        if dest_nonce is not _UNSET:
            assignments.append("dest_nonce = ?")
            values.append(dest_nonce)
        if last_error is not _UNSET:
            assignments.append("last_error = ?")
            values.append(last_error)
        if increment_submit_count:
            assignments.append("submit_count = submit_count + 1")
        if reset_submit_count:
            assignments.append("submit_count = 0")

        with self.db.transaction():
            result = self.db.execute_query(
                f"UPDATE relay_records SET {', '.join(assignments)} "
                "WHERE record_id = ? AND status = ?",
                (*values, record_id, from_status.value),
            )
            if result.row_count != 1:
                current = self._fetch_one("WHERE record_id = ?", (record_id,))
                if current is None:
                    raise RecordNotFound(record_id)
                raise ConflictError(
                    f"Record {record_id} is {current.status.value}, "
                    f"expected {from_status.value}",
                    record_id=record_id,
                    expected_status=from_status.value,
                    actual_status=current.status.value,
                )

            if dest_tx_hash not in (_UNSET, None) and dest_nonce not in (_UNSET, None):
                self.db.execute_query(
                    "INSERT OR IGNORE INTO mint_attempts "
                    "(record_id, dest_tx_hash, dest_nonce, created_at) VALUES (?, ?, ?, ?)",
                    (record_id, dest_tx_hash, dest_nonce, time.time()),
                )

            record = self._fetch_one("WHERE record_id = ?", (record_id,))
            self._log_transition(
                record_id,
                from_status,
                to_status,
                record.dest_tx_hash,
                detail or (last_error if last_error is not _UNSET else None),
            )

        logger.debug(
            f"Record {record_id}: {from_status.value} -> {to_status.value}",
            context=LogContext(
                component="ledger",
                chain_id=record.event.source_chain_id,
                record_id=record_id,
                tx_hash=record.dest_tx_hash,
            ),
        )
        return record

    def requeue(self, record_id: int) -> RelayRecord:
        """Operator re-submission: FAILED -> PENDING with a fresh retry budget.

        Mint attempts are kept, so the worker still checks earlier
        transactions before sending a new one.
        """
        return self.transition(
            record_id,
            RelayStatus.FAILED,
            RelayStatus.PENDING,
            last_error=None,
            reset_submit_count=True,
            detail="requeued by operator",
        )

    def rederive_failed(self, source_chain_id: Optional[int] = None) -> List[RelayRecord]:
        """Recovery pass: return every FAILED record to PENDING."""
        requeued = []
        for record in self.list_by_status(RelayStatus.FAILED, source_chain_id=source_chain_id):
            try:
                requeued.append(self.requeue(record.record_id))
            except ConflictError:
                continue
        return requeued

    def orphan_from(self, chain_id: int, fork_block: int, reason: str = "") -> List[RelayRecord]:
        """Orphan every record of ``chain_id`` at or above ``fork_block``."""
        orphaned = []
        with self.db.transaction():
            candidates = self._fetch_many(
                "WHERE source_chain_id = ? AND block_number >= ? AND status != ? "
                "ORDER BY block_number, log_index",
                (chain_id, fork_block, RelayStatus.ORPHANED.value),
            )
            for record in candidates:
                orphaned.append(
                    self.orphan(record, reason or f"reorg at block {fork_block}")
                )
        return orphaned

    def orphan(self, record: RelayRecord, reason: str) -> RelayRecord:
        """Mark one record ORPHANED from its current status."""
        return self.transition(
            record.record_id,
            record.status,
            RelayStatus.ORPHANED,
            last_error=reason,
        )

    # Queries

    def get(self, record_id: int) -> RelayRecord:
        record = self._fetch_one("WHERE record_id = ?", (record_id,))
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def find(self, source_chain_id: int, tx_hash: str, log_index: int) -> Optional[RelayRecord]:
        return self._fetch_one(
            "WHERE source_chain_id = ? AND tx_hash = ? AND log_index = ?",
            (source_chain_id, normalize_hash(tx_hash), log_index),
        )

    def next_pending(
        self, source_chain_id: int, limit: Optional[int] = None
    ) -> Iterator[RelayRecord]:
        """Lazily yield PENDING records of one direction in source-event order.

        Records are read page by page, keyed on ``(block_number, log_index)``.
        """
        last_key = (-1, -1)
        remaining = limit
        while remaining is None or remaining > 0:
            page_size = self.page_size if remaining is None else min(self.page_size, remaining)
            page = self._fetch_many(
                "WHERE source_chain_id = ? AND status = ? "
                "AND (block_number > ? OR (block_number = ? AND log_index > ?)) "
                "ORDER BY block_number, log_index LIMIT ?",
                (
                    source_chain_id,
                    RelayStatus.PENDING.value,
                    last_key[0],
                    last_key[0],
                    last_key[1],
                    page_size,
                ),
            )
            if not page:
                return
            for record in page:
                yield record
            last_key = page[-1].event.order_key
            if remaining is not None:
                remaining -= len(page)
            if len(page) < page_size:
                return

    def list_by_status(
        self, *statuses: RelayStatus, source_chain_id: Optional[int] = None
    ) -> List[RelayRecord]:
        if not statuses:
            statuses = tuple(RelayStatus)
        clauses = [f"status IN ({', '.join('?' for _ in statuses)})"]
        params: List[Any] = [status.value for status in statuses]
        if source_chain_id is not None:
            clauses.append("source_chain_id = ?")
            params.append(source_chain_id)
        return self._fetch_many(
            f"WHERE {' AND '.join(clauses)} ORDER BY source_chain_id, block_number, log_index",
            params,
        )

    def submitted(self, source_chain_id: int) -> List[RelayRecord]:
        return self.list_by_status(RelayStatus.SUBMITTED, source_chain_id=source_chain_id)

    def outstanding(self) -> List[RelayRecord]:
        """Records that are neither confirmed nor cleanly in flight."""
        return self.list_by_status(
            RelayStatus.PENDING,
            RelayStatus.SUBMITTED,
            RelayStatus.FAILED,
            RelayStatus.ORPHANED,
        )

    def records_in_range(
        self, chain_id: int, from_block: int, to_block: int
    ) -> List[RelayRecord]:
        """Non-orphaned records of ``chain_id`` within an inclusive block range."""
        return self._fetch_many(
            "WHERE source_chain_id = ? AND block_number BETWEEN ? AND ? AND status != ? "
            "ORDER BY block_number, log_index",
            (chain_id, from_block, to_block, RelayStatus.ORPHANED.value),
        )

    def attempts(self, record_id: int) -> List[MintAttempt]:
        """Mint transactions signed for a record, oldest first."""
        rows = self.db.execute_query(
            "SELECT dest_tx_hash, dest_nonce, created_at FROM mint_attempts "
            "WHERE record_id = ? ORDER BY created_at, rowid",
            (record_id,),
        ).rows
        return [MintAttempt(**row) for row in rows]

    def history(self, record_id: int) -> List[Dict[str, Any]]:
        """Status transitions of a record, oldest first."""
        return self.db.execute_query(
            "SELECT from_status, to_status, dest_tx_hash, detail, created_at "
            "FROM record_transitions WHERE record_id = ? ORDER BY id",
            (record_id,),
        ).rows

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Record counts per source chain and status."""
        rows = self.db.execute_query(
            "SELECT source_chain_id, status, COUNT(*) AS count FROM relay_records "
            "GROUP BY source_chain_id, status"
        ).rows
        stats: Dict[str, Dict[str, int]] = {}
        for row in rows:
            stats.setdefault(str(row["source_chain_id"]), {})[row["status"]] = row["count"]
        return stats

    # Cursors and checkpoints

    def get_cursor(self, chain_id: int) -> Optional[ChainCursor]:
        rows = self.db.execute_query(
            "SELECT chain_id, last_scanned_block, last_scanned_block_hash "
            "FROM chain_cursors WHERE chain_id = ?",
            (chain_id,),
        ).rows
        return ChainCursor(**rows[0]) if rows else None

    def save_cursor(self, cursor: ChainCursor) -> None:
        with self.db.transaction():
            self.db.execute_query(
                """
                INSERT INTO chain_cursors (chain_id, last_scanned_block,
                                           last_scanned_block_hash, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(chain_id) DO UPDATE SET
                    last_scanned_block = excluded.last_scanned_block,
                    last_scanned_block_hash = excluded.last_scanned_block_hash,
                    updated_at = excluded.updated_at
                """,
                (
                    cursor.chain_id,
                    cursor.last_scanned_block,
                    cursor.last_scanned_block_hash,
                    time.time(),
                ),
            )
            if cursor.last_scanned_block_hash:
                self.save_checkpoint(
                    cursor.chain_id, cursor.last_scanned_block, cursor.last_scanned_block_hash
                )

    def save_checkpoint(self, chain_id: int, block_number: int, block_hash: str) -> None:
        self.db.execute_query(
            "INSERT OR REPLACE INTO scan_checkpoints (chain_id, block_number, block_hash) "
            "VALUES (?, ?, ?)",
            (chain_id, block_number, normalize_hash(block_hash)),
        )

    def checkpoints(
        self, chain_id: int, below: Optional[int] = None
    ) -> List[Tuple[int, str]]:
        """Stored ``(block_number, block_hash)`` checkpoints, newest first."""
        query = "SELECT block_number, block_hash FROM scan_checkpoints WHERE chain_id = ?"
        params: List[Any] = [chain_id]
        if below is not None:
            query += " AND block_number < ?"
            params.append(below)
        query += " ORDER BY block_number DESC"
        return [
            (row["block_number"], row["block_hash"])
            for row in self.db.execute_query(query, params).rows
        ]

    def prune_checkpoints(
        self, chain_id: int, above: Optional[int] = None, keep: Optional[int] = None
    ) -> None:
        """Drop checkpoints above a fork base, or all but the newest ``keep``."""
        with self.db.transaction():
            if above is not None:
                self.db.execute_query(
                    "DELETE FROM scan_checkpoints WHERE chain_id = ? AND block_number > ?",
                    (chain_id, above),
                )
            if keep is not None:
                self.db.execute_query(
                    """
                    DELETE FROM scan_checkpoints
                     WHERE chain_id = ? AND block_number NOT IN (
                        SELECT block_number FROM scan_checkpoints WHERE chain_id = ?
                        ORDER BY block_number DESC LIMIT ?)
                    """,
                    (chain_id, chain_id, keep),
                )

    # Internals

    def _fetch_one(self, where: str, params: Any) -> Optional[RelayRecord]:
        rows = self.db.execute_query(
            f"SELECT {_RECORD_COLUMNS} FROM relay_records {where}", params
        ).rows
        return _row_to_record(rows[0]) if rows else None

    def _fetch_many(self, where: str, params: Any) -> List[RelayRecord]:
        rows = self.db.execute_query(
            f"SELECT {_RECORD_COLUMNS} FROM relay_records {where}", params
        ).rows
        return [_row_to_record(row) for row in rows]

    def _log_transition(
        self,
        record_id: int,
        from_status: Optional[RelayStatus],
        to_status: RelayStatus,
        dest_tx_hash: Optional[str],
        detail: Optional[str],
    ) -> None:
        self.db.execute_query(
            "INSERT INTO record_transitions "
            "(record_id, from_status, to_status, dest_tx_hash, detail, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                record_id,
                from_status.value if from_status else None,
                to_status.value,
                dest_tx_hash,
                detail,
                time.time(),
            ),
        )


__all__ = ["ALLOWED_TRANSITIONS", "EventLedger", "MintAttempt"]
