"""
Unit tests for the relay worker.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from bridgerelay.chains.abi import decode_bridge_log
from bridgerelay.core.types import BridgeEvent, Direction, FunctionCall, RelayStatus
from bridgerelay.errors import AlertKind, ConnectionLost, StorageError, SubmissionError
from bridgerelay.relay.worker import RelayWorker
from tests.fakes import ALICE, BOB, TOKEN_B


async def until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def worker(ledger, chain_b, worker_config, alerts):
    return RelayWorker(
        ledger, chain_b, Direction(1, 2), TOKEN_B, config=worker_config, alerts=alerts
    )


@pytest.fixture
def observe(ledger, chain_a):
    def _observe(user=ALICE, amount=100):
        log = chain_a.emit_bridge(user, amount)
        return ledger.record_observed(decode_bridge_log(log, 1)).record

    return _observe


class TestSubmission:
    """Test the submission path."""

    @pytest.mark.asyncio
    async def test_mint_is_confirmed(self, worker, ledger, chain_b, observe):
        record = observe(amount=100)

        assert await worker.drain() is True
        submitted = ledger.get(record.record_id)
        assert submitted.status == RelayStatus.SUBMITTED
        assert submitted.dest_nonce == 0

        await worker.wait_for_confirmations()

        confirmed = ledger.get(record.record_id)
        assert confirmed.status == RelayStatus.CONFIRMED
        assert confirmed.dest_tx_hash == submitted.dest_tx_hash
        assert chain_b.minted_to(ALICE) == [100]

    @pytest.mark.asyncio
    async def test_mints_follow_source_order(self, worker, chain_b, observe):
        for amount in (1, 2, 3):
            observe(amount=amount)

        await worker.drain()
        await worker.wait_for_confirmations()

        assert chain_b.minted_to(ALICE) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_nothing_pending(self, worker):
        assert await worker.drain() is False

    @pytest.mark.asyncio
    async def test_other_direction_is_ignored(self, worker, ledger, chain_b):
        ledger.record_observed(
            BridgeEvent(2, "0x" + "01" * 32, 0, ALICE, 5, 10, "0x" + "02" * 32)
        )

        assert await worker.drain() is False
        assert chain_b.broadcasts == []


class TestFailures:
    """Test failure counting and exhaustion."""

    @pytest.mark.asyncio
    async def test_rejected_broadcast_is_counted(self, worker, ledger, chain_b, observe):
        record = observe()
        chain_b.reject_next = 1

        assert await worker.drain() is False

        failed_once = ledger.get(record.record_id)
        assert failed_once.status == RelayStatus.PENDING
        assert failed_once.submit_count == 1
        assert "insufficient funds" in failed_once.last_error

        await worker.drain()
        await worker.wait_for_confirmations()
        assert ledger.get(record.record_id).status == RelayStatus.CONFIRMED
        assert chain_b.minted_to(ALICE) == [100]

    @pytest.mark.asyncio
    async def test_reverts_exhaust_budget(self, worker, ledger, chain_b, alerts, observe):
        record = observe()
        chain_b.revert_next = 5

        for _ in range(5):
            await worker.drain()
            await worker.wait_for_confirmations()

        failed = ledger.get(record.record_id)
        assert failed.status == RelayStatus.FAILED
        assert failed.submit_count == 3
        assert "reverted" in failed.last_error
        assert len(chain_b.broadcasts) == 3
        assert chain_b.minted == []

        raised = alerts.history(AlertKind.RELAY_FAILED)
        assert len(raised) == 1
        assert raised[0].record_id == record.record_id

    @pytest.mark.asyncio
    async def test_failed_record_blocks_nothing(self, worker, ledger, chain_b, observe):
        first = observe(amount=1)
        observe(amount=2)
        ledger.transition(
            first.record_id, RelayStatus.PENDING, RelayStatus.FAILED, last_error="given up"
        )

        await worker.drain()
        await worker.wait_for_confirmations()

        assert chain_b.minted_to(ALICE) == [2]

    @pytest.mark.asyncio
    async def test_estimation_failure_is_counted(self, worker, ledger, chain_b, alerts, observe):
        record = observe()
        rejection = SubmissionError("mint would revert", reverted=True)

        with patch.object(chain_b, "prepare_transaction", AsyncMock(side_effect=rejection)):
            for _ in range(3):
                await worker.drain()

        failed = ledger.get(record.record_id)
        assert failed.status == RelayStatus.FAILED
        assert failed.submit_count == 3
        assert ledger.attempts(record.record_id) == []
        assert len(alerts.history(AlertKind.RELAY_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_connection_loss_is_not_counted(self, worker, ledger, chain_b, observe):
        record = observe()
        chain_b.disconnect_next = 1

        assert await worker.drain() is False

        pending = ledger.get(record.record_id)
        assert pending.status == RelayStatus.PENDING
        assert pending.submit_count == 0

    @pytest.mark.asyncio
    async def test_head_of_line_waits(self, worker, ledger, chain_b, observe):
        first = observe(amount=1)
        second = observe(amount=2)
        chain_b.reject_next = 1

        await worker.drain()

        assert ledger.get(first.record_id).status == RelayStatus.PENDING
        assert ledger.get(second.record_id).status == RelayStatus.PENDING
        assert chain_b.minted == []


class TestExactlyOnce:
    """Test that earlier mint attempts are found before sending again."""

    @pytest.mark.asyncio
    async def test_lost_broadcast_reuses_nonce(self, worker, ledger, chain_b, observe):
        record = observe()
        lost = ConnectionLost("eth_sendRawTransaction: connection lost")

        with patch.object(chain_b, "broadcast", AsyncMock(side_effect=lost)):
            assert await worker.drain() is False

        pending = ledger.get(record.record_id)
        assert pending.status == RelayStatus.PENDING
        assert pending.submit_count == 0
        (first,) = ledger.attempts(record.record_id)

        await worker.drain()
        await worker.wait_for_confirmations()

        attempts = ledger.attempts(record.record_id)
        assert len(attempts) == 2
        assert attempts[1].dest_nonce == first.dest_nonce
        assert ledger.get(record.record_id).status == RelayStatus.CONFIRMED
        assert chain_b.minted_to(ALICE) == [100]

    @pytest.mark.asyncio
    async def test_consumed_nonce_gets_fresh_one(self, worker, ledger, chain_b, observe):
        record = observe()
        lost = ConnectionLost("eth_sendRawTransaction: connection lost")
        with patch.object(chain_b, "broadcast", AsyncMock(side_effect=lost)):
            await worker.drain()

        # Another transaction from the relayer account takes nonce 0.
        await chain_b.submit_transaction(FunctionCall(TOKEN_B, "mint", (BOB, 1)))

        assert await worker.drain() is False
        after_rejection = ledger.get(record.record_id)
        assert after_rejection.status == RelayStatus.PENDING
        assert after_rejection.submit_count == 0
        assert "nonce too low" in after_rejection.last_error

        await worker.drain()
        await worker.wait_for_confirmations()

        assert ledger.attempts(record.record_id)[-1].dest_nonce == 1
        assert chain_b.minted_to(ALICE) == [100]

    @pytest.mark.asyncio
    async def test_mined_attempt_is_adopted(self, worker, ledger, chain_b, observe):
        record = observe()
        await worker.drain()
        # Simulate a sweep that lost track of the mined mint.
        ledger.transition(record.record_id, RelayStatus.SUBMITTED, RelayStatus.PENDING)
        await worker.wait_for_confirmations()

        await worker.drain()
        await worker.wait_for_confirmations()

        assert ledger.get(record.record_id).status == RelayStatus.CONFIRMED
        assert len(chain_b.broadcasts) == 1
        assert chain_b.minted_to(ALICE) == [100]


class TestReconcileSubmitted:
    """Test the sweep of SUBMITTED records."""

    @pytest.mark.asyncio
    async def test_unknown_transaction_returns_to_pending(self, worker, ledger, observe):
        record = observe()
        ledger.transition(
            record.record_id,
            RelayStatus.PENDING,
            RelayStatus.SUBMITTED,
            dest_tx_hash="0x" + "ab" * 32,
            dest_nonce=0,
        )

        await worker.reconcile_submitted()

        pending = ledger.get(record.record_id)
        assert pending.status == RelayStatus.PENDING
        assert pending.last_error == "transaction not found"

    @pytest.mark.asyncio
    async def test_missing_hash_returns_to_pending(self, worker, ledger, observe):
        record = observe()
        ledger.transition(record.record_id, RelayStatus.PENDING, RelayStatus.SUBMITTED)

        await worker.reconcile_submitted()

        assert ledger.get(record.record_id).status == RelayStatus.PENDING

    @pytest.mark.asyncio
    async def test_timeout_leaves_submitted_until_sweep(
        self, ledger, chain_b, worker_config, alerts, observe
    ):
        worker_config.confirmation_timeout = 0.05
        worker = RelayWorker(ledger, chain_b, Direction(1, 2), TOKEN_B, worker_config, alerts)
        chain_b.auto_mine = False
        record = observe()

        await worker.drain()
        await worker.wait_for_confirmations()
        assert ledger.get(record.record_id).status == RelayStatus.SUBMITTED

        chain_b.mine()
        await worker.reconcile_submitted()

        assert ledger.get(record.record_id).status == RelayStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirmation_error_is_logged_and_swept(
        self, worker, ledger, chain_b, observe, quiet_logging
    ):
        record = observe()
        failing = AsyncMock(side_effect=StorageError("disk I/O error", operation="update"))

        with patch.object(chain_b, "await_confirmation", failing):
            await worker.drain()
            (task,) = worker._inflight.values()
            await worker.wait_for_confirmations()

        assert task.exception() is None
        assert ledger.get(record.record_id).status == RelayStatus.SUBMITTED
        assert any("Confirmation tracking failed" in m for m in quiet_logging.messages())

        await worker.reconcile_submitted()
        assert ledger.get(record.record_id).status == RelayStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_pooled_transaction_is_tracked(self, ledger, chain_b, worker_config, alerts, observe):
        worker = RelayWorker(ledger, chain_b, Direction(1, 2), TOKEN_B, worker_config, alerts)
        chain_b.auto_mine = False
        record = observe()
        await worker.drain()
        await worker._cancel_inflight()

        await worker.reconcile_submitted()
        chain_b.mine()
        await worker.wait_for_confirmations()

        assert ledger.get(record.record_id).status == RelayStatus.CONFIRMED
        assert len(chain_b.broadcasts) == 1


class TestWorkerLoop:
    """Test start/stop."""

    @pytest.mark.asyncio
    async def test_loop_relays_new_events(self, worker, ledger, chain_b, observe):
        await worker.start()
        assert worker.is_running

        record = observe(amount=7)
        worker.wake()
        await until(lambda: ledger.get(record.record_id).status == RelayStatus.CONFIRMED)

        await worker.stop()
        assert not worker.is_running
        assert chain_b.minted_to(ALICE) == [7]

    @pytest.mark.asyncio
    async def test_loop_survives_disconnection(self, worker, ledger, chain_b, observe):
        chain_b.disconnected = True
        record = observe()
        await worker.start()
        await asyncio.sleep(0.05)

        chain_b.disconnected = False
        await until(lambda: ledger.get(record.record_id).status == RelayStatus.CONFIRMED)
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, worker):
        await worker.stop()
        await worker.start()
        await worker.start()
        await worker.stop()
        await worker.stop()
