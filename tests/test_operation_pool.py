"""
Test suite for request and batch tracking.
"""

from datetime import datetime, timedelta

import pytest

from relayer.core.batch import Batch, BatchStatus
from relayer.core.outcomes import (
    BatchFailed,
    BatchIndeterminate,
    BatchSubmitted,
    FailureKind,
    SimulationAccepted,
)
from relayer.core.request import RequestStatus
from relayer.core.request_id import request_id_hex
from relayer.state.operation_pool import OperationPool

from tests.conftest import CHAIN_ID, ENTRY_POINT


def accepted_entry(op) -> SimulationAccepted:
    return SimulationAccepted(
        request_id=request_id_hex(op, ENTRY_POINT, CHAIN_ID),
        operation=op,
        pre_op_gas=50_000,
        prefund=100_000,
    )


@pytest.fixture
def pool(test_config) -> OperationPool:
    return OperationPool(test_config)


# ============================================================================
# Test Requests
# ============================================================================

class TestRequests:
    """Tests for request tracking and deduplication."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, pool, sample_operation):
        request_id = request_id_hex(sample_operation, ENTRY_POINT, CHAIN_ID)

        assert await pool.add_operation(request_id, sample_operation)

        request = await pool.get_request(request_id)
        assert request.status == RequestStatus.PENDING
        assert request.operation is sample_operation

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,admitted",
        [
            (RequestStatus.ACCEPTED, False),
            (RequestStatus.SUBMITTED, False),
            (RequestStatus.INDETERMINATE, False),
            (RequestStatus.CONFIRMED, False),
            (RequestStatus.REJECTED, True),
            (RequestStatus.UNKNOWN, True),
            (RequestStatus.FAILED, True),
        ],
    )
    async def test_readmission_depends_on_status(self, pool, sample_operation, status, admitted):
        request_id = request_id_hex(sample_operation, ENTRY_POINT, CHAIN_ID)
        await pool.add_operation(request_id, sample_operation)
        await pool.update_request_status(request_id, status)

        assert await pool.add_operation(request_id, sample_operation) is admitted

    @pytest.mark.asyncio
    async def test_status_index(self, pool, sample_operations):
        ids = []
        for op in sample_operations:
            request_id = request_id_hex(op, ENTRY_POINT, CHAIN_ID)
            ids.append(request_id)
            await pool.add_operation(request_id, op)
        await pool.update_request_status(ids[0], RequestStatus.REJECTED, error_message="bad")

        rejected = await pool.get_requests_by_status(RequestStatus.REJECTED)
        pending = await pool.get_requests_by_status(RequestStatus.PENDING)

        assert [r.request_id for r in rejected] == [ids[0]]
        assert rejected[0].error_message == "bad"
        assert len(pending) == 4

    @pytest.mark.asyncio
    async def test_update_unknown_request(self, pool):
        assert await pool.update_request_status("0x00", RequestStatus.FAILED) is False


# ============================================================================
# Test Batches
# ============================================================================

class TestBatches:
    """Tests for batch registration and lookup."""

    @pytest.mark.asyncio
    async def test_add_batch_queues_requests(self, pool, sample_operations):
        batch = Batch()
        for op in sample_operations[:2]:
            entry = accepted_entry(op)
            await pool.add_operation(entry.request_id, op)
            batch.add(entry)

        await pool.add_batch(batch)

        for request_id in batch.get_request_ids():
            request = await pool.get_request(request_id)
            assert request.status == RequestStatus.QUEUED
            assert request.batch_id == batch.batch_id

    @pytest.mark.asyncio
    async def test_lookup_by_transaction(self, pool, sample_operation):
        entry = accepted_entry(sample_operation)
        batch = Batch(entries=[entry])
        await pool.add_batch(batch)
        batch.apply_outcome(BatchSubmitted(request_ids=[entry.request_id], tx_hash="0xABCD", sequence_number=3))

        await pool.record_transaction(batch)

        assert await pool.get_batch_by_transaction("0xabcd") is batch
        assert batch.sequence_number == 3
        assert await pool.get_active_batches() == [batch]

    @pytest.mark.asyncio
    async def test_prune_only_finished_batches(self, pool, sample_operation):
        entry = accepted_entry(sample_operation)
        old_failed = Batch(entries=[entry])
        old_failed.apply_outcome(BatchFailed(request_ids=[entry.request_id], kind=FailureKind.BUILD, reason="x"))
        old_failed.updated_at = datetime.utcnow() - timedelta(hours=48)
        old_pending = Batch(entries=[entry])
        old_pending.apply_outcome(
            BatchIndeterminate(request_ids=[entry.request_id], tx_hash="0x01", sequence_number=0, reason="lost")
        )
        old_pending.updated_at = datetime.utcnow() - timedelta(hours=48)
        await pool.add_batch(old_failed)
        await pool.add_batch(old_pending)
        await pool.record_transaction(old_pending)

        await pool.prune_finished(max_age_seconds=3600)

        assert await pool.get_batch(old_failed.batch_id) is None
        assert await pool.get_batch(old_pending.batch_id) is old_pending
        assert await pool.get_batch_by_transaction("0x01") is old_pending

    def test_batch_stops_collecting_after_submission(self, sample_operation):
        entry = accepted_entry(sample_operation)
        batch = Batch(entries=[entry])
        batch.mark_submitting()

        assert batch.status == BatchStatus.SUBMITTING
        with pytest.raises(ValueError):
            batch.add(entry)


# ============================================================================
# Test Pruning
# ============================================================================

class TestPruning:
    """Finished requests leave the pool once they are old enough."""

    @pytest.mark.asyncio
    async def test_prune_finished_requests(self, pool, sample_operations):
        statuses = [
            RequestStatus.REJECTED,
            RequestStatus.CONFIRMED,
            RequestStatus.SUBMITTED,
            RequestStatus.INDETERMINATE,
            RequestStatus.FAILED,
        ]
        ids = []
        for op, status in zip(sample_operations, statuses):
            request_id = request_id_hex(op, ENTRY_POINT, CHAIN_ID)
            ids.append(request_id)
            await pool.add_operation(request_id, op)
            await pool.update_request_status(request_id, status)
            (await pool.get_request(request_id)).updated_at = datetime.utcnow() - timedelta(hours=2)

        assert await pool.prune_finished(max_age_seconds=3600) == 3

        remaining = [request_id for request_id in ids if await pool.get_request(request_id)]
        assert remaining == [ids[2], ids[3]]
        assert await pool.get_requests_by_status(RequestStatus.REJECTED) == []

    @pytest.mark.asyncio
    async def test_recent_requests_kept(self, pool, sample_operation):
        request_id = request_id_hex(sample_operation, ENTRY_POINT, CHAIN_ID)
        await pool.add_operation(request_id, sample_operation)
        await pool.update_request_status(request_id, RequestStatus.REJECTED)

        assert await pool.prune_finished(max_age_seconds=3600) == 0
        assert await pool.get_request(request_id) is not None

    @pytest.mark.asyncio
    async def test_remove_request(self, pool, sample_operation):
        request_id = request_id_hex(sample_operation, ENTRY_POINT, CHAIN_ID)
        await pool.add_operation(request_id, sample_operation)

        assert await pool.remove_request(request_id) is True
        assert await pool.remove_request(request_id) is False
        assert await pool.get_requests_by_status(RequestStatus.PENDING) == []
        # A removed operation is admitted again as a new request
        assert await pool.add_operation(request_id, sample_operation) is True


# ============================================================================
# Test Statistics
# ============================================================================

class TestStats:

    @pytest.mark.asyncio
    async def test_counts(self, pool, sample_operation):
        request_id = request_id_hex(sample_operation, ENTRY_POINT, CHAIN_ID)
        await pool.add_operation(request_id, sample_operation)
        await pool.add_operation(request_id, sample_operation)
        await pool.update_request_status(request_id, RequestStatus.SUBMITTED)

        stats = await pool.get_stats()

        assert stats["total_requests"] == 1
        assert stats["total_received"] == 1
        assert stats["total_duplicates"] == 1
        assert stats["total_submitted"] == 1
        assert stats["submitted"] == 1
