"""
Operation Pool - tracks relay requests and batches.

Keeps every operation seen by this process keyed by request id so duplicates
can be recognised, and records which batch and transaction carried it.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

import structlog

from relayer.config import RelayerConfig, get_config
from relayer.core.batch import Batch, BatchStatus
from relayer.core.operation import UserOperation
from relayer.core.request import RelayRequest, RequestStatus

logger = structlog.get_logger(__name__)

_FINISHED_BATCH_STATUSES = (BatchStatus.CONFIRMED, BatchStatus.FAILED)
_FINISHED_REQUEST_STATUSES = (
    RequestStatus.REJECTED,
    RequestStatus.UNKNOWN,
    RequestStatus.FAILED,
    RequestStatus.CONFIRMED,
)


class OperationPool:
    """
    Manages the pool of relay requests.

    Responsibilities:
    - Track all received operations by request id
    - Refuse operations that are already on their way on-chain
    - Record batch assignment and transaction hashes
    - Provide statistics

    Safe for concurrent access from multiple tasks.
    """

    def __init__(self, config: Optional[RelayerConfig] = None):
        """
        Initialize the operation pool.

        Args:
            config: Relayer configuration
        """
        self.config = config or get_config()

        # Request storage by ID
        self._requests: Dict[str, RelayRequest] = {}

        # Index by status for efficient queries
        self._by_status: Dict[RequestStatus, Set[str]] = {
            status: set() for status in RequestStatus
        }

        self._batches: Dict[str, Batch] = {}
        self._batch_by_tx: Dict[str, str] = {}

        self._lock = asyncio.Lock()

        self._stats = {
            "total_received": 0,
            "total_duplicates": 0,
            "total_submitted": 0,
            "total_rejected": 0,
            "total_failed": 0,
        }

    async def add_operation(self, request_id: str, operation: UserOperation) -> bool:
        """
        Add an operation to the pool.

        An operation that was rejected or failed before is accepted again
        as a new attempt.

        Args:
            request_id: Request identifier of the operation
            operation: The operation

        Returns:
            True if added, False if the operation is already in flight
        """
        async with self._lock:
            existing = self._requests.get(request_id)
            if existing is not None:
                if existing.is_in_flight:
                    self._stats["total_duplicates"] += 1
                    logger.info(
                        "operation_duplicate",
                        request_id=request_id,
                        status=existing.status.value,
                        tx_hash=existing.transaction_hash,
                    )
                    return False

                self._by_status[existing.status].discard(request_id)
                existing.reset_for_retry(operation)
                self._by_status[existing.status].add(request_id)
                logger.info("operation_retry", request_id=request_id, attempt=existing.attempt_count)
                return True

            request = RelayRequest(request_id=request_id, operation=operation)
            self._requests[request_id] = request
            self._by_status[request.status].add(request_id)
            self._stats["total_received"] += 1

            logger.debug("operation_added", request_id=request_id, sender=operation.sender)
            return True

    async def get_request(self, request_id: str) -> Optional[RelayRequest]:
        """Get a request by ID."""
        async with self._lock:
            return self._requests.get(request_id)

    async def update_request_status(
        self,
        request_id: str,
        new_status: RequestStatus,
        error_message: Optional[str] = None,
        batch_id: Optional[str] = None,
        transaction_hash: Optional[str] = None,
    ) -> bool:
        """
        Update a request's status.

        Args:
            request_id: ID of the request
            new_status: New status to set
            error_message: Rejection or failure reason
            batch_id: Batch the request was assigned to
            transaction_hash: Transaction carrying the request

        Returns:
            True if updated, False if request not found
        """
        async with self._lock:
            request = self._requests.get(request_id)
            if not request:
                return False

            old_status = request.status
            self._by_status[old_status].discard(request_id)

            request.status = new_status
            request.updated_at = datetime.utcnow()
            if error_message:
                request.error_message = error_message
            if batch_id:
                request.batch_id = batch_id
            if transaction_hash:
                request.transaction_hash = transaction_hash

            self._by_status[new_status].add(request_id)

            if new_status == RequestStatus.SUBMITTED:
                self._stats["total_submitted"] += 1
            elif new_status == RequestStatus.REJECTED:
                self._stats["total_rejected"] += 1
            elif new_status == RequestStatus.FAILED:
                self._stats["total_failed"] += 1

            logger.debug(
                "request_status_updated",
                request_id=request_id,
                old_status=old_status.value,
                new_status=new_status.value,
            )
            return True

    async def get_requests_by_status(self, status: RequestStatus) -> List[RelayRequest]:
        """Get all requests with a given status."""
        async with self._lock:
            return [self._requests[rid] for rid in self._by_status[status] if rid in self._requests]

    # Batch management

    async def add_batch(self, batch: Batch) -> None:
        """Register a batch and assign its requests to it."""
        async with self._lock:
            self._batches[batch.batch_id] = batch
            for request_id in batch.get_request_ids():
                request = self._requests.get(request_id)
                if request is None:
                    continue
                self._by_status[request.status].discard(request_id)
                request.status = RequestStatus.QUEUED
                request.batch_id = batch.batch_id
                request.updated_at = datetime.utcnow()
                self._by_status[request.status].add(request_id)
            logger.debug("batch_registered", batch_id=batch.batch_id, size=batch.size)

    async def record_transaction(self, batch: Batch) -> None:
        """Index a batch by its transaction hash."""
        if not batch.transaction_hash:
            return
        async with self._lock:
            self._batch_by_tx[batch.transaction_hash.lower()] = batch.batch_id

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        """Get a batch by ID."""
        async with self._lock:
            return self._batches.get(batch_id)

    async def get_batch_by_transaction(self, tx_hash: str) -> Optional[Batch]:
        """Get the batch sent in a transaction."""
        async with self._lock:
            batch_id = self._batch_by_tx.get(tx_hash.lower())
            return self._batches.get(batch_id) if batch_id else None

    async def get_active_batches(self) -> List[Batch]:
        """Get all batches that are not yet confirmed or failed."""
        async with self._lock:
            return [
                batch for batch in self._batches.values()
                if batch.status not in _FINISHED_BATCH_STATUSES
            ]

    async def remove_request(self, request_id: str) -> bool:
        """
        Remove a request from the pool.

        Returns:
            True if removed, False if not found
        """
        async with self._lock:
            request = self._requests.pop(request_id, None)
            if request is None:
                return False
            self._by_status[request.status].discard(request_id)
            return True

    async def prune_finished(self, max_age_seconds: float) -> int:
        """
        Drop finished requests and batches not updated within ``max_age_seconds``.

        Requests still on their way on-chain are kept whatever their age.

        Returns:
            Number of requests removed
        """
        async with self._lock:
            cutoff = datetime.utcnow() - timedelta(seconds=max_age_seconds)

            stale_requests = [
                request_id for request_id, request in self._requests.items()
                if request.status in _FINISHED_REQUEST_STATUSES and request.updated_at < cutoff
            ]
            for request_id in stale_requests:
                request = self._requests.pop(request_id)
                self._by_status[request.status].discard(request_id)

            stale_batches = [
                batch_id for batch_id, batch in self._batches.items()
                if batch.status in _FINISHED_BATCH_STATUSES and batch.updated_at < cutoff
            ]
            for batch_id in stale_batches:
                batch = self._batches.pop(batch_id)
                if batch.transaction_hash:
                    self._batch_by_tx.pop(batch.transaction_hash.lower(), None)

            if stale_requests or stale_batches:
                logger.info(
                    "pool_pruned",
                    requests=len(stale_requests),
                    batches=len(stale_batches),
                )

            return len(stale_requests)

    # Statistics and monitoring

    async def get_stats(self) -> dict:
        """Get pool statistics."""
        async with self._lock:
            return {
                "total_requests": len(self._requests),
                **{status.value: len(ids) for status, ids in self._by_status.items()},
                "active_batches": len([
                    b for b in self._batches.values()
                    if b.status not in _FINISHED_BATCH_STATUSES
                ]),
                **self._stats,
            }
