"""
Relay Request model.

Tracks one operation from arrival through simulation and submission.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from relayer.core.operation import UserOperation


class RequestStatus(str, Enum):
    """Status of a relay request."""
    PENDING = "pending"               # Received, not yet simulated
    ACCEPTED = "accepted"             # Simulation passed, waiting for a batch
    REJECTED = "rejected"             # Simulation reverted
    UNKNOWN = "unknown"               # Simulation could not complete
    QUEUED = "queued"                 # Assigned to a batch being submitted
    SUBMITTED = "submitted"           # Batch transaction accepted by the network
    INDETERMINATE = "indeterminate"   # Batch broadcast with unknown result
    CONFIRMED = "confirmed"           # Batch transaction mined
    FAILED = "failed"                 # Batch was not broadcast


# Requests in these states are on their way on-chain; relaying the same
# operation again would duplicate it.
IN_FLIGHT_STATUSES = frozenset({
    RequestStatus.PENDING,
    RequestStatus.ACCEPTED,
    RequestStatus.QUEUED,
    RequestStatus.SUBMITTED,
    RequestStatus.INDETERMINATE,
    RequestStatus.CONFIRMED,
})


@dataclass
class RelayRequest:
    """
    A single operation tracked by the relayer.

    Attributes:
        request_id: Request identifier of the operation (``0x`` hex)
        operation: The operation itself
        status: Current processing status
        batch_id: ID of the batch this request is assigned to
        transaction_hash: Hash of the batch transaction carrying it
        error_message: Last rejection or failure reason
    """

    request_id: str
    operation: UserOperation

    # Tracking
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    status: RequestStatus = RequestStatus.PENDING

    # Batch assignment
    batch_id: Optional[str] = None
    transaction_hash: Optional[str] = None

    # Error tracking
    error_message: Optional[str] = None
    attempt_count: int = 1

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = RequestStatus(self.status)

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    def reset_for_retry(self, operation: UserOperation) -> None:
        """Start a new attempt after a rejection or failure."""
        self.operation = operation
        self.status = RequestStatus.PENDING
        self.batch_id = None
        self.transaction_hash = None
        self.error_message = None
        self.attempt_count += 1
        self.updated_at = datetime.utcnow()

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "sender": self.operation.sender,
            "nonce": self.operation.nonce,
            "status": self.status.value,
            "batch_id": self.batch_id,
            "transaction_hash": self.transaction_hash,
            "error_message": self.error_message,
            "attempt_count": self.attempt_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __hash__(self):
        return hash(self.request_id)

    def __eq__(self, other):
        if isinstance(other, RelayRequest):
            return self.request_id == other.request_id
        return False
