"""
Batch model.

Represents a group of accepted operations sent in a single handleOps transaction.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from relayer.core.outcomes import (
    BatchFailed,
    BatchIndeterminate,
    BatchSubmitted,
    SimulationAccepted,
    SubmissionOutcome,
)


class BatchStatus(str, Enum):
    """Status of a batch."""
    COLLECTING = "collecting"         # Still accepting operations
    SUBMITTING = "submitting"         # Transaction being built, signed, broadcast
    SUBMITTED = "submitted"           # Network accepted the transaction
    INDETERMINATE = "indeterminate"   # Broadcast attempted, acceptance unknown
    CONFIRMED = "confirmed"           # Transaction mined
    FAILED = "failed"                 # Nothing was broadcast


@dataclass
class Batch:
    """
    A batch of simulated operations submitted together.

    Attributes:
        batch_id: Local identifier for the batch
        entries: Accepted simulations, in handleOps order
        status: Current processing status
        transaction_hash: Hash of the handleOps transaction
        sequence_number: Relayer nonce the transaction was signed with
    """

    batch_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    entries: List[SimulationAccepted] = field(default_factory=list)
    status: BatchStatus = BatchStatus.COLLECTING

    # Transaction info
    transaction_hash: Optional[str] = None
    sequence_number: Optional[int] = None

    # Timestamps
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    error_message: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = BatchStatus(self.status)

    def add(self, entry: SimulationAccepted) -> None:
        """Append an accepted operation."""
        if self.status != BatchStatus.COLLECTING:
            raise ValueError(f"Batch {self.batch_id} is no longer collecting")
        self.entries.append(entry)
        self.updated_at = datetime.utcnow()

    @property
    def size(self) -> int:
        """Get the number of operations in this batch."""
        return len(self.entries)

    def get_request_ids(self) -> List[str]:
        """Get all request IDs in this batch, in handleOps order."""
        return [entry.request_id for entry in self.entries]

    def mark_submitting(self) -> None:
        self.status = BatchStatus.SUBMITTING
        self.updated_at = datetime.utcnow()

    def apply_outcome(self, outcome: SubmissionOutcome) -> None:
        """Record the result of submitting this batch."""
        now = datetime.utcnow()
        if isinstance(outcome, BatchSubmitted):
            self.status = BatchStatus.SUBMITTED
            self.transaction_hash = outcome.tx_hash
            self.sequence_number = outcome.sequence_number
            self.submitted_at = now
        elif isinstance(outcome, BatchIndeterminate):
            self.status = BatchStatus.INDETERMINATE
            self.transaction_hash = outcome.tx_hash
            self.sequence_number = outcome.sequence_number
            self.error_message = outcome.reason
            self.submitted_at = now
        elif isinstance(outcome, BatchFailed):
            self.status = BatchStatus.FAILED
            self.error_message = outcome.reason
        self.updated_at = now

    def mark_confirmed(self) -> None:
        """Mark batch as mined."""
        self.status = BatchStatus.CONFIRMED
        self.confirmed_at = datetime.utcnow()
        self.updated_at = self.confirmed_at

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "size": self.size,
            "request_ids": self.get_request_ids(),
            "transaction_hash": self.transaction_hash,
            "sequence_number": self.sequence_number,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "error_message": self.error_message,
        }

    def __repr__(self) -> str:
        return f"Batch(id={self.batch_id[:8]}..., status={self.status.value}, size={self.size})"
