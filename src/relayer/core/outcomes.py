"""
Outcome types for simulation, submission and relaying.

Each decision point returns exactly one variant from a closed set; the
``status`` tag identifies the variant for callers that prefer switching on
an enum over ``isinstance`` checks.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from relayer.core.operation import UserOperation


class SimulationStatus(str, Enum):
    """Result class of a validation simulation."""
    ACCEPTED = "accepted"     # Entry point validated the operation
    REJECTED = "rejected"     # Entry point reverted; the operation is invalid
    UNKNOWN = "unknown"       # Transport failure; validity not known


class SubmissionStatus(str, Enum):
    """Result class of a batch submission."""
    SUBMITTED = "submitted"           # Network accepted the transaction
    FAILED = "failed"                 # Nothing was broadcast
    INDETERMINATE = "indeterminate"   # Broadcast attempted, acceptance unknown


class FailureKind(str, Enum):
    """Why a batch submission failed before broadcast."""
    STALE_SIMULATION = "stale_simulation"
    BUILD = "build"
    SIGNING = "signing"
    BROADCAST_REJECTED = "broadcast_rejected"
    TRANSPORT = "transport"


class RelayStatus(str, Enum):
    """Per-operation result of a relay call."""
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    UNKNOWN = "unknown"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"
    DUPLICATE = "duplicate"


# ============================================================================
# Simulation
# ============================================================================

@dataclass(frozen=True)
class SimulationAccepted:
    """The entry point validated the operation."""

    request_id: str
    operation: UserOperation
    pre_op_gas: int
    prefund: int
    simulated_at: datetime = field(default_factory=datetime.utcnow)
    status: SimulationStatus = field(default=SimulationStatus.ACCEPTED, init=False)


@dataclass(frozen=True)
class SimulationRejected:
    """
    The entry point reverted during validation.

    Attributes:
        reason: Decoded revert reason (or raw revert hex)
        op_index: Operation index reported by ``FailedOp``
        paymaster: Paymaster reported by ``FailedOp`` (zero address if none)
        revert_data: Raw revert payload as hex
    """

    request_id: str
    operation: UserOperation
    reason: str
    op_index: Optional[int] = None
    paymaster: Optional[str] = None
    revert_data: Optional[str] = None
    simulated_at: datetime = field(default_factory=datetime.utcnow)
    status: SimulationStatus = field(default=SimulationStatus.REJECTED, init=False)


@dataclass(frozen=True)
class SimulationUnknown:
    """The simulation could not be completed; validity is unknown."""

    request_id: str
    operation: UserOperation
    error: str
    simulated_at: datetime = field(default_factory=datetime.utcnow)
    status: SimulationStatus = field(default=SimulationStatus.UNKNOWN, init=False)


SimulationOutcome = Union[SimulationAccepted, SimulationRejected, SimulationUnknown]


# ============================================================================
# Submission
# ============================================================================

@dataclass(frozen=True)
class BatchSubmitted:
    """The batch transaction was accepted by the network for mining."""

    request_ids: List[str]
    tx_hash: str
    sequence_number: int
    status: SubmissionStatus = field(default=SubmissionStatus.SUBMITTED, init=False)


@dataclass(frozen=True)
class BatchFailed:
    """
    The batch was not broadcast; its sequence number was released.

    ``retryable`` is True when the failure was a transport problem and the
    same operations may be resubmitted after a backoff.
    """

    request_ids: List[str]
    kind: FailureKind
    reason: str
    retryable: bool = False
    failed_op_index: Optional[int] = None
    status: SubmissionStatus = field(default=SubmissionStatus.FAILED, init=False)


@dataclass(frozen=True)
class BatchIndeterminate:
    """
    Broadcast was attempted but its acceptance could not be confirmed.

    The sequence number stays consumed. Callers should poll ``tx_hash``
    instead of resubmitting blindly.
    """

    request_ids: List[str]
    tx_hash: str
    sequence_number: int
    reason: str
    status: SubmissionStatus = field(default=SubmissionStatus.INDETERMINATE, init=False)


SubmissionOutcome = Union[BatchSubmitted, BatchFailed, BatchIndeterminate]


# ============================================================================
# Relay
# ============================================================================

@dataclass(frozen=True)
class RelayResult:
    """What happened to one operation passed to ``Relayer.relay``."""

    request_id: str
    status: RelayStatus
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    batch_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
            "batch_id": self.batch_id,
        }
