"""
Core relayer components.

This module contains the operation model, request identifiers, outcome
types and the batch and request records shared by the other layers.
"""

from relayer.core.operation import OperationValidationError, UserOperation
from relayer.core.outcomes import (
    BatchFailed,
    BatchIndeterminate,
    BatchSubmitted,
    FailureKind,
    RelayResult,
    RelayStatus,
    SimulationAccepted,
    SimulationRejected,
    SimulationStatus,
    SimulationUnknown,
    SubmissionStatus,
)
from relayer.core.request_id import get_request_id, pack_user_op, request_id_hex
from relayer.core.batch import Batch, BatchStatus
from relayer.core.request import RelayRequest, RequestStatus

__all__ = [
    "UserOperation",
    "OperationValidationError",
    "get_request_id",
    "pack_user_op",
    "request_id_hex",
    "SimulationStatus",
    "SimulationAccepted",
    "SimulationRejected",
    "SimulationUnknown",
    "SubmissionStatus",
    "FailureKind",
    "BatchSubmitted",
    "BatchFailed",
    "BatchIndeterminate",
    "RelayStatus",
    "RelayResult",
    "Batch",
    "BatchStatus",
    "RelayRequest",
    "RequestStatus",
]
