"""
Relay engine.

Validation simulation and batch submission.
"""

from relayer.engine.simulator import ValidationSimulator
from relayer.engine.submitter import BatchSubmitter, InvalidBatchError

__all__ = [
    "ValidationSimulator",
    "BatchSubmitter",
    "InvalidBatchError",
]
