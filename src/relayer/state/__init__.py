"""
State management.

Owns the relayer's nonce and the pool of tracked operations.
"""

from relayer.state.operation_pool import OperationPool
from relayer.state.sequence import SequenceConflictError, SequenceHaltedError, SequenceManager

__all__ = [
    "OperationPool",
    "SequenceManager",
    "SequenceConflictError",
    "SequenceHaltedError",
]
