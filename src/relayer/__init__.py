"""
Entry Point Operation Relayer

Relays client-submitted operations to an entry point contract on an EVM chain.
Operations are validated concurrently by simulation and the accepted ones are
submitted in handleOps batches signed by a single relayer account, whose
nonce sequence is kept free of gaps and collisions.
"""

__version__ = "0.1.0"

from relayer.core.relayer import Relayer
from relayer.core.operation import UserOperation
from relayer.core.outcomes import RelayResult, RelayStatus

__all__ = [
    "Relayer",
    "UserOperation",
    "RelayResult",
    "RelayStatus",
]
