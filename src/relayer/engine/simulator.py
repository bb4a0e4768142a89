"""
Validation Simulator - dry-runs operations against the entry point.

Each simulation is an ``eth_call`` of ``simulateValidation``: nothing is
signed or broadcast and no relayer nonce is consumed, so any number of
simulations may run at once.
"""

import asyncio
from datetime import datetime
from typing import List, Optional, Sequence

import structlog

from relayer.chain.entrypoint import AbiDecodeError, EntryPoint, decode_revert
from relayer.chain.interface import ChainConnectionError, ContractRevertError, RpcError
from relayer.config import RelayerConfig, get_config
from relayer.core.deadline import Deadline
from relayer.core.operation import UserOperation
from relayer.core.outcomes import (
    SimulationAccepted,
    SimulationOutcome,
    SimulationRejected,
    SimulationUnknown,
)
from relayer.core.request_id import request_id_hex

logger = structlog.get_logger(__name__)


class ValidationSimulator:
    """
    Classifies operations as accepted, rejected or unknown.

    A revert from the entry point means the operation is invalid. Any other
    failure (transport, timeout, malformed reply) leaves validity unknown and
    is never reported as a rejection.
    """

    def __init__(
        self,
        entry_point: EntryPoint,
        caller: Optional[str] = None,
        config: Optional[RelayerConfig] = None,
    ):
        """
        Initialize the simulator.

        Args:
            entry_point: Entry point to simulate against
            caller: Address the calls are made from (the relayer)
            config: Relayer configuration
        """
        self.entry_point = entry_point
        self.caller = caller
        self.config = config or get_config()

    def request_id(self, op: UserOperation) -> str:
        """Request identifier of an operation on this entry point and chain."""
        return request_id_hex(op, self.entry_point.address, self.config.chain_id)

    async def simulate(self, op: UserOperation, timeout: Optional[float] = None) -> SimulationOutcome:
        """
        Simulate validation of one operation.

        Args:
            op: Operation to simulate
            timeout: Deadline in seconds for the node call

        Returns:
            Exactly one of Accepted, Rejected or Unknown
        """
        request_id = self.request_id(op)
        deadline = Deadline(timeout)

        try:
            pre_op_gas, prefund = await deadline.run(
                self.entry_point.simulate_validation(op, self.caller)
            )
            outcome: SimulationOutcome = SimulationAccepted(
                request_id=request_id,
                operation=op,
                pre_op_gas=pre_op_gas,
                prefund=prefund,
            )

        except ContractRevertError as e:
            revert = decode_revert(e.revert_data)
            outcome = SimulationRejected(
                request_id=request_id,
                operation=op,
                reason=revert.reason if e.revert_data else str(e),
                op_index=revert.op_index,
                paymaster=revert.paymaster,
                revert_data=revert.data,
            )

        except asyncio.TimeoutError:
            outcome = SimulationUnknown(
                request_id=request_id,
                operation=op,
                error=f"simulation timed out after {timeout}s",
            )

        except (ChainConnectionError, RpcError, AbiDecodeError) as e:
            outcome = SimulationUnknown(
                request_id=request_id,
                operation=op,
                error=f"{type(e).__name__}: {e}",
            )

        self._log_outcome(outcome)
        return outcome

    async def simulate_many(
        self,
        ops: Sequence[UserOperation],
        timeout: Optional[float] = None,
    ) -> List[SimulationOutcome]:
        """
        Simulate several operations concurrently.

        Returns:
            One outcome per operation, in input order
        """
        if not ops:
            return []
        return list(await asyncio.gather(*(self.simulate(op, timeout) for op in ops)))

    @staticmethod
    def is_fresh(outcome: SimulationOutcome, max_age_seconds: float) -> bool:
        """Check that an accepted simulation is recent enough to submit."""
        if not isinstance(outcome, SimulationAccepted):
            return False
        age = (datetime.utcnow() - outcome.simulated_at).total_seconds()
        return age <= max_age_seconds

    def _log_outcome(self, outcome: SimulationOutcome) -> None:
        if isinstance(outcome, SimulationAccepted):
            logger.info(
                "simulation_outcome",
                request_id=outcome.request_id,
                status=outcome.status.value,
                sender=outcome.operation.sender,
                pre_op_gas=outcome.pre_op_gas,
                prefund=outcome.prefund,
            )
        elif isinstance(outcome, SimulationRejected):
            logger.info(
                "simulation_outcome",
                request_id=outcome.request_id,
                status=outcome.status.value,
                sender=outcome.operation.sender,
                reason=outcome.reason,
                op_index=outcome.op_index,
            )
        else:
            logger.warning(
                "simulation_outcome",
                request_id=outcome.request_id,
                status=outcome.status.value,
                sender=outcome.operation.sender,
                error=outcome.error,
            )
