"""
Batch Submitter - sends accepted operations in one handleOps transaction.

Each submission takes exactly one relayer nonce and settles it exactly once:
confirmed when the network accepts the transaction, released when nothing
was broadcast, and kept as indeterminate when a broadcast was attempted but
its outcome could not be read.
"""

import asyncio
from typing import Callable, List, Optional, Sequence

import structlog
from eth_utils import is_address, to_checksum_address

from relayer.chain.interface import (
    ChainConnectionError,
    ChainInterface,
    RpcError,
    TransactionSubmitError,
)
from relayer.config import RelayerConfig, get_config
from relayer.core.deadline import Deadline
from relayer.core.outcomes import (
    BatchFailed,
    BatchIndeterminate,
    BatchSubmitted,
    FailureKind,
    SimulationAccepted,
    SimulationOutcome,
    SubmissionOutcome,
)
from relayer.engine.simulator import ValidationSimulator
from relayer.state.sequence import SequenceManager
from relayer.tx.builder import TransactionBuilder, TransactionBuildError
from relayer.tx.signer import SigningError, signed_tx_hash

logger = structlog.get_logger(__name__)


class InvalidBatchError(ValueError):
    """Raised when a batch is empty or holds operations that were not accepted."""
    pass


class BatchSubmitter:
    """
    Builds, signs and broadcasts handleOps transactions.

    Submissions pass through a pipeline lock from nonce reservation until the
    broadcast call returns, so nonces are broadcast in the order they were
    reserved and a release always concerns the latest reservation.
    """

    def __init__(
        self,
        chain: ChainInterface,
        sequence: SequenceManager,
        builder: TransactionBuilder,
        config: Optional[RelayerConfig] = None,
    ):
        """
        Initialize the batch submitter.

        Args:
            chain: Node interface used for broadcast
            sequence: Sequence manager of the relayer account
            builder: Transaction builder holding the relayer key
            config: Relayer configuration
        """
        self.chain = chain
        self.sequence = sequence
        self.builder = builder
        self.config = config or get_config()

        self._pipeline_lock = asyncio.Lock()

    async def submit(
        self,
        outcomes: Sequence[SimulationOutcome],
        beneficiary: str,
        timeout: Optional[float] = None,
        is_fresh: Optional[Callable[[SimulationAccepted], bool]] = None,
        on_broadcast: Optional[Callable[[int, str], None]] = None,
    ) -> SubmissionOutcome:
        """
        Submit accepted operations as one batch.

        Args:
            outcomes: Accepted simulations, in the order they should execute
            beneficiary: Recipient of the collected fees
            timeout: Deadline in seconds covering every node call
            is_fresh: Predicate deciding if a simulation is recent enough
                (defaults to the configured maximum age)
            on_broadcast: Called with the nonce and transaction hash just
                before the transaction is handed to the node

        Returns:
            Submitted, Failed or Indeterminate

        Raises:
            InvalidBatchError: If the batch is empty or holds non-accepted outcomes
            SequenceConflictError: If the nonce protocol was violated
            asyncio.CancelledError: After the reservation has been settled
        """
        if not outcomes:
            raise InvalidBatchError("Batch is empty")
        rejected = [o for o in outcomes if not isinstance(o, SimulationAccepted)]
        if rejected:
            raise InvalidBatchError(
                f"Batch holds {len(rejected)} operation(s) that were not accepted in simulation"
            )
        if not isinstance(beneficiary, str) or not is_address(beneficiary):
            raise InvalidBatchError(f"Invalid beneficiary address: {beneficiary!r}")

        beneficiary = to_checksum_address(beneficiary)
        request_ids = [o.request_id for o in outcomes]

        if is_fresh is None:
            max_age = self.config.simulation_max_age_seconds
            is_fresh = lambda outcome: ValidationSimulator.is_fresh(outcome, max_age)  # noqa: E731

        stale = [o.request_id for o in outcomes if not is_fresh(o)]
        if stale:
            outcome = BatchFailed(
                request_ids=request_ids,
                kind=FailureKind.STALE_SIMULATION,
                reason=f"Simulation too old for {len(stale)} operation(s); simulate again",
            )
            logger.warning("batch_failed", request_ids=request_ids, kind=outcome.kind.value, stale=stale)
            return outcome

        deadline = Deadline(timeout)

        async with self._pipeline_lock:
            if deadline.expired:
                return self._failed(
                    request_ids,
                    FailureKind.TRANSPORT,
                    "Deadline expired before a nonce was reserved",
                    retryable=True,
                )

            try:
                nonce = await self.sequence.reserve_next(deadline)
            except (ChainConnectionError, RpcError, asyncio.TimeoutError) as e:
                return self._failed(
                    request_ids,
                    FailureKind.TRANSPORT,
                    f"Could not read relayer nonce: {e}",
                    retryable=True,
                )

            return await self._submit_reserved(
                nonce,
                [o.operation for o in outcomes],
                request_ids,
                beneficiary,
                deadline,
                on_broadcast,
            )

    async def _submit_reserved(
        self,
        nonce: int,
        ops: list,
        request_ids: List[str],
        beneficiary: str,
        deadline: Deadline,
        on_broadcast: Optional[Callable[[int, str], None]] = None,
    ) -> SubmissionOutcome:
        # Build and sign; any failure here leaves nothing broadcast
        try:
            tx = await self.builder.build_transaction(ops, beneficiary, nonce, deadline)
            signed = self.builder.sign(tx)
            tx_hash = signed_tx_hash(signed)
        except asyncio.CancelledError:
            self.sequence.release(nonce)
            logger.warning("batch_cancelled", request_ids=request_ids, nonce=nonce, broadcast=False)
            raise
        except TransactionBuildError as e:
            return self._release(
                nonce, request_ids, FailureKind.BUILD, str(e),
                failed_op_index=e.failed_op_index,
            )
        except SigningError as e:
            return self._release(nonce, request_ids, FailureKind.SIGNING, str(e))
        except (ChainConnectionError, RpcError, asyncio.TimeoutError) as e:
            return self._release(
                nonce, request_ids, FailureKind.TRANSPORT,
                f"Node error while building transaction: {e}",
                retryable=True,
            )
        except Exception:
            self.sequence.release(nonce)
            logger.exception("batch_build_crashed", request_ids=request_ids, released_nonce=nonce)
            raise

        if deadline.expired:
            return self._release(
                nonce, request_ids, FailureKind.TRANSPORT,
                "Deadline expired before broadcast",
                retryable=True,
            )

        try:
            if on_broadcast is not None:
                on_broadcast(nonce, tx_hash)
            returned_hash = await deadline.run(
                self.chain.send_raw_transaction(signed.raw_transaction)
            )
        except asyncio.CancelledError:
            self._indeterminate(nonce, request_ids, tx_hash, "Cancelled during broadcast")
            raise
        except TransactionSubmitError as e:
            if e.is_already_known:
                return self._confirmed(nonce, request_ids, tx_hash)
            if e.is_nonce_too_low:
                # Another transaction used this nonce; reconcile before the next one
                self.sequence.resync()
            return self._release(
                nonce, request_ids, FailureKind.BROADCAST_REJECTED,
                f"Node rejected transaction: {e}",
                retryable=e.is_nonce_too_low,
            )
        except ChainConnectionError as e:
            if not e.request_sent:
                return self._release(
                    nonce, request_ids, FailureKind.TRANSPORT,
                    f"Broadcast not sent: {e}",
                    retryable=True,
                )
            return self._indeterminate(nonce, request_ids, tx_hash, str(e))
        except asyncio.TimeoutError as e:
            return self._indeterminate(nonce, request_ids, tx_hash, f"Broadcast timed out: {e}")
        except Exception:
            # The node may hold the transaction, so the nonce cannot be reused
            self._indeterminate(nonce, request_ids, tx_hash, "Unexpected error during broadcast")
            raise

        if returned_hash.lower() != tx_hash.lower():
            logger.warning(
                "broadcast_hash_mismatch",
                request_ids=request_ids,
                local_hash=tx_hash,
                node_hash=returned_hash,
            )
        return self._confirmed(nonce, request_ids, tx_hash)

    # Settling

    def _confirmed(self, nonce: int, request_ids: List[str], tx_hash: str) -> BatchSubmitted:
        self.sequence.confirm(nonce)
        logger.info("batch_submitted", request_ids=request_ids, nonce=nonce, tx_hash=tx_hash)
        return BatchSubmitted(request_ids=request_ids, tx_hash=tx_hash, sequence_number=nonce)

    def _release(
        self,
        nonce: int,
        request_ids: List[str],
        kind: FailureKind,
        reason: str,
        retryable: bool = False,
        failed_op_index: Optional[int] = None,
    ) -> BatchFailed:
        self.sequence.release(nonce)
        return self._failed(request_ids, kind, reason, retryable, failed_op_index, nonce=nonce)

    def _indeterminate(
        self,
        nonce: int,
        request_ids: List[str],
        tx_hash: str,
        reason: str,
    ) -> BatchIndeterminate:
        self.sequence.mark_indeterminate(nonce)
        logger.warning(
            "batch_indeterminate",
            request_ids=request_ids,
            nonce=nonce,
            tx_hash=tx_hash,
            reason=reason,
        )
        return BatchIndeterminate(
            request_ids=request_ids,
            tx_hash=tx_hash,
            sequence_number=nonce,
            reason=reason,
        )

    @staticmethod
    def _failed(
        request_ids: List[str],
        kind: FailureKind,
        reason: str,
        retryable: bool = False,
        failed_op_index: Optional[int] = None,
        nonce: Optional[int] = None,
    ) -> BatchFailed:
        logger.error(
            "batch_failed",
            request_ids=request_ids,
            kind=kind.value,
            reason=reason,
            retryable=retryable,
            failed_op_index=failed_op_index,
            released_nonce=nonce,
        )
        return BatchFailed(
            request_ids=request_ids,
            kind=kind,
            reason=reason,
            retryable=retryable,
            failed_op_index=failed_op_index,
        )
