"""
Main Relayer orchestrator.

Coordinates all components to provide a complete operation relaying service.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from relayer.chain.entrypoint import DepositInfo, EntryPoint, UserOperationExecution
from relayer.chain.http import HttpRpcAdapter
from relayer.chain.interface import ChainConnectionError, ChainInterface, RpcError
from relayer.chain.websocket import WebSocketRpcAdapter
from relayer.config import ConfigError, RelayerConfig, get_config
from relayer.core.batch import Batch
from relayer.core.deadline import Deadline
from relayer.core.operation import UserOperation
from relayer.core.outcomes import (
    BatchFailed,
    BatchIndeterminate,
    BatchSubmitted,
    FailureKind,
    RelayResult,
    RelayStatus,
    SimulationAccepted,
    SimulationOutcome,
    SimulationRejected,
    SimulationUnknown,
    SubmissionOutcome,
)
from relayer.core.request import RequestStatus
from relayer.engine.simulator import ValidationSimulator
from relayer.engine.submitter import BatchSubmitter
from relayer.state.operation_pool import OperationPool
from relayer.state.sequence import SequenceConflictError, SequenceManager
from relayer.tx.builder import TransactionBuilder
from relayer.tx.fees import FeePolicy
from relayer.tx.signer import TransactionSigner

logger = structlog.get_logger(__name__)


class Relayer:
    """
    Main relayer orchestrator.

    Coordinates all relayer components:
    - Operation validation and deduplication
    - Concurrent validation simulation
    - Batch formation and submission under a single relayer nonce sequence
    - Receipt and event correlation
    - Monitoring and logging

    Usage:
        ```python
        relayer = Relayer()
        await relayer.initialize()
        results = await relayer.relay(operations)
        await relayer.shutdown()
        ```
    """

    def __init__(
        self,
        config: Optional[RelayerConfig] = None,
        chain: Optional[ChainInterface] = None,
        signer: Optional[TransactionSigner] = None,
        fee_policy: Optional[FeePolicy] = None,
    ):
        """
        Initialize the relayer.

        Args:
            config: Relayer configuration
            chain: Custom node interface (auto-created based on config if not provided)
            signer: Signer holding the relayer key (loaded from config if not provided)
            fee_policy: Custom fee policy (selected by config if not provided)
        """
        self.config = config or get_config()

        # Initialize node interface
        if chain:
            self.chain = chain
        elif self.config.is_websocket:
            self.chain = WebSocketRpcAdapter(self.config)
        else:
            self.chain = HttpRpcAdapter(self.config)

        self._signer = signer
        self._fee_policy = fee_policy

        # Initialize components (lazy initialization in initialize())
        self._entry_point: Optional[EntryPoint] = None
        self._pool: Optional[OperationPool] = None
        self._simulator: Optional[ValidationSimulator] = None
        self._sequence: Optional[SequenceManager] = None
        self._tx_builder: Optional[TransactionBuilder] = None
        self._submitter: Optional[BatchSubmitter] = None

        # State
        self._initialized = False
        self._last_relay_time: Optional[datetime] = None
        self._last_batch_time: Optional[datetime] = None

        # Callbacks
        self._on_simulated: Optional[Callable[[SimulationOutcome], None]] = None
        self._on_batch_submitted: Optional[Callable[[Batch, str], None]] = None
        self._on_batch_indeterminate: Optional[Callable[[Batch, str], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None

    async def initialize(self) -> None:
        """
        Initialize all components.

        Must be called before relaying.

        Raises:
            ConfigError: If the entry point is missing or the node serves another chain
            ChainConnectionError: If the node cannot be reached
        """
        if self._initialized:
            return

        entry_point_address = self.config.ensure_entry_point()
        logger.info(
            "relayer_initializing",
            entry_point=entry_point_address,
            chain_id=self.config.chain_id,
        )

        # Connect to node and make sure it serves the configured chain
        await self.chain.connect()
        node_chain_id = await self.chain.get_chain_id()
        if node_chain_id != self.config.chain_id:
            await self.chain.disconnect()
            raise ConfigError(
                f"Node reports chain id {node_chain_id}, expected {self.config.chain_id}"
            )

        if self._signer is None:
            self._signer = TransactionSigner(self.config)
            if self.config.relayer_key_path or self.config.relayer_private_key:
                self._signer.load_from_config()

        self._entry_point = EntryPoint(self.chain, entry_point_address)
        self._pool = OperationPool(self.config)
        self._simulator = ValidationSimulator(
            entry_point=self._entry_point,
            caller=self._signer.address,
            config=self.config,
        )

        if self._signer.is_loaded:
            self._sequence = SequenceManager(self.chain, self._signer.address)
            self._tx_builder = TransactionBuilder(
                chain=self.chain,
                signer=self._signer,
                entry_point=self._entry_point,
                fee_policy=self._fee_policy,
                config=self.config,
            )
            self._submitter = BatchSubmitter(
                chain=self.chain,
                sequence=self._sequence,
                builder=self._tx_builder,
                config=self.config,
            )
        else:
            logger.warning("relayer_read_only", reason="no signing key configured")

        self._initialized = True
        logger.info("relayer_initialized", relayer=self._signer.address)

    async def shutdown(self) -> None:
        """Shutdown the relayer and cleanup resources."""
        await self.chain.disconnect()
        self._initialized = False
        logger.info("relayer_shutdown")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Relayer not initialized")

    def _require_submitter(self) -> BatchSubmitter:
        self._require_initialized()
        if self._submitter is None:
            raise RuntimeError("Relayer has no signing key; cannot submit batches")
        return self._submitter

    @property
    def address(self) -> Optional[str]:
        """The relayer account address."""
        return self._signer.address if self._signer else None

    @property
    def entry_point(self) -> EntryPoint:
        self._require_initialized()
        return self._entry_point

    @property
    def sequence(self) -> Optional[SequenceManager]:
        return self._sequence

    # Relaying

    def request_id(self, op: UserOperation) -> str:
        """Local request identifier of an operation."""
        self._require_initialized()
        return self._simulator.request_id(op.validate())

    async def verify_request_id(self, op: UserOperation) -> Tuple[str, str]:
        """
        Derive the request id locally and ask the entry point for it.

        Returns:
            Tuple of (local id, on-chain id), both as ``0x`` hex
        """
        self._require_initialized()
        op = op.validate()
        local_id = self._simulator.request_id(op)
        onchain_id = "0x" + (await self._entry_point.get_request_id(op)).hex()
        if local_id != onchain_id:
            logger.warning("request_id_mismatch", local=local_id, onchain=onchain_id)
        return local_id, onchain_id

    async def simulate(
        self,
        ops: Sequence[UserOperation],
        timeout: Optional[float] = None,
    ) -> List[SimulationOutcome]:
        """
        Simulate operations concurrently without submitting them.

        Raises:
            OperationValidationError: If an operation is malformed
        """
        self._require_initialized()
        validated = [op.validate() for op in ops]
        outcomes = await self._simulator.simulate_many(validated, timeout)
        for outcome in outcomes:
            self._notify_simulated(outcome)
        return outcomes

    async def relay(
        self,
        ops: Sequence[UserOperation],
        beneficiary: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[RelayResult]:
        """
        Simulate operations and submit the accepted ones.

        Accepted operations are grouped in arrival order into batches of at
        most ``max_batch_size``; each batch uses one relayer nonce.

        Args:
            ops: Operations to relay
            beneficiary: Recipient of collected fees (config or relayer address by default)
            timeout: Deadline in seconds for the whole call

        Returns:
            One result per operation, in input order

        Raises:
            OperationValidationError: If an operation is malformed (nothing is relayed)
            SequenceConflictError: If the relayer's nonce state is corrupted
        """
        submitter = self._require_submitter()
        validated = [op.validate() for op in ops]
        beneficiary = beneficiary or self.config.beneficiary_address or self._signer.address
        deadline = Deadline(timeout)
        self._last_relay_time = datetime.utcnow()

        results: List[Optional[RelayResult]] = [None] * len(validated)

        await self._pool.prune_finished(self.config.pool_retention_seconds)

        # Deduplicate against operations already on their way
        to_simulate: List[Tuple[int, str, UserOperation]] = []
        for index, op in enumerate(validated):
            request_id = self._simulator.request_id(op)
            if await self._pool.add_operation(request_id, op):
                to_simulate.append((index, request_id, op))
                continue
            existing = await self._pool.get_request(request_id)
            results[index] = RelayResult(
                request_id=request_id,
                status=RelayStatus.DUPLICATE,
                tx_hash=existing.transaction_hash,
                reason=f"Operation already {existing.status.value}",
                batch_id=existing.batch_id,
            )

        try:
            outcomes = await self._simulator.simulate_many(
                [op for _, _, op in to_simulate],
                deadline.remaining(),
            )

            accepted: List[Tuple[int, SimulationAccepted]] = []
            for (index, _, _), outcome in zip(to_simulate, outcomes):
                self._notify_simulated(outcome)
                if isinstance(outcome, SimulationAccepted):
                    await self._pool.update_request_status(outcome.request_id, RequestStatus.ACCEPTED)
                    accepted.append((index, outcome))
                elif isinstance(outcome, SimulationRejected):
                    await self._pool.update_request_status(
                        outcome.request_id, RequestStatus.REJECTED, error_message=outcome.reason
                    )
                    results[index] = RelayResult(
                        request_id=outcome.request_id,
                        status=RelayStatus.REJECTED,
                        reason=outcome.reason,
                    )
                elif isinstance(outcome, SimulationUnknown):
                    await self._pool.update_request_status(
                        outcome.request_id, RequestStatus.UNKNOWN, error_message=outcome.error
                    )
                    results[index] = RelayResult(
                        request_id=outcome.request_id,
                        status=RelayStatus.UNKNOWN,
                        reason=outcome.error,
                    )

            max_size = self.config.max_batch_size
            for start in range(0, len(accepted), max_size):
                chunk = accepted[start:start + max_size]
                batch = Batch()
                for _, outcome in chunk:
                    batch.add(outcome)

                submission = await self._submit_batch(submitter, batch, beneficiary, deadline)

                for index, outcome in chunk:
                    results[index] = _relay_result(outcome.request_id, batch, submission)

        except asyncio.CancelledError:
            await self._abandon([request_id for _, request_id, _ in to_simulate])
            raise

        logger.info(
            "relay_completed",
            total=len(results),
            **_count_statuses(results),
        )
        return results

    async def _abandon(self, request_ids: Sequence[str]) -> None:
        """Make requests that never reached the node eligible for another relay."""
        for request_id in request_ids:
            request = await self._pool.get_request(request_id)
            if request is None:
                continue
            if request.status == RequestStatus.PENDING:
                await self._pool.update_request_status(
                    request_id, RequestStatus.UNKNOWN,
                    error_message="Relay cancelled during simulation",
                )
            elif request.status in (RequestStatus.ACCEPTED, RequestStatus.QUEUED):
                await self._pool.update_request_status(
                    request_id, RequestStatus.FAILED,
                    error_message="Relay cancelled before broadcast",
                )

    async def _submit_batch(
        self,
        submitter: BatchSubmitter,
        batch: Batch,
        beneficiary: str,
        deadline: Deadline,
    ) -> SubmissionOutcome:
        await self._pool.add_batch(batch)
        batch.mark_submitting()

        logger.info("processing_batch", batch_id=batch.batch_id[:8] + "...", size=batch.size)

        broadcast: List[Tuple[int, str]] = []

        try:
            submission = await submitter.submit(
                batch.entries,
                beneficiary,
                deadline.remaining(),
                on_broadcast=lambda nonce, tx_hash: broadcast.append((nonce, tx_hash)),
            )
        except SequenceConflictError as e:
            logger.critical("relayer_halted", batch_id=batch.batch_id, error=str(e))
            if self._on_error:
                self._on_error(e)
            raise
        except (asyncio.CancelledError, Exception):
            # Settle the requests before propagating; only a handed-over
            # transaction makes them indeterminate
            await self._record_submission(batch, _interrupted(batch, broadcast))
            raise

        await self._record_submission(batch, submission)
        return submission

    async def _record_submission(self, batch: Batch, submission: SubmissionOutcome) -> None:
        batch.apply_outcome(submission)
        await self._pool.record_transaction(batch)
        self._last_batch_time = datetime.utcnow()

        if isinstance(submission, BatchSubmitted):
            new_status, error = RequestStatus.SUBMITTED, None
            if self._on_batch_submitted:
                self._on_batch_submitted(batch, submission.tx_hash)
        elif isinstance(submission, BatchIndeterminate):
            new_status, error = RequestStatus.INDETERMINATE, submission.reason
            if self._on_batch_indeterminate:
                self._on_batch_indeterminate(batch, submission.tx_hash)
        else:
            new_status, error = RequestStatus.FAILED, submission.reason

        for request_id in batch.get_request_ids():
            await self._pool.update_request_status(
                request_id,
                new_status,
                error_message=error,
                batch_id=batch.batch_id,
                transaction_hash=batch.transaction_hash,
            )

    # Results and queries

    async def get_operation_results(
        self,
        tx_hash: str,
        wait: bool = False,
    ) -> Optional[List[UserOperationExecution]]:
        """
        Get per-operation execution results of a batch transaction.

        A batch being mined does not mean every operation in it succeeded;
        the entry point reports each one in a ``UserOperationEvent``.

        Args:
            tx_hash: Hash of the handleOps transaction
            wait: Poll until the receipt appears or the receipt timeout expires

        Returns:
            Execution results in log order, or None if the transaction is not mined
        """
        self._require_initialized()

        if wait:
            receipt = await self.chain.await_transaction_receipt(
                tx_hash,
                timeout_seconds=self.config.receipt_timeout_seconds,
                poll_interval_seconds=self.config.receipt_poll_interval_seconds,
            )
        else:
            receipt = await self.chain.get_transaction_receipt(tx_hash)

        if receipt is None:
            return None

        executions = self._entry_point.decode_events(receipt)

        batch = await self._pool.get_batch_by_transaction(tx_hash)
        if batch is not None:
            batch.mark_confirmed()
            for request_id in batch.get_request_ids():
                await self._pool.update_request_status(request_id, RequestStatus.CONFIRMED)
            await self._pool.prune_finished(self.config.pool_retention_seconds)

        logger.info(
            "batch_receipt",
            tx_hash=tx_hash,
            status=receipt.get("status"),
            operations=len(executions),
            succeeded=sum(1 for e in executions if e.success),
        )
        return executions

    async def get_deposit_info(self, account: str) -> DepositInfo:
        """Get an account's deposit and stake at the entry point."""
        self._require_initialized()
        return await self._entry_point.get_deposit_info(account)

    async def balance_of(self, account: str) -> int:
        """Get an account's deposit at the entry point, in wei."""
        self._require_initialized()
        return await self._entry_point.balance_of(account)

    async def health(self) -> dict:
        """Report the relayer identity, chain and node reachability."""
        self._require_initialized()

        report = {
            "relayer": self.address,
            "chain_id": self.config.chain_id,
            "entry_point": self._entry_point.address,
            "node_reachable": True,
            "sequence": self._sequence.snapshot() if self._sequence else None,
        }
        try:
            await self.chain.get_chain_id()
        except (ChainConnectionError, RpcError) as e:
            report["node_reachable"] = False
            report["node_error"] = str(e)
        if self.address:
            try:
                report["relayer_balance"] = await self.chain.get_balance(self.address)
            except (ChainConnectionError, RpcError) as e:
                logger.warning("balance_query_failed", error=str(e))
        return report

    async def get_stats(self) -> dict:
        """Get relayer statistics."""
        pool_stats = await self._pool.get_stats() if self._pool else {}

        return {
            "initialized": self._initialized,
            "relayer_address": self.address,
            "entry_point": self.config.entry_point_address,
            "chain_id": self.config.chain_id,
            "last_relay_time": self._last_relay_time.isoformat() if self._last_relay_time else None,
            "last_batch_time": self._last_batch_time.isoformat() if self._last_batch_time else None,
            "pool": pool_stats,
            "sequence": self._sequence.snapshot() if self._sequence else None,
        }

    def _notify_simulated(self, outcome: SimulationOutcome) -> None:
        if self._on_simulated:
            self._on_simulated(outcome)

    # Callback registration

    def on_simulated(self, callback: Callable[[SimulationOutcome], None]) -> None:
        """Register callback for simulation outcomes."""
        self._on_simulated = callback

    def on_batch_submitted(self, callback: Callable[[Batch, str], None]) -> None:
        """Register callback for batch submission events."""
        self._on_batch_submitted = callback

    def on_batch_indeterminate(self, callback: Callable[[Batch, str], None]) -> None:
        """Register callback for batches whose broadcast outcome is unknown."""
        self._on_batch_indeterminate = callback

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        """Register callback for fatal errors."""
        self._on_error = callback


def _relay_result(request_id: str, batch: Batch, submission: SubmissionOutcome) -> RelayResult:
    if isinstance(submission, BatchSubmitted):
        return RelayResult(
            request_id=request_id,
            status=RelayStatus.SUBMITTED,
            tx_hash=submission.tx_hash,
            batch_id=batch.batch_id,
        )
    if isinstance(submission, BatchIndeterminate):
        return RelayResult(
            request_id=request_id,
            status=RelayStatus.INDETERMINATE,
            tx_hash=submission.tx_hash,
            reason=submission.reason,
            batch_id=batch.batch_id,
        )

    reason = submission.reason
    if isinstance(submission, BatchFailed) and submission.failed_op_index is not None:
        failed = batch.entries[submission.failed_op_index].request_id \
            if submission.failed_op_index < batch.size else None
        if failed == request_id:
            reason = f"Operation broke the batch: {reason}"
    return RelayResult(
        request_id=request_id,
        status=RelayStatus.FAILED,
        reason=reason,
        batch_id=batch.batch_id,
    )


def _count_statuses(results: Sequence[Optional[RelayResult]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for result in results:
        if result is not None:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
    return counts


def _interrupted(batch: Batch, broadcast: Sequence[Tuple[int, str]]) -> SubmissionOutcome:
    if broadcast:
        nonce, tx_hash = broadcast[-1]
        return BatchIndeterminate(
            request_ids=batch.get_request_ids(),
            tx_hash=tx_hash,
            sequence_number=nonce,
            reason="Relay interrupted during broadcast",
        )
    return BatchFailed(
        request_ids=batch.get_request_ids(),
        kind=FailureKind.TRANSPORT,
        reason="Relay interrupted before broadcast",
        retryable=True,
    )
