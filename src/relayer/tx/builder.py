"""
Transaction Builder - constructs batch transactions.

Turns a list of operations into a signed handleOps transaction for a given
relayer nonce.
"""

from typing import Any, Dict, Optional, Sequence

import structlog
from eth_account.datastructures import SignedTransaction

from relayer.chain.entrypoint import EntryPoint, decode_revert, encode_handle_ops
from relayer.chain.interface import ChainInterface, ContractRevertError
from relayer.config import RelayerConfig, get_config
from relayer.core.deadline import Deadline
from relayer.core.operation import UserOperation
from relayer.tx.fees import FeePolicy, FeeQuoteError, create_fee_policy
from relayer.tx.signer import TransactionSigner

logger = structlog.get_logger(__name__)


class TransactionBuildError(Exception):
    """
    Raised when transaction construction fails.

    ``failed_op_index`` is set when gas estimation reverted with the entry
    point's ``FailedOp`` error, naming the operation that broke the batch.
    """

    def __init__(self, message: str, failed_op_index: Optional[int] = None):
        super().__init__(message)
        self.failed_op_index = failed_op_index


class TransactionBuilder:
    """
    Builds and signs handleOps transactions.

    Coordinates the entry point encoder, the fee policy and the signer to
    produce signed transactions.
    """

    def __init__(
        self,
        chain: ChainInterface,
        signer: TransactionSigner,
        entry_point: EntryPoint,
        fee_policy: Optional[FeePolicy] = None,
        config: Optional[RelayerConfig] = None,
    ):
        """
        Initialize the transaction builder.

        Args:
            chain: Node interface for gas estimation
            signer: Transaction signer holding the relayer key
            entry_point: Entry point the batch is sent to
            fee_policy: Fee policy (selected by config if not provided)
            config: Relayer configuration
        """
        self.chain = chain
        self.signer = signer
        self.entry_point = entry_point
        self.config = config or get_config()
        self.fee_policy = fee_policy or create_fee_policy(chain, self.config)

    async def build_transaction(
        self,
        ops: Sequence[UserOperation],
        beneficiary: str,
        nonce: int,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """
        Build an unsigned handleOps transaction.

        Args:
            ops: Operations in batch order
            beneficiary: Recipient of the collected fees
            nonce: Relayer nonce to use
            deadline: Time budget for the node calls

        Returns:
            Transaction fields ready for signing

        Raises:
            TransactionBuildError: If fees cannot be quoted or gas estimation reverts
            ChainConnectionError: If the node could not be reached
        """
        if not ops:
            raise TransactionBuildError("Cannot build a transaction for an empty batch")
        if not self.signer.is_loaded:
            raise TransactionBuildError("No signing key loaded")

        deadline = deadline or Deadline()
        legacy = self.config.legacy_transactions

        try:
            fees = await deadline.run(self.fee_policy.quote(ops))
        except FeeQuoteError as e:
            raise TransactionBuildError(f"Fee quote failed: {e}") from e

        tx: Dict[str, Any] = {
            "from": self.signer.address,
            "to": self.entry_point.address,
            "value": 0,
            "data": encode_handle_ops(ops, beneficiary),
            "nonce": nonce,
            "chainId": self.config.chain_id,
            **fees.to_tx_fields(legacy),
        }
        if not legacy:
            tx["type"] = 2

        tx["gas"] = await self._gas_limit(tx, deadline)

        logger.debug(
            "transaction_built",
            nonce=nonce,
            ops=len(ops),
            gas=tx["gas"],
            legacy=legacy,
        )
        return tx

    async def _gas_limit(self, tx: Dict[str, Any], deadline: Deadline) -> int:
        if self.config.handle_ops_gas_limit:
            return self.config.handle_ops_gas_limit

        call = {
            "from": tx["from"],
            "to": tx["to"],
            "data": tx["data"],
        }
        try:
            estimate = await deadline.run(self.chain.estimate_gas(call))
        except ContractRevertError as e:
            revert = decode_revert(e.revert_data)
            logger.warning(
                "gas_estimation_reverted",
                reason=revert.reason,
                op_index=revert.op_index,
            )
            raise TransactionBuildError(
                f"handleOps would revert: {revert.reason}",
                failed_op_index=revert.op_index,
            ) from e

        return estimate * self.config.gas_limit_multiplier_percent // 100

    def sign(self, tx: Dict[str, Any]) -> SignedTransaction:
        """
        Sign a built transaction.

        Raises:
            SigningError: If signing fails
        """
        unsigned = {key: value for key, value in tx.items() if key != "from"}
        return self.signer.sign_transaction(unsigned)
