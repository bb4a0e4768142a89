"""
Fee policies for batch transactions.

A fee policy decides the fee fields of a handleOps transaction. The relation
between what operations offer and what the relayer bids is left to the
policy; the relayer itself only applies the resulting quote.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from relayer.chain.interface import ChainInterface
from relayer.config import FeeStrategy, RelayerConfig, get_config
from relayer.core.operation import UserOperation

logger = structlog.get_logger(__name__)


class FeeQuoteError(Exception):
    """Raised when a fee quote cannot be produced."""
    pass


@dataclass(frozen=True)
class FeeQuote:
    """
    Fee fields for one transaction.

    For legacy transactions only ``max_fee_per_gas`` is used, as ``gasPrice``.
    """

    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def to_tx_fields(self, legacy: bool = False) -> dict:
        """Render the quote as transaction fields."""
        if legacy:
            return {"gasPrice": self.max_fee_per_gas}
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


class FeePolicy(ABC):
    """Chooses the fee fields of a batch transaction."""

    @abstractmethod
    async def quote(self, ops: Sequence[UserOperation]) -> FeeQuote:
        """
        Quote fees for a batch.

        Args:
            ops: Operations in the batch

        Raises:
            FeeQuoteError: If no quote can be produced
        """
        pass


class NodeFeePolicy(FeePolicy):
    """
    Scale the node's suggested prices by a percentage.

    Uses ``eth_gasPrice`` as the fee cap and ``eth_maxPriorityFeePerGas`` as
    the tip. The tip never exceeds the cap.
    """

    def __init__(self, chain: ChainInterface, multiplier_percent: int = 100, legacy: bool = False):
        self.chain = chain
        self.multiplier_percent = multiplier_percent
        self.legacy = legacy

    async def quote(self, ops: Sequence[UserOperation]) -> FeeQuote:
        gas_price = await self.chain.gas_price()
        max_fee = gas_price * self.multiplier_percent // 100

        if self.legacy:
            return FeeQuote(max_fee_per_gas=max_fee, max_priority_fee_per_gas=max_fee)

        priority_fee = await self.chain.max_priority_fee()
        priority_fee = priority_fee * self.multiplier_percent // 100
        # Base fee is not part of eth_gasPrice on every node
        max_fee = max(max_fee, priority_fee)

        logger.debug("fee_quoted", policy="node", max_fee=max_fee, priority_fee=priority_fee)
        return FeeQuote(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority_fee)


class FixedFeePolicy(FeePolicy):
    """Always bid the configured prices."""

    def __init__(self, max_fee_per_gas: int, max_priority_fee_per_gas: Optional[int] = None):
        self._quote = FeeQuote(
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=min(
                max_fee_per_gas,
                max_priority_fee_per_gas if max_priority_fee_per_gas is not None else max_fee_per_gas,
            ),
        )

    async def quote(self, ops: Sequence[UserOperation]) -> FeeQuote:
        return self._quote


class OperationFeePolicy(FeePolicy):
    """
    Bid what the least generous operation in the batch offers.

    The relayer never pays more per gas than every operation agreed to
    reimburse, so no operation in the batch is charged above its own limits.
    """

    async def quote(self, ops: Sequence[UserOperation]) -> FeeQuote:
        if not ops:
            raise FeeQuoteError("Cannot quote fees for an empty batch")

        max_fee = min(op.max_fee_per_gas for op in ops)
        priority_fee = min(min(op.max_priority_fee_per_gas for op in ops), max_fee)
        if max_fee == 0:
            raise FeeQuoteError("Batch contains an operation offering zero maxFeePerGas")

        logger.debug("fee_quoted", policy="passthrough", max_fee=max_fee, priority_fee=priority_fee)
        return FeeQuote(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority_fee)


def create_fee_policy(chain: ChainInterface, config: Optional[RelayerConfig] = None) -> FeePolicy:
    """
    Create the fee policy selected by configuration.

    Args:
        chain: Node interface (used by the node policy)
        config: Relayer configuration
    """
    config = config or get_config()

    if config.fee_strategy == FeeStrategy.FIXED:
        return FixedFeePolicy(
            config.fixed_max_fee_per_gas,
            config.fixed_max_priority_fee_per_gas,
        )
    if config.fee_strategy == FeeStrategy.PASSTHROUGH:
        return OperationFeePolicy()
    return NodeFeePolicy(
        chain,
        multiplier_percent=config.fee_multiplier_percent,
        legacy=config.legacy_transactions,
    )
