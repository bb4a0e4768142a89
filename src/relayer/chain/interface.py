"""
Abstract interface for EVM node integration.

Defines the contract for blockchain access that all node adapters must implement.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class ChainInterface(ABC):
    """
    Abstract interface for EVM node access.

    This interface defines all blockchain operations needed by the relayer:
    - Read-only contract calls (simulation, deposit queries)
    - Account nonce and fee queries
    - Raw transaction broadcast
    - Receipt monitoring
    """

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish connection to the node.

        Raises:
            ChainConnectionError: If connection cannot be established
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the node."""
        pass

    @abstractmethod
    async def get_chain_id(self) -> int:
        """Get the chain ID reported by the node."""
        pass

    @abstractmethod
    async def call(self, tx: Dict[str, Any], block: str = "latest") -> bytes:
        """
        Execute a call without creating a transaction.

        Args:
            tx: Call object (``from``, ``to``, ``data``, ...)
            block: Block tag to execute against

        Returns:
            Raw return data

        Raises:
            ContractRevertError: If the call reverted
        """
        pass

    @abstractmethod
    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        """
        Estimate the gas a transaction would use.

        Raises:
            ContractRevertError: If execution would revert
        """
        pass

    @abstractmethod
    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        """
        Get an account's transaction count (its next nonce).

        Args:
            address: Account address
            block: Block tag; ``pending`` includes transactions in the pool
        """
        pass

    @abstractmethod
    async def get_balance(self, address: str, block: str = "latest") -> int:
        """Get an account's native balance in wei."""
        pass

    @abstractmethod
    async def gas_price(self) -> int:
        """Get the node's suggested gas price in wei."""
        pass

    @abstractmethod
    async def max_priority_fee(self) -> int:
        """Get the node's suggested priority fee in wei."""
        pass

    @abstractmethod
    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        """
        Broadcast a signed transaction.

        Args:
            raw_tx: Signed transaction bytes

        Returns:
            Transaction hash

        Raises:
            TransactionSubmitError: If the node rejected the transaction
            ChainConnectionError: If the outcome could not be read
        """
        pass

    @abstractmethod
    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """
        Get a transaction receipt.

        Returns:
            The receipt if the transaction is mined, None otherwise
        """
        pass

    async def await_transaction_receipt(
        self,
        tx_hash: str,
        timeout_seconds: float = 120,
        poll_interval_seconds: float = 2.0,
    ) -> Optional[Dict[str, Any]]:
        """
        Wait for a transaction to be mined.

        Args:
            tx_hash: Hash of the transaction to monitor
            timeout_seconds: Maximum time to wait
            poll_interval_seconds: Delay between receipt queries

        Returns:
            The receipt if mined within the timeout, None otherwise
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
                if receipt is not None:
                    return receipt
            except ChainConnectionError as e:
                logger.warning("receipt_poll_error", tx_hash=tx_hash, error=str(e))

            if loop.time() >= deadline:
                logger.warning("receipt_timeout", tx_hash=tx_hash, timeout=timeout_seconds)
                return None
            await asyncio.sleep(poll_interval_seconds)


class ChainConnectionError(Exception):
    """
    Raised when the node could not be reached or its answer could not be read.

    ``request_sent`` tells whether the request may have reached the node,
    which decides if a broadcast's outcome is unknown or definitely failed.
    """

    def __init__(self, message: str, request_sent: bool = True):
        super().__init__(message)
        self.request_sent = request_sent


class ChainTimeoutError(ChainConnectionError):
    """Raised when the node did not answer in time."""
    pass


class MalformedResponseError(ChainConnectionError):
    """Raised when the node's answer is not a valid JSON-RPC response."""
    pass


class RpcError(Exception):
    """Raised when the node returns a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class ContractRevertError(RpcError):
    """Raised when a call or gas estimation reverted."""

    @property
    def revert_data(self) -> Optional[str]:
        """Revert payload as ``0x`` hex, if the node returned it."""
        data = self.data
        while isinstance(data, dict):
            data = data.get("data")
        if isinstance(data, str) and data.startswith("0x"):
            return data
        return None


class TransactionSubmitError(RpcError):
    """Raised when the node refuses a raw transaction."""

    @property
    def is_nonce_too_low(self) -> bool:
        message = str(self).lower()
        return "nonce too low" in message or "nonce is too low" in message

    @property
    def is_already_known(self) -> bool:
        message = str(self).lower()
        return "already known" in message or "alreadyknown" in message
