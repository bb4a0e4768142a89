"""
JSON-RPC adapter base.

Implements the ChainInterface on top of a single ``_request`` primitive so
transports only need to move JSON-RPC envelopes.
"""

from abc import abstractmethod
from typing import Any, Dict, List, Optional

import structlog

from relayer.chain.interface import (
    ChainInterface,
    ContractRevertError,
    MalformedResponseError,
    RpcError,
    TransactionSubmitError,
)

logger = structlog.get_logger(__name__)

_REVERT_METHODS = ("eth_call", "eth_estimateGas")


class JsonRpcAdapter(ChainInterface):
    """
    Base class for JSON-RPC node adapters.

    Subclasses implement ``_send`` to deliver one request envelope and return
    the decoded response envelope.
    """

    def __init__(self) -> None:
        self._next_id = 0

    @abstractmethod
    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deliver one JSON-RPC request and return the response envelope.

        Raises:
            ChainConnectionError: On transport failures
        """
        pass

    async def _request(self, method: str, params: List[Any]) -> Any:
        """
        Perform a JSON-RPC call and return its ``result``.

        Raises:
            RpcError: If the node returned an error object
            MalformedResponseError: If the response is not a JSON-RPC envelope
        """
        self._next_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params,
        }

        response = await self._send(payload)

        if not isinstance(response, dict):
            raise MalformedResponseError(f"{method}: response is not an object")

        if response.get("error") is not None:
            raise _error_from_response(method, response["error"])

        if "result" not in response:
            raise MalformedResponseError(f"{method}: response has no result")

        return response["result"]

    async def get_chain_id(self) -> int:
        return _to_int(await self._request("eth_chainId", []), "eth_chainId")

    async def call(self, tx: Dict[str, Any], block: str = "latest") -> bytes:
        result = await self._request("eth_call", [_encode_tx(tx), block])
        return _to_bytes(result, "eth_call")

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        result = await self._request("eth_estimateGas", [_encode_tx(tx)])
        return _to_int(result, "eth_estimateGas")

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        result = await self._request("eth_getTransactionCount", [address, block])
        return _to_int(result, "eth_getTransactionCount")

    async def get_balance(self, address: str, block: str = "latest") -> int:
        result = await self._request("eth_getBalance", [address, block])
        return _to_int(result, "eth_getBalance")

    async def gas_price(self) -> int:
        return _to_int(await self._request("eth_gasPrice", []), "eth_gasPrice")

    async def max_priority_fee(self) -> int:
        result = await self._request("eth_maxPriorityFeePerGas", [])
        return _to_int(result, "eth_maxPriorityFeePerGas")

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        result = await self._request("eth_sendRawTransaction", ["0x" + raw_tx.hex()])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise MalformedResponseError("eth_sendRawTransaction: invalid transaction hash")
        logger.debug("raw_transaction_sent", tx_hash=result)
        return result

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        result = await self._request("eth_getTransactionReceipt", [tx_hash])
        if result is not None and not isinstance(result, dict):
            raise MalformedResponseError("eth_getTransactionReceipt: invalid receipt")
        return result


def _error_from_response(method: str, error: Any) -> RpcError:
    if not isinstance(error, dict):
        return RpcError(f"{method}: {error}")

    message = str(error.get("message") or "Unknown error")
    code = error.get("code")
    data = error.get("data")

    if method in _REVERT_METHODS and (
        code == 3 or "revert" in message.lower() or isinstance(data, (str, dict))
    ):
        return ContractRevertError(message, code=code, data=data)
    if method == "eth_sendRawTransaction":
        return TransactionSubmitError(message, code=code, data=data)
    return RpcError(message, code=code, data=data)


def _encode_tx(tx: Dict[str, Any]) -> Dict[str, Any]:
    """Render a call object with JSON-RPC quantities and data."""
    encoded = {}
    for key, value in tx.items():
        if value is None:
            continue
        if isinstance(value, bytes):
            encoded[key] = "0x" + value.hex()
        elif isinstance(value, int) and not isinstance(value, bool):
            encoded[key] = hex(value)
        else:
            encoded[key] = value
    return encoded


def _to_int(value: Any, method: str) -> int:
    if not isinstance(value, str):
        raise MalformedResponseError(f"{method}: expected hex quantity, got {value!r}")
    try:
        return int(value, 16)
    except ValueError as exc:
        raise MalformedResponseError(f"{method}: invalid hex quantity {value!r}") from exc


def _to_bytes(value: Any, method: str) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise MalformedResponseError(f"{method}: expected hex data, got {value!r}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError as exc:
        raise MalformedResponseError(f"{method}: invalid hex data") from exc
