"""
Chain Integration Layer.

Provides abstracted JSON-RPC access to an EVM node and the entry point
contract surface. Supports HTTP and WebSocket transports.
"""

from relayer.chain.interface import (
    ChainConnectionError,
    ChainInterface,
    ChainTimeoutError,
    ContractRevertError,
    MalformedResponseError,
    RpcError,
    TransactionSubmitError,
)
from relayer.chain.http import HttpRpcAdapter
from relayer.chain.websocket import WebSocketRpcAdapter
from relayer.chain.entrypoint import DepositInfo, EntryPoint, UserOperationExecution

__all__ = [
    "ChainInterface",
    "ChainConnectionError",
    "ChainTimeoutError",
    "MalformedResponseError",
    "RpcError",
    "ContractRevertError",
    "TransactionSubmitError",
    "HttpRpcAdapter",
    "WebSocketRpcAdapter",
    "EntryPoint",
    "DepositInfo",
    "UserOperationExecution",
]
