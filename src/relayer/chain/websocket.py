"""
WebSocket JSON-RPC adapter for node integration.

Provides blockchain access over a persistent WebSocket connection, matching
responses to requests by their JSON-RPC id.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from relayer.chain.interface import ChainConnectionError, ChainTimeoutError
from relayer.chain.rpc import JsonRpcAdapter
from relayer.config import RelayerConfig, get_config

logger = structlog.get_logger(__name__)


class WebSocketRpcAdapter(JsonRpcAdapter):
    """
    WebSocket JSON-RPC adapter.

    Implements the ChainInterface over a single multiplexed connection.
    """

    def __init__(self, config: Optional[RelayerConfig] = None):
        """
        Initialize the WebSocket adapter.

        Args:
            config: Relayer configuration. Uses global config if not provided.
        """
        super().__init__()
        self.config = config or get_config()
        self.url = self.config.rpc_url
        self._ws = None
        self._pending_requests: Dict[Any, asyncio.Future] = {}
        self._receive_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        """Establish WebSocket connection to the node."""
        if self._ws is not None:
            return

        try:
            self._ws = await websockets.connect(
                self.url,
                ping_interval=30,
                ping_timeout=10,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise ChainConnectionError(
                f"Failed to connect to {self.url}: {e}", request_sent=False
            ) from e

        # Start receive loop
        self._receive_task = asyncio.create_task(self._receive_loop())

        logger.info("websocket_rpc_connected", url=self.url)

    async def disconnect(self) -> None:
        """Close WebSocket connection."""
        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            await self._ws.close()
            self._ws = None
            logger.info("websocket_rpc_disconnected")

    async def _receive_loop(self) -> None:
        """Background task to receive WebSocket messages."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except ValueError:
                    logger.warning("websocket_rpc_invalid_message")
                    continue

                # Match response to request
                request_id = data.get("id") if isinstance(data, dict) else None
                future = self._pending_requests.pop(request_id, None)
                if future is not None and not future.done():
                    future.set_result(data)

        except ConnectionClosed:
            logger.warning("websocket_rpc_connection_closed")
        finally:
            self._fail_pending("connection closed")
            self._ws = None

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending_requests = self._pending_requests, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ChainConnectionError(reason, request_sent=True))

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self._ws:
            await self.connect()

        method = payload["method"]
        request_id = payload["id"]

        # Create future for response
        future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future

        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            self._pending_requests.pop(request_id, None)
            raise ChainConnectionError(f"{method}: connection closed", request_sent=False) from e

        try:
            return await asyncio.wait_for(future, timeout=self.config.rpc_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error("websocket_rpc_timeout", method=method)
            raise ChainTimeoutError(f"{method}: request timed out", request_sent=True) from e
        finally:
            self._pending_requests.pop(request_id, None)
