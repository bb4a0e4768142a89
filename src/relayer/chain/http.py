"""
HTTP JSON-RPC adapter for node integration.

Provides blockchain access via a node's HTTP JSON-RPC endpoint.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from relayer.chain.interface import (
    ChainConnectionError,
    ChainTimeoutError,
    MalformedResponseError,
)
from relayer.chain.rpc import JsonRpcAdapter
from relayer.config import RelayerConfig, get_config

logger = structlog.get_logger(__name__)


class HttpRpcAdapter(JsonRpcAdapter):
    """
    HTTP JSON-RPC adapter.

    Implements the ChainInterface with one POST per request.
    """

    def __init__(
        self,
        config: Optional[RelayerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the HTTP adapter.

        Args:
            config: Relayer configuration. Uses global config if not provided.
            transport: Custom httpx transport (used by tests)
        """
        super().__init__()
        self.config = config or get_config()
        self.url = self.config.rpc_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> dict:
        """Get request headers."""
        return {"Content-Type": "application/json"}

    async def connect(self) -> None:
        """Establish connection (create HTTP client)."""
        if self._client is not None:
            return

        self._client = httpx.AsyncClient(
            headers=self.headers,
            timeout=self.config.rpc_timeout_seconds,
            transport=self._transport,
        )
        logger.info("http_rpc_connected", url=self.url)

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("http_rpc_disconnected")

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self._client:
            await self.connect()

        method = payload["method"]
        try:
            response = await self._client.post(self.url, json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # Nothing reached the node
            logger.error("http_rpc_connect_error", method=method, error=str(e))
            raise ChainConnectionError(f"{method}: connection failed: {e}", request_sent=False) from e
        except httpx.TimeoutException as e:
            logger.error("http_rpc_timeout", method=method, error=str(e))
            raise ChainTimeoutError(f"{method}: request timed out", request_sent=True) from e
        except httpx.HTTPError as e:
            logger.error("http_rpc_request_error", method=method, error=str(e))
            raise ChainConnectionError(f"{method}: request failed: {e}", request_sent=True) from e

        if response.status_code != 200:
            logger.error(
                "http_rpc_request_failed",
                method=method,
                status=response.status_code,
                error=response.text[:200],
            )
            raise ChainConnectionError(
                f"{method}: HTTP {response.status_code}",
                request_sent=True,
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{method}: response is not JSON") from e
