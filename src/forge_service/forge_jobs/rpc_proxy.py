"""
RPC Proxy

Forwards read-only JSON-RPC queries to the allow-listed chain endpoints.
The method allowlist is a safety boundary: unknown methods are rejected,
never passed through.
"""
import logging
from typing import Any, List, Optional

import httpx

from ..errors import MethodNotAllowed, RpcUpstreamError, UnsupportedChain
from .limits import EngineLimits

logger = logging.getLogger(__name__)


class RpcProxy:
    def __init__(
        self,
        limits: Optional[EngineLimits] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.limits = limits or EngineLimits()
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        """Return (or create) the shared httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def is_allowed_method(self, method: str) -> bool:
        return method in self.limits.allowed_rpc_methods

    def get_rpc_url(self, chain_id: int) -> Optional[str]:
        return self.limits.rpc_url(chain_id)

    async def proxy_request(self, chain_id: int, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Forward one call and return its JSON-RPC result.

        Raises:
            MethodNotAllowed: method outside the allowlist (checked first, on every chain)
            UnsupportedChain: chain has no allow-listed endpoint
            RpcUpstreamError: transport failure, HTTP error or JSON-RPC error object
        """
        if not self.is_allowed_method(method):
            logger.warning(f"Rejected RPC method {method} for chain {chain_id}")
            raise MethodNotAllowed(method)

        rpc_url = self.get_rpc_url(chain_id)
        if rpc_url is None:
            raise UnsupportedChain(chain_id)

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        try:
            response = await self._get_client().post(rpc_url, json=payload)
        except httpx.HTTPError as e:
            raise RpcUpstreamError(f"RPC request failed: {e}") from e

        if response.status_code >= 400:
            raise RpcUpstreamError(
                f"RPC request failed: {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RpcUpstreamError("RPC response was not valid JSON") from e
        if not isinstance(data, dict):
            raise RpcUpstreamError("RPC response was not a JSON-RPC object")

        if data.get("error"):
            error = data["error"]
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise RpcUpstreamError(f"RPC error: {message}", rpc_error=error if isinstance(error, dict) else None)

        return data.get("result")
