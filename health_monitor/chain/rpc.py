"""
Solana RPC Client - JSON-RPC over HTTP.

Only the handful of methods the monitor needs: signature history,
transaction fetch and account lookup. Rate limits, 5xx responses and
network errors surface as TransientBackendError so callers retry them;
JSON-RPC error objects surface as RpcError and are not retried.
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from ..exceptions import RpcError, TransientBackendError
from ..retry import DEFAULT_POLICY, RetryPolicy, retry_with_backoff


logger = logging.getLogger(__name__)


class SolanaRpcClient:
    """
    Minimal async Solana JSON-RPC client.

    The aiohttp session is created lazily and owned by the client
    unless one is injected.
    """

    def __init__(
        self,
        rpc_url: str,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 20.0,
    ) -> None:
        self.rpc_url = rpc_url
        self._retry_policy = retry_policy
        self._session = session
        self._owns_session = session is None
        self._timeout_seconds = timeout_seconds
        self._request_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            headers = {"Content-Type": "application/json"}
            self._session = aiohttp.ClientSession(timeout=timeout, headers=headers)
            self._owns_session = True
        return self._session

    def _next_request_id(self) -> int:
        """Get next JSON-RPC request ID."""
        self._request_id += 1
        return self._request_id

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make a single JSON-RPC call."""
        session = await self._get_session()

        payload = {
            "jsonrpc": "2.0",
            "id": self._next_request_id(),
            "method": method,
            "params": params,
        }

        try:
            async with session.post(self.rpc_url, json=payload) as response:
                if response.status == 429 or response.status >= 500:
                    raise TransientBackendError(
                        f"RPC {method} returned {response.status}",
                        backend="rpc",
                        status_code=response.status,
                    )

                if response.status != 200:
                    raise RpcError(f"RPC {method} returned {response.status}", method=method)

                data = await response.json()

        except aiohttp.ClientError as e:
            raise TransientBackendError(f"Network error calling {method}: {e}", backend="rpc") from e
        except asyncio.TimeoutError as e:
            raise TransientBackendError(f"Timeout calling {method}", backend="rpc") from e

        if "error" in data:
            error = data["error"] or {}
            raise RpcError(
                f"RPC error: {error.get('message', 'Unknown')}",
                code=error.get("code"),
                method=method,
            )

        return data.get("result")

    async def call(self, method: str, params: list[Any]) -> Any:
        """JSON-RPC call with retries on transient failures."""
        return await retry_with_backoff(
            lambda: self._rpc_call(method, params),
            policy=self._retry_policy,
            description=f"rpc.{method}",
        )

    # ─────────────────────────────────────────────────────────────
    # Methods
    # ─────────────────────────────────────────────────────────────

    async def get_signatures_for_address(self, address: str, limit: int = 1) -> list[dict[str, Any]]:
        """Most recent transaction signatures touching `address`."""
        result = await self.call("getSignaturesForAddress", [address, {"limit": limit}])
        return result or []

    async def get_transaction(self, signature: str) -> Optional[dict[str, Any]]:
        """Full transaction, base64 encoded, or None if unknown."""
        return await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "base64",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_health(self) -> bool:
        """True when the node reports itself healthy."""
        try:
            return await self._rpc_call("getHealth", []) == "ok"
        except (TransientBackendError, RpcError) as e:
            logger.warning(f"RPC health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the HTTP session if this client owns it."""
        if self._session and not self._session.closed and self._owns_session:
            await self._session.close()
        self._session = None
