"""
Protocol Client Adapter - Metric lookups with connection recovery.

============================================================
PURPOSE
============================================================
Wrap the external protocol client that computes health and
available credit, and translate its results into the monitor's
error taxonomy.

BATCH SEMANTICS:
- Whole-batch failure -> BatchUnavailableError (retry next tick)
- Per-account "no protocol state" -> listed in BatchResult.missing

INITIALIZATION RECOVERY:
- Retry connect() starting at a base delay, doubling each attempt
- After the attempt budget, raise ClientInitializationError and
  refuse all further work until the process restarts

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import (
    AccountNotFoundError,
    BatchUnavailableError,
    ClientInitializationError,
    ClientUnavailableError,
    RpcError,
    TransientBackendError,
)
from ..models import BatchResult, MetricKind
from ..retry import DEFAULT_POLICY, RetryPolicy, retry_with_backoff
from ..schemas import MetricsResponse


logger = logging.getLogger(__name__)


# ============================================================
# PROTOCOL CLIENT INTERFACE
# ============================================================

class ProtocolClient(ABC):
    """
    External client that computes the watched metric.

    get_metrics returns one entry per owner, in request order; None
    means the owner has no protocol account.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection; raise on failure."""

    @abstractmethod
    async def get_metrics(self, owners: list[str]) -> list[Optional[int]]:
        """Metric per owner, None for owners without a protocol account."""

    async def close(self) -> None:
        """Release resources."""


class ProtocolApiClient(ProtocolClient):
    """
    HTTP client for a protocol metrics service.

    Endpoints:
    - GET  {base_url}/health
    - POST {base_url}/metrics  {"owners": [...], "metric": "<kind>"}
      -> {"metrics": [int | null, ...]}
    """

    def __init__(
        self,
        base_url: str,
        metric_kind: MetricKind = MetricKind.HEALTH,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.metric_kind = metric_kind
        self._session = session
        self._owns_session = session is None
        self._timeout_seconds = timeout_seconds

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def connect(self) -> None:
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}/health") as response:
                if response.status != 200:
                    raise TransientBackendError(
                        f"Protocol service unhealthy: {response.status}",
                        backend="protocol",
                        status_code=response.status,
                    )
        except aiohttp.ClientError as e:
            raise TransientBackendError(f"Protocol service unreachable: {e}", backend="protocol") from e
        except asyncio.TimeoutError as e:
            raise TransientBackendError("Protocol service health check timed out", backend="protocol") from e

    async def get_metrics(self, owners: list[str]) -> list[Optional[int]]:
        if not owners:
            return []

        session = await self._get_session()
        payload = {"owners": owners, "metric": self.metric_kind.value}

        try:
            async with session.post(f"{self.base_url}/metrics", json=payload) as response:
                if response.status == 429 or response.status >= 500:
                    raise TransientBackendError(
                        f"Protocol metrics returned {response.status}",
                        backend="protocol",
                        status_code=response.status,
                    )
                if response.status != 200:
                    raise RpcError(f"Protocol metrics returned {response.status}", method="metrics")
                data: dict[str, Any] = await response.json()
        except aiohttp.ClientError as e:
            raise TransientBackendError(f"Network error fetching metrics: {e}", backend="protocol") from e
        except asyncio.TimeoutError as e:
            raise TransientBackendError("Timeout fetching metrics", backend="protocol") from e

        try:
            parsed = MetricsResponse.model_validate(data)
        except PydanticValidationError as e:
            raise TransientBackendError(f"Malformed metrics response: {e}", backend="protocol") from e

        if len(parsed.metrics) != len(owners):
            raise TransientBackendError(
                f"Metrics response has {len(parsed.metrics)} entries for {len(owners)} owners",
                backend="protocol",
            )
        return parsed.metrics

    async def close(self) -> None:
        if self._session and not self._session.closed and self._owns_session:
            await self._session.close()
        self._session = None


# ============================================================
# ADAPTER
# ============================================================

class ProtocolClientAdapter:
    """
    Adapter between the monitor and a ProtocolClient.

    Usage:
        adapter = ProtocolClientAdapter(ProtocolApiClient(url))
        await adapter.initialize()
        batch = await adapter.resolve_batch(addresses)
    """

    def __init__(
        self,
        client: ProtocolClient,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
        init_base_delay_seconds: float = 1.0,
        init_max_attempts: int = 10,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._client = client
        self._retry_policy = retry_policy
        self._init_base_delay = init_base_delay_seconds
        self._init_max_attempts = init_max_attempts
        self._sleep = sleep or asyncio.sleep
        self._initialized = False
        self._fatal_error: Optional[ClientInitializationError] = None

    @property
    def is_ready(self) -> bool:
        return self._initialized and self._fatal_error is None

    @property
    def is_fatal(self) -> bool:
        return self._fatal_error is not None

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Connect the underlying client, retrying with doubling delays.

        Raises:
            ClientInitializationError: Attempt budget exhausted; the
                adapter stays unusable afterwards
        """
        if self._fatal_error is not None:
            raise self._fatal_error
        if self._initialized:
            return

        last_error: Optional[Exception] = None
        for attempt in range(self._init_max_attempts):
            try:
                await self._client.connect()
                self._initialized = True
                logger.info(f"Protocol client connected after {attempt + 1} attempt(s)")
                return
            except TransientBackendError as e:
                last_error = e
                if attempt + 1 >= self._init_max_attempts:
                    break
                delay = self._init_base_delay * (2 ** attempt)
                logger.warning(
                    f"Protocol client connect failed ({attempt + 1}/{self._init_max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)

        self._fatal_error = ClientInitializationError(self._init_max_attempts, last_error)
        logger.critical(f"{self._fatal_error.message}; protocol client disabled until restart")
        raise self._fatal_error

    async def close(self) -> None:
        await self._client.close()
        self._initialized = False

    # ─────────────────────────────────────────────────────────────
    # Lookups
    # ─────────────────────────────────────────────────────────────

    async def resolve_account(self, address: str) -> int:
        """
        Current metric for one account.

        Raises:
            AccountNotFoundError: The owner has no protocol account
            TransientBackendError: Lookup failed after retries
        """
        metrics = await self._fetch([address])
        if metrics[0] is None:
            raise AccountNotFoundError(address)
        return metrics[0]

    async def account_exists(self, address: str) -> bool:
        """Direct existence check, independent of any batch result."""
        metrics = await self._fetch([address])
        return metrics[0] is not None

    async def resolve_batch(self, addresses: list[str]) -> BatchResult:
        """
        Metrics for many accounts in one call.

        Raises:
            BatchUnavailableError: The batch failed as a whole
        """
        if not addresses:
            return BatchResult()

        try:
            metrics = await self._fetch(addresses)
        except TransientBackendError as e:
            raise BatchUnavailableError(
                f"Batch lookup of {len(addresses)} accounts failed: {e.message}",
                backend="protocol",
            ) from e

        result = BatchResult()
        for address, metric in zip(addresses, metrics):
            if metric is None:
                result.missing.append(address)
            else:
                result.metrics[address] = metric
        return result

    async def _fetch(self, addresses: list[str]) -> list[Optional[int]]:
        self._ensure_usable()
        return await retry_with_backoff(
            lambda: self._client.get_metrics(addresses),
            policy=self._retry_policy,
            description="protocol.get_metrics",
        )

    def _ensure_usable(self) -> None:
        if self._fatal_error is not None:
            raise ClientUnavailableError("Protocol client failed to initialize; restart required")
        if not self._initialized:
            raise ClientUnavailableError("Protocol client not initialized")
