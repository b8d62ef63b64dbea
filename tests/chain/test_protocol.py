"""
Tests for the protocol client adapter.

============================================================
PURPOSE
============================================================
Verify initialization recovery, the fatal state, and batch /
single-account lookup semantics.

============================================================
"""

import pytest
from unittest.mock import AsyncMock

from health_monitor.chain.protocol import ProtocolClient, ProtocolClientAdapter
from health_monitor.exceptions import (
    AccountNotFoundError,
    BatchUnavailableError,
    ClientInitializationError,
    ClientUnavailableError,
    TransientBackendError,
)
from health_monitor.retry import RetryPolicy


ACCOUNT_A = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ACCOUNT_B = "So11111111111111111111111111111111111111112"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def client():
    client = AsyncMock(spec=ProtocolClient)
    client.get_metrics = AsyncMock(return_value=[60])
    return client


@pytest.fixture
def sleeps():
    recorded = []

    async def fake_sleep(seconds):
        recorded.append(seconds)

    fake_sleep.recorded = recorded
    return fake_sleep


@pytest.fixture
def adapter(client, sleeps):
    return ProtocolClientAdapter(
        client,
        retry_policy=RetryPolicy(max_retries=0),
        init_base_delay_seconds=1.0,
        init_max_attempts=4,
        sleep=sleeps,
    )


# ============================================================
# INITIALIZATION
# ============================================================

class TestInitialize:
    """Tests for connection recovery."""

    @pytest.mark.asyncio
    async def test_connects_first_try(self, adapter, client, sleeps):
        await adapter.initialize()

        assert adapter.is_ready
        client.connect.assert_awaited_once()
        assert sleeps.recorded == []

    @pytest.mark.asyncio
    async def test_recovers_after_failures_with_doubling_delay(self, adapter, client, sleeps):
        client.connect = AsyncMock(side_effect=[TransientBackendError("down"), TransientBackendError("down"), None])

        await adapter.initialize()

        assert adapter.is_ready
        assert sleeps.recorded == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_attempts_are_fatal(self, adapter, client, sleeps):
        """Test the adapter refuses all work after the attempt budget."""
        client.connect = AsyncMock(side_effect=TransientBackendError("down"))

        with pytest.raises(ClientInitializationError):
            await adapter.initialize()

        assert client.connect.await_count == 4
        assert sleeps.recorded == [1.0, 2.0, 4.0]
        assert adapter.is_fatal
        with pytest.raises(ClientUnavailableError):
            await adapter.resolve_batch([ACCOUNT_A])
        with pytest.raises(ClientInitializationError):
            await adapter.initialize()

    @pytest.mark.asyncio
    async def test_lookup_before_initialize_refused(self, adapter):
        with pytest.raises(ClientUnavailableError):
            await adapter.resolve_account(ACCOUNT_A)


# ============================================================
# LOOKUPS
# ============================================================

class TestLookups:
    """Tests for single and batch lookups."""

    @pytest.mark.asyncio
    async def test_resolve_account(self, adapter):
        await adapter.initialize()

        assert await adapter.resolve_account(ACCOUNT_A) == 60

    @pytest.mark.asyncio
    async def test_resolve_account_not_found(self, adapter, client):
        await adapter.initialize()
        client.get_metrics = AsyncMock(return_value=[None])

        with pytest.raises(AccountNotFoundError):
            await adapter.resolve_account(ACCOUNT_A)
        assert await adapter.account_exists(ACCOUNT_A) is False

    @pytest.mark.asyncio
    async def test_batch_splits_found_and_missing(self, adapter, client):
        await adapter.initialize()
        client.get_metrics = AsyncMock(return_value=[42, None])

        result = await adapter.resolve_batch([ACCOUNT_A, ACCOUNT_B])

        assert result.metrics == {ACCOUNT_A: 42}
        assert result.missing == [ACCOUNT_B]

    @pytest.mark.asyncio
    async def test_batch_failure_is_unavailable(self, adapter, client):
        await adapter.initialize()
        client.get_metrics = AsyncMock(side_effect=TransientBackendError("rpc down"))

        with pytest.raises(BatchUnavailableError):
            await adapter.resolve_batch([ACCOUNT_A, ACCOUNT_B])

    @pytest.mark.asyncio
    async def test_empty_batch_skips_client(self, adapter, client):
        await adapter.initialize()

        result = await adapter.resolve_batch([])

        assert result.metrics == {} and result.missing == []
        client.get_metrics.assert_not_awaited()
