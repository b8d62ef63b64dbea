"""
Tests for the Account Directory repository.

============================================================
PURPOSE
============================================================
Exercise the repository against an in-memory SQLite database.

TEST PRINCIPLES:
- Cascades remove empty subscribers and accounts
- Not-found is distinct from storage failure
- Returned values are domain snapshots

============================================================
"""

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from unittest.mock import MagicMock

from health_monitor.directory import AccountDirectory, create_directory_engine, create_session_factory, create_tables
from health_monitor.directory.models import AccountModel
from health_monitor.exceptions import ExistingThresholdError, RecordNotFoundError, TransientBackendError
from health_monitor.retry import RetryPolicy


ACCOUNT_A = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ACCOUNT_B = "6JjHXLheGSNvvexgzMthEcgjkcirDrGduc3HAKB2P1v2"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
async def engine():
    """In-memory database with tables created."""
    engine = create_directory_engine("sqlite+aiosqlite://")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def directory(engine):
    return AccountDirectory(create_session_factory(engine), RetryPolicy(max_retries=0))


# ============================================================
# ADD / READ
# ============================================================

class TestAddThreshold:
    """Tests for adding thresholds."""

    @pytest.mark.asyncio
    async def test_creates_account_and_subscriber(self, directory):
        threshold = await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)

        account = await directory.get(ACCOUNT_A)
        assert account.last_metric == 60
        assert len(account.subscribers) == 1
        assert account.subscribers[0].recipient_id == 100
        assert account.subscribers[0].thresholds == (threshold,)
        assert threshold.armed

    @pytest.mark.asyncio
    async def test_threshold_at_or_above_metric_starts_disarmed(self, directory):
        """Test armed = initial metric > level."""
        above = await directory.add_threshold(ACCOUNT_A, 100, 70, initial_metric=60)
        equal = await directory.add_threshold(ACCOUNT_A, 100, 60, initial_metric=60)

        assert not above.armed
        assert not equal.armed

    @pytest.mark.asyncio
    async def test_initial_arm_respects_margin(self, directory):
        """Test a level within the margin of the metric starts disarmed."""
        close = await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=27, rearm_margin=5, metric_max=100)
        clear = await directory.add_threshold(ACCOUNT_A, 100, 20, initial_metric=27, rearm_margin=5, metric_max=100)
        at_max = await directory.add_threshold(ACCOUNT_B, 100, 98, initial_metric=100, rearm_margin=5, metric_max=100)

        assert not close.armed
        assert clear.armed
        assert at_max.armed

    @pytest.mark.asyncio
    async def test_same_recipient_extends_one_subscriber(self, directory):
        """Test re-subscribing extends the existing subscriber row."""
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)
        await directory.add_threshold(ACCOUNT_A, 100, 10, initial_metric=60)

        account = await directory.get(ACCOUNT_A)
        assert len(account.subscribers) == 1
        assert account.subscribers[0].levels == [10, 25]

    @pytest.mark.asyncio
    async def test_duplicate_level_rejected(self, directory):
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)

        with pytest.raises(ExistingThresholdError) as exc_info:
            await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)

        assert exc_info.value.level == 25

    @pytest.mark.asyncio
    async def test_existing_account_keeps_recorded_metric(self, directory):
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)
        await directory.add_threshold(ACCOUNT_A, 200, 25, initial_metric=40)

        account = await directory.get(ACCOUNT_A)
        assert account.last_metric == 60
        assert account.recipient_ids == [100, 200]


class TestReads:
    """Tests for read operations."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, directory):
        assert await directory.get(ACCOUNT_A) is None

    @pytest.mark.asyncio
    async def test_list_all(self, directory):
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)
        await directory.add_threshold(ACCOUNT_B, 200, 10, initial_metric=60)

        accounts = await directory.list_all()

        assert sorted(a.address for a in accounts) == sorted([ACCOUNT_A, ACCOUNT_B])

    @pytest.mark.asyncio
    async def test_list_by_subscriber_filters_view(self, directory):
        """Test other recipients' rows are hidden."""
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)
        await directory.add_threshold(ACCOUNT_A, 200, 10, initial_metric=60)
        await directory.add_threshold(ACCOUNT_B, 200, 10, initial_metric=60)

        accounts = await directory.list_by_subscriber(100)

        assert [a.address for a in accounts] == [ACCOUNT_A]
        assert [s.recipient_id for s in accounts[0].subscribers] == [100]

    @pytest.mark.asyncio
    async def test_existing_levels(self, directory):
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)
        await directory.add_threshold(ACCOUNT_A, 100, 10, initial_metric=60)

        assert await directory.existing_levels(ACCOUNT_A, 100) == [10, 25]
        assert await directory.existing_levels(ACCOUNT_A, 999) == []


# ============================================================
# REMOVE / UPDATE
# ============================================================

class TestRemoval:
    """Tests for threshold and account removal."""

    @pytest.mark.asyncio
    async def test_removing_last_threshold_removes_account(self, directory):
        threshold = await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)

        await directory.remove_threshold(threshold.id)

        assert await directory.get(ACCOUNT_A) is None
        assert await directory.list_by_subscriber(100) == []

    @pytest.mark.asyncio
    async def test_other_subscribers_keep_account(self, directory):
        mine = await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)
        await directory.add_threshold(ACCOUNT_A, 200, 25, initial_metric=60)

        await directory.remove_threshold(mine.id)

        account = await directory.get(ACCOUNT_A)
        assert account.recipient_ids == [200]

    @pytest.mark.asyncio
    async def test_remove_unknown_threshold(self, directory):
        with pytest.raises(RecordNotFoundError):
            await directory.remove_threshold(12345)

    @pytest.mark.asyncio
    async def test_remove_account_cascades(self, directory):
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)
        await directory.add_threshold(ACCOUNT_A, 200, 10, initial_metric=60)

        await directory.remove_account(ACCOUNT_A)

        assert await directory.get(ACCOUNT_A) is None
        assert await directory.existing_levels(ACCOUNT_A, 100) == []

    @pytest.mark.asyncio
    async def test_remove_unknown_account(self, directory):
        with pytest.raises(RecordNotFoundError):
            await directory.remove_account(ACCOUNT_A)


class TestUpdates:
    """Tests for arm state and metric writes."""

    @pytest.mark.asyncio
    async def test_set_threshold_armed_is_idempotent(self, directory):
        threshold = await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)

        await directory.set_threshold_armed(threshold.id, False)
        await directory.set_threshold_armed(threshold.id, False)

        account = await directory.get(ACCOUNT_A)
        assert account.subscribers[0].thresholds[0].armed is False

    @pytest.mark.asyncio
    async def test_update_metric_returns_refreshed_account(self, directory):
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)

        account = await directory.update_metric(ACCOUNT_A, 42)

        assert account.last_metric == 42
        assert account.subscribers[0].levels == [25]

    @pytest.mark.asyncio
    async def test_update_metric_unknown_account(self, directory):
        with pytest.raises(RecordNotFoundError):
            await directory.update_metric(ACCOUNT_A, 42)


class TestErrorMapping:
    """Tests for storage error classification."""

    @pytest.mark.asyncio
    async def test_operational_error_is_transient_and_retried(self):
        """Test connection failures become TransientBackendError after retries."""
        factory = MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("database is locked")))
        directory = AccountDirectory(
            factory,
            RetryPolicy(max_retries=2, initial_delay_seconds=0.0),
        )

        with pytest.raises(TransientBackendError):
            await directory.get(ACCOUNT_A)

        assert factory.call_count == 3

    @pytest.mark.asyncio
    async def test_concurrent_account_insert_reuses_row(self, directory, monkeypatch):
        """Test losing an account insert race retries against the winner's row."""
        await directory.add_threshold(ACCOUNT_A, 100, 25, initial_metric=60)

        original_get = AsyncSession.get
        stale_reads = []

        async def stale_get(session, entity, *args, **kwargs):
            if entity is AccountModel and not stale_reads:
                stale_reads.append(entity)
                return None
            return await original_get(session, entity, *args, **kwargs)

        monkeypatch.setattr(AsyncSession, "get", stale_get)

        threshold = await directory.add_threshold(ACCOUNT_A, 200, 10, initial_metric=40)

        account = await directory.get(ACCOUNT_A)
        assert stale_reads == [AccountModel]
        assert account.last_metric == 60
        assert account.recipient_ids == [100, 200]
        assert account.subscriber_for(200).thresholds == (threshold,)
