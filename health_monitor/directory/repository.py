"""
Account Directory - Repository.

============================================================
PURPOSE
============================================================
Sole writer of durable account, subscriber and threshold state.

RESPONSIBILITIES:
- Read accounts with their subscribers and thresholds
- Add / remove thresholds, cascading empty subscribers and accounts
- Persist arm-state transitions and new metric values

ERROR HANDLING:
- Connection-level failures become TransientBackendError and are
  retried with bounded backoff
- Missing records raise RecordNotFoundError, distinct from storage
  failures
- Anything else becomes DirectoryError and is not retried

============================================================
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..exceptions import (
    DirectoryError,
    ExistingThresholdError,
    HealthMonitorError,
    RecordNotFoundError,
    TransientBackendError,
)
from ..hysteresis import armed_on_subscribe
from ..models import MonitoredAccount, Threshold
from ..retry import DEFAULT_POLICY, RetryPolicy, retry_with_backoff
from .models import AccountModel, SubscriberModel, ThresholdModel


logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


class _InsertConflict(DirectoryError):
    """Another transaction inserted the same account or subscriber row first."""


def _account_query():
    return select(AccountModel).options(
        selectinload(AccountModel.subscribers).selectinload(SubscriberModel.thresholds)
    )


async def _flush_insert(session: AsyncSession, table: str, address: str) -> None:
    try:
        await session.flush()
    except IntegrityError as e:
        raise _InsertConflict(f"Concurrent {table} insert for {address}", operation="add_threshold") from e


# ============================================================
# ACCOUNT DIRECTORY
# ============================================================

class AccountDirectory:
    """
    Repository for monitored accounts.

    Every public method runs in its own transaction and returns
    immutable domain snapshots, never ORM instances.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self._session_factory = session_factory
        self._retry_policy = retry_policy

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    async def list_all(self) -> list[MonitoredAccount]:
        """All monitored accounts with every subscriber."""

        async def op(session: AsyncSession) -> list[MonitoredAccount]:
            result = await session.execute(_account_query().order_by(AccountModel.address))
            return [model.to_domain() for model in result.scalars().all()]

        return await self._run("list_all", op)

    async def get(self, address: str) -> Optional[MonitoredAccount]:
        """One account, or None when it is not monitored."""

        async def op(session: AsyncSession) -> Optional[MonitoredAccount]:
            model = await self._load_account(session, address)
            return model.to_domain() if model else None

        return await self._run("get", op)

    async def list_by_subscriber(self, recipient_id: int) -> list[MonitoredAccount]:
        """Accounts the recipient watches, restricted to the recipient's subscriber row."""

        async def op(session: AsyncSession) -> list[MonitoredAccount]:
            addresses = select(SubscriberModel.address).where(SubscriberModel.recipient_id == recipient_id)
            result = await session.execute(
                _account_query()
                .where(AccountModel.address.in_(addresses))
                .order_by(AccountModel.address)
            )
            return [model.to_domain().view_for(recipient_id) for model in result.scalars().all()]

        return await self._run("list_by_subscriber", op)

    async def existing_levels(self, address: str, recipient_id: int) -> list[int]:
        """Levels the recipient already tracks on the account, ascending."""

        async def op(session: AsyncSession) -> list[int]:
            result = await session.execute(
                select(ThresholdModel.level)
                .join(SubscriberModel, ThresholdModel.subscriber_id == SubscriberModel.id)
                .where(SubscriberModel.address == address, SubscriberModel.recipient_id == recipient_id)
                .order_by(ThresholdModel.level)
            )
            return list(result.scalars().all())

        return await self._run("existing_levels", op)

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    async def add_threshold(
        self,
        address: str,
        recipient_id: int,
        level: int,
        initial_metric: int,
        rearm_margin: int = 0,
        metric_max: Optional[int] = None,
    ) -> Threshold:
        """
        Add a threshold, creating the account and subscriber rows as needed.

        The initial arm state follows `armed_on_subscribe`; with the
        default margin a threshold is armed when the metric is above it.
        Rows inserted concurrently by another subscribe are reused.
        An existing account keeps its recorded metric so pending crossings
        for other subscribers are not lost.

        Raises:
            ExistingThresholdError: The recipient already tracks this level
        """

        async def op(session: AsyncSession) -> Threshold:
            account = await session.get(AccountModel, address)
            if account is None:
                session.add(AccountModel(address=address, last_metric=initial_metric))
                await _flush_insert(session, "account", address)

            subscriber = (
                await session.execute(
                    select(SubscriberModel).where(
                        SubscriberModel.address == address,
                        SubscriberModel.recipient_id == recipient_id,
                    )
                )
            ).scalar_one_or_none()
            if subscriber is None:
                subscriber = SubscriberModel(address=address, recipient_id=recipient_id)
                session.add(subscriber)
                await _flush_insert(session, "subscriber", address)

            duplicate = (
                await session.execute(
                    select(ThresholdModel.id).where(
                        ThresholdModel.subscriber_id == subscriber.id,
                        ThresholdModel.level == level,
                    )
                )
            ).scalar_one_or_none()
            if duplicate is not None:
                raise ExistingThresholdError(level, address)

            threshold = ThresholdModel(
                subscriber_id=subscriber.id,
                level=level,
                armed=armed_on_subscribe(level, initial_metric, rearm_margin, metric_max),
            )
            session.add(threshold)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ExistingThresholdError(level, address) from e

            logger.info(f"Added threshold {level} for {recipient_id} on {address}")
            return threshold.to_domain()

        try:
            return await self._run("add_threshold", op)
        except _InsertConflict as e:
            logger.info(f"{e}; retrying add_threshold against the existing row")
            return await self._run("add_threshold", op)

    async def remove_threshold(self, threshold_id: int) -> None:
        """
        Remove one threshold.

        Removing a subscriber's last threshold removes the subscriber;
        removing an account's last subscriber removes the account.

        Raises:
            RecordNotFoundError: No threshold with this id
        """

        async def op(session: AsyncSession) -> None:
            threshold = await session.get(ThresholdModel, threshold_id)
            if threshold is None:
                raise RecordNotFoundError("threshold", threshold_id)

            subscriber = await session.get(SubscriberModel, threshold.subscriber_id)
            await session.execute(delete(ThresholdModel).where(ThresholdModel.id == threshold_id))

            remaining = await session.scalar(
                select(func.count(ThresholdModel.id)).where(ThresholdModel.subscriber_id == subscriber.id)
            )
            if remaining:
                return

            address = subscriber.address
            await session.execute(delete(SubscriberModel).where(SubscriberModel.id == subscriber.id))
            subscribers_left = await session.scalar(
                select(func.count(SubscriberModel.id)).where(SubscriberModel.address == address)
            )
            if not subscribers_left:
                await session.execute(delete(AccountModel).where(AccountModel.address == address))
                logger.info(f"Removed account {address}: no thresholds left")

        await self._run("remove_threshold", op)

    async def remove_account(self, address: str) -> None:
        """
        Remove an account with all its subscribers and thresholds.

        Raises:
            RecordNotFoundError: The account is not monitored
        """

        async def op(session: AsyncSession) -> None:
            subscriber_ids = select(SubscriberModel.id).where(SubscriberModel.address == address)
            await session.execute(delete(ThresholdModel).where(ThresholdModel.subscriber_id.in_(subscriber_ids)))
            await session.execute(delete(SubscriberModel).where(SubscriberModel.address == address))
            result = await session.execute(delete(AccountModel).where(AccountModel.address == address))
            if result.rowcount == 0:
                raise RecordNotFoundError("account", address)

        await self._run("remove_account", op)

    async def set_threshold_armed(self, threshold_id: int, armed: bool) -> None:
        """
        Persist a threshold's arm state. Setting the current state is a no-op.

        Raises:
            RecordNotFoundError: No threshold with this id
        """

        async def op(session: AsyncSession) -> None:
            result = await session.execute(
                update(ThresholdModel).where(ThresholdModel.id == threshold_id).values(armed=armed)
            )
            if result.rowcount == 0:
                raise RecordNotFoundError("threshold", threshold_id)

        await self._run("set_threshold_armed", op)

    async def update_metric(self, address: str, metric: int) -> MonitoredAccount:
        """
        Record a new metric value and return the refreshed account.

        Raises:
            RecordNotFoundError: The account is not monitored
        """

        async def op(session: AsyncSession) -> MonitoredAccount:
            result = await session.execute(
                update(AccountModel).where(AccountModel.address == address).values(last_metric=metric)
            )
            if result.rowcount == 0:
                raise RecordNotFoundError("account", address)
            model = await self._load_account(session, address)
            return model.to_domain()

        return await self._run("update_metric", op)

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _load_account(self, session: AsyncSession, address: str) -> Optional[AccountModel]:
        result = await session.execute(
            _account_query().where(AccountModel.address == address).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run `fn` in a transaction with error mapping and retries."""

        async def attempt() -> T:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await fn(session)
            except HealthMonitorError:
                raise
            except _TRANSIENT_ERRORS as e:
                raise TransientBackendError(
                    f"Directory {operation} failed: {e}",
                    backend="directory",
                ) from e
            except SQLAlchemyError as e:
                logger.error(f"Directory {operation} failed: {e}")
                raise DirectoryError(str(e), operation=operation) from e

        return await retry_with_backoff(
            attempt,
            policy=self._retry_policy,
            retry_on=(TransientBackendError,),
            description=f"directory.{operation}",
        )
