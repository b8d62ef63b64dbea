"""
Health Monitor Service - Wiring and subscription operations.

Owns the directory, protocol adapter, RPC client, notifier, cache,
scheduler, reconciler and listener, and exposes the three operations
the command layer uses: subscribe, unsubscribe and list_subscriptions.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncEngine

from .cache import AccountCache
from .chain.addresses import parse_address
from .chain.listener import InstructionListener
from .chain.protocol import ProtocolApiClient, ProtocolClientAdapter
from .chain.rpc import SolanaRpcClient
from .config import MonitorConfig, get_config
from .directory import AccountDirectory, create_directory_engine, create_session_factory, create_tables
from .exceptions import ExistingThresholdError, NoThresholdsError, RecordNotFoundError, ThresholdNotFoundError
from .models import MetricKind, MonitoredAccount, Threshold
from .notifications import NotificationSink, TelegramNotifier
from .reconciler import EventReconciler
from .scheduler import PollingScheduler


logger = logging.getLogger(__name__)

BackgroundTask = Callable[[], Awaitable[None]]


def _unique(levels: Sequence[int]) -> list[int]:
    seen: list[int] = []
    for level in levels:
        if level not in seen:
            seen.append(level)
    return seen


def _log_task_exit(task: asyncio.Task) -> None:
    """Log a side task that ended while the poll loop keeps running."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Task {task.get_name()} failed: {error}; polling continues")
    else:
        logger.warning(f"Task {task.get_name()} exited; polling continues")


class HealthMonitor:
    """
    Threshold monitoring and notification engine.

    Usage:
        monitor = HealthMonitor.from_config(get_config())
        await monitor.initialize()
        await monitor.run()
    """

    def __init__(
        self,
        directory: AccountDirectory,
        adapter: ProtocolClientAdapter,
        rpc: SolanaRpcClient,
        sink: NotificationSink,
        config: Optional[MonitorConfig] = None,
        cache: Optional[AccountCache] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.config = config or get_config()
        self.directory = directory
        self.adapter = adapter
        self.rpc = rpc
        self.sink = sink
        self.cache = cache or AccountCache()
        self._engine = engine

        self.reconciler = EventReconciler(
            directory=directory,
            adapter=adapter,
            rpc=rpc,
            cache=self.cache,
            sink=sink,
            program_id=self.config.program_id,
        )
        self.scheduler = PollingScheduler(
            directory=directory,
            adapter=adapter,
            cache=self.cache,
            sink=sink,
            reconciler=self.reconciler,
            metric_kind=self.config.metric_kind,
            rearm_margin=self.config.rearm_margin,
            poll_interval_seconds=self.config.poll_interval_seconds,
            heartbeat_interval_seconds=self.config.heartbeat_interval_seconds,
        )
        self.listener = InstructionListener(
            ws_url=self.config.ws_url,
            rpc=rpc,
            program_id=self.config.program_id,
            handler=self.reconciler.handle_instruction,
        )

        self._initialized = False

    @classmethod
    def from_config(cls, config: MonitorConfig) -> "HealthMonitor":
        """Build the full object graph from configuration."""
        engine = create_directory_engine(config.database_url)
        directory = AccountDirectory(create_session_factory(engine), config.retry)
        adapter = ProtocolClientAdapter(
            ProtocolApiClient(config.protocol_api_url, config.metric_kind),
            retry_policy=config.retry,
            init_base_delay_seconds=config.client_init_base_delay_seconds,
            init_max_attempts=config.client_init_max_attempts,
        )
        rpc = SolanaRpcClient(config.rpc_url, config.retry)
        sink = TelegramNotifier(config.telegram_bot_token, config.retry)
        return cls(directory, adapter, rpc, sink, config=config, engine=engine)

    @property
    def metric_kind(self) -> MetricKind:
        return self.config.metric_kind

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables, connect the protocol client and load the cache."""
        if self._initialized:
            return

        if self._engine is not None:
            await create_tables(self._engine)
        await self.adapter.initialize()
        self.cache.load(await self.directory.list_all())

        self._initialized = True
        logger.info(f"Health monitor initialized with {len(self.cache)} accounts")

    async def run(self, background: Sequence[BackgroundTask] = ()) -> None:
        """
        Run the poll loop, the instruction listener and any extra tasks.

        The poll loop decides the service lifetime: a failing listener or
        background task is logged and the loop keeps polling. When the
        poll loop ends the other tasks are cancelled and its error, if
        any, is re-raised.
        """
        await self.initialize()

        poll_task = asyncio.create_task(self.scheduler.run_forever(), name="poll-loop")
        tasks = [
            poll_task,
            asyncio.create_task(self.listener.start(), name="instruction-listener"),
        ]
        tasks.extend(
            asyncio.create_task(factory(), name=getattr(factory, "__name__", "background"))
            for factory in background
        )

        pending = set(tasks)
        try:
            while poll_task in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is not poll_task:
                        _log_task_exit(task)
        finally:
            self.scheduler.stop()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        error = poll_task.exception()
        if error is not None:
            logger.critical(f"Task {poll_task.get_name()} failed: {error}")
            raise error
        logger.warning(f"Task {poll_task.get_name()} exited")

    async def close(self) -> None:
        """Close all network clients and the database engine."""
        await self.listener.stop()
        await self.adapter.close()
        await self.rpc.close()
        await self.sink.close()
        if self._engine is not None:
            await self._engine.dispose()
        self._initialized = False

    # ─────────────────────────────────────────────────────────────
    # Subscription operations
    # ─────────────────────────────────────────────────────────────

    async def subscribe(self, recipient_id: int, address: str, levels: Sequence[int]) -> int:
        """
        Start tracking `levels` on an account for a recipient.

        Returns:
            The account's current metric

        Raises:
            InvalidAddressError: Malformed address
            NoThresholdsError: No levels given
            AccountNotFoundError: No protocol account for the address
            ExistingThresholdError: A level is already tracked
        """
        address = str(parse_address(address))
        levels = _unique(levels)
        if not levels:
            raise NoThresholdsError(recipient_id, address)

        current = await self.adapter.resolve_account(address)

        existing = set(await self.directory.existing_levels(address, recipient_id))
        for level in levels:
            if level in existing:
                raise ExistingThresholdError(level, address)

        for level in levels:
            await self.directory.add_threshold(
                address,
                recipient_id,
                level,
                current,
                rearm_margin=self.config.rearm_margin,
                metric_max=self.config.metric_max,
            )

        await self._refresh(address)
        logger.info(f"{recipient_id} subscribed to {address} at {levels}")
        return current

    async def unsubscribe(
        self,
        recipient_id: int,
        address: Optional[str] = None,
        levels: Optional[Sequence[int]] = None,
    ) -> bool:
        """
        Stop tracking thresholds.

        - No address: remove everything the recipient tracks
        - Address only: remove all of the recipient's levels on it
        - Address and levels: remove just those levels

        Returns:
            True when the recipient still has thresholds on the account

        Raises:
            NoThresholdsError: Nothing to remove
            ThresholdNotFoundError: A requested level is not tracked
        """
        if address is None:
            accounts = await self.directory.list_by_subscriber(recipient_id)
            thresholds = [
                (account.address, threshold)
                for account in accounts
                for subscriber in account.subscribers
                for threshold in subscriber.thresholds
            ]
            if not thresholds:
                raise NoThresholdsError(recipient_id)
            for account_address, threshold in thresholds:
                await self._remove(account_address, threshold)
            for account in accounts:
                await self._refresh(account.address)
            logger.info(f"{recipient_id} unsubscribed from all {len(accounts)} accounts")
            return False

        address = str(parse_address(address))
        requested = None if levels is None else _unique(levels)
        if requested is not None and not requested:
            raise NoThresholdsError(recipient_id, address)

        account = await self.directory.get(address)
        subscriber = account.subscriber_for(recipient_id) if account else None
        if subscriber is None or not subscriber.thresholds:
            raise NoThresholdsError(recipient_id, address)

        if requested is None:
            targets = list(subscriber.thresholds)
        else:
            by_level = {threshold.level: threshold for threshold in subscriber.thresholds}
            targets = []
            for level in requested:
                if level not in by_level:
                    raise ThresholdNotFoundError(level, address)
                targets.append(by_level[level])

        for threshold in targets:
            await self._remove(address, threshold)

        refreshed = await self._refresh(address)
        remaining = refreshed.subscriber_for(recipient_id) if refreshed else None
        logger.info(f"{recipient_id} removed {[t.level for t in targets]} from {address}")
        return remaining is not None and bool(remaining.thresholds)

    async def list_subscriptions(self, recipient_id: int) -> list[MonitoredAccount]:
        """Accounts the recipient tracks, with only the recipient's subscriber row."""
        return await self.directory.list_by_subscriber(recipient_id)

    # ─────────────────────────────────────────────────────────────
    # Internal
    # ─────────────────────────────────────────────────────────────

    async def _remove(self, address: str, threshold: Threshold) -> None:
        try:
            await self.directory.remove_threshold(threshold.id)
        except RecordNotFoundError:
            logger.info(f"Threshold {threshold.level} on {address} already removed")

    async def _refresh(self, address: str) -> Optional[MonitoredAccount]:
        """Read the account back from the directory into the cache."""
        account = await self.directory.get(address)
        self.cache.refresh(address, account)
        return account

    # ─────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────

    async def get_health(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "protocol_client_ready": self.adapter.is_ready,
            "rpc_healthy": await self.rpc.get_health(),
            "monitored_accounts": len(self.cache),
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "scheduler": self.scheduler.get_stats(),
            "reconciler": self.reconciler.get_stats(),
            "listener": self.listener.get_stats(),
        }
