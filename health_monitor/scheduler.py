"""
Health Monitor - Polling scheduler.

============================================================
PURPOSE
============================================================
Long-running loop that refreshes every monitored account's
metric on a fixed cadence and drives the hysteresis engine.

ONE TICK:
1. Snapshot the cache's account ids
2. Batch-resolve metrics (whole-batch failure -> skip the tick)
3. Hand accounts reported missing to the reconciler
4. For each changed account: decide, persist arm changes and
   the new metric, refresh the cache from the directory, then
   dispatch notifications

FAILURE CONTAINMENT:
- A failing account is logged and skipped; the tick continues
- If persistence fails, nothing is sent for that account; the
  next tick re-evaluates from the unchanged cache entry
- ClientUnavailableError stops the loop

============================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .cache import AccountCache
from .chain.protocol import ProtocolClientAdapter
from .directory import AccountDirectory
from .exceptions import BatchUnavailableError, ClientUnavailableError, HealthMonitorError, RecordNotFoundError
from .hysteresis import decide
from .models import MetricKind
from .notifications import NotificationSink, dispatch
from .reconciler import EventReconciler


logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """What one poll tick did."""
    accounts: int = 0
    changed: int = 0
    notifications: int = 0
    missing: int = 0
    failed: int = 0
    batch_failed: bool = False


class PollingScheduler:
    """
    Fixed-cadence poll loop.

    Usage:
        scheduler = PollingScheduler(directory, adapter, cache, sink, reconciler)
        await scheduler.run_forever()
    """

    def __init__(
        self,
        directory: AccountDirectory,
        adapter: ProtocolClientAdapter,
        cache: AccountCache,
        sink: NotificationSink,
        reconciler: EventReconciler,
        metric_kind: MetricKind = MetricKind.HEALTH,
        rearm_margin: Optional[int] = None,
        poll_interval_seconds: float = 120.0,
        heartbeat_interval_seconds: float = 86_400.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._directory = directory
        self._adapter = adapter
        self._cache = cache
        self._sink = sink
        self._reconciler = reconciler
        self._kind = metric_kind
        self._margin = rearm_margin if rearm_margin is not None else metric_kind.default_margin
        self._poll_interval = poll_interval_seconds
        self._heartbeat_interval = heartbeat_interval_seconds
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

        self._running = False
        self._last_heartbeat: Optional[float] = None
        self._ticks = 0

    # ─────────────────────────────────────────────────────────────
    # Loop
    # ─────────────────────────────────────────────────────────────

    async def run_forever(self) -> None:
        """Tick, sleep, repeat until stopped or the protocol client is unusable."""
        self._running = True
        self._last_heartbeat = self._clock()
        logger.info(f"Polling {len(self._cache)} accounts every {self._poll_interval:.0f}s")

        while self._running:
            self.heartbeat()
            try:
                await self.tick()
            except ClientUnavailableError:
                logger.critical("Protocol client unavailable; stopping poll loop")
                self._running = False
                raise
            except HealthMonitorError as e:
                logger.error(f"Poll tick failed: {e}")

            if self._running:
                await self._sleep(self._poll_interval)

    def stop(self) -> None:
        self._running = False

    def heartbeat(self) -> bool:
        """Log the monitored account count when the heartbeat interval has elapsed."""
        now = self._clock()
        if self._last_heartbeat is not None and now - self._last_heartbeat < self._heartbeat_interval:
            return False
        self._last_heartbeat = now
        logger.info(f"Heartbeat | Monitored accounts: {len(self._cache)}")
        return True

    # ─────────────────────────────────────────────────────────────
    # Tick
    # ─────────────────────────────────────────────────────────────

    async def tick(self) -> TickSummary:
        """Run one poll tick."""
        self._ticks += 1
        addresses = self._cache.ids()
        summary = TickSummary(accounts=len(addresses))
        if not addresses:
            return summary

        try:
            batch = await self._adapter.resolve_batch(addresses)
        except BatchUnavailableError as e:
            summary.batch_failed = True
            logger.warning(f"Skipping tick, metrics unavailable: {e.message}")
            return summary

        if batch.missing:
            summary.missing = len(batch.missing)
            logger.warning(f"{len(batch.missing)} account(s) no longer resolve: {', '.join(batch.missing)}")
            await self._reconciler.reconcile_missing(batch.missing)

        for address, metric in batch.metrics.items():
            try:
                sent = await self.process_account(address, metric)
            except HealthMonitorError as e:
                summary.failed += 1
                logger.error(f"Failed to process account {address}: {e}")
                continue
            if sent is not None:
                summary.changed += 1
                summary.notifications += sent

        return summary

    async def process_account(self, address: str, metric: int) -> Optional[int]:
        """
        Apply one new metric value.

        Returns:
            Notifications delivered, or None when nothing changed
        """
        account = self._cache.get(address)
        if account is None:
            # Removed while the batch was in flight
            return None

        decision = decide(account, metric, self._margin, self._kind.maximum, self._kind)
        if decision.is_noop:
            return None

        for update in decision.updated_thresholds:
            try:
                await self._directory.set_threshold_armed(update.threshold_id, update.armed)
            except RecordNotFoundError:
                logger.info(f"Threshold {update.threshold_id} on {address} was removed mid-tick")

        try:
            refreshed = await self._directory.update_metric(address, metric)
        except RecordNotFoundError:
            self._cache.remove(address)
            logger.info(f"Account {address} was removed mid-tick")
            return None
        self._cache.replace(refreshed)

        if not decision.notifications:
            return 0

        # Only notify subscribers still present after the write
        remaining = set(refreshed.recipient_ids)
        notifications = [n for n in decision.notifications if n.recipient_id in remaining]
        delivered = await dispatch(self._sink, notifications)
        logger.info(
            f"{address}: {account.last_metric} -> {metric}, "
            f"notified {delivered}/{len(notifications)} subscribers"
        )
        return delivered

    def get_stats(self) -> dict[str, object]:
        return {
            "running": self._running,
            "ticks": self._ticks,
            "accounts": len(self._cache),
            "poll_interval_seconds": self._poll_interval,
            "rearm_margin": self._margin,
        }
