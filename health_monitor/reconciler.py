"""
Health Monitor - Event reconciler.

============================================================
PURPOSE
============================================================
Handle what polling alone cannot see:

AUTO-REPAY:
- Triggered by the instruction listener
- Owner not monitored -> ignored
- Caller == owner -> manual repay, not reported
- Otherwise one notice per distinct subscriber, once per event

DELETED ACCOUNTS:
- Triggered by the scheduler for accounts a batch reported missing
- Re-check existence directly before acting
- Require vault transaction history; none is a fatal data error
  for that account only
- Remove the account from the directory, drop it from the cache,
  send one deletion notice per subscriber

============================================================
"""

import logging
from collections import OrderedDict

from . import messages
from .cache import AccountCache
from .chain.addresses import derive_vault_address
from .chain.protocol import ProtocolClientAdapter
from .chain.rpc import SolanaRpcClient
from .directory import AccountDirectory
from .exceptions import FatalReconciliationError, HealthMonitorError, RecordNotFoundError
from .models import InstructionEvent, Notification
from .notifications import NotificationSink, dispatch


logger = logging.getLogger(__name__)


class EventReconciler:
    """Auto-repay notifications and deleted-account cleanup."""

    MAX_REMEMBERED_EVENTS = 1000

    def __init__(
        self,
        directory: AccountDirectory,
        adapter: ProtocolClientAdapter,
        rpc: SolanaRpcClient,
        cache: AccountCache,
        sink: NotificationSink,
        program_id: str,
    ) -> None:
        self._directory = directory
        self._adapter = adapter
        self._rpc = rpc
        self._cache = cache
        self._sink = sink
        self._program_id = program_id

        self._handled_events: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._stats = {
            "auto_repay_events": 0,
            "auto_repay_skipped_manual": 0,
            "auto_repay_notifications": 0,
            "accounts_deleted": 0,
            "deletions_misreported": 0,
            "reconciliation_failures": 0,
        }

    # ─────────────────────────────────────────────────────────────
    # Auto-repay
    # ─────────────────────────────────────────────────────────────

    async def handle_instruction(self, event: InstructionEvent) -> int:
        """Notify subscribers of an automatic repay. Returns messages delivered."""
        key = (event.signature, event.owner)
        if key in self._handled_events:
            return 0
        self._remember(key)

        account = self._cache.get(event.owner)
        if account is None:
            logger.info(f"Auto-repay detected for unmonitored account {event.owner}")
            return 0

        self._stats["auto_repay_events"] += 1
        if event.is_manual:
            self._stats["auto_repay_skipped_manual"] += 1
            logger.info(f"Manual repay by owner {event.owner} in {event.signature}, not notifying")
            return 0

        notifications = [
            Notification(recipient_id=recipient_id, message=messages.auto_repay(event.owner))
            for recipient_id in account.recipient_ids
        ]
        delivered = await dispatch(self._sink, notifications)
        self._stats["auto_repay_notifications"] += delivered
        logger.info(
            f"Auto-repay for {event.owner} in {event.signature}: "
            f"notified {delivered}/{len(notifications)} subscribers"
        )
        return delivered

    def _remember(self, key: tuple[str, str]) -> None:
        self._handled_events[key] = None
        while len(self._handled_events) > self.MAX_REMEMBERED_EVENTS:
            self._handled_events.popitem(last=False)

    # ─────────────────────────────────────────────────────────────
    # Deleted accounts
    # ─────────────────────────────────────────────────────────────

    async def reconcile_missing(self, addresses: list[str]) -> list[str]:
        """
        Reconcile accounts a batch lookup reported missing.

        Failures are contained per account. Returns the addresses
        that were confirmed deleted and removed.
        """
        removed: list[str] = []
        for address in addresses:
            try:
                if await self.reconcile_account(address):
                    removed.append(address)
            except FatalReconciliationError as e:
                self._stats["reconciliation_failures"] += 1
                logger.error(f"Unexpected condition while reconciling {address}: {e.message}")
            except HealthMonitorError as e:
                self._stats["reconciliation_failures"] += 1
                logger.error(f"Failed to reconcile missing account {address}: {e}")
        return removed

    async def reconcile_account(self, address: str) -> bool:
        """
        Confirm and apply one account deletion.

        Returns:
            True when the account was removed, False when it still
            exists or was already gone

        Raises:
            FatalReconciliationError: Absent account whose vault has no history
        """
        if await self._adapter.account_exists(address):
            self._stats["deletions_misreported"] += 1
            logger.warning(f"Account {address} was reported missing but still exists")
            return False

        vault = derive_vault_address(address, self._program_id)
        history = await self._rpc.get_signatures_for_address(vault, limit=1)
        if not history:
            raise FatalReconciliationError(address, vault)

        account = await self._directory.get(address)
        if account is None:
            self._cache.remove(address)
            return False

        try:
            await self._directory.remove_account(address)
        except RecordNotFoundError:
            self._cache.remove(address)
            return False
        self._cache.remove(address)

        self._stats["accounts_deleted"] += 1
        logger.info(f"Account {address} was closed on-chain; removed from monitoring")

        notifications = [
            Notification(recipient_id=recipient_id, message=messages.account_deleted(address))
            for recipient_id in account.recipient_ids
        ]
        await dispatch(self._sink, notifications)
        return True

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)
