"""
Account Cache - In-memory mirror of the directory.

Entries are only ever replaced with a snapshot freshly read back
from the directory, or dropped after a directory delete. Nothing
edits an entry in place.
"""

import logging
from typing import Optional

from .models import MonitoredAccount


logger = logging.getLogger(__name__)


class AccountCache:
    """Read-mostly mirror keyed by account address."""

    def __init__(self) -> None:
        self._accounts: dict[str, MonitoredAccount] = {}

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, address: object) -> bool:
        return address in self._accounts

    def get(self, address: str) -> Optional[MonitoredAccount]:
        return self._accounts.get(address)

    def ids(self) -> list[str]:
        """Snapshot of the monitored addresses, in insertion order."""
        return list(self._accounts)

    def load(self, accounts: list[MonitoredAccount]) -> None:
        """Replace the whole mirror, e.g. at startup."""
        self._accounts = {account.address: account for account in accounts}
        logger.info(f"Account cache loaded with {len(self._accounts)} accounts")

    def replace(self, account: MonitoredAccount) -> None:
        self._accounts[account.address] = account

    def remove(self, address: str) -> None:
        self._accounts.pop(address, None)

    def refresh(self, address: str, account: Optional[MonitoredAccount]) -> None:
        """Apply a directory read-back: replace, or drop when the account is gone."""
        if account is None:
            self.remove(address)
        else:
            self.replace(account)
