"""
Telegram Notification Sink.

============================================================
PURPOSE
============================================================
Deliver plain-text messages to chat ids through the Telegram
Bot API, and read incoming command messages by long polling.

DELIVERY:
- 429 and 5xx responses and network errors are retried with backoff
- Other 4xx responses (blocked bot, unknown chat) are not retried
- Final failures are logged and reported as False, never raised

============================================================
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import NotificationError, TransientBackendError
from ..models import Notification
from ..retry import DEFAULT_POLICY, RetryPolicy, retry_with_backoff
from ..schemas import TelegramUpdatesResponse


logger = logging.getLogger(__name__)


# ============================================================
# SINK INTERFACE
# ============================================================

class NotificationSink(ABC):
    """Outbound channel: deliver text to a recipient id."""

    @abstractmethod
    async def send(self, recipient_id: int, text: str) -> bool:
        """Deliver `text`; True on success. Must not raise on delivery failure."""

    async def close(self) -> None:
        """Release resources."""


async def dispatch(sink: NotificationSink, notifications: list[Notification]) -> int:
    """Send each notification in order; returns how many were delivered."""
    delivered = 0
    for notification in notifications:
        if await sink.send(notification.recipient_id, notification.message):
            delivered += 1
    return delivered


# ============================================================
# TELEGRAM NOTIFIER
# ============================================================

class TelegramNotifier(NotificationSink):
    """
    Telegram Bot API client.

    Sends without a parse mode; message text is delivered verbatim.
    """

    BASE_URL = "https://api.telegram.org/bot"

    def __init__(
        self,
        bot_token: Optional[str] = None,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """
        Initialize Telegram notifier.

        Args:
            bot_token: Telegram bot token (defaults to TELEGRAM_BOT_TOKEN)
            retry_policy: Backoff for transient delivery failures
            session: Optional shared HTTP session
        """
        self._bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN", "")
        self._retry_policy = retry_policy
        self._session = session
        self._owns_session = session is None
        self._enabled = bool(self._bot_token)

        self._sent = 0
        self._failed = 0

        if not self._enabled:
            logger.warning("TelegramNotifier NOT configured - check TELEGRAM_BOT_TOKEN")

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the notifier."""
        if self._session and not self._session.closed and self._owns_session:
            await self._session.close()
        self._session = None

    def _url(self, method: str) -> str:
        return f"{self.BASE_URL}{self._bot_token}/{method}"

    # ─────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────

    async def send(self, recipient_id: int, text: str) -> bool:
        """Send plain text to one chat, retrying transient failures."""
        if not self._enabled:
            return False

        try:
            await retry_with_backoff(
                lambda: self._send_message(recipient_id, text),
                policy=self._retry_policy,
                description=f"telegram.sendMessage({recipient_id})",
            )
        except (TransientBackendError, NotificationError) as e:
            self._failed += 1
            logger.error(f"Failed to deliver message to {recipient_id}: {e}")
            return False

        self._sent += 1
        return True

    async def _send_message(self, chat_id: int, text: str) -> None:
        session = await self._get_session()
        payload = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }

        try:
            async with session.post(self._url("sendMessage"), json=payload) as response:
                if response.status == 200:
                    return
                body = await response.text()
                if response.status == 429 or response.status >= 500:
                    raise TransientBackendError(
                        f"Telegram API error {response.status}: {body}",
                        backend="telegram",
                        status_code=response.status,
                    )
                raise NotificationError(f"Telegram API error {response.status}: {body}", chat_id)
        except aiohttp.ClientError as e:
            raise TransientBackendError(f"Telegram network error: {e}", backend="telegram") from e
        except asyncio.TimeoutError as e:
            raise TransientBackendError("Telegram request timed out", backend="telegram") from e

    # ─────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> list[dict[str, Any]]:
        """
        Long-poll for new updates.

        Raises:
            TransientBackendError: On network or server errors
            NotificationError: When Telegram rejects the request
        """
        session = await self._get_session()
        params: dict[str, Any] = {"timeout": timeout, "allowed_updates": '["message"]'}
        if offset is not None:
            params["offset"] = offset

        try:
            async with session.get(
                self._url("getUpdates"),
                params=params,
                timeout=aiohttp.ClientTimeout(total=timeout + 10),
            ) as response:
                if response.status == 429 or response.status >= 500:
                    raise TransientBackendError(
                        f"Telegram getUpdates error {response.status}",
                        backend="telegram",
                        status_code=response.status,
                    )
                data = await response.json()
        except aiohttp.ClientError as e:
            raise TransientBackendError(f"Telegram network error: {e}", backend="telegram") from e
        except asyncio.TimeoutError as e:
            raise TransientBackendError("Telegram getUpdates timed out", backend="telegram") from e

        try:
            parsed = TelegramUpdatesResponse.model_validate(data)
        except PydanticValidationError as e:
            raise TransientBackendError(f"Malformed getUpdates response: {e}", backend="telegram") from e

        if not parsed.ok:
            raise NotificationError(f"Telegram getUpdates rejected: {parsed.description}", 0)
        return parsed.result

    def get_stats(self) -> dict[str, Any]:
        return {"enabled": self._enabled, "sent": self._sent, "failed": self._failed}
