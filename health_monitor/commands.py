"""
Chat Commands - Telegram command surface.

============================================================
COMMANDS
============================================================
/start                        Welcome message
/help [command]               Command list or per-command help
/track <address> <levels>     Track comma-separated levels
/stop all                     Stop everything
/stop <address>               Stop all levels on an account
/stop <address> <levels>      Stop specific levels
/list                         Show tracked accounts

Validation errors get a specific reply. Anything unexpected is
logged with its traceback and answered with a generic message.
============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from . import messages
from .exceptions import (
    AccountNotFoundError,
    ExistingThresholdError,
    InvalidAddressError,
    InvalidThresholdError,
    NoThresholdsError,
    NotificationError,
    ThresholdNotFoundError,
    TransientBackendError,
)
from .models import MetricKind
from .notifications.telegram import TelegramNotifier
from .schemas import TelegramUpdate
from .service import HealthMonitor


logger = logging.getLogger(__name__)

EXAMPLE_ADDRESS = "D4c8Pf2zKJpueLoj7CZXYmdgJQAT9FVXySAxURQDxa2m"


def metric_label(kind: MetricKind) -> str:
    return "account health" if kind is MetricKind.HEALTH else "available credit"


def parse_levels(kind: MetricKind, raw: str) -> list[int]:
    """
    Parse a comma-separated level list.

    Raises:
        InvalidThresholdError: Any entry is empty or malformed
    """
    parts = raw.replace(" ", "").split(",")
    if any(not part for part in parts):
        raise InvalidThresholdError(raw, "empty threshold")
    levels = []
    for part in parts:
        try:
            levels.append(kind.parse_level(part))
        except ValueError as e:
            raise InvalidThresholdError(part, str(e)) from e
    return levels


class CommandHandler:
    """Turns one incoming chat message into reply texts."""

    def __init__(self, monitor: HealthMonitor) -> None:
        self._monitor = monitor
        self._kind = monitor.metric_kind
        self._handlers: dict[str, Callable[[int, list[str]], Awaitable[list[str]]]] = {
            "start": self._start,
            "help": self._help,
            "track": self._track,
            "stop": self._stop,
            "list": self._list,
        }

    async def handle(self, chat_id: int, text: str) -> list[str]:
        """Replies for one message; never raises."""
        text = text.strip()
        if not text.startswith("/"):
            if text.lower() == "gm":
                return ["gm"]
            return [messages.UNKNOWN_INPUT]

        tokens = text.split()
        command = tokens[0][1:].split("@", 1)[0].lower()
        handler = self._handlers.get(command)
        if handler is None:
            return [messages.UNKNOWN_INPUT]

        try:
            return await handler(chat_id, tokens[1:])
        except Exception:
            logger.exception(f"Unhandled error in /{command} for chat {chat_id}")
            return [messages.GENERIC_FAILURE]

    # ─────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────

    async def _start(self, chat_id: int, args: list[str]) -> list[str]:
        label = metric_label(self._kind)
        return ["\n".join([
            "Hey! Welcome to the Health Monitor Bot! 👋\n",
            f"I can send you notifications whenever your {label} drops below a certain level, "
            "or if an auto-repay is triggered.",
            "Use /help to see all available commands.",
        ])]

    async def _help(self, chat_id: int, args: list[str]) -> list[str]:
        label = metric_label(self._kind)
        if not args:
            return ["\n\n".join([
                "💎 Health Monitor Bot commands:\n",
                "/start \nStart the bot",
                "/help \nShow this message",
                "/help <command> \nShow detailed help and examples for a command \nEg: /help /track",
                f"/track <address> <thresholds> \nSet {label} thresholds to be notified at",
                f"/stop <address> <thresholds> \nRemove {label} thresholds",
                f"/stop <address> \nRemove all {label} thresholds for a wallet",
                "/stop all \nRemove all thresholds for all wallets",
                f"/list \nList monitored wallets and their {label} thresholds",
                "\nYou will also be notified if an auto-repay is triggered on any wallet you've set thresholds for",
            ])]

        command = args[0].lstrip("/").lower()
        example = "25,10" if self._kind is MetricKind.HEALTH else "30,10.50"
        if command == "start":
            return ["/start\nStart the bot"]
        if command == "help":
            return ["/help\nShow all available commands\n\nUse /help <command> for details, eg: /help /track"]
        if command == "track":
            return ["\n".join([
                "/track <address> <thresholds>",
                f"Set {label} thresholds to be notified at, as a comma-separated list. "
                "You will also be notified when an auto-repay is triggered.",
                "",
                f"Eg: /track {EXAMPLE_ADDRESS} {example}",
            ])]
        if command == "stop":
            return [
                f"/stop <address> <thresholds>\nRemove {label} thresholds\n\nEg: /stop {EXAMPLE_ADDRESS} {example}",
                "/stop <address>\nRemove all thresholds for a wallet. You will no longer be notified about it.",
                "/stop all\nRemove all thresholds for all wallets. I will no longer send you any notifications.",
            ]
        if command == "list":
            return [f"/list\nList all monitored wallets, their {label} thresholds, and their current {label}"]
        return [f'"{command}" isn\'t a valid command, use /help to see all available commands']

    async def _track(self, chat_id: int, args: list[str]) -> list[str]:
        label = metric_label(self._kind)
        if not args:
            return ["Please include the wallet address to monitor. Use /help /track for details."]
        address = args[0]
        if len(args) < 2:
            return [f"You must specify a {label} threshold to be notified at. Use /help /track for details."]

        try:
            levels = parse_levels(self._kind, "".join(args[1:]))
            current = await self._monitor.subscribe(chat_id, address, levels)
        except InvalidAddressError:
            return [f"That doesn't look like a valid wallet address: {address}"]
        except InvalidThresholdError:
            return ["Thresholds must be a comma-separated list of amounts. Use /help /track for details."]
        except AccountNotFoundError:
            return [f"Error: Could not find a protocol account for wallet address {address}"]
        except ExistingThresholdError as e:
            return [
                f"Error: Threshold {self._kind.format_value(e.level)} already exists for "
                f"{messages.display_address(address)}"
            ]

        return [
            f"🔎 I've started monitoring {messages.display_address(address)}! "
            f"Your current {label} is {self._kind.format_value(current)}"
        ]

    async def _stop(self, chat_id: int, args: list[str]) -> list[str]:
        if not args:
            return ["Please include what you want me to stop monitoring. Use /help /stop for details."]

        if args[0].lower() == "all":
            try:
                await self._monitor.unsubscribe(chat_id)
            except NoThresholdsError:
                return ["I'm not currently monitoring any accounts. Use /help /track to see how to add one."]
            return ["🗑️ I've stopped monitoring all accounts, you won't receive any more notifications from me!"]

        address = args[0]
        shown = messages.display_address(address)
        levels: Optional[list[int]] = None
        try:
            if len(args) > 1:
                levels = parse_levels(self._kind, "".join(args[1:]))
            remaining = await self._monitor.unsubscribe(chat_id, address, levels)
        except InvalidAddressError:
            return [f"That doesn't look like a valid wallet address: {address}"]
        except InvalidThresholdError:
            return ["Thresholds must be a comma-separated list of amounts. Use /help /stop for details."]
        except NoThresholdsError:
            return [f"I'm not currently monitoring any thresholds for {shown}. Use /help /track to see how to add one."]
        except ThresholdNotFoundError as e:
            return [f"Error: Threshold {self._kind.format_value(e.level)} not found for {shown}"]

        if not remaining:
            return [f"🗑️ I've removed all thresholds from {shown}, you won't receive any more notifications for this account."]
        plural = "s" if levels and len(levels) > 1 else ""
        return [f"🗑️ I've removed the threshold{plural} {messages.format_levels(self._kind, levels or [])} for {shown}."]

    async def _list(self, chat_id: int, args: list[str]) -> list[str]:
        label = metric_label(self._kind)
        accounts = await self._monitor.list_subscriptions(chat_id)
        if not accounts:
            return ["I'm not currently monitoring any accounts. Use /help /track to see how to add one."]

        entries = []
        for account in accounts:
            subscriber = account.subscriber_for(chat_id)
            levels = subscriber.levels if subscriber else []
            entries.append(
                f"{account.address} \n{label.capitalize()}: {self._kind.format_value(account.last_metric)} "
                f"\nNotification thresholds: {messages.format_levels(self._kind, levels)}"
            )

        return ["\n".join([
            "I'm currently monitoring the following accounts. I'll send a notification if auto-repay is "
            f"triggered, or if their {label} drops to the set levels:",
            "",
            "\n\n".join(entries),
        ])]


class CommandPoller:
    """
    Long-polls Telegram for messages and answers them.

    Usage:
        poller = CommandPoller(notifier, CommandHandler(monitor))
        await poller.run_forever()
    """

    ERROR_BACKOFF_SECONDS = 5.0

    def __init__(
        self,
        notifier: TelegramNotifier,
        handler: CommandHandler,
        poll_timeout_seconds: int = 30,
    ) -> None:
        self._notifier = notifier
        self._handler = handler
        self._poll_timeout = poll_timeout_seconds
        self._offset: Optional[int] = None
        self._running = False

    async def run_forever(self) -> None:
        self._running = True
        logger.info("Command poller started")
        while self._running:
            try:
                await self.poll_once()
            except (TransientBackendError, NotificationError) as e:
                logger.warning(f"Failed to fetch updates: {e}")
                await asyncio.sleep(self.ERROR_BACKOFF_SECONDS)

    def stop(self) -> None:
        self._running = False

    async def poll_once(self) -> int:
        """Fetch one batch of updates and answer them. Returns messages handled."""
        updates = await self._notifier.get_updates(self._offset, self._poll_timeout)
        handled = 0
        for raw in updates:
            try:
                update = TelegramUpdate.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed update: {e}")
                if isinstance(raw.get("update_id"), int):
                    self._offset = raw["update_id"] + 1
                continue

            self._offset = update.update_id + 1
            if update.message is None or update.message.text is None:
                continue

            chat_id = update.message.chat.id
            for reply in await self._handler.handle(chat_id, update.message.text):
                await self._notifier.send(chat_id, reply)
            handled += 1
        return handled
