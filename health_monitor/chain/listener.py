"""
Instruction Listener - Push notifications for auto-repay instructions.

============================================================
PURPOSE
============================================================
Subscribe to program logs over the RPC websocket, pick out
transactions that ran the auto-repay instruction, and hand one
InstructionEvent per matching instruction to a callback.

FLOW:
1. logsSubscribe with mentions=[program id]
2. Keep notifications whose logs contain the instruction name
   and whose transaction succeeded
3. Fetch the transaction, resolve account keys (including
   lookup-table addresses) and decode matching instructions
4. Extract caller and owner from fixed account positions

Reconnects with exponential backoff, capped at 60s, up to a
bounded number of attempts.
============================================================
"""

import asyncio
import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import websockets
from solders.transaction import VersionedTransaction

from ..exceptions import HealthMonitorError, TransientBackendError
from ..models import InstructionEvent
from .rpc import SolanaRpcClient


logger = logging.getLogger(__name__)


INSTRUCTION_NAME = "AutoRepayStart"
ACCOUNT_INDEX_CALLER = 0
ACCOUNT_INDEX_OWNER = 5


def instruction_discriminator(snake_case_name: str) -> bytes:
    """Anchor instruction discriminator: sha256("global:<name>")[:8]."""
    return hashlib.sha256(f"global:{snake_case_name}".encode()).digest()[:8]


AUTO_REPAY_DISCRIMINATOR = instruction_discriminator("auto_repay_start")

EventHandler = Callable[[InstructionEvent], Awaitable[None]]


@dataclass(frozen=True)
class RawInstruction:
    """A compiled instruction with indexes into the transaction's account keys."""
    program_id_index: int
    accounts: tuple[int, ...]
    data: bytes


# =============================================================================
# PURE DECODING
# =============================================================================


def parse_logs_notification(message: dict[str, Any], instruction_name: str = INSTRUCTION_NAME) -> Optional[str]:
    """
    Signature of a successful transaction that logged the instruction.

    Returns None for anything else (subscription acks, failed
    transactions, other instructions).
    """
    if message.get("method") != "logsNotification":
        return None

    value = message.get("params", {}).get("result", {}).get("value", {})
    if value.get("err") is not None:
        return None

    marker = f"Instruction: {instruction_name}"
    if not any(marker in line for line in value.get("logs") or []):
        return None

    return value.get("signature")


def find_instruction_events(
    signature: str,
    account_keys: list[str],
    instructions: list[RawInstruction],
    program_id: str,
    discriminator: bytes = AUTO_REPAY_DISCRIMINATOR,
) -> list[InstructionEvent]:
    """Events for every top-level instruction of `program_id` matching `discriminator`."""
    events: list[InstructionEvent] = []

    for instruction in instructions:
        if instruction.program_id_index >= len(account_keys):
            continue
        if account_keys[instruction.program_id_index] != program_id:
            continue
        if not instruction.data.startswith(discriminator):
            continue

        needed = max(ACCOUNT_INDEX_CALLER, ACCOUNT_INDEX_OWNER)
        if len(instruction.accounts) <= needed:
            logger.warning(f"{INSTRUCTION_NAME} in {signature} has too few accounts")
            continue

        caller_index = instruction.accounts[ACCOUNT_INDEX_CALLER]
        owner_index = instruction.accounts[ACCOUNT_INDEX_OWNER]
        if caller_index >= len(account_keys) or owner_index >= len(account_keys):
            logger.warning(f"{INSTRUCTION_NAME} in {signature} references unknown accounts")
            continue

        events.append(
            InstructionEvent(
                signature=signature,
                caller=account_keys[caller_index],
                owner=account_keys[owner_index],
            )
        )

    return events


def decode_transaction(result: dict[str, Any]) -> tuple[list[str], list[RawInstruction]]:
    """
    Account keys and instructions from a base64 getTransaction result.

    Account keys are the static keys followed by lookup-table loaded
    addresses, writable first, as the runtime orders them.
    """
    encoded, _encoding = result["transaction"]
    tx = VersionedTransaction.from_bytes(base64.b64decode(encoded))
    message = tx.message

    account_keys = [str(key) for key in message.account_keys]
    loaded = (result.get("meta") or {}).get("loadedAddresses") or {}
    account_keys.extend(loaded.get("writable", []))
    account_keys.extend(loaded.get("readonly", []))

    instructions = [
        RawInstruction(
            program_id_index=ix.program_id_index,
            accounts=tuple(ix.accounts),
            data=bytes(ix.data),
        )
        for ix in message.instructions
    ]
    return account_keys, instructions


# =============================================================================
# LISTENER
# =============================================================================


class InstructionListener:
    """
    Websocket listener for the auto-repay instruction.

    Usage:
        listener = InstructionListener(ws_url, rpc, program_id, reconciler.handle_instruction)
        await listener.start()
    """

    def __init__(
        self,
        ws_url: str,
        rpc: SolanaRpcClient,
        program_id: str,
        handler: EventHandler,
        reconnect_attempts: int = 10,
        ping_interval: float = 20.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.ws_url = ws_url
        self.program_id = program_id
        self._rpc = rpc
        self._handler = handler
        self._reconnect_attempts = reconnect_attempts
        self._ping_interval = ping_interval
        self._sleep = sleep or asyncio.sleep

        self._websocket: Any = None
        self._running = False
        self._reconnect_count = 0
        self._events_seen = 0

    # ─────────────────────────────────────────────────────────────
    # Connection management
    # ─────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """
        Open the websocket and subscribe to program logs.

        Raises:
            TransientBackendError: On connection failure
        """
        try:
            self._websocket = await websockets.connect(self.ws_url, ping_interval=self._ping_interval)
            await self._websocket.send(json.dumps({
                "jsonrpc": "2.0",
                "id": 1,
                "method": "logsSubscribe",
                "params": [{"mentions": [self.program_id]}, {"commitment": "confirmed"}],
            }))
        except (OSError, websockets.WebSocketException, asyncio.TimeoutError) as e:
            raise TransientBackendError(f"Websocket connection failed: {e}", backend="websocket") from e

        self._reconnect_count = 0
        logger.info(f"Listening for {INSTRUCTION_NAME} on {self.program_id}")

    async def disconnect(self) -> None:
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except (OSError, websockets.WebSocketException) as e:
                logger.warning(f"Error closing websocket: {e}")
            finally:
                self._websocket = None

    async def _reconnect(self) -> None:
        """Reconnect with exponential backoff until connected or out of attempts."""
        while True:
            if self._reconnect_count >= self._reconnect_attempts:
                logger.error("Max websocket reconnection attempts reached")
                raise TransientBackendError("Max websocket reconnection attempts reached", backend="websocket")

            backoff = min(2 ** self._reconnect_count, 60)
            self._reconnect_count += 1
            logger.info(f"Reconnecting in {backoff}s (attempt {self._reconnect_count})")
            await self._sleep(backoff)

            try:
                await self.connect()
                return
            except TransientBackendError as e:
                logger.warning(f"Reconnect failed: {e}")

    # ─────────────────────────────────────────────────────────────
    # Message processing
    # ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Run until stopped; reconnects on connection loss.

        The first connection goes through the same backoff as later ones.

        Raises:
            TransientBackendError: When reconnection attempts are exhausted
        """
        self._running = True
        try:
            await self.connect()
        except TransientBackendError as e:
            logger.warning(f"Initial websocket connection failed: {e}")
            await self._reconnect()

        while self._running:
            try:
                await self._process_messages()
            except (websockets.ConnectionClosed, OSError) as e:
                logger.warning(f"Websocket connection lost: {e}")

            if not self._running:
                break
            await self.disconnect()
            await self._reconnect()

    async def stop(self) -> None:
        self._running = False
        await self.disconnect()

    async def _process_messages(self) -> None:
        if self._websocket is None:
            return

        async for raw in self._websocket:
            if not self._running:
                break
            await self.handle_message(raw)

    async def handle_message(self, raw: str) -> None:
        """Process one websocket frame; failures are logged, never raised."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid websocket message: {e}")
            return

        signature = parse_logs_notification(message)
        if signature is None:
            return

        try:
            events = await self._fetch_events(signature)
        except HealthMonitorError as e:
            logger.error(f"Failed to load transaction {signature}: {e}")
            return
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to decode transaction {signature}: {e}")
            return

        for event in events:
            self._events_seen += 1
            try:
                await self._handler(event)
            except Exception:
                logger.exception(f"Error handling {INSTRUCTION_NAME} event {event.signature}")

    async def _fetch_events(self, signature: str) -> list[InstructionEvent]:
        result = await self._rpc.get_transaction(signature)
        if result is None:
            logger.warning(f"Transaction {signature} not found")
            return []
        if (result.get("meta") or {}).get("err") is not None:
            return []

        account_keys, instructions = decode_transaction(result)
        return find_instruction_events(signature, account_keys, instructions, self.program_id)

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "connected": self._websocket is not None,
            "reconnect_count": self._reconnect_count,
            "events_seen": self._events_seen,
        }
