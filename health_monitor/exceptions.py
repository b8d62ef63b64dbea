"""
Health Monitor Exceptions - Tagged error hierarchy.

Each failure category has its own class so callers discriminate with
isinstance checks, never by inspecting message text.

Categories:
- Validation errors: user-correctable, surfaced to the command layer
- AccountNotFoundError: the protocol has no state for the account
- TransientBackendError: retried with bounded backoff, never shown to users
- FatalReconciliationError: data-integrity problem, halts one account only
"""

from datetime import datetime, timezone
from typing import Any, Optional


class HealthMonitorError(Exception):
    """Base exception for all health monitor errors."""

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(HealthMonitorError):
    """User-correctable request error."""


class InvalidAddressError(ValidationError):
    """Account address is not a valid public key."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Invalid account address: {address}", {"address": address})
        self.address = address


class InvalidThresholdError(ValidationError):
    """Threshold level could not be parsed or is out of range."""

    def __init__(self, raw: str, reason: str = "") -> None:
        super().__init__(f"Invalid threshold {raw!r}: {reason}".rstrip(": "), {"raw": raw})
        self.raw = raw


class NoThresholdsError(ValidationError):
    """Nothing to remove, or nothing requested."""

    def __init__(self, recipient_id: Optional[int] = None, address: Optional[str] = None) -> None:
        target = f" for {address}" if address else ""
        super().__init__(
            f"No thresholds found{target}",
            {"recipient_id": recipient_id, "address": address},
        )
        self.recipient_id = recipient_id
        self.address = address


class ThresholdNotFoundError(ValidationError):
    """A specific level is not among the subscriber's thresholds."""

    def __init__(self, level: int, address: Optional[str] = None) -> None:
        super().__init__(f"Threshold {level} not found", {"level": level, "address": address})
        self.level = level
        self.address = address


class ExistingThresholdError(ValidationError):
    """The subscriber already tracks this level."""

    def __init__(self, level: int, address: Optional[str] = None) -> None:
        super().__init__(f"Threshold {level} already exists", {"level": level, "address": address})
        self.level = level
        self.address = address


# =============================================================================
# PROTOCOL ERRORS
# =============================================================================


class AccountNotFoundError(HealthMonitorError):
    """No protocol account exists for the given owner address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Account not found: {address}", {"address": address})
        self.address = address


class TransientBackendError(HealthMonitorError):
    """Directory or RPC outage; safe to retry."""

    def __init__(
        self,
        message: str,
        backend: str = "",
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.backend = backend
        self.status_code = status_code


class BatchUnavailableError(TransientBackendError):
    """A batch metric lookup failed as a whole; no partial results."""


class RpcError(HealthMonitorError):
    """Non-retryable JSON-RPC error response."""

    def __init__(self, message: str, code: Optional[int] = None, method: str = "") -> None:
        super().__init__(message, {"code": code, "method": method})
        self.code = code
        self.method = method


class ClientInitializationError(HealthMonitorError):
    """Protocol client could not be initialized within the attempt budget."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None) -> None:
        super().__init__(
            f"Protocol client failed to initialize after {attempts} attempts",
            {"attempts": attempts, "last_error": str(last_error) if last_error else None},
        )
        self.attempts = attempts
        self.last_error = last_error


class ClientUnavailableError(HealthMonitorError):
    """Protocol client is in a fatal state and must not be used until restart."""


# =============================================================================
# DIRECTORY ERRORS
# =============================================================================


class DirectoryError(HealthMonitorError):
    """Non-retryable storage failure."""

    def __init__(self, message: str, operation: str = "", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(f"[directory] {operation}: {message}" if operation else message, details)
        self.operation = operation


class RecordNotFoundError(DirectoryError):
    """The requested directory record does not exist."""

    def __init__(self, entity: str, key: Any) -> None:
        super().__init__(f"{entity} not found: {key}", operation="lookup", details={"entity": entity, "key": key})
        self.entity = entity
        self.key = key


# =============================================================================
# RECONCILIATION / DELIVERY ERRORS
# =============================================================================


class FatalReconciliationError(HealthMonitorError):
    """An account failed existence checks yet has no on-chain history."""

    def __init__(self, address: str, vault: str) -> None:
        super().__init__(
            f"Account {address} does not exist and vault {vault} has no history",
            {"address": address, "vault": vault},
        )
        self.address = address
        self.vault = vault


class NotificationError(HealthMonitorError):
    """Message delivery failed."""

    def __init__(self, message: str, recipient_id: int, retryable: bool = False) -> None:
        super().__init__(message, {"recipient_id": recipient_id})
        self.recipient_id = recipient_id
        self.retryable = retryable
