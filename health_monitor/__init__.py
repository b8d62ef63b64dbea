"""
Account Health Monitor.

Watches on-chain lending accounts' health (or available credit) and
notifies chat subscribers when it crosses their thresholds, when an
auto-repay liquidates collateral, or when a watched account is closed.

Components:
- AccountDirectory: durable accounts, subscribers and thresholds
- ProtocolClientAdapter: batch metric lookups with init recovery
- decide(): threshold hysteresis state machine
- PollingScheduler: fixed-cadence refresh loop
- EventReconciler: auto-repay and deleted-account handling
- TelegramNotifier: outbound messages and command polling

Usage:
    from health_monitor import HealthMonitor, get_config

    monitor = HealthMonitor.from_config(get_config())
    await monitor.initialize()

    current = await monitor.subscribe(chat_id, address, [25, 10])
    await monitor.run()

Hysteresis:
    A threshold fires once when the metric drops to or below its
    level, then stays quiet until the metric recovers to
    level + margin (or the metric maximum).
"""

from .cache import AccountCache
from .config import MonitorConfig, get_config, set_config
from .exceptions import (
    AccountNotFoundError,
    BatchUnavailableError,
    ClientInitializationError,
    ClientUnavailableError,
    DirectoryError,
    ExistingThresholdError,
    FatalReconciliationError,
    HealthMonitorError,
    InvalidAddressError,
    InvalidThresholdError,
    NoThresholdsError,
    NotificationError,
    RecordNotFoundError,
    ThresholdNotFoundError,
    TransientBackendError,
    ValidationError,
)
from .hysteresis import decide
from .models import (
    BatchResult,
    Decision,
    InstructionEvent,
    MetricKind,
    MonitoredAccount,
    Notification,
    Subscriber,
    Threshold,
    ThresholdUpdate,
)
from .reconciler import EventReconciler
from .retry import RetryPolicy, retry_with_backoff
from .scheduler import PollingScheduler, TickSummary
from .service import HealthMonitor

__all__ = [
    # Service
    "HealthMonitor",
    "PollingScheduler",
    "TickSummary",
    "EventReconciler",
    "AccountCache",
    "decide",
    # Config
    "MonitorConfig",
    "get_config",
    "set_config",
    "RetryPolicy",
    "retry_with_backoff",
    # Models
    "MetricKind",
    "Threshold",
    "Subscriber",
    "MonitoredAccount",
    "Notification",
    "ThresholdUpdate",
    "Decision",
    "BatchResult",
    "InstructionEvent",
    # Exceptions
    "HealthMonitorError",
    "ValidationError",
    "InvalidAddressError",
    "InvalidThresholdError",
    "NoThresholdsError",
    "ThresholdNotFoundError",
    "ExistingThresholdError",
    "AccountNotFoundError",
    "TransientBackendError",
    "BatchUnavailableError",
    "ClientInitializationError",
    "ClientUnavailableError",
    "DirectoryError",
    "RecordNotFoundError",
    "FatalReconciliationError",
    "NotificationError",
]

__version__ = "1.0.0"
