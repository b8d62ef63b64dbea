"""
Health Monitor Models - Core data types.

All values are plain dataclasses so they can cross task boundaries
without carrying database sessions along.

Metric values are integers in the unit of the configured MetricKind:
- HEALTH: percentage points, 0 to 100
- AVAILABLE_CREDIT: cents, unbounded
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional


class MetricKind(Enum):
    """Which protocol metric the engine watches."""
    HEALTH = "health"
    AVAILABLE_CREDIT = "available_credit"

    @property
    def maximum(self) -> Optional[int]:
        """Upper bound of the metric, or None when unbounded."""
        if self is MetricKind.HEALTH:
            return 100
        return None

    @property
    def default_margin(self) -> int:
        """Re-arm margin used when none is configured."""
        if self is MetricKind.HEALTH:
            return 5
        return 500  # $5.00

    def parse_level(self, raw: str) -> int:
        """
        Parse a user-entered level into metric units.

        Health levels are whole percentages ("25" or "25%").
        Credit levels are dollars ("30", "$10.50") stored as cents.

        Raises:
            ValueError: If the text is not a valid level
        """
        text = raw.strip().rstrip("%").lstrip("$").strip()
        try:
            amount = Decimal(text)
        except InvalidOperation as e:
            raise ValueError(f"Invalid level: {raw!r}") from e

        if not amount.is_finite() or amount < 0:
            raise ValueError(f"Invalid level: {raw!r}")

        if self is MetricKind.HEALTH:
            if amount != amount.to_integral_value() or amount > 100:
                raise ValueError(f"Health level must be a whole number from 0 to 100: {raw!r}")
            return int(amount)

        cents = amount * 100
        if cents != cents.to_integral_value():
            raise ValueError(f"Credit level has more than two decimal places: {raw!r}")
        return int(cents)

    def format_value(self, value: int) -> str:
        """Render a metric value for display."""
        if self is MetricKind.HEALTH:
            return f"{value}%"
        return f"${value / 100:,.2f}"


@dataclass(frozen=True)
class Threshold:
    """A single trigger level belonging to one subscriber."""
    id: int
    level: int
    armed: bool = True


@dataclass(frozen=True)
class Subscriber:
    """One recipient watching one account, with its ordered threshold set."""
    id: int
    recipient_id: int
    thresholds: tuple[Threshold, ...] = ()

    def __post_init__(self) -> None:
        # Keep thresholds ordered by level regardless of load order
        ordered = tuple(sorted(self.thresholds, key=lambda t: t.level))
        object.__setattr__(self, "thresholds", ordered)

    @property
    def levels(self) -> list[int]:
        return [t.level for t in self.thresholds]


@dataclass(frozen=True)
class MonitoredAccount:
    """
    A watched on-chain account with all of its subscribers.

    Instances are immutable snapshots of the directory; the in-memory
    mirror replaces them wholesale after each write.
    """
    address: str
    last_metric: int
    subscribers: tuple[Subscriber, ...] = ()

    def subscriber_for(self, recipient_id: int) -> Optional[Subscriber]:
        for subscriber in self.subscribers:
            if subscriber.recipient_id == recipient_id:
                return subscriber
        return None

    def view_for(self, recipient_id: int) -> "MonitoredAccount":
        """Copy of this account restricted to one recipient's subscriber row."""
        return replace(
            self,
            subscribers=tuple(s for s in self.subscribers if s.recipient_id == recipient_id),
        )

    @property
    def recipient_ids(self) -> list[int]:
        """Distinct recipients in subscriber order."""
        seen: list[int] = []
        for subscriber in self.subscribers:
            if subscriber.recipient_id not in seen:
                seen.append(subscriber.recipient_id)
        return seen


@dataclass(frozen=True)
class Notification:
    """Text to deliver to one recipient."""
    recipient_id: int
    message: str


@dataclass(frozen=True)
class ThresholdUpdate:
    """An arm-state transition the directory must persist."""
    threshold_id: int
    level: int
    armed: bool


@dataclass
class Decision:
    """Output of the hysteresis engine for one account and one new metric."""
    updated_thresholds: list[ThresholdUpdate] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)
    disarmed_levels: set[int] = field(default_factory=set)
    changed: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.changed


@dataclass
class BatchResult:
    """
    Result of a batch metric lookup.

    Accounts the protocol no longer knows about are listed in `missing`
    and are not present in `metrics`.
    """
    metrics: dict[str, int] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class InstructionEvent:
    """An observed auto-repay instruction."""
    signature: str
    caller: str
    owner: str

    @property
    def is_manual(self) -> bool:
        """The owner signed the repay themselves."""
        return self.caller == self.owner
