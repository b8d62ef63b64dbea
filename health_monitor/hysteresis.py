"""
Health Monitor - Threshold hysteresis engine.

============================================================
PURPOSE
============================================================
Decide, for one account and one newly observed metric, which
thresholds change arm state and who gets notified.

RULES (per threshold):
- Armed and metric <= level: fire and disarm
- Disarmed and (metric == maximum or metric >= level + margin):
  re-arm silently
- Otherwise: unchanged

A new threshold starts armed under the same margin rule, and only
when the metric is above its level.

A subscriber gets at most one notification per decision, citing
the lowest level it crossed. An unchanged metric is a no-op.

Pure function: no I/O, no mutation of the input account.
============================================================
"""

from typing import Optional

from . import messages
from .models import (
    Decision,
    MetricKind,
    MonitoredAccount,
    Notification,
    Threshold,
    ThresholdUpdate,
)


def should_rearm(threshold: Threshold, metric: int, margin: int, metric_max: Optional[int]) -> bool:
    if threshold.armed:
        return False
    if metric_max is not None and metric == metric_max:
        return True
    return metric >= threshold.level + margin


def should_fire(threshold: Threshold, metric: int) -> bool:
    return threshold.armed and metric <= threshold.level


def armed_on_subscribe(level: int, metric: int, margin: int, metric_max: Optional[int]) -> bool:
    """
    Initial arm state for a new threshold.

    Armed only when the metric is above the level and either at its
    maximum or at least `margin` above the level.
    """
    if metric <= level:
        return False
    if metric_max is not None and metric == metric_max:
        return True
    return metric >= level + margin


def decide(
    account: MonitoredAccount,
    new_metric: int,
    margin: int,
    metric_max: Optional[int] = None,
    kind: MetricKind = MetricKind.HEALTH,
) -> Decision:
    """
    Run the hysteresis state machine for one account.

    Args:
        account: Current snapshot, including last_metric and thresholds
        new_metric: Freshly resolved metric value
        margin: Re-arm offset above each level
        metric_max: Metric upper bound that always re-arms, if any
        kind: Metric kind, used for notification text

    Returns:
        Decision with arm-state updates and at most one notification
        per subscriber. `changed` is False when the metric is unchanged.
    """
    decision = Decision()
    if new_metric == account.last_metric:
        return decision

    decision.changed = True

    for subscriber in account.subscribers:
        lowest_crossed: Optional[int] = None

        for threshold in subscriber.thresholds:
            if should_fire(threshold, new_metric):
                decision.updated_thresholds.append(
                    ThresholdUpdate(threshold_id=threshold.id, level=threshold.level, armed=False)
                )
                decision.disarmed_levels.add(threshold.level)
                if lowest_crossed is None or threshold.level < lowest_crossed:
                    lowest_crossed = threshold.level

            elif should_rearm(threshold, new_metric, margin, metric_max):
                decision.updated_thresholds.append(
                    ThresholdUpdate(threshold_id=threshold.id, level=threshold.level, armed=True)
                )

        if lowest_crossed is not None:
            decision.notifications.append(
                Notification(
                    recipient_id=subscriber.recipient_id,
                    message=messages.threshold_crossed(kind, account.address, new_metric, lowest_crossed),
                )
            )

    return decision
