"""
Health Monitor Messages - User-facing text.

Plain text only; the notifier sends without a parse mode so no
escaping is needed.
"""

from .models import MetricKind


GENERIC_FAILURE = "Sorry, something went wrong. I've notified the team and we'll look into it ASAP."
UNKNOWN_INPUT = "I didn't get that... Use /help to see all available commands."

# Crossing at or below this health level gets the urgent wording
URGENT_HEALTH_LEVEL = 10


def display_address(address: str) -> str:
    """Shortened address, e.g. (D4c8...xa2m)."""
    return f"({address[:4]}...{address[-4:]})"


def format_levels(kind: MetricKind, levels: list[int]) -> str:
    return ", ".join(kind.format_value(level) for level in levels)


def threshold_crossed(kind: MetricKind, address: str, metric: int, level: int) -> str:
    """Notification for a subscriber whose lowest crossed level is `level`."""
    shown = display_address(address)
    crossed = f"crossing your {kind.format_value(level)} threshold"
    if kind is MetricKind.HEALTH:
        if level <= URGENT_HEALTH_LEVEL:
            return (
                f"🚨 Your account health {shown} has dropped to {metric}%, {crossed}. "
                "If you don't add more collateral, your loans will be auto-repaid at market rate!"
            )
        return (
            f"Your account health {shown} has dropped to {metric}%, {crossed}. "
            "Please add more collateral to your account to avoid your loans being auto-repaid."
        )
    return (
        f"Your available credit for {shown} has dropped to {kind.format_value(metric)}, {crossed}. "
        "Please add more collateral to your account to avoid your loans being auto-repaid."
    )


def auto_repay(address: str) -> str:
    return (
        f"💰 Your loans for account {display_address(address)} have automatically been repaid "
        "by selling your collateral at market rate."
    )


def account_deleted(address: str) -> str:
    return f"Your account {display_address(address)} has been deleted and will no longer be monitored."
