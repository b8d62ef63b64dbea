"""
Notifications - outbound delivery to chat recipients.
"""

from .telegram import NotificationSink, TelegramNotifier, dispatch

__all__ = [
    "NotificationSink",
    "TelegramNotifier",
    "dispatch",
]
