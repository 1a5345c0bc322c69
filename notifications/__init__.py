"""Notification delivery for slot lifecycle events."""

from .dispatcher import NotificationDispatcher, get_dispatcher, set_bot_instance
from .templates import NotificationKind, render

__all__ = [
    "NotificationDispatcher",
    "NotificationKind",
    "get_dispatcher",
    "render",
    "set_bot_instance",
]
