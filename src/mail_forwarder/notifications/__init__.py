"""Notification fan-out for forwarding outcomes and worker alerts."""

from .dispatcher import ChannelStats, NotificationDispatcher
from .targets import NotificationError

__all__ = ["ChannelStats", "NotificationDispatcher", "NotificationError"]
