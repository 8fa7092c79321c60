"""Notification helpers: issue comments and messaging-channel alerts."""

from conveyor.core.notifications.base import ADMIN_CHANNEL, INFO_CHANNEL, Notifier
from conveyor.core.notifications.comments import post_progress_comment
from conveyor.core.notifications.dispatcher import NotificationDispatcher
from conveyor.core.notifications.telegram import TelegramNotifier

__all__ = [
    "ADMIN_CHANNEL",
    "INFO_CHANNEL",
    "NotificationDispatcher",
    "Notifier",
    "TelegramNotifier",
    "post_progress_comment",
]
