"""
Deposit Notification Channels
"""
from payout_bot.domain.services.notifications.base_channel import (
    BaseNotificationChannel,
    NotificationHandle,
    SubscriptionStatus,
)
from payout_bot.domain.services.notifications.pusher_channel import PusherNotificationChannel

__all__ = [
    "BaseNotificationChannel",
    "NotificationHandle",
    "SubscriptionStatus",
    "PusherNotificationChannel",
]
