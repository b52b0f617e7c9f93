"""Inbound push notifications."""

from calendar_sync.notifications.receiver import (
    NotificationAction,
    NotificationOutcome,
    NotificationReceiver,
    PushNotification,
    ResourceState,
)

__all__ = [
    "NotificationAction",
    "NotificationOutcome",
    "NotificationReceiver",
    "PushNotification",
    "ResourceState",
]
