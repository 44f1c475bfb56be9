"""Notification providers package.

- log_provider: always-on, writes notifications to the log
- webhook_provider: POSTs notifications to NOTIFY_WEBHOOK_URL
"""

from swapify.infrastructure.notifications.log_provider import LogNotificationProvider
from swapify.infrastructure.notifications.webhook_provider import (
    WebhookNotificationProvider,
)

__all__ = [
    "LogNotificationProvider",
    "WebhookNotificationProvider",
]
