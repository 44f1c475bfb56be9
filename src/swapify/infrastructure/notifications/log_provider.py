"""Log-only notification provider (always on)."""

import logging

from swapify.domain.ports.notification import (
    INotificationProvider,
    Notification,
    NotificationResult,
    NotificationType,
)

logger = logging.getLogger(__name__)


class LogNotificationProvider(INotificationProvider):
    """Writes every notification to the log. Useful in dev and as an audit trail."""

    @property
    def name(self) -> str:
        return "log"

    @property
    def supported_types(self) -> list[NotificationType]:
        return []

    async def is_configured(self) -> bool:
        return True

    async def send(self, notification: Notification) -> NotificationResult:
        logger.info(
            f"[NOTIFICATION] {notification.type.value}: {notification.title} - "
            f"{notification.body[:100]}",
            extra={
                "notification_type": notification.type.value,
                "user_ids": notification.user_ids,
                "url": notification.url,
            },
        )
        return NotificationResult(
            success=True, provider_name=self.name, notification_type=notification.type
        )


__all__ = ["LogNotificationProvider"]
