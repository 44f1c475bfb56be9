"""Webhook notification provider.

Hey future me - this is the bridge to the actual delivery system (push / email live
outside this service). We POST each notification as JSON to NOTIFY_WEBHOOK_URL and
whatever sits behind it fans out to devices and inboxes.

Supported formats:
- generic: the Notification payload as-is (user_ids, title, body, url, ...)
- discord / slack: human-readable message for an ops channel
"""

import logging
from typing import Any

import httpx

from swapify.config.settings import NotificationSettings
from swapify.domain.ports.notification import (
    INotificationProvider,
    Notification,
    NotificationResult,
    NotificationType,
)

logger = logging.getLogger(__name__)


class WebhookNotificationProvider(INotificationProvider):
    """POST notifications to a configured webhook URL."""

    def __init__(
        self,
        settings: NotificationSettings,
        webhook_format: str = "generic",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._format = webhook_format.lower()
        self._transport = transport

    @property
    def name(self) -> str:
        return "webhook"

    @property
    def supported_types(self) -> list[NotificationType]:
        return []

    async def is_configured(self) -> bool:
        url = self._settings.webhook_url
        return bool(url and url.strip())

    async def send(self, notification: Notification) -> NotificationResult:
        if not await self.is_configured():
            return NotificationResult(
                success=False,
                provider_name=self.name,
                notification_type=notification.type,
                error="Webhook provider not configured",
            )

        try:
            await self._send_request(self._build_payload(notification))
        except httpx.HTTPError as e:
            logger.error(
                "notification.webhook.failed",
                extra={"notification_type": notification.type.value, "error": str(e)},
            )
            return NotificationResult(
                success=False,
                provider_name=self.name,
                notification_type=notification.type,
                error=str(e),
            )

        logger.debug(
            "notification.webhook.sent",
            extra={
                "notification_type": notification.type.value,
                "recipients": len(notification.user_ids),
            },
        )
        return NotificationResult(
            success=True, provider_name=self.name, notification_type=notification.type
        )

    def _build_payload(self, notification: Notification) -> dict[str, Any]:
        if self._format == "discord":
            return {
                "content": f"**{notification.title}**\n{notification.body}"
                + (f"\n{notification.url}" if notification.url else "")
            }
        if self._format == "slack":
            text = f"*{notification.title}*\n{notification.body}"
            if notification.url:
                text += f"\n<{notification.url}>"
            return {"text": text}
        return {**notification.to_payload(), "source": "swapify"}

    async def _send_request(self, payload: dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json", "User-Agent": "Swapify/1.0"}
        if self._settings.webhook_auth_header:
            headers["Authorization"] = self._settings.webhook_auth_header

        async with httpx.AsyncClient(
            timeout=self._settings.webhook_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(
                str(self._settings.webhook_url), json=payload, headers=headers
            )
            response.raise_for_status()


__all__ = ["WebhookNotificationProvider"]
