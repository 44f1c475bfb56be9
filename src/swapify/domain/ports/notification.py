"""Notification provider interfaces for the notification service.

Hey future me - this is the PORT (interface) for notification providers!
Each provider implements this interface. The NotificationService fans every
queued notification out to the providers that support its type.

Architecture:
- NotificationService (Application Layer) → INotificationProvider (Port)
- LogNotificationProvider, WebhookNotificationProvider → Implement INotificationProvider

Delivery is best-effort. The poll cycle never waits on a provider.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class NotificationType(str, Enum):
    """Types of notifications the reconciliation engine emits.

    Hey future me - add new types here when you add new notification events!
    """

    TRACK_REMOVED = "track_removed"
    TRACK_ARCHIVED = "track_archived"
    REAUTH_REQUIRED = "reauth_required"
    TRACK_LIMIT_EXCEEDED = "track_limit_exceeded"
    REMOTE_SYNC_FAILED = "remote_sync_failed"
    CUSTOM = "custom"


class NotificationPriority(str, Enum):
    """Priority levels for notifications."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass
class Notification:
    """Notification payload handed to providers.

    Example:
        notif = Notification(
            type=NotificationType.TRACK_REMOVED,
            user_ids=["u1", "u2"],
            title="Track removed",
            body="Song by Artist left Friday Mix",
            url="https://swapify.example/playlist/p1",
        )
    """

    type: NotificationType
    user_ids: list[str]
    title: str
    body: str
    url: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC)

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe representation (used by the webhook provider)."""
        return {
            "type": self.type.value,
            "user_ids": list(self.user_ids),
            "title": self.title,
            "body": self.body,
            "url": self.url,
            "priority": self.priority.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass
class NotificationResult:
    """Result of sending a notification through one provider."""

    success: bool
    provider_name: str
    notification_type: NotificationType
    error: str | None = None


class INotificationProvider(ABC):
    """Interface for notification providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for this provider (e.g., 'log', 'webhook')."""
        pass

    @property
    @abstractmethod
    def supported_types(self) -> list[NotificationType]:
        """Notification types this provider handles. Empty list = ALL types."""
        pass

    @abstractmethod
    async def send(self, notification: Notification) -> NotificationResult:
        """Deliver a notification through this provider."""
        pass

    @abstractmethod
    async def is_configured(self) -> bool:
        """True if the provider has everything it needs (URLs, credentials)."""
        pass

    def supports(self, notification_type: NotificationType) -> bool:
        supported = self.supported_types
        return len(supported) == 0 or notification_type in supported


__all__ = [
    "INotificationProvider",
    "Notification",
    "NotificationPriority",
    "NotificationResult",
    "NotificationType",
]
