"""Notification dispatcher for the reconciliation engine.

Hey future me - this is the MAIN ENTRY POINT for notifications!
The poll cycle must NEVER wait on delivery, so notify() only drops the notification
into a bounded in-memory queue and returns. A background consumer task fans each
queued notification out to every provider (in parallel) and logs failures.

Architecture:
- NotificationService (this) uses the INotificationProvider interface
- LogNotificationProvider (always), WebhookNotificationProvider (when configured)

Usage:
    service = NotificationService(providers, app_url="https://swapify.example")
    await service.start()
    service.notify_track_removed(member_ids, "Song", "Artist", playlist, archived=False)
    ...
    await service.stop()

If the queue is full the notification is dropped with a warning.
"""

import asyncio
import contextlib
import logging
from typing import Any

from swapify.domain.ports.notification import (
    INotificationProvider,
    Notification,
    NotificationPriority,
    NotificationResult,
    NotificationType,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """Queued, fire-and-forget notification dispatcher."""

    def __init__(
        self,
        providers: list[INotificationProvider],
        app_url: str = "",
        queue_size: int = 500,
    ) -> None:
        self._providers = providers
        self._app_url = app_url.rstrip("/")
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task[None] | None = None
        self._sent = 0
        self._dropped = 0
        self._failed = 0

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the background consumer (idempotent)."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._consume_loop())
        logger.info(
            "notifications.started",
            extra={"providers": [p.name for p in self._providers]},
        )

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Give queued notifications a moment to go out, then stop the consumer."""
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except TimeoutError:
            logger.warning(
                "notifications.stop.undelivered",
                extra={"pending": self._queue.qsize()},
            )
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("notifications.stopped", extra=self.get_stats())

    async def drain(self) -> None:
        """Wait until everything queued so far was handled (consumer must run)."""
        await self._queue.join()

    async def _consume_loop(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self.dispatch(notification)
            except Exception:
                # Hey future me - dispatch already converts provider errors to results,
                # this only catches bugs. The consumer must survive them.
                logger.exception("notifications.dispatch.crashed")
            finally:
                self._queue.task_done()

    # =========================================================================
    # CORE
    # =========================================================================

    def notify(
        self,
        user_ids: list[str],
        title: str,
        body: str,
        url: str | None = None,
        notification_type: NotificationType = NotificationType.CUSTOM,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Enqueue a notification. Never blocks, never raises.

        Returns:
            True if queued, False if dropped (no recipients or queue full)
        """
        recipients = list(dict.fromkeys(user_ids))
        if not recipients:
            return False

        notification = Notification(
            type=notification_type,
            user_ids=recipients,
            title=title,
            body=body,
            url=url,
            priority=priority,
            data=data or {},
        )
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "notifications.queue_full.dropped",
                extra={
                    "notification_type": notification_type.value,
                    "queue_size": self._queue.maxsize,
                },
            )
            return False
        return True

    async def dispatch(self, notification: Notification) -> list[NotificationResult]:
        """Send one notification to all providers that support its type, in parallel."""
        providers = [p for p in self._providers if p.supports(notification.type)]
        if not providers:
            return []

        results = await asyncio.gather(
            *(self._send_to_provider(p, notification) for p in providers)
        )
        failures = [r for r in results if not r.success]
        if failures:
            self._failed += 1
            logger.warning(
                "notifications.partial_failure",
                extra={
                    "notification_type": notification.type.value,
                    "failed_providers": [r.provider_name for r in failures],
                    "errors": [r.error for r in failures],
                },
            )
        else:
            self._sent += 1
        return list(results)

    async def _send_to_provider(
        self, provider: INotificationProvider, notification: Notification
    ) -> NotificationResult:
        try:
            if not await provider.is_configured():
                return NotificationResult(
                    success=False,
                    provider_name=provider.name,
                    notification_type=notification.type,
                    error="not configured",
                )
            return await provider.send(notification)
        except Exception as e:
            logger.error(
                "notifications.provider.error",
                extra={"provider": provider.name, "error": str(e)},
                exc_info=True,
            )
            return NotificationResult(
                success=False,
                provider_name=provider.name,
                notification_type=notification.type,
                error=str(e),
            )

    def get_stats(self) -> dict[str, Any]:
        return {
            "queued": self._queue.qsize(),
            "sent": self._sent,
            "failed": self._failed,
            "dropped": self._dropped,
            "running": self._task is not None and not self._task.done(),
        }

    # =========================================================================
    # CONVENIENCE METHODS
    # =========================================================================
    # Hey future me - the engine calls these, never notify() with hand-built text.
    # =========================================================================

    def _playlist_url(self, playlist_id: str) -> str:
        return f"{self._app_url}/playlist/{playlist_id}"

    def notify_track_removed(
        self,
        user_ids: list[str],
        track_name: str,
        artist_name: str,
        playlist_id: str,
        playlist_name: str,
        archived: bool,
    ) -> bool:
        label = f"{track_name} by {artist_name}" if artist_name else track_name
        if archived:
            return self.notify(
                user_ids,
                title=f"Kept in {playlist_name} Keepers",
                body=f"{label} was loved by the group and moved to the archive.",
                url=self._playlist_url(playlist_id),
                notification_type=NotificationType.TRACK_ARCHIVED,
                data={"playlist_id": playlist_id},
            )
        return self.notify(
            user_ids,
            title=f"Track removed from {playlist_name}",
            body=f"{label} has been heard by everyone and left the playlist.",
            url=self._playlist_url(playlist_id),
            notification_type=NotificationType.TRACK_REMOVED,
            priority=NotificationPriority.LOW,
            data={"playlist_id": playlist_id},
        )

    def notify_reauth_required(self, user_id: str) -> bool:
        return self.notify(
            [user_id],
            title="Reconnect Spotify",
            body="Swapify lost access to your Spotify account. Sign in again to keep tracking listens.",
            url=f"{self._app_url}/login",
            notification_type=NotificationType.REAUTH_REQUIRED,
            priority=NotificationPriority.HIGH,
        )

    def notify_track_limit_exceeded(
        self, user_id: str, track_name: str, playlist_id: str, playlist_name: str, limit: int
    ) -> bool:
        return self.notify(
            [user_id],
            title=f"Track limit reached in {playlist_name}",
            body=f"{track_name} was removed: you already have {limit} active tracks there.",
            url=self._playlist_url(playlist_id),
            notification_type=NotificationType.TRACK_LIMIT_EXCEEDED,
        )

    def notify_remote_sync_failed(
        self, owner_id: str, track_name: str, playlist_id: str, playlist_name: str, attempts: int
    ) -> bool:
        return self.notify(
            [owner_id],
            title=f"Spotify out of sync: {playlist_name}",
            body=(
                f"Removing {track_name} from the Spotify playlist failed {attempts} times. "
                "Swapify keeps retrying on every sync."
            ),
            url=self._playlist_url(playlist_id),
            notification_type=NotificationType.REMOTE_SYNC_FAILED,
            priority=NotificationPriority.HIGH,
        )


__all__ = ["NotificationService"]
