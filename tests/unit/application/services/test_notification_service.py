"""Unit tests for NotificationService.

Hey future me - these tests verify the dispatcher never blocks the caller!
Tests are split into:
1. Enqueue behaviour (no consumer running)
2. Provider fan-out through the background consumer
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from swapify.application.services.notification_service import NotificationService
from swapify.domain.ports.notification import (
    INotificationProvider,
    NotificationPriority,
    NotificationResult,
    NotificationType,
)


def make_provider(name: str, success: bool = True, supported: list | None = None) -> MagicMock:
    provider = MagicMock(spec=INotificationProvider)
    provider.name = name
    provider.supports.side_effect = lambda t: not supported or t in supported
    provider.is_configured = AsyncMock(return_value=True)
    provider.send = AsyncMock(
        side_effect=lambda n: NotificationResult(
            success=success,
            provider_name=name,
            notification_type=n.type,
            error=None if success else "nope",
        )
    )
    return provider


class TestEnqueue:
    """notify() only queues."""

    def test_notify_returns_immediately(self) -> None:
        provider = make_provider("a")
        service = NotificationService([provider])

        assert service.notify(["u1"], "Title", "Body") is True

        provider.send.assert_not_called()
        assert service.get_stats()["queued"] == 1

    def test_no_recipients_is_dropped(self) -> None:
        service = NotificationService([])
        assert service.notify([], "Title", "Body") is False
        assert service.get_stats()["queued"] == 0

    def test_full_queue_drops_instead_of_blocking(self) -> None:
        service = NotificationService([], queue_size=2)
        results = [service.notify(["u1"], f"n{i}", "") for i in range(3)]

        assert results == [True, True, False]
        assert service.get_stats()["dropped"] == 1

    def test_duplicate_recipients_collapse(self) -> None:
        service = NotificationService([])
        service.notify(["u1", "u2", "u1"], "Title", "Body")
        notification = service._queue.get_nowait()
        assert notification.user_ids == ["u1", "u2"]


class TestConvenienceMethods:
    """The engine-facing helpers build the right notification."""

    @pytest.fixture
    def service(self) -> NotificationService:
        return NotificationService([], app_url="https://swapify.test/")

    def test_track_removed(self, service: NotificationService) -> None:
        service.notify_track_removed(["u1", "u2"], "Song", "Artist", "pl-1", "Friday Mix", archived=False)
        n = service._queue.get_nowait()
        assert n.type == NotificationType.TRACK_REMOVED
        assert "Song by Artist" in n.body
        assert n.url == "https://swapify.test/playlist/pl-1"

    def test_track_archived(self, service: NotificationService) -> None:
        service.notify_track_removed(["u1"], "Song", "", "pl-1", "Friday Mix", archived=True)
        n = service._queue.get_nowait()
        assert n.type == NotificationType.TRACK_ARCHIVED
        assert "Friday Mix Keepers" in n.title

    def test_reauth_is_high_priority(self, service: NotificationService) -> None:
        service.notify_reauth_required("u1")
        n = service._queue.get_nowait()
        assert n.type == NotificationType.REAUTH_REQUIRED
        assert n.priority == NotificationPriority.HIGH
        assert n.user_ids == ["u1"]

    def test_track_limit_and_remote_sync_failed(self, service: NotificationService) -> None:
        service.notify_track_limit_exceeded("u1", "Song", "pl-1", "Friday Mix", limit=3)
        service.notify_remote_sync_failed("owner", "Song", "pl-1", "Friday Mix", attempts=3)
        limit = service._queue.get_nowait()
        failed = service._queue.get_nowait()
        assert limit.type == NotificationType.TRACK_LIMIT_EXCEEDED
        assert "3 active tracks" in limit.body
        assert failed.type == NotificationType.REMOTE_SYNC_FAILED
        assert failed.user_ids == ["owner"]


class TestDispatch:
    """Fan-out to providers."""

    async def test_consumer_delivers_to_all_supporting_providers(self) -> None:
        log = make_provider("log")
        webhook = make_provider("webhook", supported=[NotificationType.REAUTH_REQUIRED])
        service = NotificationService([log, webhook])
        await service.start()

        service.notify_track_removed(["u1"], "Song", "Artist", "pl-1", "Mix", archived=False)
        service.notify_reauth_required("u1")
        await service.drain()
        await service.stop()

        assert log.send.await_count == 2
        assert webhook.send.await_count == 1
        assert service.get_stats()["sent"] == 2
        assert service.get_stats()["running"] is False

    async def test_provider_exception_becomes_failed_result(self) -> None:
        broken = make_provider("broken")
        broken.send = AsyncMock(side_effect=RuntimeError("boom"))
        ok = make_provider("ok")
        service = NotificationService([broken, ok])

        service.notify(["u1"], "Title", "Body")
        results = await service.dispatch(service._queue.get_nowait())

        assert [r.success for r in results] == [False, True]
        assert results[0].error == "boom"
        assert service.get_stats()["failed"] == 1

    async def test_unconfigured_provider_is_skipped(self) -> None:
        provider = make_provider("webhook")
        provider.is_configured = AsyncMock(return_value=False)
        service = NotificationService([provider])

        service.notify(["u1"], "Title", "Body")
        results = await service.dispatch(service._queue.get_nowait())

        assert results[0].success is False
        provider.send.assert_not_called()

    async def test_stop_without_start_is_harmless(self) -> None:
        service = NotificationService([])
        await service.stop()
