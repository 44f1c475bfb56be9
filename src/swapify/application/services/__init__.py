"""Application services - the reconciliation engine's building blocks."""

from swapify.application.services.listen_detector import (
    DetectionResult,
    ListenDetector,
    TrackCompleted,
    TrackSkipped,
)
from swapify.application.services.notification_service import NotificationService
from swapify.application.services.playback_fetcher import PlaybackFetcher
from swapify.application.services.playlist_sync_service import (
    PlaylistSyncService,
    SyncPlan,
    plan_sync,
)
from swapify.application.services.track_lifecycle import (
    CompletionFacts,
    ReconcileResult,
    TrackLifecycleReconciler,
    decide,
    should_archive,
)

__all__ = [
    "CompletionFacts",
    "DetectionResult",
    "ListenDetector",
    "NotificationService",
    "PlaybackFetcher",
    "PlaylistSyncService",
    "ReconcileResult",
    "SyncPlan",
    "TrackCompleted",
    "TrackLifecycleReconciler",
    "TrackSkipped",
    "decide",
    "plan_sync",
    "should_archive",
]
