"""Poll worker - the cycle orchestrator.

Hey future me - this is THE background loop. One cycle:

1. enumerate pollable users (token present + member of a playlist with live tracks)
2. per user: fetch playback -> classify -> save cursor/snapshot (versioned) -> apply
   listen/skip events. Bounded concurrency (POLL_MAX_CONCURRENT_USERS, default 1)
   and a small delay between users so we don't burst the Spotify budget.
3. reconcile every touched track plus every live track (delay / expiry sweep)
4. every N cycles: remote playlist sync for every playlist with live tracks

Both triggers (timer loop and POST /api/poll) go through run_cycle(), which holds
an asyncio.Lock. A trigger that arrives while a cycle runs is DROPPED (skipped=True),
never queued - slow Spotify must not build a backlog.

Failure rules:
- TokenInvalidError -> that user only: flag token, enqueue re-auth notification
- RateLimitedError / BudgetExceededError -> no NEW users this cycle, reconciler
  still runs but without Spotify calls, sync is skipped
- anything else -> counted in CycleResult.failures, logged, cycle goes on
Nothing escapes run_cycle() except cancellation.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from swapify.application.services.listen_detector import ListenDetector
from swapify.application.services.notification_service import NotificationService
from swapify.application.services.playback_fetcher import PlaybackFetcher
from swapify.application.services.playlist_sync_service import PlaylistSyncService
from swapify.application.services.track_lifecycle import TrackLifecycleReconciler
from swapify.config import Settings
from swapify.domain.entities import CycleResult
from swapify.domain.exceptions import CYCLE_ABORTING_ERRORS, TokenInvalidError
from swapify.domain.ports import ICredentialProvider, ISpotifyClient
from swapify.infrastructure.observability import (
    log_slow_operation,
    log_worker_health,
    set_correlation_id,
)
from swapify.infrastructure.persistence.database import Database
from swapify.infrastructure.persistence.repositories import (
    PlaybackStateStore,
    PlaylistRepository,
    SharedTrackRepository,
    UserRepository,
)
from swapify.infrastructure.rate_limiter import CallBudget

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PollWorker:
    """Runs reconciliation cycles on a timer and on demand."""

    def __init__(
        self,
        database: Database,
        spotify: ISpotifyClient,
        credentials: ICredentialProvider,
        notifications: NotificationService,
        settings: Settings,
        budget: CallBudget | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.db = database
        self.credentials = credentials
        self.notifications = notifications
        self.settings = settings
        self.budget = budget
        self.interval_seconds = settings.poll_interval_seconds
        self.audit_every_n_cycles = settings.audit_every_n_cycles
        self._sleep = sleep

        self.fetcher = PlaybackFetcher(spotify, clock=clock)
        self.detector = ListenDetector.from_settings(settings.poll)
        self.reconciler = TrackLifecycleReconciler(
            database,
            spotify,
            credentials,
            notifications,
            remote_removal_alert_after=settings.poll.remote_removal_alert_after,
            clock=clock,
        )
        self.sync_service = PlaylistSyncService(
            database,
            spotify,
            credentials,
            notifications,
            remote_removal_alert_after=settings.poll.remote_removal_alert_after,
            add_grace_seconds=settings.poll.sync_add_grace_seconds,
            clock=clock,
        )

        self._cycle_lock = asyncio.Lock()
        self._cycle_number = 0
        self._last_result: CycleResult | None = None
        self._last_cycle_at: datetime | None = None
        self._clock = clock

        # Worker lifecycle tracking for health logging
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._cycles_completed = 0
        self._errors_total = 0
        self._start_time = time.time()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the timer loop. Safe to call multiple times."""
        if self._running:
            logger.warning("poll_worker.already_running")
            return

        self._running = True
        self._start_time = time.time()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "worker.started",
            extra={
                "worker": "poll",
                "interval_seconds": self.interval_seconds,
                "audit_every_n_cycles": self.audit_every_n_cycles,
            },
        )

    async def stop(self) -> None:
        """Stop the timer loop. A cycle in flight is cancelled at its next await."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info(
            "worker.stopped",
            extra={
                "worker": "poll",
                "cycles_completed": self._cycles_completed,
                "errors_total": self._errors_total,
                "uptime_seconds": int(time.time() - self._start_time),
            },
        )

    async def _run_loop(self) -> None:
        logger.info("poll_worker.main_loop.entered")

        while self._running:
            try:
                await self.run_cycle()

                # Log health every 10 cycles
                if self._cycles_completed and self._cycles_completed % 10 == 0:
                    log_worker_health(
                        logger,
                        "poll",
                        self._cycles_completed,
                        self._errors_total,
                        time.time() - self._start_time,
                        extra_stats=self.budget.get_stats() if self.budget else None,
                    )
            except Exception as e:
                # run_cycle already swallows per-user/per-track errors, this is a bug guard
                self._errors_total += 1
                logger.error(
                    "poll.loop.failed",
                    extra={"error_type": type(e).__name__},
                    exc_info=True,
                )

            try:
                await self._sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    def get_status(self) -> dict[str, Any]:
        """Worker status for GET /api/poll/status."""
        return {
            "running": self._running,
            "cycle_in_progress": self.cycle_in_progress,
            "interval_seconds": self.interval_seconds,
            "audit_every_n_cycles": self.audit_every_n_cycles,
            "cycles_completed": self._cycles_completed,
            "errors_total": self._errors_total,
            "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "budget": self.budget.get_stats() if self.budget else None,
            "notifications": self.notifications.get_stats(),
        }

    # =========================================================================
    # ONE CYCLE
    # =========================================================================

    async def run_cycle(self) -> CycleResult:
        """Run one reconciliation cycle, or return skipped=True if one is running."""
        if self._cycle_lock.locked():
            logger.info("poll.cycle.skipped", extra={"reason": "cycle_in_progress"})
            return CycleResult(skipped=True)

        async with self._cycle_lock:
            set_correlation_id(f"cycle-{uuid.uuid4().hex[:12]}")
            self._cycle_number += 1
            started = time.monotonic()
            result = CycleResult()

            try:
                touched = await self._poll_users(result)
                await self._reconcile(result, touched)
                if self._cycle_number % self.audit_every_n_cycles == 0:
                    await self._sync_playlists(result)
            except Exception as e:
                # Enumeration queries failing (DB down) end up here
                result.failures += 1
                self._errors_total += 1
                logger.error(
                    "poll.cycle.failed",
                    extra={"error_type": type(e).__name__, "error": str(e)},
                    exc_info=True,
                )

            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._cycles_completed += 1
            self._last_result = result
            self._last_cycle_at = self._clock()

            logger.info(
                "poll.cycle.completed",
                extra={"cycle": self._cycle_number, **result.to_dict()},
            )
            # A cycle longer than the interval means the timer loop is falling behind
            log_slow_operation(
                logger,
                "poll.cycle",
                result.duration_ms,
                threshold_ms=int(self.interval_seconds * 1000),
                cycle=self._cycle_number,
            )
            return result

    def _inter_user_delay(self, user_count: int) -> float:
        """Spread users across half the poll interval, clamped to the configured range."""
        poll = self.settings.poll
        if user_count <= 1:
            return 0.0
        spread = (self.interval_seconds / 2) / user_count
        return min(poll.max_inter_user_delay_seconds, max(poll.min_inter_user_delay_seconds, spread))

    async def _poll_users(self, result: CycleResult) -> set[str]:
        async with self.db.session_scope() as session:
            user_ids = await UserRepository(session).list_pollable_user_ids()

        touched: set[str] = set()
        if not user_ids:
            return touched

        semaphore = asyncio.Semaphore(self.settings.poll.max_concurrent_users)
        delay = self._inter_user_delay(len(user_ids))
        tasks: list[asyncio.Task[None]] = []

        for index, user_id in enumerate(user_ids):
            if result.aborted:
                break
            if index and delay > 0:
                await self._sleep(delay)
            await semaphore.acquire()
            if result.aborted:
                semaphore.release()
                break
            tasks.append(
                asyncio.create_task(self._poll_user_guarded(user_id, result, touched, semaphore))
            )

        if tasks:
            await asyncio.gather(*tasks)
        return touched

    async def _poll_user_guarded(
        self,
        user_id: str,
        result: CycleResult,
        touched: set[str],
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            await self._poll_user(user_id, result, touched)
        except TokenInvalidError:
            result.users_token_invalid += 1
            logger.warning("poll.user.token_invalid", extra={"user_id": user_id})
            if await self.credentials.mark_invalid(user_id):
                self.notifications.notify_reauth_required(user_id)
        except CYCLE_ABORTING_ERRORS as e:
            if not result.aborted:
                logger.warning(
                    "poll.cycle.aborted",
                    extra={"user_id": user_id, "error_type": type(e).__name__, "error": str(e)},
                )
            result.aborted = True
        except Exception as e:
            result.failures += 1
            logger.error(
                "poll.user.failed",
                extra={"user_id": user_id, "error_type": type(e).__name__},
                exc_info=True,
            )
        finally:
            semaphore.release()

    async def _poll_user(self, user_id: str, result: CycleResult, touched: set[str]) -> None:
        async with self.db.session_scope() as session:
            user = await UserRepository(session).get(user_id)
            state = await PlaybackStateStore(session).load(user_id)
        if user is None or state is None:
            return

        token = await self.credentials.get_access_token(user_id)
        if token is None:
            return

        observation = await self.fetcher.fetch(token, state.cursor, state.snapshot)
        events = self.detector.classify(
            state.snapshot, observation.snapshot, observation.recent_track_ids
        )
        events += self.detector.events_from_recent_plays(observation.recent_plays)
        next_snapshot = self.detector.next_snapshot(state.snapshot, observation.snapshot)

        async with self.db.session_scope() as session:
            saved = await PlaybackStateStore(session).save(
                user_id, state.version, observation.cursor, next_snapshot
            )
            if not saved:
                # Someone else polled this user meanwhile; their events win
                return
            detection = await self.detector.apply(
                session, user_id, events, user.auto_negative_reactions
            )

        result.users_polled += 1
        result.listens_recorded += detection.listens_recorded
        result.skips_detected += detection.skips_detected
        touched.update(detection.touched_track_ids)

    async def _reconcile(self, result: CycleResult, touched: set[str]) -> None:
        async with self.db.session_scope() as session:
            live_ids = await SharedTrackRepository(session).list_live_ids()

        outcome = await self.reconciler.reconcile(
            [*sorted(touched), *live_ids], allow_remote=not result.aborted
        )
        result.tracks_removed += outcome.removed
        result.tracks_archived += outcome.archived
        result.failures += outcome.failures
        if outcome.remote_aborted:
            result.aborted = True

    async def _sync_playlists(self, result: CycleResult) -> None:
        if result.aborted:
            logger.info("poll.sync.skipped", extra={"reason": "cycle_aborted"})
            return

        async with self.db.session_scope() as session:
            playlists = await PlaylistRepository(session).list_with_live_tracks()

        for playlist in playlists:
            try:
                sync_result = await self.sync_service.sync_playlist(playlist.id)
            except CYCLE_ABORTING_ERRORS as e:
                result.aborted = True
                logger.warning(
                    "poll.sync.aborted",
                    extra={"playlist_id": playlist.id, "error_type": type(e).__name__},
                )
                return
            except TokenInvalidError:
                logger.warning(
                    "poll.sync.owner_token_invalid",
                    extra={"playlist_id": playlist.id, "owner_id": playlist.owner_id},
                )
                continue
            except Exception as e:
                result.failures += 1
                logger.error(
                    "poll.sync.failed",
                    extra={"playlist_id": playlist.id, "error_type": type(e).__name__},
                    exc_info=True,
                )
                continue
            result.playlists_synced += 1
            result.sync_results.append(sync_result)


__all__ = ["PollWorker"]
