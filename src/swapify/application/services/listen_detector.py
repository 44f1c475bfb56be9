"""Listen / skip detection.

Hey future me - two halves here:

1. PURE classification (no I/O): compare the stored snapshot with the new one and
   turn recently-played history into events. Thresholds:
   - ratio >= complete_threshold (0.9)  -> TrackCompleted
   - ratio <  skip_threshold (0.3) when the track changed -> TrackSkipped
   - anything in between -> inconclusive, no event (we'd rather miss a skip than
     invent one)

   Loop restarts: progress going BACKWARDS on the same track is ambiguous (seek? loop?).
   - previous ratio already >= complete -> it's a completed play that restarted
   - otherwise we flag the stored snapshot `ambiguous`; an ambiguous snapshot never
     produces a skip. The flag clears once we see forward progress on that track.

   Stale snapshots (older than snapshot_stale_after_seconds) are not used to judge a
   transition. "Was at 20% three hours ago" says nothing about a skip now.

2. APPLY events to the DB for every ACTIVE shared track that matches, where the user
   is a member and NOT the adder (you can't "listen" your own add into completion).
   All writes are idempotent, so re-applying the same events yields zero counts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from swapify.config.settings import PollSettings
from swapify.domain.entities import PlaybackSnapshot, ReactionValue, RecentPlay
from swapify.infrastructure.persistence.repositories import (
    ListenOutcome,
    ListenRepository,
    PlaylistRepository,
    ReactionRepository,
    SharedTrackRepository,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackCompleted:
    track_id: str
    at: datetime
    duration_ms: int | None = None


@dataclass(frozen=True)
class TrackSkipped:
    track_id: str
    at: datetime
    progress_ms: int | None = None


ListenEvent = TrackCompleted | TrackSkipped


@dataclass
class DetectionResult:
    """What applying one user's events changed."""

    listens_recorded: int = 0
    skips_detected: int = 0
    reactions_set: int = 0
    touched_track_ids: set[str] = field(default_factory=set)


class ListenDetector:
    """Classifies playback transitions and records listens / skips."""

    def __init__(
        self,
        complete_threshold: float = 0.9,
        skip_threshold: float = 0.3,
        stale_after_seconds: float = 1800.0,
    ) -> None:
        if not 0 < skip_threshold <= complete_threshold <= 1:
            raise ValueError("thresholds must satisfy 0 < skip <= complete <= 1")
        self.complete_threshold = complete_threshold
        self.skip_threshold = skip_threshold
        self.stale_after = timedelta(seconds=stale_after_seconds)

    @classmethod
    def from_settings(cls, settings: PollSettings) -> "ListenDetector":
        return cls(
            complete_threshold=settings.complete_threshold,
            skip_threshold=settings.skip_threshold,
            stale_after_seconds=settings.snapshot_stale_after_seconds,
        )

    # =========================================================================
    # PURE CLASSIFICATION
    # =========================================================================

    def _usable_previous(
        self, previous: PlaybackSnapshot | None, current: PlaybackSnapshot | None
    ) -> PlaybackSnapshot | None:
        if previous is None or current is None:
            return previous
        if current.observed_at - previous.observed_at > self.stale_after:
            return None
        return previous

    def _is_regression(self, previous: PlaybackSnapshot, current: PlaybackSnapshot) -> bool:
        return (
            previous.track_id == current.track_id
            and current.progress_ms < previous.progress_ms
        )

    def classify(
        self,
        previous: PlaybackSnapshot | None,
        current: PlaybackSnapshot | None,
        recent_track_ids: set[str] | frozenset[str] = frozenset(),
    ) -> list[ListenEvent]:
        """Judge the transition previous -> current."""
        prev = self._usable_previous(previous, current)
        if prev is None or current is None:
            return []

        prev_ratio = prev.progress_ratio

        if prev.track_id == current.track_id:
            if self._is_regression(prev, current):
                if prev_ratio is not None and prev_ratio >= self.complete_threshold:
                    return [TrackCompleted(prev.track_id, current.observed_at, prev.progress_ms)]
                return []
            ratio = current.progress_ratio
            if ratio is not None and ratio >= self.complete_threshold:
                return [TrackCompleted(current.track_id, current.observed_at, current.progress_ms)]
            return []

        # Track changed. If history already has the previous track, recent plays cover it.
        if prev.track_id in recent_track_ids or prev_ratio is None:
            return []
        if prev_ratio >= self.complete_threshold:
            return [TrackCompleted(prev.track_id, current.observed_at, prev.progress_ms)]
        if prev_ratio < self.skip_threshold and not prev.ambiguous:
            return [TrackSkipped(prev.track_id, current.observed_at, prev.progress_ms)]
        return []

    def events_from_recent_plays(self, plays: list[RecentPlay]) -> list[ListenEvent]:
        """Spotify only lists a track in history once it was played through."""
        return [
            TrackCompleted(play.track_id, play.played_at, play.duration_ms or None)
            for play in plays
        ]

    def next_snapshot(
        self, previous: PlaybackSnapshot | None, current: PlaybackSnapshot | None
    ) -> PlaybackSnapshot | None:
        """What to store for the next cycle's comparison.

        Nothing observed -> keep the previous snapshot. Same-track regression below the
        completion threshold -> store the new position flagged ambiguous. Forward
        progress on the same track clears the flag.
        """
        if current is None:
            return previous
        prev = self._usable_previous(previous, current)
        if prev is None or prev.track_id != current.track_id:
            return current.with_ambiguous(False)
        if self._is_regression(prev, current):
            prev_ratio = prev.progress_ratio
            completed = prev_ratio is not None and prev_ratio >= self.complete_threshold
            return current.with_ambiguous(not completed)
        if current.progress_ms > prev.progress_ms:
            return current.with_ambiguous(False)
        # Same position (paused): keep whatever we knew
        return current.with_ambiguous(prev.ambiguous)

    # =========================================================================
    # APPLY
    # =========================================================================

    async def apply(
        self,
        session: AsyncSession,
        user_id: str,
        events: list[ListenEvent],
        auto_negative_reactions: bool,
    ) -> DetectionResult:
        """Record events for every matching active shared track. Idempotent."""
        result = DetectionResult()
        if not events:
            return result

        playlist_ids = await PlaylistRepository(session).list_ids_for_member(user_id)
        if not playlist_ids:
            return result

        tracks_repo = SharedTrackRepository(session)
        listens = ListenRepository(session)
        reactions = ReactionRepository(session)

        for event in events:
            matches = await tracks_repo.find_active_by_track_id(playlist_ids, event.track_id)
            for track in matches:
                if track.added_by_user_id == user_id:
                    continue
                # a play from before this add belongs to an earlier life of the track
                if event.at < track.added_at:
                    continue

                match event:
                    case TrackCompleted(track_id=track_id, at=at, duration_ms=duration_ms):
                        outcome = await listens.record_listen(
                            track.playlist_id,
                            track_id,
                            user_id,
                            at,
                            duration_ms,
                            valid_from=track.added_at,
                        )
                        if outcome is not ListenOutcome.UNCHANGED:
                            result.listens_recorded += 1
                            result.touched_track_ids.add(track.id)
                        if await reactions.set_auto_reaction(
                            track.playlist_id,
                            track_id,
                            user_id,
                            ReactionValue.THUMBS_UP,
                            at=at,
                            valid_from=track.added_at,
                        ):
                            result.reactions_set += 1
                            result.touched_track_ids.add(track.id)

                    case TrackSkipped(track_id=track_id, at=at, progress_ms=progress_ms):
                        if await listens.record_skip(
                            track.playlist_id,
                            track_id,
                            user_id,
                            at,
                            progress_ms,
                            valid_from=track.added_at,
                        ):
                            result.skips_detected += 1
                            result.touched_track_ids.add(track.id)
                        if auto_negative_reactions and await reactions.set_auto_reaction(
                            track.playlist_id,
                            track_id,
                            user_id,
                            ReactionValue.THUMBS_DOWN,
                            at=at,
                            valid_from=track.added_at,
                        ):
                            result.reactions_set += 1
                            result.touched_track_ids.add(track.id)

        if result.listens_recorded or result.skips_detected:
            logger.debug(
                "listen_detector.applied",
                extra={
                    "user_id": user_id,
                    "listens_recorded": result.listens_recorded,
                    "skips_detected": result.skips_detected,
                    "reactions_set": result.reactions_set,
                },
            )
        return result


__all__ = [
    "DetectionResult",
    "ListenDetector",
    "ListenEvent",
    "TrackCompleted",
    "TrackSkipped",
]
