"""Playback snapshot fetcher.

Hey future me - this is PURE fetch + normalize. It never touches the database.
Per user and cycle it costs 1 Spotify call (player state), or 2 when it also needs
the recently-played history:
- nothing is playing right now (paused / no device), or
- we have no previous snapshot to compare against, or
- the playing track differs from the previous snapshot (something ended in between)

TokenInvalidError / RateLimitedError / BudgetExceededError just propagate. The
worker decides what they mean for the user and the cycle.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from swapify.domain.entities import PlaybackObservation, PlaybackSnapshot, RecentPlay
from swapify.domain.entities.playback import parse_spotify_datetime
from swapify.domain.ports import ISpotifyClient

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _playable_track(item: dict[str, Any] | None) -> dict[str, Any] | None:
    """Return the item if it's a real Spotify track (not a local file or an episode)."""
    if not item or item.get("type", "track") != "track" or item.get("is_local"):
        return None
    if not item.get("id") or not item.get("uri"):
        return None
    return item


def normalize_playback(
    payload: dict[str, Any] | None, observed_at: datetime
) -> PlaybackSnapshot | None:
    """Turn a player-state payload into a snapshot (None if nothing playable)."""
    if not payload:
        return None
    if payload.get("currently_playing_type", "track") != "track":
        return None
    item = _playable_track(payload.get("item"))
    if item is None:
        return None
    return PlaybackSnapshot(
        track_id=item["id"],
        track_uri=item["uri"],
        progress_ms=int(payload.get("progress_ms") or 0),
        duration_ms=int(item.get("duration_ms") or 0),
        is_playing=bool(payload.get("is_playing")),
        observed_at=observed_at,
    )


def normalize_recent_plays(
    items: list[dict[str, Any]], cursor: int | None
) -> list[RecentPlay]:
    """History items newer than the cursor, oldest first."""
    plays: list[RecentPlay] = []
    for entry in items:
        track = _playable_track(entry.get("track"))
        played_at_raw = entry.get("played_at")
        if track is None or not played_at_raw:
            continue
        try:
            played_at = parse_spotify_datetime(played_at_raw)
        except ValueError:
            logger.debug("playback.recent.bad_timestamp", extra={"played_at": played_at_raw})
            continue
        play = RecentPlay(
            track_id=track["id"],
            track_uri=track["uri"],
            duration_ms=int(track.get("duration_ms") or 0),
            played_at=played_at,
        )
        if cursor is not None and play.played_at_ms <= cursor:
            continue
        plays.append(play)
    plays.sort(key=lambda p: p.played_at)
    return plays


class PlaybackFetcher:
    """Fetch and normalize one user's playback for one cycle."""

    def __init__(
        self,
        spotify: ISpotifyClient,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._spotify = spotify
        self._clock = clock

    async def fetch(
        self,
        access_token: str,
        cursor: int | None,
        previous: PlaybackSnapshot | None,
    ) -> PlaybackObservation:
        observed_at = self._clock()
        payload = await self._spotify.get_playback_state(access_token)
        current = normalize_playback(payload, observed_at)

        needs_history = (
            current is None
            or not current.is_playing
            or previous is None
            or previous.track_id != current.track_id
        )

        recent: list[RecentPlay] = []
        if needs_history:
            items = await self._spotify.get_recently_played(access_token, after_ms=cursor)
            recent = normalize_recent_plays(items, cursor)

        new_cursor = cursor
        if recent:
            new_cursor = max(cursor or 0, max(p.played_at_ms for p in recent))

        snapshot = current
        if snapshot is None and recent:
            # Nothing playing: the last finished track is the best "where are they" we have
            last = recent[-1]
            snapshot = PlaybackSnapshot(
                track_id=last.track_id,
                track_uri=last.track_uri,
                progress_ms=last.duration_ms,
                duration_ms=last.duration_ms,
                is_playing=False,
                observed_at=last.played_at,
            )

        return PlaybackObservation(snapshot=snapshot, recent_plays=recent, cursor=new_cursor)


__all__ = [
    "PlaybackFetcher",
    "normalize_playback",
    "normalize_recent_plays",
]
