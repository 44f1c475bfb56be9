"""Playback value objects.

Hey future me - these are the shapes the fetcher and detector pass around.
PlaybackSnapshot is also what we persist per user (as JSON) so the next cycle
can compare "what were they playing last time" against "what now".
"""

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from typing import Any


def parse_spotify_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True)
class PlaybackSnapshot:
    """Normalized "what is this user playing" observation.

    Attributes:
        track_id: Spotify track ID
        track_uri: Spotify track URI (spotify:track:...)
        progress_ms: Playback position when observed
        duration_ms: Track length
        is_playing: False when paused or when derived from recently-played
        observed_at: When we captured it (UTC)
        ambiguous: True when progress went backwards on the same track and
            we have not confirmed the new position yet (loop restart vs. seek)
    """

    track_id: str
    track_uri: str
    progress_ms: int
    duration_ms: int
    is_playing: bool
    observed_at: datetime
    ambiguous: bool = False

    @property
    def progress_ratio(self) -> float | None:
        """Fraction of the track played, or None when duration is unknown."""
        if self.duration_ms <= 0:
            return None
        return min(1.0, max(0.0, self.progress_ms / self.duration_ms))

    def with_ambiguous(self, ambiguous: bool) -> "PlaybackSnapshot":
        return replace(self, ambiguous=ambiguous)

    def to_json(self) -> str:
        data = asdict(self)
        data["observed_at"] = self.observed_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str | None) -> "PlaybackSnapshot | None":
        """Parse a stored snapshot; corrupt or legacy payloads yield None."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return cls(
                track_id=str(data["track_id"]),
                track_uri=str(data.get("track_uri") or f"spotify:track:{data['track_id']}"),
                progress_ms=int(data.get("progress_ms") or 0),
                duration_ms=int(data.get("duration_ms") or 0),
                is_playing=bool(data.get("is_playing", True)),
                observed_at=parse_spotify_datetime(data["observed_at"]),
                ambiguous=bool(data.get("ambiguous", False)),
            )
        except (ValueError, KeyError, TypeError):
            return None


@dataclass(frozen=True)
class RecentPlay:
    """One entry of the user's recently-played history."""

    track_id: str
    track_uri: str
    duration_ms: int
    played_at: datetime

    @property
    def played_at_ms(self) -> int:
        return int(self.played_at.timestamp() * 1000)


@dataclass(frozen=True)
class PlaybackObservation:
    """Result of one fetch for one user.

    snapshot is the single comparable shape (or None if nothing playable),
    recent_plays are history entries newer than the cursor, cursor is the
    cursor to store after processing them.
    """

    snapshot: PlaybackSnapshot | None
    recent_plays: list[RecentPlay] = field(default_factory=list)
    cursor: int | None = None

    @property
    def recent_track_ids(self) -> set[str]:
        return {play.track_id for play in self.recent_plays}


@dataclass(frozen=True)
class PlaybackState:
    """Stored per-user poll state, read and written through PlaybackStateStore.

    version is the optimistic-concurrency counter: writes only succeed when
    the stored version still matches.
    """

    user_id: str
    version: int
    cursor: int | None
    snapshot: PlaybackSnapshot | None


__all__ = [
    "PlaybackObservation",
    "PlaybackSnapshot",
    "PlaybackState",
    "RecentPlay",
    "parse_spotify_datetime",
]
