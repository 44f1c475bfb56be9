"""Shared playlist entities.

Hey future me - a SharedTrack row is one ADD EVENT, not one Spotify track. Re-adding a
track that was removed creates a fresh row. The lifecycle used to be inferred from
nullable timestamps (completed_at / removed_at / archived_at); now every row carries
an explicit status and `SharedTrack.state` hands the reconciler a tagged variant so
its `match` covers every case.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


class RemovalDelay(str, Enum):
    """How long a completed track stays before it is removed."""

    IMMEDIATE = "immediate"
    ONE_HOUR = "1h"
    TWELVE_HOURS = "12h"
    ONE_DAY = "24h"
    THREE_DAYS = "3d"
    ONE_WEEK = "1w"
    ONE_MONTH = "1m"

    @property
    def delta(self) -> timedelta:
        return _REMOVAL_DELAYS[self]

    @classmethod
    def parse(cls, value: Any) -> "RemovalDelay":
        """Lenient parse; unknown / NULL values fall back to IMMEDIATE."""
        try:
            return cls(value)
        except ValueError:
            return cls.IMMEDIATE


_REMOVAL_DELAYS: dict[RemovalDelay, timedelta] = {
    RemovalDelay.IMMEDIATE: timedelta(0),
    RemovalDelay.ONE_HOUR: timedelta(hours=1),
    RemovalDelay.TWELVE_HOURS: timedelta(hours=12),
    RemovalDelay.ONE_DAY: timedelta(hours=24),
    RemovalDelay.THREE_DAYS: timedelta(days=3),
    RemovalDelay.ONE_WEEK: timedelta(weeks=1),
    RemovalDelay.ONE_MONTH: timedelta(days=30),
}


class ArchiveThreshold(str, Enum):
    """Which completed tracks get copied to the archive playlist."""

    NONE = "none"
    NO_DISLIKES = "no_dislikes"
    AT_LEAST_ONE_LIKE = "at_least_one_like"
    UNIVERSALLY_LIKED = "universally_liked"

    @classmethod
    def parse(cls, value: Any) -> "ArchiveThreshold":
        """Lenient parse; unknown / NULL values fall back to NONE."""
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


class TrackStatus(str, Enum):
    """Stored lifecycle status of a SharedTrack row."""

    ACTIVE = "active"
    PENDING_REMOVAL = "pending_removal"
    REMOVED = "removed"
    ARCHIVED = "archived"


class ReactionValue:
    """Well-known reaction values. Custom emoji are stored verbatim."""

    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"


DEFAULT_MAX_TRACK_AGE_DAYS = 7


@dataclass(frozen=True)
class RemovalPolicy:
    """Per-playlist removal policy. Every field always has a usable value."""

    max_tracks_per_user: int | None = None
    max_track_age_days: int = DEFAULT_MAX_TRACK_AGE_DAYS
    removal_delay: RemovalDelay = RemovalDelay.IMMEDIATE
    archive_threshold: ArchiveThreshold = ArchiveThreshold.NONE

    @classmethod
    def from_raw(
        cls,
        max_tracks_per_user: int | None,
        max_track_age_days: int | None,
        removal_delay: str | None,
        archive_threshold: str | None,
    ) -> "RemovalPolicy":
        return cls(
            max_tracks_per_user=max_tracks_per_user if max_tracks_per_user else None,
            max_track_age_days=(
                DEFAULT_MAX_TRACK_AGE_DAYS
                if max_track_age_days is None
                else max(0, max_track_age_days)
            ),
            removal_delay=RemovalDelay.parse(removal_delay),
            archive_threshold=ArchiveThreshold.parse(archive_threshold),
        )

    @property
    def max_age(self) -> timedelta | None:
        """Hard TTL, or None when disabled (0 days)."""
        if self.max_track_age_days <= 0:
            return None
        return timedelta(days=self.max_track_age_days)


# --- Tagged track state ------------------------------------------------------


@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class PendingRemoval:
    completed_at: datetime
    due_at: datetime


@dataclass(frozen=True)
class Removed:
    at: datetime


@dataclass(frozen=True)
class Archived:
    at: datetime


TrackState = Active | PendingRemoval | Removed | Archived


@dataclass
class SharedPlaylist:
    """A Swaplist. The owner's credential is used for every Spotify mutation."""

    id: str
    name: str
    owner_id: str
    spotify_playlist_id: str
    policy: RemovalPolicy = field(default_factory=RemovalPolicy)
    archive_playlist_id: str | None = None

    @property
    def archive_playlist_name(self) -> str:
        return f"{self.name} Keepers"


@dataclass
class SharedTrack:
    """One track-add event into a shared playlist."""

    id: str
    playlist_id: str
    spotify_track_uri: str
    spotify_track_id: str
    added_by_user_id: str
    added_at: datetime
    status: TrackStatus = TrackStatus.ACTIVE
    track_name: str = ""
    artist_name: str = ""
    completed_at: datetime | None = None
    removal_due_at: datetime | None = None
    removed_at: datetime | None = None
    archived_at: datetime | None = None
    remote_removal_pending: bool = False
    remote_removal_attempts: int = 0

    @property
    def state(self) -> TrackState:
        """Tagged lifecycle state derived from the stored status."""
        match self.status:
            case TrackStatus.ACTIVE:
                return Active()
            case TrackStatus.PENDING_REMOVAL:
                completed = self.completed_at or self.added_at
                return PendingRemoval(
                    completed_at=completed, due_at=self.removal_due_at or completed
                )
            case TrackStatus.REMOVED:
                return Removed(at=self.removed_at or datetime.now(UTC))
            case TrackStatus.ARCHIVED:
                return Archived(at=self.archived_at or self.removed_at or datetime.now(UTC))

    @property
    def is_live(self) -> bool:
        """Still on the shared playlist (active or waiting out its delay)."""
        return self.status in (TrackStatus.ACTIVE, TrackStatus.PENDING_REMOVAL)


@dataclass(frozen=True)
class ListenRecord:
    playlist_id: str
    spotify_track_id: str
    user_id: str
    listened_at: datetime
    listen_duration_ms: int | None = None
    was_skipped: bool = False


@dataclass(frozen=True)
class Reaction:
    playlist_id: str
    spotify_track_id: str
    user_id: str
    reaction: str
    is_auto: bool = False


@dataclass(frozen=True)
class RemotePlaylistItem:
    """One item of a live Spotify playlist, in playlist order."""

    uri: str
    track_id: str
    name: str = ""
    artists: str = ""
    album: str = ""
    duration_ms: int = 0
    added_by_spotify_id: str | None = None

    @classmethod
    def from_spotify(cls, item: dict[str, Any]) -> "RemotePlaylistItem | None":
        """Build from a playlist-items entry; local files and episodes yield None."""
        track = item.get("track") or item.get("item")
        if not track or track.get("type", "track") != "track" or track.get("is_local"):
            return None
        track_id = track.get("id")
        uri = track.get("uri")
        if not track_id or not uri:
            return None
        return cls(
            uri=uri,
            track_id=track_id,
            name=track.get("name") or "",
            artists=", ".join(a.get("name", "") for a in track.get("artists") or []),
            album=(track.get("album") or {}).get("name") or "",
            duration_ms=int(track.get("duration_ms") or 0),
            added_by_spotify_id=(item.get("added_by") or {}).get("id"),
        )


__all__ = [
    "Active",
    "ArchiveThreshold",
    "Archived",
    "ListenRecord",
    "PendingRemoval",
    "Reaction",
    "ReactionValue",
    "RemotePlaylistItem",
    "RemovalDelay",
    "RemovalPolicy",
    "Removed",
    "SharedPlaylist",
    "SharedTrack",
    "TrackState",
    "TrackStatus",
]
