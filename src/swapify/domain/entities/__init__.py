"""Domain entities and value objects."""

from .cycle import CycleResult, PlaylistSyncResult
from .playback import PlaybackObservation, PlaybackSnapshot, PlaybackState, RecentPlay
from .shared_playlist import (
    Active,
    ArchiveThreshold,
    Archived,
    ListenRecord,
    PendingRemoval,
    Reaction,
    ReactionValue,
    RemotePlaylistItem,
    RemovalDelay,
    RemovalPolicy,
    Removed,
    SharedPlaylist,
    SharedTrack,
    TrackState,
    TrackStatus,
)

__all__ = [
    "Active",
    "ArchiveThreshold",
    "Archived",
    "CycleResult",
    "ListenRecord",
    "PendingRemoval",
    "PlaybackObservation",
    "PlaybackSnapshot",
    "PlaybackState",
    "PlaylistSyncResult",
    "Reaction",
    "ReactionValue",
    "RecentPlay",
    "RemotePlaylistItem",
    "RemovalDelay",
    "RemovalPolicy",
    "Removed",
    "SharedPlaylist",
    "SharedTrack",
    "TrackState",
    "TrackStatus",
]
