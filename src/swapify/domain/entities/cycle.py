"""Cycle result types returned by the poll worker and the playlist sync."""

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class PlaylistSyncResult:
    """Outcome of one Remote Playlist Sync pass for one playlist."""

    playlist_id: str
    added: int = 0
    removed: int = 0
    unauthorized_removed: int = 0
    over_limit_removed: int = 0
    remote_removals_retried: int = 0

    @property
    def total_changes(self) -> int:
        return (
            self.added
            + self.removed
            + self.unauthorized_removed
            + self.over_limit_removed
            + self.remote_removals_retried
        )


@dataclass
class CycleResult:
    """Counters for one poll cycle.

    skipped=True means another cycle was already running and this trigger was
    dropped. aborted=True means the Spotify budget ran out (or Spotify said 429)
    part way through, so some users were not polled this cycle.
    """

    users_polled: int = 0
    listens_recorded: int = 0
    skips_detected: int = 0
    tracks_removed: int = 0
    tracks_archived: int = 0
    failures: int = 0
    users_token_invalid: int = 0
    playlists_synced: int = 0
    aborted: bool = False
    skipped: bool = False
    duration_ms: int = 0
    sync_results: list[PlaylistSyncResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("sync_results")
        return data


__all__ = ["CycleResult", "PlaylistSyncResult"]
