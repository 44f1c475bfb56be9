"""Remote playlist sync - converges local live rows with the real Spotify playlist.

Hey future me - two sources of truth get mutated behind each other's back here:
people add/remove tracks directly in the Spotify app, and the reconciler removes
tracks locally while Spotify may be unreachable. This service diffs by URI and fixes
both directions:

    on Spotify only, locally removed + remote_removal_pending -> retry the removal
    on Spotify only, added by a registered NON-member          -> remove (unauthorized)
    on Spotify only, added by a member already at the limit    -> remove + tell them
    on Spotify only, anything else                             -> adopt as a new live row
    local only (older than the grace window)                   -> mark removed, no API call

The grace window exists because a track added through the app is written locally
first and may not show up in the playlist listing for a moment.

Flow: plan_sync() is pure, then remote calls run, then ONE session writes every local
change. Running it twice in a row is a no-op the second time. Duplicate inserts
(reconciler/adder racing us) hit the partial unique index and are ignored.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from swapify.application.services.notification_service import NotificationService
from swapify.application.services.track_lifecycle import remove_from_remote
from swapify.domain.entities import (
    PlaylistSyncResult,
    RemotePlaylistItem,
    SharedPlaylist,
    SharedTrack,
)
from swapify.domain.exceptions import (
    EntityNotFoundException,
    RemoteMutationFailedError,
    TokenInvalidError,
)
from swapify.domain.ports import ICredentialProvider, ISpotifyClient
from swapify.infrastructure.persistence.database import Database
from swapify.infrastructure.persistence.repositories import (
    PlaylistRepository,
    SharedTrackRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class SyncPlan:
    """Every change one sync pass wants to make, before any of it happens."""

    retry_removals: list[SharedTrack] = field(default_factory=list)
    clear_pending: list[SharedTrack] = field(default_factory=list)
    unauthorized: list[RemotePlaylistItem] = field(default_factory=list)
    over_limit: list[tuple[RemotePlaylistItem, str]] = field(default_factory=list)
    adopt: list[tuple[RemotePlaylistItem, str]] = field(default_factory=list)
    gone_remote: list[SharedTrack] = field(default_factory=list)


def dedupe_remote_items(raw_items: Iterable[dict]) -> dict[str, RemotePlaylistItem]:
    """Normalize playlist items, keyed by URI in playlist order (first one wins)."""
    items: dict[str, RemotePlaylistItem] = {}
    for raw in raw_items:
        item = RemotePlaylistItem.from_spotify(raw)
        if item is not None and item.uri not in items:
            items[item.uri] = item
    return items


def plan_sync(
    remote: dict[str, RemotePlaylistItem],
    live: list[SharedTrack],
    pending_remote: list[SharedTrack],
    member_ids: set[str],
    user_ids_by_spotify_id: dict[str, str],
    fallback_user_id: str,
    max_tracks_per_user: int | None,
    live_counts: dict[str, int],
    now: datetime,
    grace: timedelta,
) -> SyncPlan:
    """Diff the live Spotify playlist against local state. Pure."""
    plan = SyncPlan()
    live_uris = {t.spotify_track_uri for t in live}

    # Local intent wins: a track we removed stays removed
    retry_uris: set[str] = set()
    for track in pending_remote:
        uri = track.spotify_track_uri
        if uri in remote and uri not in live_uris:
            plan.retry_removals.append(track)
            retry_uris.add(uri)
        else:
            # Gone from Spotify already, or re-added since (removing would hit the new add)
            plan.clear_pending.append(track)

    counts = dict(live_counts)
    for uri, item in remote.items():
        if uri in live_uris or uri in retry_uris:
            continue
        adder = user_ids_by_spotify_id.get(item.added_by_spotify_id or "")
        if adder is not None and adder not in member_ids:
            plan.unauthorized.append(item)
            continue
        if (
            adder is not None
            and max_tracks_per_user
            and counts.get(adder, 0) >= max_tracks_per_user
        ):
            plan.over_limit.append((item, adder))
            continue
        attributed = adder or fallback_user_id
        counts[attributed] = counts.get(attributed, 0) + 1
        plan.adopt.append((item, attributed))

    for track in live:
        if track.spotify_track_uri not in remote and now - track.added_at > grace:
            plan.gone_remote.append(track)

    return plan


class PlaylistSyncService:
    """Remote <-> local convergence for one shared playlist at a time."""

    def __init__(
        self,
        database: Database,
        spotify: ISpotifyClient,
        credentials: ICredentialProvider,
        notifications: NotificationService,
        remote_removal_alert_after: int = 3,
        add_grace_seconds: float = 120.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._database = database
        self._spotify = spotify
        self._credentials = credentials
        self._notifications = notifications
        self._alert_after = remote_removal_alert_after
        self._grace = timedelta(seconds=add_grace_seconds)
        self._clock = clock

    async def sync_playlist(
        self, playlist_id: str, triggered_by: str | None = None
    ) -> PlaylistSyncResult:
        """Converge one playlist.

        Raises:
            EntityNotFoundException: unknown playlist
            TokenInvalidError: the owner has no usable token (owner gets flagged)
            RateLimitedError / BudgetExceededError: propagate, the caller stops syncing
        """
        async with self._database.session_scope() as session:
            playlist = await PlaylistRepository(session).get(playlist_id)
        if playlist is None:
            raise EntityNotFoundException("SharedPlaylist", playlist_id)

        token = await self._credentials.get_access_token(playlist.owner_id)
        if token is None:
            raise TokenInvalidError(user_id=playlist.owner_id)

        try:
            raw_items = await self._spotify.get_playlist_items(token, playlist.spotify_playlist_id)
        except TokenInvalidError:
            await self._owner_token_invalid(playlist.owner_id)
            raise
        remote = dedupe_remote_items(raw_items)
        now = self._clock()

        async with self._database.session_scope() as session:
            tracks = SharedTrackRepository(session)
            live = await tracks.list_live_for_playlist(playlist.id)
            pending = await tracks.list_pending_remote_removals(playlist.id)
            member_ids = await PlaylistRepository(session).get_member_ids(playlist.id)
            live_counts = await tracks.count_live_by_user(playlist.id)
            spotify_ids = [i.added_by_spotify_id for i in remote.values() if i.added_by_spotify_id]
            user_ids = await UserRepository(session).get_ids_by_spotify_ids(spotify_ids)

        plan = plan_sync(
            remote,
            live,
            pending,
            member_ids,
            user_ids,
            fallback_user_id=triggered_by or playlist.owner_id,
            max_tracks_per_user=playlist.policy.max_tracks_per_user,
            live_counts=live_counts,
            now=now,
            grace=self._grace,
        )
        result = PlaylistSyncResult(playlist_id=playlist.id)

        try:
            retried_ok = await self._remove_remote(playlist, token, plan.retry_removals)
            await self._remove_external_adds(playlist, token, plan, result)
        except TokenInvalidError:
            await self._owner_token_invalid(playlist.owner_id)
            raise

        async with self._database.session_scope() as session:
            tracks = SharedTrackRepository(session)

            for track in plan.clear_pending:
                await tracks.record_remote_removal(track.id, succeeded=True)

            for track in plan.retry_removals:
                if retried_ok:
                    await tracks.record_remote_removal(track.id, succeeded=True)
                    result.remote_removals_retried += 1
                    continue
                attempts = await tracks.record_remote_removal(track.id, succeeded=False)
                if attempts == self._alert_after:
                    self._notifications.notify_remote_sync_failed(
                        playlist.owner_id,
                        track.track_name or track.spotify_track_uri,
                        playlist.id,
                        playlist.name,
                        attempts,
                    )

            for item, user_id in plan.adopt:
                if await tracks.add_if_absent(playlist.id, item, user_id, now):
                    result.added += 1

            for track in plan.gone_remote:
                if await tracks.mark_removed(track.id, now, remote_pending=False):
                    result.removed += 1

        log = logger.info if result.total_changes else logger.debug
        log(
            "playlist_sync.completed",
            extra={
                "playlist_id": playlist.id,
                "added": result.added,
                "removed": result.removed,
                "unauthorized_removed": result.unauthorized_removed,
                "over_limit_removed": result.over_limit_removed,
                "remote_removals_retried": result.remote_removals_retried,
                "remote_items": len(remote),
            },
        )
        return result

    async def _remove_remote(
        self, playlist: SharedPlaylist, token: str, tracks: list[SharedTrack]
    ) -> bool:
        """Retry pending removals in one batch. False when Spotify refused."""
        if not tracks:
            return True
        uris = list(dict.fromkeys(t.spotify_track_uri for t in tracks))
        try:
            await remove_from_remote(self._spotify, token, playlist.spotify_playlist_id, uris)
        except RemoteMutationFailedError as e:
            logger.warning(
                "playlist_sync.retry_failed",
                extra={"playlist_id": playlist.id, "uris": len(uris), "error": str(e)},
            )
            return False
        return True

    async def _remove_external_adds(
        self,
        playlist: SharedPlaylist,
        token: str,
        plan: SyncPlan,
        result: PlaylistSyncResult,
    ) -> None:
        if plan.unauthorized:
            uris = [item.uri for item in plan.unauthorized]
            try:
                await remove_from_remote(self._spotify, token, playlist.spotify_playlist_id, uris)
                result.unauthorized_removed += len(uris)
                logger.info(
                    "playlist_sync.unauthorized_removed",
                    extra={"playlist_id": playlist.id, "uris": uris},
                )
            except RemoteMutationFailedError as e:
                # Still on Spotify next time, so the next pass tries again
                logger.warning(
                    "playlist_sync.unauthorized_removal_failed",
                    extra={"playlist_id": playlist.id, "error": str(e)},
                )

        if plan.over_limit:
            uris = [item.uri for item, _ in plan.over_limit]
            try:
                await remove_from_remote(self._spotify, token, playlist.spotify_playlist_id, uris)
            except RemoteMutationFailedError as e:
                logger.warning(
                    "playlist_sync.over_limit_removal_failed",
                    extra={"playlist_id": playlist.id, "error": str(e)},
                )
                return
            result.over_limit_removed += len(uris)
            for item, user_id in plan.over_limit:
                self._notifications.notify_track_limit_exceeded(
                    user_id,
                    item.name or item.uri,
                    playlist.id,
                    playlist.name,
                    playlist.policy.max_tracks_per_user or 0,
                )

    async def _owner_token_invalid(self, owner_id: str) -> None:
        if await self._credentials.mark_invalid(owner_id):
            self._notifications.notify_reauth_required(owner_id)


__all__ = [
    "PlaylistSyncService",
    "SyncPlan",
    "dedupe_remote_items",
    "plan_sync",
]
