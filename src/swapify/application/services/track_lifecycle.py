"""Track lifecycle reconciler - the removal policy engine.

Hey future me - this file has two layers, keep them apart:

1. decide() is PURE. Given a track, the completion facts and the playlist policy it
   says Keep / ScheduleRemoval / Remove. No DB, no Spotify, no clock of its own.
   Hard expiry is checked FIRST and wins over everything (a 2-day-old track in a
   1-day playlist goes, even if nobody listened).

2. TrackLifecycleReconciler applies decisions. Removal order is fixed:
   a) archive copy into "<name> Keepers" (lazily created with the owner's token) when the
      archive gate passes. The copy has to exist before the track leaves the main
      playlist, so a rate limit, an exhausted budget or a rejected owner token DEFERS the
      track to a later cycle. Any other archive failure is logged + counted and the
      removal goes ahead without a copy.
   b) claim the row locally (UPDATE .. WHERE removed_at IS NULL, remote_removal_pending=True)
      and COMMIT. Only the caller that claimed it continues - that's "no double removal".
   c) remove from the Spotify playlist. Failure keeps remote_removal_pending=True and
      bumps the attempt counter; PlaylistSyncService retries on its next pass.
   d) enqueue member notifications (never awaited).

   The local mark is NEVER rolled back when Spotify fails. Local state is the intent.

Completion only counts listens and reactions recorded since the row's added_at. Those
records are keyed per Spotify track, not per row.

Budget-aborted cycles (allow_remote=False) still remove locally and leave the Spotify
call pending. Tracks that need an archive copy are deferred instead.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from swapify.application.services.notification_service import NotificationService
from swapify.domain.entities import (
    Active,
    ArchiveThreshold,
    Archived,
    PendingRemoval,
    Reaction,
    ReactionValue,
    Removed,
    RemovalPolicy,
    SharedPlaylist,
    SharedTrack,
)
from swapify.domain.exceptions import (
    CYCLE_ABORTING_ERRORS,
    DomainException,
    ExternalServiceError,
    RemoteMutationFailedError,
    TokenInvalidError,
)
from swapify.domain.ports import ICredentialProvider, ISpotifyClient
from swapify.infrastructure.persistence.database import Database
from swapify.infrastructure.persistence.repositories import (
    ListenRepository,
    PlaylistRepository,
    ReactionRepository,
    SharedTrackRepository,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# PURE DECISIONS
# =============================================================================


class RemovalReason(str, Enum):
    COMPLETED = "completed"
    DELAY_ELAPSED = "delay_elapsed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Keep:
    pass


@dataclass(frozen=True)
class ScheduleRemoval:
    completed_at: datetime
    due_at: datetime


@dataclass(frozen=True)
class Remove:
    reason: RemovalReason


Decision = Keep | ScheduleRemoval | Remove


@dataclass(frozen=True)
class CompletionFacts:
    """Who has to hear the track, and who already listened or reacted.

    Derived fresh on every evaluation, never cached.
    """

    required_member_ids: frozenset[str]
    listened_user_ids: frozenset[str] = frozenset()
    reacted_user_ids: frozenset[str] = frozenset()

    @classmethod
    def build(
        cls,
        member_ids: Iterable[str],
        added_by_user_id: str,
        listened_user_ids: Iterable[str] = (),
        reacted_user_ids: Iterable[str] = (),
    ) -> "CompletionFacts":
        return cls(
            required_member_ids=frozenset(member_ids) - {added_by_user_id},
            listened_user_ids=frozenset(listened_user_ids),
            reacted_user_ids=frozenset(reacted_user_ids),
        )

    @property
    def is_complete(self) -> bool:
        # A playlist where the adder is the only member never completes socially
        if not self.required_member_ids:
            return False
        heard = self.listened_user_ids | self.reacted_user_ids
        return self.required_member_ids <= heard


def is_expired(track: SharedTrack, policy: RemovalPolicy, now: datetime) -> bool:
    max_age = policy.max_age
    return max_age is not None and now - track.added_at > max_age


def decide(
    track: SharedTrack, facts: CompletionFacts, policy: RemovalPolicy, now: datetime
) -> Decision:
    """What should happen to this track right now."""
    match track.state:
        case Removed() | Archived():
            return Keep()
        case PendingRemoval(due_at=due_at):
            if now >= due_at:
                return Remove(RemovalReason.DELAY_ELAPSED)
            if is_expired(track, policy, now):
                return Remove(RemovalReason.EXPIRED)
            return Keep()
        case Active():
            if is_expired(track, policy, now):
                return Remove(RemovalReason.EXPIRED)
            if not facts.is_complete:
                return Keep()
            delay = policy.removal_delay.delta
            if delay <= timedelta(0):
                return Remove(RemovalReason.COMPLETED)
            return ScheduleRemoval(completed_at=now, due_at=now + delay)
    return Keep()


def should_archive(threshold: ArchiveThreshold, reactions: list[Reaction]) -> bool:
    """Archive gate, evaluated against every reaction on the track."""
    values = [r.reaction for r in reactions]
    match threshold:
        case ArchiveThreshold.NO_DISLIKES:
            return ReactionValue.THUMBS_DOWN not in values
        case ArchiveThreshold.AT_LEAST_ONE_LIKE:
            return ReactionValue.THUMBS_UP in values
        case ArchiveThreshold.UNIVERSALLY_LIKED:
            return bool(values) and all(v == ReactionValue.THUMBS_UP for v in values)
        case _:
            return False


# =============================================================================
# REMOTE HELPER
# =============================================================================


async def remove_from_remote(
    spotify: ISpotifyClient, access_token: str, playlist_id: str, uris: list[str]
) -> None:
    """Remove URIs from a Spotify playlist.

    Token / rate-limit / budget errors propagate unchanged (the caller decides what
    they mean for the cycle); everything else becomes RemoteMutationFailedError.
    """
    try:
        await spotify.remove_items_from_playlist(access_token, playlist_id, uris)
    except (TokenInvalidError, *CYCLE_ABORTING_ERRORS):
        raise
    except ExternalServiceError as e:
        raise RemoteMutationFailedError(playlist_id, uris, e) from e


# =============================================================================
# RECONCILER
# =============================================================================


@dataclass
class ReconcileResult:
    evaluated: int = 0
    scheduled: int = 0
    removed: int = 0
    archived: int = 0
    deferred: int = 0
    failures: int = 0
    remote_aborted: bool = False


@dataclass
class _Run:
    """Per-call state. The reconciler object itself stays stateless between runs."""

    remote_enabled: bool
    result: ReconcileResult = field(default_factory=ReconcileResult)
    owner_tokens: dict[str, str | None] = field(default_factory=dict)


class TrackLifecycleReconciler:
    """Applies removal policy decisions locally and on Spotify."""

    def __init__(
        self,
        database: Database,
        spotify: ISpotifyClient,
        credentials: ICredentialProvider,
        notifications: NotificationService,
        remote_removal_alert_after: int = 3,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._database = database
        self._spotify = spotify
        self._credentials = credentials
        self._notifications = notifications
        self._alert_after = remote_removal_alert_after
        self._clock = clock

    async def reconcile(
        self, track_ids: Iterable[str], allow_remote: bool = True
    ) -> ReconcileResult:
        """Evaluate each track once. Failures are counted, never raised."""
        run = _Run(remote_enabled=allow_remote)
        for track_id in dict.fromkeys(track_ids):
            try:
                await self._reconcile_one(run, track_id)
            except Exception as e:
                run.result.failures += 1
                logger.error(
                    "reconciler.track.failed",
                    extra={"track_id": track_id, "error": str(e)},
                    exc_info=True,
                )

        result = run.result
        result.remote_aborted = allow_remote and not run.remote_enabled
        if result.removed or result.scheduled or result.failures or result.deferred:
            logger.info(
                "reconciler.completed",
                extra={
                    "evaluated": result.evaluated,
                    "scheduled": result.scheduled,
                    "removed": result.removed,
                    "archived": result.archived,
                    "deferred": result.deferred,
                    "failures": result.failures,
                    "remote_enabled": run.remote_enabled,
                },
            )
        return result

    # -------------------------------------------------------------------------

    async def _reconcile_one(self, run: _Run, track_id: str) -> None:
        now = self._clock()

        async with self._database.session_scope() as session:
            tracks = SharedTrackRepository(session)
            playlists = PlaylistRepository(session)

            track = await tracks.get(track_id)
            if track is None or not track.is_live:
                return
            playlist = await playlists.get(track.playlist_id)
            if playlist is None:
                return

            member_ids = await playlists.get_member_ids(playlist.id)
            # Only what happened since THIS add counts; a re-added track starts from zero
            listened = await ListenRepository(session).user_ids_with_listens(
                playlist.id, track.spotify_track_id, since=track.added_at
            )
            reactions = await ReactionRepository(session).list_for_track(
                playlist.id, track.spotify_track_id, since=track.added_at
            )
            facts = CompletionFacts.build(
                member_ids,
                track.added_by_user_id,
                listened_user_ids=listened,
                reacted_user_ids=(r.user_id for r in reactions),
            )
            decision = decide(track, facts, playlist.policy, now)
            run.result.evaluated += 1

            match decision:
                case Keep():
                    return
                case ScheduleRemoval(completed_at=completed_at, due_at=due_at):
                    if await tracks.schedule_removal(track.id, completed_at, due_at):
                        run.result.scheduled += 1
                        logger.info(
                            "reconciler.removal_scheduled",
                            extra={
                                "track_id": track.id,
                                "playlist_id": playlist.id,
                                "due_at": due_at.isoformat(),
                            },
                        )
                    return
                case Remove(reason=reason):
                    pass

        archive = should_archive(playlist.policy.archive_threshold, reactions)
        token = await self._owner_token(run, playlist.owner_id) if run.remote_enabled else None
        archived = False
        if archive and token is not None:
            archived = await self._archive(run, playlist, track, token)
            if not run.remote_enabled or run.owner_tokens.get(playlist.owner_id) is None:
                token = None
        if archive and not archived and token is None:
            # Keepers copy must exist before the track leaves; try again next cycle
            run.result.deferred += 1
            logger.info(
                "reconciler.archive_deferred",
                extra={"track_id": track.id, "playlist_id": playlist.id},
            )
            return

        async with self._database.session_scope() as session:
            claimed = await SharedTrackRepository(session).mark_removed(
                track.id,
                now,
                archived=archived,
                remote_pending=True,
                completed_at=now if reason is RemovalReason.COMPLETED else None,
            )
        if not claimed:
            # Someone else (sync, overlapping instance) got there first
            return
        # local intent is durable before the Spotify removal

        logger.info(
            "reconciler.track_removed",
            extra={
                "track_id": track.id,
                "playlist_id": playlist.id,
                "reason": reason.value,
                "archive": archive,
                "archived": archived,
            },
        )
        run.result.removed += 1
        if archived:
            run.result.archived += 1

        if token is not None and run.remote_enabled:
            await self._remove_remote(run, playlist, track, token)

        self._notifications.notify_track_removed(
            sorted(member_ids),
            track.track_name or track.spotify_track_uri,
            track.artist_name,
            playlist.id,
            playlist.name,
            archived=archived,
        )

    async def _owner_token(self, run: _Run, owner_id: str) -> str | None:
        if owner_id not in run.owner_tokens:
            run.owner_tokens[owner_id] = await self._credentials.get_access_token(owner_id)
        return run.owner_tokens[owner_id]

    async def _owner_token_invalid(self, run: _Run, owner_id: str) -> None:
        run.owner_tokens[owner_id] = None
        if await self._credentials.mark_invalid(owner_id):
            self._notifications.notify_reauth_required(owner_id)

    def _abort_remote(self, run: _Run, error: Exception) -> None:
        if run.remote_enabled:
            logger.warning("reconciler.remote_disabled", extra={"error": str(error)})
        run.remote_enabled = False

    async def _ensure_archive_playlist(self, playlist: SharedPlaylist, token: str) -> str:
        if playlist.archive_playlist_id:
            return playlist.archive_playlist_id

        created = await self._spotify.create_playlist(
            token,
            playlist.archive_playlist_name,
            description=f"Tracks the group loved in {playlist.name}",
        )
        new_id = created["id"]
        async with self._database.session_scope() as session:
            repo = PlaylistRepository(session)
            if await repo.set_archive_playlist_id(playlist.id, new_id):
                playlist.archive_playlist_id = new_id
                logger.info(
                    "reconciler.archive_playlist_created",
                    extra={"playlist_id": playlist.id, "archive_playlist_id": new_id},
                )
                return new_id
            # Lost the race: another writer stored one first, use theirs
            current = await repo.get(playlist.id)
        winner = current.archive_playlist_id if current else None
        logger.warning(
            "reconciler.archive_playlist_race",
            extra={"playlist_id": playlist.id, "orphaned_playlist_id": new_id},
        )
        playlist.archive_playlist_id = winner or new_id
        return playlist.archive_playlist_id

    async def _archive(
        self,
        run: _Run,
        playlist: SharedPlaylist,
        track: SharedTrack,
        token: str,
    ) -> bool:
        """Copy the track into the Keepers playlist.

        Rate limit, budget and token errors switch remote off (or drop the owner token)
        so the caller defers the track. Any other failure is counted and the track is
        removed without a copy.
        """
        try:
            archive_id = await self._ensure_archive_playlist(playlist, token)
            await self._spotify.add_items_to_playlist(token, archive_id, [track.spotify_track_uri])
        except CYCLE_ABORTING_ERRORS as e:
            self._abort_remote(run, e)
            return False
        except TokenInvalidError:
            await self._owner_token_invalid(run, playlist.owner_id)
            run.result.failures += 1
            return False
        except DomainException as e:
            run.result.failures += 1
            logger.error(
                "reconciler.archive_failed",
                extra={"track_id": track.id, "playlist_id": playlist.id, "error": str(e)},
                exc_info=True,
            )
            return False
        return True

    async def _remove_remote(
        self, run: _Run, playlist: SharedPlaylist, track: SharedTrack, token: str
    ) -> None:
        try:
            await remove_from_remote(
                self._spotify, token, playlist.spotify_playlist_id, [track.spotify_track_uri]
            )
        except CYCLE_ABORTING_ERRORS as e:
            # Pending flag is already set; the next sync picks it up
            self._abort_remote(run, e)
            return
        except (TokenInvalidError, RemoteMutationFailedError) as e:
            if isinstance(e, TokenInvalidError):
                await self._owner_token_invalid(run, playlist.owner_id)
            run.result.failures += 1
            async with self._database.session_scope() as session:
                attempts = await SharedTrackRepository(session).record_remote_removal(
                    track.id, succeeded=False
                )
            logger.warning(
                "reconciler.remote_removal_failed",
                extra={
                    "track_id": track.id,
                    "playlist_id": playlist.id,
                    "attempts": attempts,
                    "error": str(e),
                },
            )
            if attempts == self._alert_after:
                self._notifications.notify_remote_sync_failed(
                    playlist.owner_id,
                    track.track_name or track.spotify_track_uri,
                    playlist.id,
                    playlist.name,
                    attempts,
                )
            return

        async with self._database.session_scope() as session:
            await SharedTrackRepository(session).record_remote_removal(track.id, succeeded=True)


__all__ = [
    "CompletionFacts",
    "Decision",
    "Keep",
    "ReconcileResult",
    "Remove",
    "RemovalReason",
    "ScheduleRemoval",
    "TrackLifecycleReconciler",
    "decide",
    "is_expired",
    "remove_from_remote",
    "should_archive",
]
