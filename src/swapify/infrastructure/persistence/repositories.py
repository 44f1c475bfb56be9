"""Repository implementations for the reconciliation engine."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from swapify.domain.entities import (
    PlaybackSnapshot,
    PlaybackState,
    Reaction,
    ReactionValue,
    RemotePlaylistItem,
    RemovalPolicy,
    SharedPlaylist,
    SharedTrack,
    TrackStatus,
)
from swapify.domain.exceptions import ConfigurationError

from .models import (
    PlaylistMemberModel,
    PlaylistModel,
    PlaylistTrackModel,
    TrackListenModel,
    TrackReactionModel,
    UserModel,
    ensure_utc_aware,
    utc_now,
)
from .retry import with_db_retry

logger = logging.getLogger(__name__)

_LIVE_STATUSES = (TrackStatus.ACTIVE.value, TrackStatus.PENDING_REMOVAL.value)


# Hey future me - this is THE idempotence primitive! Every insert the engine does goes
# through here: INSERT .. ON CONFLICT (unique cols) DO NOTHING. A duplicate (another
# cycle, the sync racing the reconciler) is simply "not inserted", never an error.
# Returns True only when WE inserted the row.
async def _insert_ignore(
    session: AsyncSession,
    model: type[Any],
    values: dict[str, Any],
    index_elements: list[str],
    index_where: Any = None,
) -> bool:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt: Any = pg_insert(model)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model)
    else:
        raise ConfigurationError(f"Unsupported database dialect: {dialect}")

    stmt = stmt.values(**values).on_conflict_do_nothing(
        index_elements=index_elements, index_where=index_where
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)  # type: ignore[attr-defined]


def _to_shared_playlist(model: PlaylistModel) -> SharedPlaylist:
    return SharedPlaylist(
        id=model.id,
        name=model.name,
        owner_id=model.owner_id,
        spotify_playlist_id=model.spotify_playlist_id,
        archive_playlist_id=model.archive_playlist_id,
        policy=RemovalPolicy.from_raw(
            max_tracks_per_user=model.max_tracks_per_user,
            max_track_age_days=model.max_track_age_days,
            removal_delay=model.removal_delay,
            archive_threshold=model.archive_threshold,
        ),
    )


def _aware(dt: datetime | None) -> datetime | None:
    return ensure_utc_aware(dt) if dt is not None else None


def _to_shared_track(model: PlaylistTrackModel) -> SharedTrack:
    try:
        status = TrackStatus(model.status)
    except ValueError:
        # unknown stored status: infer from the timestamps
        if model.archived_at is not None:
            status = TrackStatus.ARCHIVED
        elif model.removed_at is not None:
            status = TrackStatus.REMOVED
        else:
            status = TrackStatus.ACTIVE
    return SharedTrack(
        id=model.id,
        playlist_id=model.playlist_id,
        spotify_track_uri=model.spotify_track_uri,
        spotify_track_id=model.spotify_track_id,
        added_by_user_id=model.added_by_user_id,
        added_at=ensure_utc_aware(model.added_at),
        status=status,
        track_name=model.track_name,
        artist_name=model.artist_name,
        completed_at=_aware(model.completed_at),
        removal_due_at=_aware(model.removal_due_at),
        removed_at=_aware(model.removed_at),
        archived_at=_aware(model.archived_at),
        remote_removal_pending=model.remote_removal_pending,
        remote_removal_attempts=model.remote_removal_attempts,
    )


class UserRepository:
    """Users as seen by the poll engine."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str) -> UserModel | None:
        return await self.session.get(UserModel, user_id)

    async def get_ids_by_spotify_ids(self, spotify_ids: list[str]) -> dict[str, str]:
        """Map Spotify user IDs to Swapify user IDs (registered users only)."""
        if not spotify_ids:
            return {}
        stmt = select(UserModel.spotify_id, UserModel.id).where(
            UserModel.spotify_id.in_(spotify_ids)
        )
        result = await self.session.execute(stmt)
        return {row.spotify_id: row.id for row in result}

    # Hey future me - "pollable" = has a token, token not flagged invalid, and is a member
    # of at least one playlist that still has a live track. Users who only sit in empty
    # playlists cost API calls for nothing.
    async def list_pollable_user_ids(self) -> list[str]:
        live_track_exists = exists().where(
            and_(
                PlaylistTrackModel.playlist_id == PlaylistMemberModel.playlist_id,
                PlaylistTrackModel.removed_at.is_(None),
            )
        )
        stmt = (
            select(UserModel.id)
            .join(PlaylistMemberModel, PlaylistMemberModel.user_id == UserModel.id)
            .where(
                UserModel.access_token.is_not(None),
                UserModel.token_invalid_at.is_(None),
                live_track_exists,
            )
            .distinct()
            .order_by(UserModel.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @with_db_retry()
    async def mark_token_invalid(self, user_id: str, now: datetime) -> bool:
        """Flag the token invalid. True only for the first flag (no duplicate alerts)."""
        stmt = (
            update(UserModel)
            .where(UserModel.id == user_id, UserModel.token_invalid_at.is_(None))
            .values(token_invalid_at=now)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]


# Listen up, PlaybackStateStore is the ONLY accessor for users.last_poll_cursor and
# users.last_playback_json. Every write is conditional on the version we read; a
# concurrent writer (second instance, overlapping manual trigger) makes our write a
# no-op and we log it instead of clobbering newer state.
class PlaybackStateStore:
    """Versioned per-user poll cursor + last playback snapshot."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def load(self, user_id: str) -> PlaybackState | None:
        stmt = select(
            UserModel.playback_state_version,
            UserModel.last_poll_cursor,
            UserModel.last_playback_json,
        ).where(UserModel.id == user_id)
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return PlaybackState(
            user_id=user_id,
            version=row.playback_state_version,
            cursor=row.last_poll_cursor,
            snapshot=PlaybackSnapshot.from_json(row.last_playback_json),
        )

    @with_db_retry()
    async def save(
        self,
        user_id: str,
        expected_version: int,
        cursor: int | None,
        snapshot: PlaybackSnapshot | None,
    ) -> bool:
        """Write cursor + snapshot if nobody else wrote since we loaded."""
        stmt = (
            update(UserModel)
            .where(
                UserModel.id == user_id,
                UserModel.playback_state_version == expected_version,
            )
            .values(
                last_poll_cursor=cursor,
                last_playback_json=snapshot.to_json() if snapshot else None,
                playback_state_version=UserModel.playback_state_version + 1,
            )
        )
        result = await self.session.execute(stmt)
        if not result.rowcount:  # type: ignore[attr-defined]
            logger.warning(
                "playback_state.stale_write",
                extra={"user_id": user_id, "expected_version": expected_version},
            )
            return False
        return True


class PlaylistRepository:
    """Shared playlists and their members."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, playlist_id: str) -> SharedPlaylist | None:
        model = await self.session.get(PlaylistModel, playlist_id)
        return _to_shared_playlist(model) if model else None

    async def list_with_live_tracks(self) -> list[SharedPlaylist]:
        live = exists().where(
            PlaylistTrackModel.playlist_id == PlaylistModel.id,
            PlaylistTrackModel.removed_at.is_(None),
        )
        stmt = select(PlaylistModel).where(live).order_by(PlaylistModel.id)
        result = await self.session.execute(stmt)
        return [_to_shared_playlist(m) for m in result.scalars().all()]

    async def list_ids_for_member(self, user_id: str) -> list[str]:
        stmt = select(PlaylistMemberModel.playlist_id).where(
            PlaylistMemberModel.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_member_ids(self, playlist_id: str) -> set[str]:
        stmt = select(PlaylistMemberModel.user_id).where(
            PlaylistMemberModel.playlist_id == playlist_id
        )
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def add_member(self, playlist_id: str, user_id: str) -> bool:
        return await _insert_ignore(
            self.session,
            PlaylistMemberModel,
            {"playlist_id": playlist_id, "user_id": user_id},
            index_elements=["playlist_id", "user_id"],
        )

    @with_db_retry()
    async def set_archive_playlist_id(self, playlist_id: str, archive_playlist_id: str) -> bool:
        """Remember the lazily created archive playlist. First writer wins."""
        stmt = (
            update(PlaylistModel)
            .where(
                PlaylistModel.id == playlist_id,
                PlaylistModel.archive_playlist_id.is_(None),
            )
            .values(archive_playlist_id=archive_playlist_id)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]


class SharedTrackRepository:
    """Shared track rows and their lifecycle transitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, track_id: str) -> SharedTrack | None:
        model = await self.session.get(PlaylistTrackModel, track_id)
        return _to_shared_track(model) if model else None

    async def list_live_for_playlist(self, playlist_id: str) -> list[SharedTrack]:
        stmt = (
            select(PlaylistTrackModel)
            .where(
                PlaylistTrackModel.playlist_id == playlist_id,
                PlaylistTrackModel.removed_at.is_(None),
            )
            .order_by(PlaylistTrackModel.added_at)
        )
        result = await self.session.execute(stmt)
        return [_to_shared_track(m) for m in result.scalars().all()]

    async def list_live_ids(self) -> list[str]:
        """Every track still on a shared playlist (for the age / delay sweep)."""
        stmt = (
            select(PlaylistTrackModel.id)
            .where(PlaylistTrackModel.removed_at.is_(None))
            .order_by(PlaylistTrackModel.added_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_active_by_track_id(
        self, playlist_ids: list[str], spotify_track_id: str
    ) -> list[SharedTrack]:
        if not playlist_ids:
            return []
        stmt = select(PlaylistTrackModel).where(
            PlaylistTrackModel.playlist_id.in_(playlist_ids),
            PlaylistTrackModel.spotify_track_id == spotify_track_id,
            PlaylistTrackModel.status == TrackStatus.ACTIVE.value,
        )
        result = await self.session.execute(stmt)
        return [_to_shared_track(m) for m in result.scalars().all()]

    async def list_pending_remote_removals(self, playlist_id: str) -> list[SharedTrack]:
        stmt = select(PlaylistTrackModel).where(
            PlaylistTrackModel.playlist_id == playlist_id,
            PlaylistTrackModel.removed_at.is_not(None),
            PlaylistTrackModel.remote_removal_pending.is_(True),
        )
        result = await self.session.execute(stmt)
        return [_to_shared_track(m) for m in result.scalars().all()]

    async def count_live_by_user(self, playlist_id: str) -> dict[str, int]:
        stmt = (
            select(PlaylistTrackModel.added_by_user_id, func.count())
            .where(
                PlaylistTrackModel.playlist_id == playlist_id,
                PlaylistTrackModel.removed_at.is_(None),
            )
            .group_by(PlaylistTrackModel.added_by_user_id)
        )
        result = await self.session.execute(stmt)
        return {user_id: count for user_id, count in result.all()}

    async def add_if_absent(
        self,
        playlist_id: str,
        item: RemotePlaylistItem,
        added_by_user_id: str,
        added_at: datetime,
    ) -> bool:
        """Insert a live row unless one already exists for (playlist, uri)."""
        return await _insert_ignore(
            self.session,
            PlaylistTrackModel,
            {
                "playlist_id": playlist_id,
                "spotify_track_uri": item.uri,
                "spotify_track_id": item.track_id,
                "track_name": item.name,
                "artist_name": item.artists,
                "album_name": item.album or None,
                "duration_ms": item.duration_ms or None,
                "added_by_user_id": added_by_user_id,
                "added_at": added_at,
                "status": TrackStatus.ACTIVE.value,
            },
            index_elements=["playlist_id", "spotify_track_uri"],
            index_where=PlaylistTrackModel.removed_at.is_(None),
        )

    @with_db_retry()
    async def schedule_removal(
        self, track_id: str, completed_at: datetime, due_at: datetime
    ) -> bool:
        stmt = (
            update(PlaylistTrackModel)
            .where(
                PlaylistTrackModel.id == track_id,
                PlaylistTrackModel.status == TrackStatus.ACTIVE.value,
            )
            .values(
                status=TrackStatus.PENDING_REMOVAL.value,
                completed_at=completed_at,
                removal_due_at=due_at,
            )
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    # Hey future me - THIS is the "no double removal" guarantee. The WHERE removed_at IS NULL
    # makes the transition conditional: of N concurrent callers exactly one gets rowcount=1
    # and only that one may touch Spotify. Everyone else sees False and walks away.
    @with_db_retry()
    async def mark_removed(
        self,
        track_id: str,
        now: datetime,
        archived: bool = False,
        remote_pending: bool = False,
        completed_at: datetime | None = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": (TrackStatus.ARCHIVED if archived else TrackStatus.REMOVED).value,
            "removed_at": now,
            "remote_removal_pending": remote_pending,
        }
        if archived:
            values["archived_at"] = now
        if completed_at is not None:
            values["completed_at"] = func.coalesce(PlaylistTrackModel.completed_at, completed_at)
        stmt = (
            update(PlaylistTrackModel)
            .where(
                PlaylistTrackModel.id == track_id,
                PlaylistTrackModel.removed_at.is_(None),
            )
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    @with_db_retry()
    async def record_remote_removal(self, track_id: str, succeeded: bool) -> int:
        """Record the outcome of a Spotify removal; returns failed attempts so far."""
        if succeeded:
            values: dict[str, Any] = {"remote_removal_pending": False}
        else:
            values = {
                "remote_removal_pending": True,
                "remote_removal_attempts": PlaylistTrackModel.remote_removal_attempts + 1,
            }
        await self.session.execute(
            update(PlaylistTrackModel).where(PlaylistTrackModel.id == track_id).values(**values)
        )
        stmt = select(PlaylistTrackModel.remote_removal_attempts).where(
            PlaylistTrackModel.id == track_id
        )
        return int((await self.session.execute(stmt)).scalar_one_or_none() or 0)


class ListenOutcome(str, Enum):
    INSERTED = "inserted"
    UPGRADED = "upgraded"
    REFRESHED = "refreshed"
    UNCHANGED = "unchanged"


# Hey future me - listens and reactions are keyed by (playlist, spotify track, user), NOT by
# the SharedTrack row. A re-added track therefore finds the records of its earlier add.
# Everything here takes `valid_from` (the live row's added_at): a record older than that
# belongs to a previous add and is stale. Stale records are overwritten by new events and
# ignored when completion is judged.
class ListenRepository:
    """Listen records. Inserted once; a skip may later be upgraded to a full listen."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _key(self, playlist_id: str, spotify_track_id: str, user_id: str) -> dict[str, str]:
        return {
            "playlist_id": playlist_id,
            "spotify_track_id": spotify_track_id,
            "user_id": user_id,
        }

    def _match(self, playlist_id: str, spotify_track_id: str, user_id: str) -> list[Any]:
        return [
            TrackListenModel.playlist_id == playlist_id,
            TrackListenModel.spotify_track_id == spotify_track_id,
            TrackListenModel.user_id == user_id,
        ]

    @with_db_retry()
    async def record_listen(
        self,
        playlist_id: str,
        spotify_track_id: str,
        user_id: str,
        listened_at: datetime,
        listen_duration_ms: int | None = None,
        valid_from: datetime | None = None,
    ) -> ListenOutcome:
        """Record a full listen, upgrading an earlier skip or replacing a stale record."""
        inserted = await _insert_ignore(
            self.session,
            TrackListenModel,
            {
                **self._key(playlist_id, spotify_track_id, user_id),
                "listened_at": listened_at,
                "listen_duration_ms": listen_duration_ms,
                "was_skipped": False,
            },
            index_elements=["playlist_id", "spotify_track_id", "user_id"],
        )
        if inserted:
            return ListenOutcome.INSERTED

        values = {
            "was_skipped": False,
            "listened_at": listened_at,
            "listen_duration_ms": listen_duration_ms,
        }
        if valid_from is not None:
            stale = update(TrackListenModel).where(
                *self._match(playlist_id, spotify_track_id, user_id),
                TrackListenModel.listened_at < valid_from,
            )
            result = await self.session.execute(stale.values(**values))
            if result.rowcount:  # type: ignore[attr-defined]
                return ListenOutcome.REFRESHED

        stmt = update(TrackListenModel).where(
            *self._match(playlist_id, spotify_track_id, user_id),
            TrackListenModel.was_skipped.is_(True),
        )
        result = await self.session.execute(stmt.values(**values))
        if result.rowcount:  # type: ignore[attr-defined]
            return ListenOutcome.UPGRADED
        return ListenOutcome.UNCHANGED

    @with_db_retry()
    async def record_skip(
        self,
        playlist_id: str,
        spotify_track_id: str,
        user_id: str,
        listened_at: datetime,
        listen_duration_ms: int | None = None,
        valid_from: datetime | None = None,
    ) -> bool:
        """Record a skip only when the user has no current listen for the track."""
        inserted = await _insert_ignore(
            self.session,
            TrackListenModel,
            {
                **self._key(playlist_id, spotify_track_id, user_id),
                "listened_at": listened_at,
                "listen_duration_ms": listen_duration_ms,
                "was_skipped": True,
            },
            index_elements=["playlist_id", "spotify_track_id", "user_id"],
        )
        if inserted or valid_from is None:
            return inserted

        stmt = (
            update(TrackListenModel)
            .where(
                *self._match(playlist_id, spotify_track_id, user_id),
                TrackListenModel.listened_at < valid_from,
            )
            .values(
                was_skipped=True,
                listened_at=listened_at,
                listen_duration_ms=listen_duration_ms,
            )
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def user_ids_with_listens(
        self, playlist_id: str, spotify_track_id: str, since: datetime | None = None
    ) -> set[str]:
        stmt = select(TrackListenModel.user_id).where(
            TrackListenModel.playlist_id == playlist_id,
            TrackListenModel.spotify_track_id == spotify_track_id,
        )
        if since is not None:
            stmt = stmt.where(TrackListenModel.listened_at >= since)
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def get(
        self, playlist_id: str, spotify_track_id: str, user_id: str
    ) -> TrackListenModel | None:
        stmt = select(TrackListenModel).where(
            *self._match(playlist_id, spotify_track_id, user_id)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()


class ReactionRepository:
    """Track reactions, manual and auto-inferred."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(
        self, playlist_id: str, spotify_track_id: str, user_id: str
    ) -> Reaction | None:
        stmt = select(TrackReactionModel).where(
            TrackReactionModel.playlist_id == playlist_id,
            TrackReactionModel.spotify_track_id == spotify_track_id,
            TrackReactionModel.user_id == user_id,
        )
        model = (await self.session.execute(stmt)).scalar_one_or_none()
        if model is None:
            return None
        return Reaction(
            playlist_id=model.playlist_id,
            spotify_track_id=model.spotify_track_id,
            user_id=model.user_id,
            reaction=model.reaction,
            is_auto=model.is_auto,
        )

    async def list_for_track(
        self, playlist_id: str, spotify_track_id: str, since: datetime | None = None
    ) -> list[Reaction]:
        stmt = select(TrackReactionModel).where(
            TrackReactionModel.playlist_id == playlist_id,
            TrackReactionModel.spotify_track_id == spotify_track_id,
        )
        if since is not None:
            stmt = stmt.where(TrackReactionModel.updated_at >= since)
        result = await self.session.execute(stmt)
        return [
            Reaction(
                playlist_id=m.playlist_id,
                spotify_track_id=m.spotify_track_id,
                user_id=m.user_id,
                reaction=m.reaction,
                is_auto=m.is_auto,
            )
            for m in result.scalars().all()
        ]

    # Hey future me - the auto-reaction rules, in order:
    # 1. a reaction from an earlier add of the track (older than valid_from) is replaced
    # 2. never touch a current manual reaction (the user said what they think)
    # 3. nothing there yet -> insert the auto reaction
    # 4. auto thumbs_down + we now saw a full listen -> upgrade to thumbs_up
    # 5. auto thumbs_up is never downgraded by a later skip
    @with_db_retry()
    async def set_auto_reaction(
        self,
        playlist_id: str,
        spotify_track_id: str,
        user_id: str,
        reaction: str,
        at: datetime | None = None,
        valid_from: datetime | None = None,
    ) -> bool:
        """Apply an inferred reaction. Returns True if anything was written."""
        at = at or utc_now()
        inserted = await _insert_ignore(
            self.session,
            TrackReactionModel,
            {
                "playlist_id": playlist_id,
                "spotify_track_id": spotify_track_id,
                "user_id": user_id,
                "reaction": reaction,
                "is_auto": True,
                "created_at": at,
                "updated_at": at,
            },
            index_elements=["playlist_id", "spotify_track_id", "user_id"],
        )
        if inserted:
            return True

        replaceable = []
        if valid_from is not None:
            replaceable.append(TrackReactionModel.updated_at < valid_from)
        if reaction == ReactionValue.THUMBS_UP:
            replaceable.append(
                and_(
                    TrackReactionModel.is_auto.is_(True),
                    TrackReactionModel.reaction == ReactionValue.THUMBS_DOWN,
                )
            )
        if not replaceable:
            return False

        stmt = (
            update(TrackReactionModel)
            .where(
                TrackReactionModel.playlist_id == playlist_id,
                TrackReactionModel.spotify_track_id == spotify_track_id,
                TrackReactionModel.user_id == user_id,
                or_(*replaceable),
            )
            .values(reaction=reaction, is_auto=True, updated_at=at)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    @with_db_retry()
    async def set_reaction(
        self, playlist_id: str, spotify_track_id: str, user_id: str, reaction: str
    ) -> None:
        """Explicit user reaction: upsert, last write wins, always manual."""
        dialect = self.session.get_bind().dialect.name
        insert_fn: Any = pg_insert if dialect == "postgresql" else sqlite_insert
        now = utc_now()
        stmt = insert_fn(TrackReactionModel).values(
            playlist_id=playlist_id,
            spotify_track_id=spotify_track_id,
            user_id=user_id,
            reaction=reaction,
            is_auto=False,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["playlist_id", "spotify_track_id", "user_id"],
            set_={"reaction": reaction, "is_auto": False, "updated_at": now},
        )
        await self.session.execute(stmt)


__all__ = [
    "ListenOutcome",
    "ListenRepository",
    "PlaybackStateStore",
    "PlaylistRepository",
    "ReactionRepository",
    "SharedTrackRepository",
    "UserRepository",
]
