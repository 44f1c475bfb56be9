"""Shared fixtures for the unit tests.

Hey future me - the engine tests run against a REAL SQLite file per test (tmp_path),
because half the guarantees we care about (no double removal, idempotent inserts,
versioned playback state) live in the SQL itself. Spotify is an in-memory fake with
the same method surface as ISpotifyClient, so playlist drift can be simulated by
just mutating FakeSpotify.playlists.
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from swapify.application.services.notification_service import NotificationService
from swapify.config.settings import DatabaseSettings, PollSettings, Settings
from swapify.domain.ports import ISpotifyClient, Notification, NotificationType
from swapify.infrastructure.persistence import Database, DatabaseCredentialProvider
from swapify.infrastructure.persistence.models import (
    PlaylistMemberModel,
    PlaylistModel,
    PlaylistTrackModel,
    TrackListenModel,
    TrackReactionModel,
    UserModel,
)

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


def _track_item(track_id: str, duration_ms: int = 200_000) -> dict[str, Any]:
    """Spotify track object as the Web API returns it."""
    return {
        "id": track_id,
        "uri": f"spotify:track:{track_id}",
        "type": "track",
        "name": f"Song {track_id}",
        "duration_ms": duration_ms,
        "artists": [{"name": "Artist"}],
        "album": {"name": "Album"},
    }


def _playback_payload(
    track_id: str, progress_ms: int, duration_ms: int = 200_000, is_playing: bool = True
) -> dict[str, Any]:
    """GET /me/player response body."""
    return {
        "is_playing": is_playing,
        "progress_ms": progress_ms,
        "currently_playing_type": "track",
        "item": _track_item(track_id, duration_ms),
    }


def _history_item(track_id: str, played_at: datetime, duration_ms: int = 200_000) -> dict[str, Any]:
    """One entry of GET /me/player/recently-played."""
    return {
        "track": _track_item(track_id, duration_ms),
        "played_at": played_at.isoformat().replace("+00:00", "Z"),
    }


class FakeSpotify(ISpotifyClient):
    """In-memory Spotify. Set `errors[method_name]` to make a method raise."""

    def __init__(self) -> None:
        self.playback: dict[str, dict[str, Any] | None] = {}
        self.recent: dict[str, list[dict[str, Any]]] = {}
        self.playlists: dict[str, list[dict[str, Any]]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.created: list[str] = []

    def _call(self, method: str) -> None:
        self.calls.append(method)
        error = self.errors.get(method)
        if error is not None:
            raise error

    def add_remote(self, playlist_id: str, track_id: str, added_by: str | None = None) -> None:
        self.playlists.setdefault(playlist_id, []).append(
            {"added_by": {"id": added_by} if added_by else None, "track": _track_item(track_id)}
        )

    def remote_uris(self, playlist_id: str) -> list[str]:
        return [item["track"]["uri"] for item in self.playlists.get(playlist_id, [])]

    def play(
        self,
        token: str,
        track_id: str,
        progress_ms: int,
        duration_ms: int = 200_000,
        is_playing: bool = True,
    ) -> None:
        self.playback[token] = _playback_payload(track_id, progress_ms, duration_ms, is_playing)

    def stop(self, token: str) -> None:
        self.playback[token] = None

    def played(self, token: str, track_id: str, played_at: datetime) -> None:
        self.recent.setdefault(token, []).insert(0, _history_item(track_id, played_at))

    async def get_playback_state(self, access_token: str) -> dict[str, Any] | None:
        self._call("get_playback_state")
        return self.playback.get(access_token)

    async def get_recently_played(
        self, access_token: str, after_ms: int | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        self._call("get_recently_played")
        return list(self.recent.get(access_token, []))

    async def get_playlist_items(
        self, access_token: str, playlist_id: str
    ) -> list[dict[str, Any]]:
        self._call("get_playlist_items")
        return list(self.playlists.get(playlist_id, []))

    async def add_items_to_playlist(
        self,
        access_token: str,
        playlist_id: str,
        uris: list[str],
        position: int | None = None,
    ) -> None:
        self._call("add_items_to_playlist")
        for uri in uris:
            self.add_remote(playlist_id, uri.rsplit(":", 1)[-1])

    async def remove_items_from_playlist(
        self, access_token: str, playlist_id: str, uris: list[str]
    ) -> None:
        self._call("remove_items_from_playlist")
        self.playlists[playlist_id] = [
            item
            for item in self.playlists.get(playlist_id, [])
            if item["track"]["uri"] not in uris
        ]

    async def reorder_playlist_tracks(
        self,
        access_token: str,
        playlist_id: str,
        range_start: int,
        insert_before: int,
        range_length: int = 1,
    ) -> None:
        self._call("reorder_playlist_tracks")

    async def create_playlist(
        self, access_token: str, name: str, description: str = "", public: bool = False
    ) -> dict[str, Any]:
        self._call("create_playlist")
        playlist_id = f"created-{len(self.created) + 1}"
        self.created.append(name)
        self.playlists[playlist_id] = []
        return {"id": playlist_id, "name": name}


class Seeder:
    """Insert rows directly through the ORM models."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def user(
        self,
        spotify_id: str,
        token: str | None = "auto",
        auto_negative_reactions: bool = True,
    ) -> str:
        """token="auto" gives the user a working token, None leaves them without one."""
        async with self.database.session_scope() as session:
            user = UserModel(
                spotify_id=spotify_id,
                display_name=spotify_id.title(),
                access_token=f"token-{spotify_id}" if token == "auto" else token,
                auto_negative_reactions=auto_negative_reactions,
            )
            session.add(user)
            await session.flush()
            return user.id

    async def playlist(
        self,
        owner_id: str,
        member_ids: list[str] = (),  # type: ignore[assignment]
        name: str = "Friday Mix",
        spotify_playlist_id: str = "sp-friday",
        **policy: Any,
    ) -> str:
        async with self.database.session_scope() as session:
            playlist = PlaylistModel(
                name=name,
                owner_id=owner_id,
                spotify_playlist_id=spotify_playlist_id,
                **policy,
            )
            session.add(playlist)
            await session.flush()
            for user_id in dict.fromkeys([owner_id, *member_ids]):
                session.add(PlaylistMemberModel(playlist_id=playlist.id, user_id=user_id))
            return playlist.id

    async def track(
        self,
        playlist_id: str,
        added_by: str,
        track_id: str,
        added_at: datetime | None = None,
        **extra: Any,
    ) -> str:
        async with self.database.session_scope() as session:
            track = PlaylistTrackModel(
                playlist_id=playlist_id,
                spotify_track_uri=f"spotify:track:{track_id}",
                spotify_track_id=track_id,
                track_name=f"Song {track_id}",
                artist_name="Artist",
                added_by_user_id=added_by,
                added_at=added_at or NOW - timedelta(hours=1),
                **extra,
            )
            session.add(track)
            await session.flush()
            return track.id

    async def listen(
        self,
        playlist_id: str,
        track_id: str,
        user_id: str,
        was_skipped: bool = False,
        at: datetime | None = None,
    ) -> None:
        async with self.database.session_scope() as session:
            session.add(
                TrackListenModel(
                    playlist_id=playlist_id,
                    spotify_track_id=track_id,
                    user_id=user_id,
                    listened_at=at or NOW - timedelta(minutes=5),
                    was_skipped=was_skipped,
                )
            )

    async def reaction(
        self, playlist_id: str, track_id: str, user_id: str, reaction: str, is_auto: bool = False
    ) -> None:
        async with self.database.session_scope() as session:
            session.add(
                TrackReactionModel(
                    playlist_id=playlist_id,
                    spotify_track_id=track_id,
                    user_id=user_id,
                    reaction=reaction,
                    is_auto=is_auto,
                    created_at=NOW - timedelta(minutes=5),
                    updated_at=NOW - timedelta(minutes=5),
                )
            )

    async def get_track(self, track_row_id: str) -> PlaylistTrackModel:
        async with self.database.session_scope() as session:
            track = await session.get(PlaylistTrackModel, track_row_id)
            assert track is not None
            return track

    async def get_user(self, user_id: str) -> UserModel:
        async with self.database.session_scope() as session:
            user = await session.get(UserModel, user_id)
            assert user is not None
            return user


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    return Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'swapify-test.db'}"),
        poll=PollSettings(interval_seconds=30, audit_every_n_cycles=1, secret="s3cret"),
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    db = Database(settings)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def seed(database: Database) -> Seeder:
    return Seeder(database)


@pytest.fixture
def spotify() -> FakeSpotify:
    return FakeSpotify()


@pytest.fixture
def credentials(database: Database) -> DatabaseCredentialProvider:
    return DatabaseCredentialProvider(database)


class RecordingNotifications(NotificationService):
    """Never started; remembers every notification that was enqueued."""

    def __init__(self) -> None:
        super().__init__([], app_url="https://swapify.test")
        self.sent: list[Notification] = []

    def notify(self, user_ids: list[str], title: str, body: str, **kwargs: Any) -> bool:
        queued = super().notify(user_ids, title, body, **kwargs)
        if queued:
            self.sent.append(self._queue.get_nowait())
            self._queue.task_done()
        return queued

    def of_type(self, notification_type: NotificationType) -> list[Notification]:
        return [n for n in self.sent if n.type == notification_type]


class Clock:
    """Settable UTC clock for services that take `clock=`."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture
def clock() -> Clock:
    return Clock()
