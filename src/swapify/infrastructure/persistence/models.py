"""SQLAlchemy ORM models for Swapify."""

import uuid
from datetime import UTC, datetime

import sqlalchemy as sa
from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never use datetime.now() without
# timezone - that's "naive" datetime and comparisons with aware datetimes blow up.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! Datetimes come back "naive".
# ALWAYS run DB datetimes through this before comparing with datetime.now(UTC).
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Yo, UserModel holds everything the poll loop needs per user: the opaque access token
# (refresh happens outside this service), the poll cursor and the last playback snapshot.
# cursor + snapshot are ONLY touched through PlaybackStateStore, which bumps
# playback_state_version on every write (optimistic concurrency).
class UserModel(Base):
    """A Spotify-linked Swapify user."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    spotify_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_invalid_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    auto_negative_reactions: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, server_default="1", default=True
    )
    notify_push: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, server_default="1", default=True
    )
    notify_email: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, server_default="0", default=False
    )
    last_poll_cursor: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    last_playback_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    playback_state_version: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0", default=0
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )


class PlaylistModel(Base):
    """A shared playlist (Swaplist) mirrored to one Spotify playlist."""

    __tablename__ = "playlists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    spotify_playlist_id: Mapped[str] = mapped_column(String(255), nullable=False)
    archive_playlist_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Removal policy - always defaulted so the reconciler never sees a hole
    max_tracks_per_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_track_age_days: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="7", default=7
    )
    removal_delay: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="immediate", default="immediate"
    )
    archive_threshold: Mapped[str] = mapped_column(
        String(30), nullable=False, server_default="none", default="none"
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )

    members: Mapped[list["PlaylistMemberModel"]] = relationship(
        "PlaylistMemberModel",
        back_populates="playlist",
        cascade="all, delete-orphan",
    )


class PlaylistMemberModel(Base):
    """Membership of a user in a shared playlist."""

    __tablename__ = "playlist_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    playlist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    joined_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )

    playlist: Mapped["PlaylistModel"] = relationship(
        "PlaylistModel", back_populates="members"
    )

    __table_args__ = (
        sa.UniqueConstraint("playlist_id", "user_id", name="uq_playlist_member"),
        Index("ix_playlist_members_user", "user_id"),
    )


# Listen up, PlaylistTrackModel is one ADD EVENT. status is the explicit lifecycle
# (active / pending_removal / removed / archived); the timestamps are facts about it.
# The partial unique index allows exactly ONE live row (removed_at IS NULL) per
# (playlist, uri) - re-adding a removed track creates a fresh row.
class PlaylistTrackModel(Base):
    """A shared track (one add event into a shared playlist)."""

    __tablename__ = "playlist_tracks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    playlist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False
    )
    spotify_track_uri: Mapped[str] = mapped_column(String(255), nullable=False)
    spotify_track_id: Mapped[str] = mapped_column(String(255), nullable=False)
    track_name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    artist_name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    album_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    added_by_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    added_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="active", default="active"
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    removal_due_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    removed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    remote_removal_pending: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, server_default="0", default=False
    )
    remote_removal_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0", default=0
    )

    __table_args__ = (
        Index(
            "uq_playlist_tracks_active_uri",
            "playlist_id",
            "spotify_track_uri",
            unique=True,
            sqlite_where=sa.text("removed_at IS NULL"),
            postgresql_where=sa.text("removed_at IS NULL"),
        ),
        Index("ix_playlist_tracks_playlist_status", "playlist_id", "status"),
        Index("ix_playlist_tracks_track_id", "spotify_track_id"),
    )


class TrackListenModel(Base):
    """A member's listen (or skip) of a shared track. Never un-recorded."""

    __tablename__ = "track_listens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    playlist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False
    )
    spotify_track_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    listened_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    listen_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    was_skipped: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, server_default="0", default=False
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "playlist_id", "spotify_track_id", "user_id", name="uq_track_listen"
        ),
    )


class TrackReactionModel(Base):
    """A member's reaction to a shared track. Last write wins."""

    __tablename__ = "track_reactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    playlist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False
    )
    spotify_track_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    reaction: Mapped[str] = mapped_column(String(50), nullable=False)
    is_auto: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, server_default="0", default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "playlist_id", "spotify_track_id", "user_id", name="uq_track_reaction"
        ),
    )
