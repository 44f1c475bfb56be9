"""initial reconciliation schema

Revision ID: aa10001bbc01
Revises:
Create Date: 2026-10-17 09:00:00.000000

Hey future me - this is the whole engine schema in one go:

- users: opaque access token, token_invalid_at flag, poll cursor + last playback
  snapshot guarded by playback_state_version (optimistic concurrency)
- playlists: removal policy columns, all server-defaulted so old rows never have holes
- playlist_members: unique (playlist_id, user_id)
- playlist_tracks: one row per add event, explicit status column, remote removal
  bookkeeping. uq_playlist_tracks_active_uri is a PARTIAL unique index
  (WHERE removed_at IS NULL): one live row per (playlist, uri), re-adds get new rows
- track_listens / track_reactions: unique (playlist_id, spotify_track_id, user_id),
  the conflict targets for INSERT .. ON CONFLICT DO NOTHING
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic
revision: str = "aa10001bbc01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all engine tables and indexes."""
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("spotify_id", sa.String(255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("token_invalid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_negative_reactions", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("notify_push", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("notify_email", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("last_poll_cursor", sa.BigInteger(), nullable=True),
        sa.Column("last_playback_json", sa.Text(), nullable=True),
        sa.Column("playback_state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "playlists",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "owner_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("spotify_playlist_id", sa.String(255), nullable=False),
        sa.Column("archive_playlist_id", sa.String(255), nullable=True),
        sa.Column("max_tracks_per_user", sa.Integer(), nullable=True),
        sa.Column("max_track_age_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("removal_delay", sa.String(20), nullable=False, server_default="immediate"),
        sa.Column("archive_threshold", sa.String(30), nullable=False, server_default="none"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "playlist_members",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "playlist_id",
            sa.String(36),
            sa.ForeignKey("playlists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("playlist_id", "user_id", name="uq_playlist_member"),
    )
    op.create_index("ix_playlist_members_user", "playlist_members", ["user_id"])

    op.create_table(
        "playlist_tracks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "playlist_id",
            sa.String(36),
            sa.ForeignKey("playlists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("spotify_track_uri", sa.String(255), nullable=False),
        sa.Column("spotify_track_id", sa.String(255), nullable=False),
        sa.Column("track_name", sa.String(512), nullable=False, server_default=""),
        sa.Column("artist_name", sa.String(512), nullable=False, server_default=""),
        sa.Column("album_name", sa.String(512), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column(
            "added_by_user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("removal_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remote_removal_pending", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("remote_removal_attempts", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index(
        "uq_playlist_tracks_active_uri",
        "playlist_tracks",
        ["playlist_id", "spotify_track_uri"],
        unique=True,
        sqlite_where=sa.text("removed_at IS NULL"),
        postgresql_where=sa.text("removed_at IS NULL"),
    )
    op.create_index(
        "ix_playlist_tracks_playlist_status", "playlist_tracks", ["playlist_id", "status"]
    )
    op.create_index("ix_playlist_tracks_track_id", "playlist_tracks", ["spotify_track_id"])

    op.create_table(
        "track_listens",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "playlist_id",
            sa.String(36),
            sa.ForeignKey("playlists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("spotify_track_id", sa.String(255), nullable=False),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("listened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("listen_duration_ms", sa.Integer(), nullable=True),
        sa.Column("was_skipped", sa.Boolean(), nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "playlist_id", "spotify_track_id", "user_id", name="uq_track_listen"
        ),
    )

    op.create_table(
        "track_reactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "playlist_id",
            sa.String(36),
            sa.ForeignKey("playlists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("spotify_track_id", sa.String(255), nullable=False),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("reaction", sa.String(50), nullable=False),
        sa.Column("is_auto", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "playlist_id", "spotify_track_id", "user_id", name="uq_track_reaction"
        ),
    )


def downgrade() -> None:
    """Drop everything (reverse order for foreign keys)."""
    op.drop_table("track_reactions")
    op.drop_table("track_listens")
    op.drop_index("ix_playlist_tracks_track_id", table_name="playlist_tracks")
    op.drop_index("ix_playlist_tracks_playlist_status", table_name="playlist_tracks")
    op.drop_index("uq_playlist_tracks_active_uri", table_name="playlist_tracks")
    op.drop_table("playlist_tracks")
    op.drop_index("ix_playlist_members_user", table_name="playlist_members")
    op.drop_table("playlist_members")
    op.drop_table("playlists")
    op.drop_table("users")
