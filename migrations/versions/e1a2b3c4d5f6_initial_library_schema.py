"""Initial schema for the library sync service.

Revision ID: e1a2b3c4d5f6
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "e1a2b3c4d5f6"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _synced_at_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "first_synced_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "last_synced_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "sync_checkpoints",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=False),
        sa.Column("phase", sa.String(length=30), nullable=False),
        sa.Column("last_offset", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("estimated_total", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("items_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_complete", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rate_limit_hit_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rate_limit_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rate_limit_remaining", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("entity_type", "phase", name="uq_checkpoint_scope"),
        if_not_exists=True,
    )

    op.create_table(
        "rate_limit_state",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=50), nullable=False, unique=True),
        sa.Column("request_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_rate_limited", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_request_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_rate_limit_at", sa.DateTime(timezone=True), nullable=True),
        if_not_exists=True,
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("sync_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rate_limit_reset_at", sa.DateTime(timezone=True), nullable=True),
        *[
            sa.Column(f"{entity}_{counter}", sa.Integer(), server_default=sa.text("0"), nullable=False)
            for entity in ("tracks", "artists", "albums", "playlists")
            for counter in ("added", "updated")
        ],
        sa.Column(
            "missing_playlist_track_ids",
            sa.JSON(),
            server_default=sa.text("'[]'"),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        if_not_exists=True,
    )
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"], if_not_exists=True)
    op.create_index(
        "idx_sync_runs_started",
        "sync_runs",
        [sa.text("started_at DESC")],
        if_not_exists=True,
    )

    op.create_table(
        "tracks",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("duration_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("explicit", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("popularity", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("isrc", sa.String(length=20), nullable=True),
        sa.Column("is_saved", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=True),
        *_synced_at_columns(),
        if_not_exists=True,
    )
    op.create_index("ix_tracks_is_saved", "tracks", ["is_saved"], if_not_exists=True)

    op.create_table(
        "artists",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("genres", sa.JSON(), server_default=sa.text("'[]'"), nullable=False),
        sa.Column("popularity", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("followers", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("image_url", sa.String(length=500), nullable=True),
        *_synced_at_columns(),
        if_not_exists=True,
    )

    op.create_table(
        "albums",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("album_type", sa.String(length=20), server_default="album", nullable=False),
        sa.Column("release_date", sa.Date(), nullable=True),
        sa.Column("total_tracks", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("image_url", sa.String(length=500), nullable=True),
        *_synced_at_columns(),
        if_not_exists=True,
    )

    op.create_table(
        "track_artists",
        sa.Column(
            "track_id",
            sa.String(length=64),
            sa.ForeignKey("tracks.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "artist_id",
            sa.String(length=64),
            sa.ForeignKey("artists.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("position", sa.Integer(), server_default=sa.text("0"), nullable=False),
        if_not_exists=True,
    )
    op.create_index(
        "ix_track_artists_artist_id", "track_artists", ["artist_id"], if_not_exists=True
    )

    op.create_table(
        "track_albums",
        sa.Column(
            "track_id",
            sa.String(length=64),
            sa.ForeignKey("tracks.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "album_id",
            sa.String(length=64),
            sa.ForeignKey("albums.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("disc_number", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("track_number", sa.Integer(), server_default=sa.text("0"), nullable=False),
        if_not_exists=True,
    )
    op.create_index("ix_track_albums_album_id", "track_albums", ["album_id"], if_not_exists=True)

    op.create_table(
        "playlists",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.String(length=64), server_default="", nullable=False),
        sa.Column("is_public", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("snapshot_id", sa.String(length=128), server_default="", nullable=False),
        sa.Column("track_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_synced_at_columns(),
        if_not_exists=True,
    )

    op.create_table(
        "playlist_tracks",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "playlist_id",
            sa.String(length=64),
            sa.ForeignKey("playlists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "track_id",
            sa.String(length=64),
            sa.ForeignKey("tracks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("added_by", sa.String(length=64), server_default="", nullable=False),
        sa.UniqueConstraint("playlist_id", "position", name="uq_playlist_position"),
        if_not_exists=True,
    )
    op.create_index(
        "ix_playlist_tracks_playlist_id", "playlist_tracks", ["playlist_id"], if_not_exists=True
    )
    op.create_index(
        "ix_playlist_tracks_track_id", "playlist_tracks", ["track_id"], if_not_exists=True
    )

    op.create_table(
        "play_history",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "track_id",
            sa.String(length=64),
            sa.ForeignKey("tracks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("played_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("context_type", sa.String(length=50), nullable=True),
        sa.Column("context_uri", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint("track_id", "played_at", name="uq_play_history_event"),
        if_not_exists=True,
    )
    op.create_index("ix_play_history_track_id", "play_history", ["track_id"], if_not_exists=True)
    op.create_index(
        "ix_play_history_played_at", "play_history", ["played_at"], if_not_exists=True
    )


def downgrade() -> None:
    op.drop_table("play_history", if_exists=True)
    op.drop_table("playlist_tracks", if_exists=True)
    op.drop_table("playlists", if_exists=True)
    op.drop_table("track_albums", if_exists=True)
    op.drop_table("track_artists", if_exists=True)
    op.drop_table("albums", if_exists=True)
    op.drop_table("artists", if_exists=True)
    op.drop_table("tracks", if_exists=True)
    op.drop_table("sync_runs", if_exists=True)
    op.drop_table("rate_limit_state", if_exists=True)
    op.drop_table("sync_checkpoints", if_exists=True)
