"""SyncRun model: the ledger of sync invocations."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from library_sync.database import Base


class SyncRun(Base):
    """
    Audit row for one top-level sync invocation.

    Created when a run starts, mutated only by the orchestrator, never deleted.
    """

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rate_limit_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Per-entity counters
    tracks_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tracks_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    artists_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    artists_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    albums_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    albums_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    playlists_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    playlists_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Track ids found in playlists but not in the saved library
    missing_playlist_track_ids: Mapped[list[str]] = mapped_column(
        JSON, default=list, nullable=False
    )

    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (Index("idx_sync_runs_started", started_at.desc()),)

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.sync_type}: {self.status}>"
