"""PlayHistory model for the append-only listening log."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from library_sync.database import Base


class PlayHistory(Base):
    """Single play event reported by the catalog's recently-played feed."""

    __tablename__ = "play_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    track_id: Mapped[str] = mapped_column(
        ForeignKey("tracks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Stored truncated to the second; together with track_id it is the dedup key
    played_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    context_type: Mapped[str | None] = mapped_column(String(50))
    context_uri: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (UniqueConstraint("track_id", "played_at", name="uq_play_history_event"),)

    def __repr__(self) -> str:
        return f"<PlayHistory {self.track_id} @ {self.played_at}>"
