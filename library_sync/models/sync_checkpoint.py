"""SyncCheckpoint model to track resumable batch progress."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from library_sync.database import Base


class SyncCheckpoint(Base):
    """
    Durable progress record for one (entity type, phase) pair.

    ``last_offset`` is only advanced after the batch it covers has been
    committed, so a restart resumes from the last fully applied page.
    """

    __tablename__ = "sync_checkpoints"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    phase: Mapped[str] = mapped_column(String(30), nullable=False)

    # Progress
    last_offset: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Rate limit / error state
    rate_limit_hit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rate_limit_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rate_limit_remaining: Mapped[int | None] = mapped_column(Integer)
    last_error: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("entity_type", "phase", name="uq_checkpoint_scope"),)

    def __repr__(self) -> str:
        return f"<SyncCheckpoint {self.entity_type}/{self.phase}: {self.last_offset}>"
