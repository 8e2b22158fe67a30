"""Album model."""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from library_sync.database import Base


class Album(Base):
    """
    Album from the catalog.

    Stub albums created from tracks have no ``label`` until enriched.
    """

    __tablename__ = "albums"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    album_type: Mapped[str] = mapped_column(String(20), default="album", nullable=False)
    release_date: Mapped[date | None] = mapped_column(Date)
    total_tracks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    label: Mapped[str | None] = mapped_column(String(255))
    image_url: Mapped[str | None] = mapped_column(String(500))

    first_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def is_stub(self) -> bool:
        return self.label is None

    def __repr__(self) -> str:
        return f"<Album {self.id}: {self.name}>"
