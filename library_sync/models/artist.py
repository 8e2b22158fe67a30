"""Artist model."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from library_sync.database import Base


class Artist(Base):
    """
    Artist from the catalog.

    Tracks create stub artists (id and name only, empty ``genres``); the
    artists phase enriches them in place.
    """

    __tablename__ = "artists"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    popularity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    followers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    image_url: Mapped[str | None] = mapped_column(String(500))

    first_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def is_stub(self) -> bool:
        return not self.genres

    def __repr__(self) -> str:
        return f"<Artist {self.id}: {self.name}>"
