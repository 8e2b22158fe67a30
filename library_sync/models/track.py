"""Track model and its additive artist/album relations."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from library_sync.database import Base


class Track(Base):
    """
    Track from the catalog.

    ``is_saved`` is false for tracks only seen through playlists or play
    history; ``added_at`` is when the user saved it to their library.
    """

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    explicit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    popularity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    isrc: Mapped[str | None] = mapped_column(String(20))

    is_saved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    added_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    first_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Track {self.id}: {self.name}>"


class TrackArtist(Base):
    __tablename__ = "track_artists"

    track_id: Mapped[str] = mapped_column(
        ForeignKey("tracks.id", ondelete="CASCADE"), primary_key=True
    )
    artist_id: Mapped[str] = mapped_column(
        ForeignKey("artists.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class TrackAlbum(Base):
    __tablename__ = "track_albums"

    track_id: Mapped[str] = mapped_column(
        ForeignKey("tracks.id", ondelete="CASCADE"), primary_key=True
    )
    album_id: Mapped[str] = mapped_column(
        ForeignKey("albums.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    disc_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    track_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
