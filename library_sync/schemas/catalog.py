"""Pydantic schemas for items returned by the catalog API."""

from datetime import date, datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

ItemT = TypeVar("ItemT")


class CatalogRef(BaseModel):
    """Minimal reference to an artist or album embedded in a track."""

    id: str
    name: str = ""


class CatalogAlbumRef(CatalogRef):
    album_type: str = "album"
    release_date: date | None = None
    total_tracks: int = 0


class CatalogTrack(BaseModel):
    """Track as listed by the catalog (saved library, playlist or history)."""

    id: str
    name: str
    duration_ms: int = 0
    explicit: bool = False
    popularity: int = 0
    isrc: str | None = None
    artists: list[CatalogRef] = Field(default_factory=list)
    album: CatalogAlbumRef | None = None
    disc_number: int = 1
    track_number: int = 0
    # Only set for items from the saved library
    added_at: datetime | None = None


class CatalogArtist(BaseModel):
    """Full artist details."""

    id: str
    name: str
    genres: list[str] = Field(default_factory=list)
    popularity: int = 0
    followers: int = 0
    image_url: str | None = None


class CatalogAlbum(BaseModel):
    """Full album details."""

    id: str
    name: str
    album_type: str = "album"
    release_date: date | None = None
    total_tracks: int = 0
    label: str | None = None
    image_url: str | None = None


class CatalogPlaylist(BaseModel):
    id: str
    name: str
    description: str | None = None
    owner_id: str = ""
    is_public: bool = False
    snapshot_id: str = ""
    track_count: int = 0


class CatalogPlaylistItem(BaseModel):
    """Entry of a playlist; ``track`` is None for local files and podcast episodes."""

    track: CatalogTrack | None = None
    added_at: datetime | None = None
    added_by: str = ""


class PlayedItem(BaseModel):
    track: CatalogTrack
    played_at: datetime
    context_type: str | None = None
    context_uri: str | None = None


class CatalogPage(BaseModel, Generic[ItemT]):
    """
    One page of a paginated listing.

    ``has_more`` reflects the catalog's own next-page signal; ``total`` is
    the catalog's item count when it reports one. ``skipped`` counts raw
    entries that were consumed from the page but could not be parsed.
    """

    items: list[ItemT] = Field(default_factory=list)
    has_more: bool = False
    total: int | None = None
    skipped: int = 0
