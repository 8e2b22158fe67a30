"""Pydantic schemas for catalog items and API request/response validation."""

from library_sync.schemas.catalog import (
    CatalogAlbum,
    CatalogAlbumRef,
    CatalogArtist,
    CatalogPage,
    CatalogPlaylist,
    CatalogPlaylistItem,
    CatalogRef,
    CatalogTrack,
    PlayedItem,
)
from library_sync.schemas.sync import (
    PhaseProgress,
    SyncHistoryResponse,
    SyncProgress,
    SyncRunOut,
    SyncStarted,
    SyncStatusSummary,
)

__all__ = [
    "CatalogAlbum",
    "CatalogAlbumRef",
    "CatalogArtist",
    "CatalogPage",
    "CatalogPlaylist",
    "CatalogPlaylistItem",
    "CatalogRef",
    "CatalogTrack",
    "PhaseProgress",
    "PlayedItem",
    "SyncHistoryResponse",
    "SyncProgress",
    "SyncRunOut",
    "SyncStarted",
    "SyncStatusSummary",
]
