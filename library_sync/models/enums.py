"""Closed enumerations used by the sync engine and its ledger."""

from enum import StrEnum


class EntityType(StrEnum):
    """Entity types synced from the catalog, in dependency order."""

    TRACKS = "tracks"
    ARTISTS = "artists"
    ALBUMS = "albums"
    PLAYLISTS = "playlists"


# Tracks create the artist/album stubs that the next two phases enrich.
SYNC_ORDER: tuple[EntityType, ...] = (
    EntityType.TRACKS,
    EntityType.ARTISTS,
    EntityType.ALBUMS,
    EntityType.PLAYLISTS,
)


class SyncPhase(StrEnum):
    INITIAL = "initial_sync"
    INCREMENTAL = "incremental_sync"


class SyncType(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(StrEnum):
    """Status of a sync run."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    RATE_LIMITED = "rate_limited"
