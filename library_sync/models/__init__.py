"""Database models."""

from library_sync.models.album import Album
from library_sync.models.artist import Artist
from library_sync.models.enums import SYNC_ORDER, EntityType, SyncPhase, SyncStatus, SyncType
from library_sync.models.play_history import PlayHistory
from library_sync.models.playlist import Playlist, PlaylistTrack
from library_sync.models.rate_limit_state import RateLimitState
from library_sync.models.sync_checkpoint import SyncCheckpoint
from library_sync.models.sync_run import SyncRun
from library_sync.models.track import Track, TrackAlbum, TrackArtist

__all__ = [
    "SYNC_ORDER",
    "Album",
    "Artist",
    "EntityType",
    "PlayHistory",
    "Playlist",
    "PlaylistTrack",
    "RateLimitState",
    "SyncCheckpoint",
    "SyncPhase",
    "SyncRun",
    "SyncStatus",
    "SyncType",
    "Track",
    "TrackAlbum",
    "TrackArtist",
]
