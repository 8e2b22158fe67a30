"""Entity store: upsert-by-id persistence for library entities."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, distinct, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from library_sync.database import upsert_insert
from library_sync.errors import DataConflictError
from library_sync.models import (
    Album,
    Artist,
    EntityType,
    PlayHistory,
    Playlist,
    PlaylistTrack,
    Track,
    TrackAlbum,
    TrackArtist,
)
from library_sync.schemas.catalog import (
    CatalogAlbum,
    CatalogAlbumRef,
    CatalogArtist,
    CatalogPlaylist,
    CatalogRef,
    CatalogTrack,
    PlayedItem,
)
from library_sync.timeutils import ensure_utc, truncate_to_second, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PlaylistEntry:
    position: int
    track_id: str
    added_at: datetime | None
    added_by: str


class EntityStore:
    """
    Persistence for tracks, artists, albums, playlists and their relations.

    Upserts are keyed by the catalog id and only touch non-identity columns.
    Relations are additive: a row is never dropped because a later page does
    not mention it. Playlist membership is the exception; it is replaced as a
    whole once the full playlist has been fetched.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[None]:
        """Commit everything done inside the block, or nothing."""
        try:
            yield
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise DataConflictError(str(e.orig)) from e
        except BaseException:
            await self.db.rollback()
            raise

    async def _existing_ids(self, model, ids: list[str]) -> set[str]:
        if not ids:
            return set()
        result = await self.db.execute(select(model.id).where(model.id.in_(ids)))
        return set(result.scalars().all())

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    async def upsert_track(self, track: CatalogTrack, saved: bool) -> bool:
        """
        Upsert a track with stub artists/album and additive relations.

        Returns True if the track row was created.
        """
        created = not await self._existing_ids(Track, [track.id])
        now = utcnow()

        stmt = upsert_insert(self.db, Track).values(
            id=track.id,
            name=track.name,
            duration_ms=track.duration_ms,
            explicit=track.explicit,
            popularity=track.popularity,
            isrc=track.isrc,
            is_saved=saved,
            added_at=track.added_at if saved else None,
            first_synced_at=now,
            last_synced_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "name": stmt.excluded.name,
                "duration_ms": stmt.excluded.duration_ms,
                "explicit": stmt.excluded.explicit,
                "popularity": stmt.excluded.popularity,
                "isrc": func.coalesce(stmt.excluded.isrc, Track.isrc),
                # Seeing a track through a playlist never un-saves it
                "is_saved": or_(Track.is_saved, stmt.excluded.is_saved),
                "added_at": func.coalesce(stmt.excluded.added_at, Track.added_at),
                "last_synced_at": now,
            },
        )
        await self.db.execute(stmt)

        for position, artist in enumerate(track.artists):
            await self.ensure_artist_stub(artist)
            await self.db.execute(
                upsert_insert(self.db, TrackArtist)
                .values(track_id=track.id, artist_id=artist.id, position=position)
                .on_conflict_do_nothing(index_elements=["track_id", "artist_id"])
            )

        if track.album is not None:
            await self.ensure_album_stub(track.album)
            await self.db.execute(
                upsert_insert(self.db, TrackAlbum)
                .values(
                    track_id=track.id,
                    album_id=track.album.id,
                    disc_number=track.disc_number,
                    track_number=track.track_number,
                )
                .on_conflict_do_nothing(index_elements=["track_id", "album_id"])
            )

        return created

    async def saved_track_ids(self, ids: list[str]) -> set[str]:
        if not ids:
            return set()
        result = await self.db.execute(
            select(Track.id).where(Track.id.in_(ids), Track.is_saved.is_(True))
        )
        return set(result.scalars().all())

    # ------------------------------------------------------------------
    # Artists and albums
    # ------------------------------------------------------------------

    async def ensure_artist_stub(self, ref: CatalogRef) -> None:
        """Create an id+name artist if unknown; existing rows are left alone."""
        now = utcnow()
        await self.db.execute(
            upsert_insert(self.db, Artist)
            .values(id=ref.id, name=ref.name, genres=[], first_synced_at=now, last_synced_at=now)
            .on_conflict_do_nothing(index_elements=["id"])
        )

    async def ensure_album_stub(self, ref: CatalogAlbumRef) -> None:
        now = utcnow()
        await self.db.execute(
            upsert_insert(self.db, Album)
            .values(
                id=ref.id,
                name=ref.name,
                album_type=ref.album_type,
                release_date=ref.release_date,
                total_tracks=ref.total_tracks,
                label=None,
                first_synced_at=now,
                last_synced_at=now,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )

    async def upsert_artist(self, artist: CatalogArtist) -> bool:
        """Insert or enrich an artist in place. Returns True if created."""
        created = not await self._existing_ids(Artist, [artist.id])
        now = utcnow()
        values = {
            "name": artist.name,
            "genres": artist.genres,
            "popularity": artist.popularity,
            "followers": artist.followers,
            "image_url": artist.image_url,
            "last_synced_at": now,
        }
        stmt = upsert_insert(self.db, Artist).values(id=artist.id, first_synced_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
        await self.db.execute(stmt)
        return created

    async def upsert_album(self, album: CatalogAlbum) -> bool:
        created = not await self._existing_ids(Album, [album.id])
        now = utcnow()
        values = {
            "name": album.name,
            "album_type": album.album_type,
            "release_date": album.release_date,
            "total_tracks": album.total_tracks,
            # An empty string still marks the album as enriched
            "label": album.label or "",
            "image_url": album.image_url,
            "last_synced_at": now,
        }
        stmt = upsert_insert(self.db, Album).values(id=album.id, first_synced_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
        await self.db.execute(stmt)
        return created

    async def referenced_ids(self, entity_type: EntityType, offset: int, limit: int) -> list[str]:
        """Stable, id-ordered page of artist or album ids referenced by tracks."""
        column = self._reference_column(entity_type)
        result = await self.db.execute(
            select(column).distinct().order_by(column).offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    async def count_referenced(self, entity_type: EntityType) -> int:
        column = self._reference_column(entity_type)
        result = await self.db.execute(select(func.count(distinct(column))))
        return result.scalar() or 0

    async def stub_ids(self, entity_type: EntityType, ids: list[str]) -> set[str]:
        """Ids among ``ids`` that are missing or still stubs."""
        if not ids:
            return set()
        if entity_type == EntityType.ARTISTS:
            result = await self.db.execute(
                select(Artist)
                .where(Artist.id.in_(ids))
                .execution_options(populate_existing=True)
            )
            enriched = {artist.id for artist in result.scalars().all() if not artist.is_stub}
        elif entity_type == EntityType.ALBUMS:
            result = await self.db.execute(
                select(Album.id).where(Album.id.in_(ids), Album.label.is_not(None))
            )
            enriched = set(result.scalars().all())
        else:
            raise ValueError(f"{entity_type} has no stub records")
        return {entity_id for entity_id in ids if entity_id not in enriched}

    @staticmethod
    def _reference_column(entity_type: EntityType):
        if entity_type == EntityType.ARTISTS:
            return TrackArtist.artist_id
        if entity_type == EntityType.ALBUMS:
            return TrackAlbum.album_id
        raise ValueError(f"{entity_type} is not referenced by tracks")

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    async def upsert_playlist(self, playlist: CatalogPlaylist) -> tuple[bool, bool]:
        """
        Upsert playlist metadata.

        Returns (created, contents_changed); contents changed when the
        snapshot id differs from the stored one.
        """
        previous_snapshot = await self.playlist_snapshot(playlist.id)
        created = previous_snapshot is None
        changed = created or previous_snapshot != playlist.snapshot_id

        now = utcnow()
        values = {
            "name": playlist.name,
            "description": playlist.description,
            "owner_id": playlist.owner_id,
            "is_public": playlist.is_public,
            "snapshot_id": playlist.snapshot_id,
            "track_count": playlist.track_count,
            "last_synced_at": now,
        }
        stmt = upsert_insert(self.db, Playlist).values(
            id=playlist.id, first_synced_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
        await self.db.execute(stmt)
        return created, changed

    async def playlist_snapshot(self, playlist_id: str) -> str | None:
        """Stored snapshot id, or None for a playlist never synced."""
        result = await self.db.execute(
            select(Playlist.snapshot_id).where(Playlist.id == playlist_id)
        )
        return result.scalar_one_or_none()

    async def replace_playlist_tracks(self, playlist_id: str, entries: list[PlaylistEntry]) -> None:
        """Replace a playlist's membership with a freshly fetched, positioned list."""
        await self.db.execute(delete(PlaylistTrack).where(PlaylistTrack.playlist_id == playlist_id))
        if entries:
            await self.db.execute(
                upsert_insert(self.db, PlaylistTrack).values(
                    [
                        {
                            "playlist_id": playlist_id,
                            "track_id": entry.track_id,
                            "position": entry.position,
                            "added_at": entry.added_at,
                            "added_by": entry.added_by,
                        }
                        for entry in entries
                    ]
                )
            )

    async def playlist_positions(self, playlist_id: str) -> list[int]:
        result = await self.db.execute(
            select(PlaylistTrack.position)
            .where(PlaylistTrack.playlist_id == playlist_id)
            .order_by(PlaylistTrack.position)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Play history
    # ------------------------------------------------------------------

    async def latest_played_at(self) -> datetime | None:
        result = await self.db.execute(select(func.max(PlayHistory.played_at)))
        return ensure_utc(result.scalar())

    async def play_keys_between(self, start: datetime, end: datetime) -> set[tuple[str, datetime]]:
        """Dedup keys (track id, played_at to the second) already stored in a window."""
        result = await self.db.execute(
            select(PlayHistory.track_id, PlayHistory.played_at).where(
                PlayHistory.played_at >= truncate_to_second(start),
                PlayHistory.played_at <= truncate_to_second(end),
            )
        )
        return {(track_id, truncate_to_second(played_at)) for track_id, played_at in result.all()}

    async def add_play(self, item: PlayedItem) -> None:
        await self.db.execute(
            upsert_insert(self.db, PlayHistory)
            .values(
                track_id=item.track.id,
                played_at=truncate_to_second(item.played_at),
                context_type=item.context_type,
                context_uri=item.context_uri,
            )
            .on_conflict_do_nothing(index_elements=["track_id", "played_at"])
        )
