"""Pytest fixtures for library sync tests."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import library_sync.models  # noqa: F401
from library_sync.database import Base, get_db
from library_sync.models import EntityType
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
from library_sync.services.alerts import FailureAlerter
from library_sync.services.orchestrator import IncrementalSyncOrchestrator
from library_sync.services.rate_governor import RateGovernor, RateLimitTracker
from library_sync.services.sync_control import SyncController, get_controller

# Saved tracks are listed newest first; the oldest is this long ago
LIBRARY_START = datetime(2024, 1, 1, tzinfo=UTC)


def make_track(index: int, artist_ids: list[str] | None = None, album_id: str | None = None,
               added_at: datetime | None = None) -> CatalogTrack:
    """Build a catalog track with stub-able artist and album references."""
    artist_ids = artist_ids if artist_ids is not None else [f"ar{index % 7}"]
    album_id = album_id or f"al{index % 5}"
    return CatalogTrack(
        id=f"t{index:04d}",
        name=f"Track {index}",
        duration_ms=180_000 + index,
        popularity=index % 100,
        isrc=f"USRC{index:08d}",
        artists=[CatalogRef(id=artist_id, name=f"Artist {artist_id}") for artist_id in artist_ids],
        album=CatalogAlbumRef(id=album_id, name=f"Album {album_id}", total_tracks=12),
        track_number=index % 12 + 1,
        added_at=added_at,
    )


def make_library(count: int) -> list[CatalogTrack]:
    """Saved library of ``count`` tracks, newest first."""
    return [
        make_track(index, added_at=LIBRARY_START + timedelta(minutes=index))
        for index in reversed(range(count))
    ]


class FakeCatalog:
    """
    In-memory stand-in for CatalogClient.

    Every call is logged in ``calls``; ``fail(key, *errors)`` queues errors
    that the matching call raises in order before succeeding again.
    """

    def __init__(
        self,
        tracks: list[CatalogTrack] | None = None,
        playlists: list[CatalogPlaylist] | None = None,
        playlist_items: dict[str, list[CatalogPlaylistItem]] | None = None,
        artists: list[CatalogArtist] | None = None,
        albums: list[CatalogAlbum] | None = None,
        played: list[PlayedItem] | None = None,
    ):
        self.tracks = tracks or []
        self.playlists = playlists or []
        self.playlist_items = playlist_items or {}
        self.artists = {artist.id: artist for artist in artists or []}
        self.albums = {album.id: album for album in albums or []}
        self.played = played or []
        self.calls: list[tuple] = []
        self._errors: dict[tuple, list[Exception]] = {}

    def fail(self, key: tuple, *errors: Exception) -> None:
        self._errors.setdefault(key, []).extend(errors)

    def _record(self, key: tuple) -> None:
        self.calls.append(key)
        queued = self._errors.get(key)
        if queued:
            raise queued.pop(0)

    def calls_for(self, kind: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == kind]

    async def fetch_page(
        self, entity_type: EntityType, offset: int, limit: int, since: datetime | None = None
    ) -> CatalogPage:
        self._record(("page", entity_type, offset))
        source: list[Any] = self.tracks if entity_type == EntityType.TRACKS else self.playlists
        items = source[offset : offset + limit]
        reached_older = False
        if since is not None:
            newer = [item for item in items if item.added_at is None or item.added_at > since]
            reached_older = len(newer) < len(items)
            items = newer
        has_more = offset + limit < len(source) and not reached_older
        return CatalogPage(items=items, has_more=has_more, total=len(source))

    async def fetch_details(self, entity_type: EntityType, ids: list[str]) -> list[Any]:
        self._record(("details", entity_type, tuple(ids)))
        source = self.artists if entity_type == EntityType.ARTISTS else self.albums
        return [source[entity_id] for entity_id in ids if entity_id in source]

    async def fetch_playlist_items(self, playlist_id: str, offset: int, limit: int) -> CatalogPage:
        self._record(("playlist_items", playlist_id, offset))
        items = self.playlist_items.get(playlist_id, [])
        return CatalogPage(
            items=items[offset : offset + limit],
            has_more=offset + limit < len(items),
            total=len(items),
        )

    async def fetch_recently_played(
        self, after: datetime | None = None, limit: int = 50
    ) -> list[PlayedItem]:
        self._record(("recently_played", after))
        return [item for item in self.played if after is None or item.played_at > after][:limit]


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async engine on a temporary SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'library_sync.db'}",
        poolclass=NullPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def governor() -> RateGovernor:
    """Governor with a generous quota and millisecond backoff steps."""
    return RateGovernor(
        max_requests=1000,
        window_seconds=60,
        backoff_step_seconds=0.01,
        backoff_max_seconds=0.03,
    )


@pytest.fixture
def tracker(session_factory) -> RateLimitTracker:
    return RateLimitTracker(session_factory, key="test_api")


@pytest.fixture
def alerter() -> FailureAlerter:
    return FailureAlerter(webhook_url=None, threshold=3)


@pytest.fixture
def catalog() -> FakeCatalog:
    """Small library: 12 saved tracks, enrichable artists/albums, one playlist."""
    tracks = make_library(12)
    playlist_items = [
        CatalogPlaylistItem(track=tracks[0], added_at=LIBRARY_START, added_by="me"),
        CatalogPlaylistItem(track=make_track(900), added_at=LIBRARY_START, added_by="me"),
        CatalogPlaylistItem(track=None, added_by="me"),
        CatalogPlaylistItem(track=tracks[3], added_at=LIBRARY_START, added_by="friend"),
    ]
    return FakeCatalog(
        tracks=tracks,
        playlists=[
            CatalogPlaylist(id="pl1", name="Mix", owner_id="me", snapshot_id="s1", track_count=4)
        ],
        playlist_items={"pl1": playlist_items},
        artists=[
            CatalogArtist(id=f"ar{i}", name=f"Artist ar{i}", genres=["rock"], followers=10 * i)
            for i in range(7)
        ],
        albums=[
            CatalogAlbum(id=f"al{i}", name=f"Album al{i}", label=f"Label {i}", total_tracks=12)
            for i in range(5)
        ],
    )


@pytest.fixture
def make_orchestrator(db_session, governor, tracker, alerter):
    """Factory building an orchestrator over a fake catalog."""

    def _make(catalog: FakeCatalog, batch_sizes: dict[EntityType, int] | None = None,
              max_batch_retries: int = 3) -> IncrementalSyncOrchestrator:
        return IncrementalSyncOrchestrator(
            db_session,
            catalog,
            governor,
            tracker,
            alerter=alerter,
            batch_sizes=batch_sizes or {entity_type: 5 for entity_type in EntityType},
            max_batch_retries=max_batch_retries,
        )

    return _make


@pytest.fixture
def controller(session_factory, catalog, governor, tracker, alerter) -> SyncController:
    return SyncController(
        session_factory=session_factory,
        client_factory=lambda: catalog,
        governor=governor,
        tracker=tracker,
        alerter=alerter,
        batch_sizes={entity_type: 5 for entity_type in EntityType},
    )


@pytest_asyncio.fixture
async def client(
    session_factory, controller
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with database and controller overrides."""
    from library_sync.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_controller] = lambda: controller
    app.state.limiter.enabled = False

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    await controller.wait_idle()
    app.dependency_overrides.clear()
    app.state.limiter.enabled = True
