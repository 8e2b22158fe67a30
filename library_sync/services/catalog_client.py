"""Catalog API client with retry logic and typed rate-limit errors."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from library_sync.config import get_settings
from library_sync.models.enums import EntityType
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
from library_sync.timeutils import ensure_utc, parse_datetime, parse_release_date

logger = logging.getLogger(__name__)
settings = get_settings()

# Maximum ids per "several artists/albums" request
DETAILS_LIMITS = {
    EntityType.ARTISTS: 50,
    EntityType.ALBUMS: 20,
}


class CatalogClientError(Exception):
    """Base exception for catalog client errors."""

    pass


class RateLimitedError(CatalogClientError):
    """The catalog answered 429; ``retry_after`` is its hint, if any."""

    def __init__(self, retry_after: timedelta | None = None, message: str = "Rate limited"):
        self.retry_after = retry_after
        super().__init__(message)


class TransientIOError(CatalogClientError):
    """Server or network error that persisted through the client's retries."""

    pass


def parse_retry_after(value: str | None) -> timedelta | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return timedelta(seconds=int(value))
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    delta = ensure_utc(when) - datetime.now(UTC)
    return max(delta, timedelta(0))


class CatalogClient:
    """
    Client for the music catalog Web API.

    Features:
    - Bearer token auth (token refresh is handled by the caller)
    - Exponential backoff retry for 5xx and network errors (3 attempts)
    - 429 responses surface immediately as RateLimitedError; pacing and
      backoff belong to the rate governor, not the client
    - "Added after" filtering for the saved-tracks listing
    """

    def __init__(
        self,
        base_url: str = settings.catalog_base_url,
        access_token: str | None = settings.catalog_access_token,
        token_provider: Callable[[], Awaitable[str]] | None = None,
        max_retries: int = settings.catalog_max_retries,
        timeout: float = settings.catalog_timeout_seconds,
        retry_base_delay: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.token_provider = token_provider
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_base_delay = retry_base_delay

    async def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = await self.token_provider() if self.token_provider else self.access_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP GET request with exponential backoff retry."""
        url = f"{self.base_url}{path}"
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=await self._headers(), params=params)
                    response.raise_for_status()
                    return response.json()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 429:
                    retry_after = parse_retry_after(e.response.headers.get("Retry-After"))
                    logger.warning(f"Rate limited on {path}, Retry-After: {retry_after}")
                    raise RateLimitedError(retry_after) from e
                if status >= 500:
                    last_error = e
                    wait_time = self.retry_base_delay * 2**attempt
                    logger.warning(f"Server error {status}, retry in {wait_time}s")
                    await asyncio.sleep(wait_time)
                else:
                    raise CatalogClientError(f"HTTP error: {e}") from e

            except httpx.RequestError as e:
                last_error = e
                wait_time = self.retry_base_delay * 2**attempt
                logger.warning(f"Request error: {e}, retry in {wait_time}s")
                await asyncio.sleep(wait_time)

        raise TransientIOError(f"Failed after {self.max_retries} retries: {last_error}")

    async def fetch_page(
        self,
        entity_type: EntityType,
        offset: int,
        limit: int,
        since: datetime | None = None,
    ) -> CatalogPage:
        """
        Fetch one page of the user's library listing.

        Args:
            entity_type: TRACKS (saved tracks) or PLAYLISTS
            offset: Pagination offset
            limit: Page size
            since: Only keep items added after this timestamp (tracks only)

        Returns:
            CatalogPage of CatalogTrack or CatalogPlaylist
        """
        params = {"limit": limit, "offset": offset}
        since = ensure_utc(since)

        if entity_type == EntityType.TRACKS:
            data = await self._request("/me/tracks", params)
            tracks = []
            skipped = 0
            reached_older = False
            for raw in data.get("items") or []:
                track = self._parse_saved_track(raw)
                if track is None:
                    skipped += 1
                    continue
                # Saved tracks are listed newest first
                if since and track.added_at and track.added_at <= since:
                    reached_older = True
                    break
                tracks.append(track)
            has_more = bool(data.get("next")) and not reached_older
            logger.info(f"Fetched {len(tracks)} saved tracks at offset {offset}")
            return CatalogPage(
                items=tracks, has_more=has_more, total=data.get("total"), skipped=skipped
            )

        if entity_type == EntityType.PLAYLISTS:
            data = await self._request("/me/playlists", params)
            raw_items = data.get("items") or []
            playlists = [self._parse_playlist(raw) for raw in raw_items if raw]
            logger.info(f"Fetched {len(playlists)} playlists at offset {offset}")
            return CatalogPage(
                items=playlists,
                has_more=bool(data.get("next")),
                total=data.get("total"),
                skipped=len(raw_items) - len(playlists),
            )

        raise ValueError(f"{entity_type} is not a paginated library listing")

    async def fetch_details(
        self,
        entity_type: EntityType,
        ids: list[str],
    ) -> list[CatalogArtist] | list[CatalogAlbum]:
        """Fetch full details for several artists or albums in one request."""
        if entity_type not in DETAILS_LIMITS:
            raise ValueError(f"{entity_type} has no details endpoint")
        if len(ids) > DETAILS_LIMITS[entity_type]:
            raise ValueError(
                f"At most {DETAILS_LIMITS[entity_type]} {entity_type} per request, got {len(ids)}"
            )
        if not ids:
            return []

        data = await self._request(f"/{entity_type}", {"ids": ",".join(ids)})
        raw_items = [raw for raw in data.get(str(entity_type)) or [] if raw]
        if entity_type == EntityType.ARTISTS:
            return [self._parse_artist(raw) for raw in raw_items]
        return [self._parse_album(raw) for raw in raw_items]

    async def fetch_playlist_items(
        self,
        playlist_id: str,
        offset: int,
        limit: int,
    ) -> CatalogPage:
        """Fetch one page of a playlist's entries."""
        data = await self._request(
            f"/playlists/{playlist_id}/tracks", {"limit": limit, "offset": offset}
        )
        items = []
        for raw in data.get("items") or []:
            raw_track = raw.get("track")
            track = None
            if raw_track and raw_track.get("type", "track") == "track" and raw_track.get("id"):
                track = self._parse_track(raw_track)
            items.append(
                CatalogPlaylistItem(
                    track=track,
                    added_at=parse_datetime(raw.get("added_at")),
                    added_by=(raw.get("added_by") or {}).get("id") or "",
                )
            )
        return CatalogPage(items=items, has_more=bool(data.get("next")), total=data.get("total"))

    async def fetch_recently_played(
        self,
        after: datetime | None = None,
        limit: int = 50,
    ) -> list[PlayedItem]:
        """Fetch the user's recently played tracks, optionally after a timestamp."""
        params: dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = int(after.timestamp() * 1000)

        data = await self._request("/me/player/recently-played", params)
        played = []
        for raw in data.get("items") or []:
            raw_track = raw.get("track")
            played_at = parse_datetime(raw.get("played_at"))
            if not raw_track or not raw_track.get("id") or not played_at:
                continue
            context = raw.get("context") or {}
            played.append(
                PlayedItem(
                    track=self._parse_track(raw_track),
                    played_at=played_at,
                    context_type=context.get("type"),
                    context_uri=context.get("uri"),
                )
            )
        logger.info(f"Fetched {len(played)} recently played items")
        return played

    def _parse_saved_track(self, raw: dict) -> CatalogTrack | None:
        raw_track = raw.get("track")
        if not raw_track or not raw_track.get("id"):
            return None
        track = self._parse_track(raw_track)
        track.added_at = parse_datetime(raw.get("added_at"))
        return track

    def _parse_track(self, raw: dict) -> CatalogTrack:
        album = raw.get("album")
        return CatalogTrack(
            id=raw["id"],
            name=raw.get("name") or "",
            duration_ms=raw.get("duration_ms") or 0,
            explicit=bool(raw.get("explicit")),
            popularity=raw.get("popularity") or 0,
            isrc=(raw.get("external_ids") or {}).get("isrc"),
            artists=[
                CatalogRef(id=artist["id"], name=artist.get("name") or "")
                for artist in raw.get("artists") or []
                if artist.get("id")
            ],
            album=(
                CatalogAlbumRef(
                    id=album["id"],
                    name=album.get("name") or "",
                    album_type=album.get("album_type") or "album",
                    release_date=parse_release_date(album.get("release_date")),
                    total_tracks=album.get("total_tracks") or 0,
                )
                if album and album.get("id")
                else None
            ),
            disc_number=raw.get("disc_number") or 1,
            track_number=raw.get("track_number") or 0,
        )

    def _parse_artist(self, raw: dict) -> CatalogArtist:
        images = raw.get("images") or []
        return CatalogArtist(
            id=raw["id"],
            name=raw.get("name") or "",
            genres=raw.get("genres") or [],
            popularity=raw.get("popularity") or 0,
            followers=(raw.get("followers") or {}).get("total") or 0,
            image_url=images[0].get("url") if images else None,
        )

    def _parse_album(self, raw: dict) -> CatalogAlbum:
        images = raw.get("images") or []
        return CatalogAlbum(
            id=raw["id"],
            name=raw.get("name") or "",
            album_type=raw.get("album_type") or "album",
            release_date=parse_release_date(raw.get("release_date")),
            total_tracks=raw.get("total_tracks") or 0,
            label=raw.get("label"),
            image_url=images[0].get("url") if images else None,
        )

    def _parse_playlist(self, raw: dict) -> CatalogPlaylist:
        return CatalogPlaylist(
            id=raw["id"],
            name=raw.get("name") or "",
            description=raw.get("description"),
            owner_id=(raw.get("owner") or {}).get("id") or "",
            is_public=bool(raw.get("public")),
            snapshot_id=raw.get("snapshot_id") or "",
            track_count=(raw.get("tracks") or {}).get("total") or 0,
        )
