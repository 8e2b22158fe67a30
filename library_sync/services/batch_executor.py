"""Batch sync executor: one bounded fetch-and-upsert unit of work."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from library_sync.config import get_settings
from library_sync.errors import DataConflictError
from library_sync.models import EntityType
from library_sync.schemas.catalog import CatalogPage, CatalogPlaylist, CatalogTrack
from library_sync.services.catalog_client import (
    DETAILS_LIMITS,
    CatalogClient,
    RateLimitedError,
    TransientIOError,
)
from library_sync.services.entity_store import EntityStore, PlaylistEntry
from library_sync.services.rate_governor import RateGovernor, RateLimitTracker
from library_sync.timeutils import ensure_utc, truncate_to_second, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

T = TypeVar("T")


@dataclass
class BatchResult:
    """Outcome of one ``sync_batch`` call."""

    items_processed: int = 0
    new_items_added: int = 0
    items_updated: int = 0
    items_skipped: int = 0
    has_more: bool = False
    next_offset: int = 0
    rate_limited: bool = False
    rate_limit_reset_at: datetime | None = None
    error_message: str | None = None
    estimated_total: int | None = None
    # Tracks found in playlists but not in the saved library
    orphan_track_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.error_message and not self.rate_limited


class BatchSyncExecutor:
    """
    Performs one page of work for one entity type.

    Features:
    - Checks the shared rate-limit record before touching the catalog
    - One governor slot per outbound page fetch
    - Per-item units of work: a failing item never rolls back earlier ones
    - Stub artists/albums for unknown references, enriched by later phases
    - Gapless playlist positions from a single counter per playlist
    - Idempotent play-history appends
    """

    def __init__(
        self,
        db: AsyncSession,
        client: CatalogClient,
        governor: RateGovernor,
        tracker: RateLimitTracker,
        playlist_items_page_size: int = settings.playlist_items_page_size,
        max_page_retries: int = settings.max_batch_retries,
        play_history_limit: int = settings.play_history_limit,
        before_fetch: Callable[[], Awaitable[None]] | None = None,
    ):
        self.db = db
        self.client = client
        self.governor = governor
        self.tracker = tracker
        self.store = EntityStore(db)
        self.playlist_items_page_size = playlist_items_page_size
        self.max_page_retries = max_page_retries
        self.play_history_limit = play_history_limit
        # Called before every outbound request, e.g. to keep a run's heartbeat fresh
        self.before_fetch = before_fetch

    async def sync_batch(
        self,
        entity_type: EntityType,
        offset: int,
        batch_size: int,
        since: datetime | None = None,
    ) -> BatchResult:
        """
        Sync the page ``[offset, offset + batch_size)`` of one entity type.

        Args:
            entity_type: Entity type to sync
            offset: Offset of the first item of the page
            batch_size: Page size
            since: Only items added after this timestamp (saved tracks only)

        Returns:
            BatchResult; a rate limit is reported, never raised. Transient
            fetch errors propagate so the caller can retry the batch.
        """
        if not await self.tracker.can_make_request():
            state = await self.tracker.get_state()
            logger.info(f"Skipping {entity_type} batch: rate limited until {state.retry_after}")
            return BatchResult(
                next_offset=offset,
                has_more=True,
                rate_limited=True,
                rate_limit_reset_at=ensure_utc(state.retry_after),
            )

        try:
            match entity_type:
                case EntityType.TRACKS:
                    return await self._sync_tracks(offset, batch_size, since)
                case EntityType.ARTISTS | EntityType.ALBUMS:
                    return await self._enrich(entity_type, offset, batch_size)
                case EntityType.PLAYLISTS:
                    return await self._sync_playlists(offset, batch_size)
                case _:
                    assert_never(entity_type)
        except RateLimitedError as e:
            reset_at = await self._record_rate_limit(e)
            return BatchResult(
                next_offset=offset,
                has_more=True,
                rate_limited=True,
                rate_limit_reset_at=reset_at,
            )

    async def _fetch(self, call: Callable[[], Awaitable[T]]) -> T:
        """Gate one outbound request through the governor and the shared tracker."""
        if self.before_fetch is not None:
            await self.before_fetch()
        await self.governor.acquire()
        await self.tracker.record_request()
        return await call()

    async def _record_rate_limit(self, error: RateLimitedError) -> datetime:
        hint = utcnow() + error.retry_after if error.retry_after is not None else None
        return await self.tracker.record_rate_limit_hit(hint)

    async def _process_items(
        self,
        result: BatchResult,
        items: list[Any],
        upsert: Callable[[Any], Awaitable[bool]],
        label: Callable[[Any], str],
    ) -> None:
        """Upsert items one unit of work at a time, tallying into ``result``."""
        for item in items:
            try:
                async with self.store.unit_of_work():
                    created = await upsert(item)
            except RateLimitedError:
                raise
            except DataConflictError as e:
                logger.warning(f"Skipping {label(item)}: {e}")
                result.items_skipped += 1
            except Exception as e:
                logger.error(f"Failed to sync {label(item)}: {e}", exc_info=True)
                result.error_message = f"{label(item)}: {e}"
                return
            else:
                if created:
                    result.new_items_added += 1
                else:
                    result.items_updated += 1
            result.items_processed += 1

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    async def _sync_tracks(
        self, offset: int, batch_size: int, since: datetime | None
    ) -> BatchResult:
        page: CatalogPage = await self._fetch(
            lambda: self.client.fetch_page(EntityType.TRACKS, offset, batch_size, since=since)
        )
        result = BatchResult(next_offset=offset, estimated_total=page.total)

        await self._process_items(
            result,
            page.items,
            lambda track: self.store.upsert_track(track, saved=True),
            lambda track: f"track {track.id}",
        )
        return self._finish_page(result, offset, batch_size, page)

    def _finish_page(
        self, result: BatchResult, offset: int, batch_size: int, page: CatalogPage
    ) -> BatchResult:
        if result.error_message:
            # Only the committed prefix of the page counts as done
            result.next_offset = offset + result.items_processed
            result.has_more = True
            return result

        consumed = len(page.items) + page.skipped
        result.items_processed = consumed
        result.next_offset = offset + consumed
        result.has_more = page.has_more and consumed >= batch_size
        if result.estimated_total is None or result.estimated_total < result.next_offset:
            result.estimated_total = result.next_offset + (batch_size if result.has_more else 0)
        return result

    # ------------------------------------------------------------------
    # Artist / album enrichment
    # ------------------------------------------------------------------

    async def _enrich(self, entity_type: EntityType, offset: int, batch_size: int) -> BatchResult:
        ids = await self.store.referenced_ids(entity_type, offset, batch_size)
        total = await self.store.count_referenced(entity_type)
        stubs = await self.store.stub_ids(entity_type, ids)
        to_fetch = [entity_id for entity_id in ids if entity_id in stubs]

        details: dict[str, Any] = {}
        chunk_size = DETAILS_LIMITS[entity_type]
        for start in range(0, len(to_fetch), chunk_size):
            chunk = to_fetch[start : start + chunk_size]
            fetched = await self._fetch(lambda: self.client.fetch_details(entity_type, chunk))
            details.update({item.id: item for item in fetched})

        if to_fetch:
            logger.info(
                f"Enriching {len(details)} of {len(to_fetch)} stub {entity_type} "
                f"({len(ids) - len(to_fetch)} already complete)"
            )

        upsert = (
            self.store.upsert_artist if entity_type == EntityType.ARTISTS else self.store.upsert_album
        )
        result = BatchResult(next_offset=offset, estimated_total=total)
        # Ids that are already complete, or unknown to the catalog, are just consumed
        result.items_skipped = len(ids) - len(details)
        items = [details[entity_id] for entity_id in ids if entity_id in details]
        await self._process_items(
            result,
            items,
            upsert,
            lambda item: f"{entity_type} {item.id}",
        )

        if result.error_message:
            # Ids before the failing item are committed or needed no fetch
            done = ids.index(items[result.items_processed].id)
            result.next_offset = offset + done
            result.items_processed = done
            result.has_more = True
            return result

        result.items_processed = len(ids)
        result.next_offset = offset + len(ids)
        result.has_more = len(ids) >= batch_size and result.next_offset < total
        return result

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    async def _sync_playlists(self, offset: int, batch_size: int) -> BatchResult:
        page: CatalogPage = await self._fetch(
            lambda: self.client.fetch_page(EntityType.PLAYLISTS, offset, batch_size)
        )
        result = BatchResult(next_offset=offset, estimated_total=page.total)

        for playlist in page.items:
            try:
                created, orphans = await self._sync_playlist(playlist)
            except RateLimitedError:
                raise
            except DataConflictError as e:
                logger.warning(f"Skipping playlist {playlist.id}: {e}")
                result.items_skipped += 1
            except Exception as e:
                logger.error(f"Failed to sync playlist {playlist.id}: {e}", exc_info=True)
                result.error_message = f"playlist {playlist.id}: {e}"
                break
            else:
                if created:
                    result.new_items_added += 1
                else:
                    result.items_updated += 1
                result.orphan_track_ids.extend(
                    track_id for track_id in orphans if track_id not in result.orphan_track_ids
                )
            result.items_processed += 1

        if result.error_message:
            result.next_offset = offset + result.items_processed
            result.has_more = True
            return result

        consumed = len(page.items) + page.skipped
        result.items_processed = consumed
        result.next_offset = offset + consumed
        result.has_more = page.has_more and consumed >= batch_size
        return result

    async def _sync_playlist(self, playlist: CatalogPlaylist) -> tuple[bool, list[str]]:
        """
        Sync one playlist and, if its snapshot changed, its full track list.

        All item pages are fetched before anything is written, then metadata,
        tracks and membership are committed together.
        """
        previous = await self.store.playlist_snapshot(playlist.id)
        changed = previous is None or previous != playlist.snapshot_id

        entries: list[PlaylistEntry] = []
        tracks: dict[str, CatalogTrack] = {}
        if changed:
            entries, tracks = await self._fetch_playlist_entries(playlist.id)

        orphans: list[str] = []
        async with self.store.unit_of_work():
            created, _ = await self.store.upsert_playlist(playlist)
            if changed:
                saved = await self.store.saved_track_ids(list(tracks))
                for track in tracks.values():
                    await self.store.upsert_track(track, saved=False)
                    if track.id not in saved:
                        orphans.append(track.id)
                await self.store.replace_playlist_tracks(playlist.id, entries)

        if changed:
            logger.info(
                f"Synced playlist {playlist.id}: {len(entries)} tracks, "
                f"{len(orphans)} not in saved library"
            )
        return created, orphans

    async def _fetch_playlist_entries(
        self, playlist_id: str
    ) -> tuple[list[PlaylistEntry], dict[str, CatalogTrack]]:
        """
        Fetch every page of a playlist and assign positions.

        Positions come from one counter over the whole playlist, never from
        ``page_offset + index``, so duplicates and unplayable entries cannot
        leave gaps or repeats. A retried page does not advance the counter.
        """
        entries: list[PlaylistEntry] = []
        tracks: dict[str, CatalogTrack] = {}
        position = 0
        page_offset = 0

        while True:
            page = await self._fetch_playlist_page(playlist_id, page_offset)
            for item in page.items:
                if item.track is None:
                    continue
                entries.append(
                    PlaylistEntry(
                        position=position,
                        track_id=item.track.id,
                        added_at=item.added_at,
                        added_by=item.added_by,
                    )
                )
                tracks[item.track.id] = item.track
                position += 1

            page_offset += len(page.items) + page.skipped
            if not page.has_more or not page.items:
                break

        return entries, tracks

    async def _fetch_playlist_page(self, playlist_id: str, page_offset: int) -> CatalogPage:
        attempt = 0
        while True:
            try:
                return await self._fetch(
                    lambda: self.client.fetch_playlist_items(
                        playlist_id, page_offset, self.playlist_items_page_size
                    )
                )
            except TransientIOError as e:
                attempt += 1
                if attempt > self.max_page_retries:
                    raise
                logger.warning(
                    f"Playlist {playlist_id} page at {page_offset} failed ({e}), "
                    f"retry {attempt}/{self.max_page_retries}"
                )
                self.governor.trigger_backoff()

    # ------------------------------------------------------------------
    # Play history
    # ------------------------------------------------------------------

    async def sync_play_history(self) -> int:
        """
        Append recently played tracks to the play history.

        Returns:
            Number of play events inserted (0 when rate limited)
        """
        if not await self.tracker.can_make_request():
            logger.info("Skipping play history poll: rate limited")
            return 0

        after = await self.store.latest_played_at()
        try:
            items = await self._fetch(
                lambda: self.client.fetch_recently_played(after=after, limit=self.play_history_limit)
            )
        except RateLimitedError as e:
            await self._record_rate_limit(e)
            return 0

        if not items:
            return 0

        window_start = min(item.played_at for item in items) - timedelta(seconds=1)
        window_end = max(item.played_at for item in items) + timedelta(seconds=1)
        seen = await self.store.play_keys_between(window_start, window_end)

        inserted = 0
        for item in sorted(items, key=lambda played: played.played_at):
            key = (item.track.id, truncate_to_second(item.played_at))
            if key in seen:
                continue
            try:
                async with self.store.unit_of_work():
                    await self.store.upsert_track(item.track, saved=False)
                    await self.store.add_play(item)
            except DataConflictError as e:
                logger.warning(f"Skipping play of {item.track.id} at {item.played_at}: {e}")
                continue
            seen.add(key)
            inserted += 1

        logger.info(f"Recorded {inserted} new plays ({len(items) - inserted} duplicates)")
        return inserted
