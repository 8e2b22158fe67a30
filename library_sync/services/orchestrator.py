"""Incremental sync orchestrator: drives runs over checkpointed batch loops."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from library_sync.config import get_settings
from library_sync.errors import BatchFailedError, SyncCancelledError
from library_sync.models import (
    SYNC_ORDER,
    EntityType,
    SyncCheckpoint,
    SyncPhase,
    SyncRun,
    SyncStatus,
    SyncType,
)
from library_sync.schemas.sync import PhaseProgress, SyncProgress, SyncStatusSummary
from library_sync.services.alerts import FailureAlerter
from library_sync.services.batch_executor import BatchResult, BatchSyncExecutor
from library_sync.services.catalog_client import CatalogClient, TransientIOError
from library_sync.services.checkpoints import CheckpointStore
from library_sync.services.ledger import SyncLedger
from library_sync.services.rate_governor import RateGovernor, RateLimitTracker
from library_sync.timeutils import ensure_utc

logger = logging.getLogger(__name__)
settings = get_settings()

ProgressCallback = Callable[[SyncProgress], None]

DEFAULT_BATCH_SIZES: dict[EntityType, int] = {
    EntityType.TRACKS: settings.tracks_batch_size,
    EntityType.ARTISTS: settings.artists_batch_size,
    EntityType.ALBUMS: settings.albums_batch_size,
    EntityType.PLAYLISTS: settings.playlists_batch_size,
}


class IncrementalSyncOrchestrator:
    """
    Runs full and incremental syncs over the fixed entity order.

    Each entity type is a batch loop starting at its checkpoint's offset.
    The checkpoint is advanced after every batch and before the next fetch,
    so resuming after a rate limit, an error or a crash is just running the
    loop again.
    """

    def __init__(
        self,
        db: AsyncSession,
        client: CatalogClient,
        governor: RateGovernor,
        tracker: RateLimitTracker,
        alerter: FailureAlerter | None = None,
        batch_sizes: dict[EntityType, int] | None = None,
        max_batch_retries: int = settings.max_batch_retries,
    ):
        self.db = db
        self.governor = governor
        self.executor = BatchSyncExecutor(
            db, client, governor, tracker, before_fetch=self._heartbeat
        )
        self.checkpoints = CheckpointStore(db)
        self.ledger = SyncLedger(db)
        self.alerter = alerter or FailureAlerter()
        self.batch_sizes = {**DEFAULT_BATCH_SIZES, **(batch_sizes or {})}
        self.max_batch_retries = max_batch_retries
        self._run_id: int | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def begin_run(self, sync_type: SyncType) -> SyncRun:
        """Create the ledger row, rejecting the run if another one is active."""
        return await self.ledger.begin(sync_type)

    async def run_full_sync(
        self,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncRun:
        run = await self.begin_run(SyncType.FULL)
        return await self.execute_run(run, progress, cancel_event)

    async def run_incremental_sync(
        self,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncRun:
        """Sync changes since the last successful run, or a full sync if none succeeded yet."""
        if await self.ledger.needs_full_sync():
            logger.info("No successful full sync recorded, running full sync instead")
            return await self.run_full_sync(progress, cancel_event)

        run = await self.begin_run(SyncType.INCREMENTAL)
        return await self.execute_run(run, progress, cancel_event)

    async def execute_run(
        self,
        run: SyncRun,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncRun:
        """
        Drive an already begun run until it completes, pauses or fails.

        Returns:
            The run's final ledger row
        """
        run_id = run.id
        sync_type = SyncType(run.sync_type)
        status = SyncStatus.SUCCESS
        error: str | None = None
        reset_at: datetime | None = None
        self._run_id = run_id

        try:
            since = None
            if sync_type == SyncType.INCREMENTAL:
                since = await self.ledger.last_success_started_at()
                logger.info(f"Incremental sync {run_id}: changes since {since}")
            else:
                await self._prepare_full_pass()

            for entity_type in SYNC_ORDER:
                checkpoint, entity_since = await self._checkpoint_for(
                    entity_type, sync_type, since
                )
                if checkpoint is None:
                    logger.info(f"{entity_type} already complete, skipping")
                    continue

                result = await self._run_entity(
                    run_id, entity_type, checkpoint, entity_since, progress, cancel_event
                )
                if result.rate_limited:
                    # Later entity types depend on this one; stop the whole run
                    status = SyncStatus.RATE_LIMITED
                    reset_at = result.rate_limit_reset_at
                    break

        except SyncCancelledError:
            status = SyncStatus.CANCELLED
            error = "Cancelled"
        except asyncio.CancelledError:
            self._run_id = None
            await self.db.rollback()
            await self.ledger.finish(run_id, SyncStatus.CANCELLED, error="Cancelled")
            raise
        except BatchFailedError as e:
            status = SyncStatus.FAILED
            error = str(e)
        except Exception as e:
            logger.exception(f"Sync run {run_id} aborted")
            await self.db.rollback()
            status = SyncStatus.FAILED
            error = f"{type(e).__name__}: {e}"

        self._run_id = None
        recorded = await self.ledger.finish(
            run_id, status, error=error, rate_limit_reset_at=reset_at
        )
        if recorded and status == SyncStatus.FAILED:
            await self._alert_on_failures(run_id, error)

        return await self.ledger.get(run_id)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _prepare_full_pass(self) -> None:
        """Start a fresh initial pass once the previous one has fully completed."""
        checkpoints = [
            await self.checkpoints.get_or_create(entity_type, SyncPhase.INITIAL)
            for entity_type in SYNC_ORDER
        ]
        if all(checkpoint.is_complete for checkpoint in checkpoints):
            logger.info("Previous full sync complete, starting a fresh pass")
            for checkpoint in checkpoints:
                await self.checkpoints.reset(checkpoint.id)

    async def _checkpoint_for(
        self,
        entity_type: EntityType,
        sync_type: SyncType,
        since: datetime | None,
    ) -> tuple[SyncCheckpoint | None, datetime | None]:
        """
        Pick the checkpoint (and ``since`` filter) one entity type runs under.

        An incomplete initial checkpoint always wins, so an interrupted full
        sync is finished before incremental passes begin.
        """
        initial = await self.checkpoints.get_or_create(entity_type, SyncPhase.INITIAL)
        if not initial.is_complete:
            return initial, None
        if sync_type == SyncType.FULL:
            return None, None

        incremental = await self.checkpoints.get_or_create(entity_type, SyncPhase.INCREMENTAL)
        if incremental.is_complete:
            await self.checkpoints.reset(incremental.id)
            incremental = await self.checkpoints.get(incremental.id)
        return incremental, since

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------

    async def _run_entity(
        self,
        run_id: int,
        entity_type: EntityType,
        checkpoint: SyncCheckpoint,
        since: datetime | None,
        progress: ProgressCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> BatchResult:
        batch_size = self.batch_sizes[entity_type]
        offset = checkpoint.last_offset
        was_rate_limited = checkpoint.rate_limit_reset_at is not None
        failures = 0
        await self.ledger.heartbeat(run_id)

        if offset > 0:
            logger.info(f"Resuming {entity_type} ({checkpoint.phase}) from offset {offset}")
        else:
            logger.info(f"Starting {entity_type} ({checkpoint.phase})")

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Sync run {run_id} cancelled at {entity_type} offset {offset}")
                raise SyncCancelledError(f"Cancelled at {entity_type} offset {offset}")

            try:
                result = await self.executor.sync_batch(entity_type, offset, batch_size, since)
            except TransientIOError as e:
                result = BatchResult(next_offset=offset, has_more=True, error_message=str(e))

            if result.rate_limited:
                reset_at = ensure_utc(result.rate_limit_reset_at)
                await self.checkpoints.mark_rate_limited(checkpoint.id, reset_at)
                self._emit(
                    progress,
                    entity_type,
                    f"Rate limited, paused until {reset_at}",
                    offset,
                    result.estimated_total,
                )
                logger.warning(f"{entity_type} rate limited at offset {offset} until {reset_at}")
                return result

            if not result.error_message or result.next_offset > offset:
                await self._commit_batch(run_id, entity_type, checkpoint, result)
                offset = result.next_offset
                self._emit(
                    progress,
                    entity_type,
                    f"Synced {offset} {entity_type}",
                    offset,
                    result.estimated_total,
                )

            if result.error_message:
                failures += 1
                await self.checkpoints.record_error(checkpoint.id, result.error_message)
                if failures > self.max_batch_retries:
                    raise BatchFailedError(entity_type, offset, result.error_message)
                wait = self.governor.trigger_backoff()
                logger.warning(
                    f"{entity_type} batch at offset {offset} failed: {result.error_message}. "
                    f"Retry {failures}/{self.max_batch_retries} after {wait:.0f}s backoff"
                )
                continue

            failures = 0
            self.governor.reset_backoff()
            if was_rate_limited:
                await self.checkpoints.clear_rate_limit(checkpoint.id)
                was_rate_limited = False

            if not result.has_more:
                await self.checkpoints.mark_complete(checkpoint.id)
                logger.info(f"{entity_type} ({checkpoint.phase}) complete at offset {offset}")
                return result

    async def _commit_batch(
        self,
        run_id: int,
        entity_type: EntityType,
        checkpoint: SyncCheckpoint,
        result: BatchResult,
    ) -> None:
        await self.checkpoints.advance(
            checkpoint.id,
            result.next_offset,
            estimated_total=result.estimated_total,
            items_processed=result.items_processed,
        )
        await self.ledger.add_counts(
            run_id, entity_type, result.new_items_added, result.items_updated
        )
        await self.ledger.add_missing_tracks(run_id, result.orphan_track_ids)

    async def _heartbeat(self) -> None:
        if self._run_id is not None:
            await self.ledger.heartbeat(self._run_id)

    def _emit(
        self,
        progress: ProgressCallback | None,
        entity_type: EntityType,
        message: str,
        current: int,
        total: int | None,
    ) -> None:
        if progress is None:
            return
        event = SyncProgress(
            entity_type=str(entity_type),
            message=message,
            current=current,
            total=max(total or 0, current),
        )
        try:
            progress(event)
        except Exception as e:
            logger.warning(f"Progress listener failed: {e}")

    async def _alert_on_failures(self, run_id: int, error: str | None) -> None:
        failures = await self.ledger.consecutive_failures()
        if self.alerter.should_alert(failures):
            await self.alerter.send_consecutive_failures_alert(failures, error, run_id=run_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_current_sync_status(self) -> SyncStatusSummary | None:
        """Status of the active run, or None when idle."""
        run = await self.ledger.active_run()
        if run is None:
            return None

        per_entity: dict[str, PhaseProgress | None] = {}
        for entity_type in SYNC_ORDER:
            checkpoint = await self.checkpoints.find(entity_type, SyncPhase.INITIAL)
            if (
                run.sync_type == SyncType.INCREMENTAL
                and checkpoint is not None
                and checkpoint.is_complete
            ):
                checkpoint = await self.checkpoints.find(entity_type, SyncPhase.INCREMENTAL)
            per_entity[str(entity_type)] = (
                PhaseProgress.model_validate(checkpoint) if checkpoint else None
            )

        return SyncStatusSummary(
            run_id=run.id,
            sync_type=run.sync_type,
            started_at=ensure_utc(run.started_at),
            status=run.status,
            per_entity_progress=per_entity,
        )
