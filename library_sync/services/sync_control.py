"""Control surface for starting, cancelling and inspecting sync runs."""

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from library_sync.database import async_session_maker
from library_sync.errors import SyncAlreadyRunningError
from library_sync.models import EntityType, SyncPhase, SyncRun, SyncType
from library_sync.schemas.sync import SyncStatusSummary
from library_sync.services.alerts import FailureAlerter
from library_sync.services.batch_executor import BatchSyncExecutor
from library_sync.services.catalog_client import CatalogClient
from library_sync.services.checkpoints import CheckpointStore
from library_sync.services.orchestrator import IncrementalSyncOrchestrator, ProgressCallback
from library_sync.services.rate_governor import RateGovernor, RateLimitTracker
from library_sync.websocket.manager import broadcaster

logger = logging.getLogger(__name__)


class SyncController:
    """
    Starts runs in the background and answers status queries.

    One governor is shared by every run and the playback poller of this
    process; the rate-limit tracker is shared with other processes through
    the database. A run is rejected before it starts if the ledger holds
    an active one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        client_factory: Callable[[], CatalogClient] = CatalogClient,
        governor: RateGovernor | None = None,
        tracker: RateLimitTracker | None = None,
        alerter: FailureAlerter | None = None,
        progress: ProgressCallback | None = None,
        batch_sizes: dict[EntityType, int] | None = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.governor = governor or RateGovernor()
        self.tracker = tracker or RateLimitTracker(session_factory)
        self.alerter = alerter or FailureAlerter()
        self.progress = progress
        self.batch_sizes = batch_sizes
        self._runs: dict[int, tuple[asyncio.Task, asyncio.Event]] = {}

    def orchestrator(self, db: AsyncSession) -> IncrementalSyncOrchestrator:
        return IncrementalSyncOrchestrator(
            db,
            self.client_factory(),
            self.governor,
            self.tracker,
            alerter=self.alerter,
            batch_sizes=self.batch_sizes,
        )

    @property
    def running_run_ids(self) -> list[int]:
        return list(self._runs)

    async def start_full_sync(self) -> SyncRun:
        """
        Begin a full sync and drive it in the background.

        Raises:
            SyncAlreadyRunningError: if a run is already active
        """
        async with self.session_factory() as db:
            run = await self.orchestrator(db).begin_run(SyncType.FULL)
        self._spawn(run)
        return run

    async def start_incremental_sync(self) -> SyncRun:
        """Begin an incremental sync, or a full one if none has succeeded yet."""
        async with self.session_factory() as db:
            orchestrator = self.orchestrator(db)
            sync_type = SyncType.INCREMENTAL
            if await orchestrator.ledger.needs_full_sync():
                logger.info("No successful full sync recorded, starting full sync instead")
                sync_type = SyncType.FULL
            run = await orchestrator.begin_run(sync_type)
        self._spawn(run)
        return run

    def _spawn(self, run: SyncRun) -> None:
        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._drive(run, cancel_event), name=f"sync-run-{run.id}")
        self._runs[run.id] = (task, cancel_event)
        task.add_done_callback(lambda _: self._runs.pop(run.id, None))

    async def _drive(self, run: SyncRun, cancel_event: asyncio.Event) -> None:
        try:
            async with self.session_factory() as db:
                finished = await self.orchestrator(db).execute_run(
                    run, self.progress, cancel_event
                )
            logger.info(f"Background sync run {finished.id} ended: {finished.status}")
        except asyncio.CancelledError:
            logger.info(f"Background sync run {run.id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Background sync run {run.id} crashed: {e}", exc_info=True)

    def cancel(self, run_id: int | None = None) -> bool:
        """
        Ask a background run to stop after its current batch.

        Returns:
            True if a matching run was signalled
        """
        targets = [run_id] if run_id is not None else list(self._runs)
        signalled = False
        for target in targets:
            entry = self._runs.get(target)
            if entry is not None:
                entry[1].set()
                signalled = True
                logger.info(f"Cancellation requested for sync run {target}")
        return signalled

    async def wait_idle(self) -> None:
        """Wait for every background run of this controller to finish."""
        tasks = [task for task, _ in self._runs.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        self.cancel()
        await self.wait_idle()

    async def run_scheduled_sync(self) -> SyncRun | None:
        """Run an incremental (or first full) sync inline; skipped if one is active."""
        try:
            async with self.session_factory() as db:
                return await self.orchestrator(db).run_incremental_sync(self.progress)
        except SyncAlreadyRunningError as e:
            logger.info(f"Scheduled sync skipped: {e}")
            return None

    async def poll_playback(self) -> int:
        """Record recently played tracks. Returns the number of new plays."""
        async with self.session_factory() as db:
            executor = BatchSyncExecutor(db, self.client_factory(), self.governor, self.tracker)
            return await executor.sync_play_history()

    async def get_status(self) -> SyncStatusSummary | None:
        async with self.session_factory() as db:
            return await self.orchestrator(db).get_current_sync_status()

    async def history(self, limit: int = 20) -> list[SyncRun]:
        async with self.session_factory() as db:
            return await self.orchestrator(db).ledger.history(limit)

    async def needs_full_sync(self) -> bool:
        async with self.session_factory() as db:
            return await self.orchestrator(db).ledger.needs_full_sync()

    async def reset_checkpoint(self, entity_type: EntityType, phase: SyncPhase) -> None:
        """
        Rewind one entity type's checkpoint to offset 0.

        Raises:
            SyncAlreadyRunningError: while a run is active
        """
        async with self.session_factory() as db:
            orchestrator = self.orchestrator(db)
            active = await orchestrator.ledger.active_run()
            if active is not None:
                raise SyncAlreadyRunningError(active.id, active.status)
            store = CheckpointStore(db)
            checkpoint = await store.get_or_create(entity_type, phase)
            await store.reset(checkpoint.id)


# Global controller shared by the API and the scheduler
controller: SyncController | None = None


def get_controller() -> SyncController:
    global controller
    if controller is None:
        controller = SyncController(progress=broadcaster.publish)
    return controller
