"""Sync run ledger: one audit row per sync invocation."""

import asyncio
import logging
import weakref
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from library_sync.config import get_settings
from library_sync.errors import SyncAlreadyRunningError
from library_sync.models import EntityType, SyncRun, SyncStatus, SyncType
from library_sync.services.checkpoints import truncate_error
from library_sync.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

# Guards check-and-create of run rows within this process, one lock per event loop
_begin_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


def _begin_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _begin_locks.get(loop)
    if lock is None:
        lock = _begin_locks[loop] = asyncio.Lock()
    return lock


TERMINAL_STATUSES = (
    SyncStatus.SUCCESS,
    SyncStatus.FAILED,
    SyncStatus.PARTIAL,
    SyncStatus.CANCELLED,
)

OPEN_STATUSES = (SyncStatus.IN_PROGRESS, SyncStatus.RATE_LIMITED)


class SyncLedger:
    """
    Reads and writes ``sync_runs``.

    A run is active while it is ``in_progress`` with a heartbeat younger than
    ``stale_run_minutes``, or ``rate_limited`` with a reset time still ahead.
    """

    def __init__(
        self,
        db: AsyncSession,
        stale_after: timedelta = timedelta(minutes=settings.stale_run_minutes),
    ):
        self.db = db
        self.stale_after = stale_after

    async def get(self, run_id: int) -> SyncRun:
        result = await self.db.execute(
            select(SyncRun).where(SyncRun.id == run_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def begin(self, sync_type: SyncType) -> SyncRun:
        """
        Create an in-progress run.

        Raises:
            SyncAlreadyRunningError: if another run is still active
        """
        async with _begin_lock():
            await self._abandon_stale_runs()
            active = await self.active_run()
            if active is not None:
                raise SyncAlreadyRunningError(active.id, active.status)

            now = utcnow()
            run = SyncRun(
                sync_type=str(sync_type),
                status=str(SyncStatus.IN_PROGRESS),
                started_at=now,
                heartbeat_at=now,
                missing_playlist_track_ids=[],
            )
            self.db.add(run)
            await self.db.commit()
            await self.db.refresh(run)

        logger.info(f"Started {sync_type} sync run {run.id}")
        return run

    async def active_run(self) -> SyncRun | None:
        now = utcnow()
        result = await self.db.execute(
            select(SyncRun)
            .where(
                or_(
                    (SyncRun.status == SyncStatus.IN_PROGRESS)
                    & (SyncRun.heartbeat_at >= now - self.stale_after),
                    (SyncRun.status == SyncStatus.RATE_LIMITED)
                    & (SyncRun.rate_limit_reset_at > now),
                )
            )
            .order_by(SyncRun.started_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _abandon_stale_runs(self) -> None:
        now = utcnow()
        result = await self.db.execute(
            update(SyncRun)
            .where(
                SyncRun.status == SyncStatus.IN_PROGRESS,
                or_(
                    SyncRun.heartbeat_at.is_(None),
                    SyncRun.heartbeat_at < now - self.stale_after,
                ),
            )
            .values(status=str(SyncStatus.FAILED), completed_at=now, error_message="abandoned")
        )
        if result.rowcount:
            logger.warning(f"Marked {result.rowcount} stale sync run(s) as abandoned")
        await self.db.commit()

    async def heartbeat(self, run_id: int) -> None:
        await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.IN_PROGRESS)
            .values(heartbeat_at=utcnow())
        )
        await self.db.commit()

    async def add_counts(
        self, run_id: int, entity_type: EntityType, added: int, updated: int
    ) -> None:
        """Add per-entity counters and refresh the heartbeat."""
        added_key = f"{entity_type}_added"
        updated_key = f"{entity_type}_updated"
        await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id)
            .values(
                {
                    added_key: getattr(SyncRun, added_key) + added,
                    updated_key: getattr(SyncRun, updated_key) + updated,
                    "heartbeat_at": utcnow(),
                }
            )
        )
        await self.db.commit()

    async def add_missing_tracks(self, run_id: int, track_ids: list[str]) -> None:
        if not track_ids:
            return
        run = await self.get(run_id)
        merged = list(run.missing_playlist_track_ids or [])
        merged.extend(track_id for track_id in track_ids if track_id not in merged)
        await self.db.execute(
            update(SyncRun).where(SyncRun.id == run_id).values(missing_playlist_track_ids=merged)
        )
        await self.db.commit()

    async def finish(
        self,
        run_id: int,
        status: SyncStatus,
        error: str | None = None,
        rate_limit_reset_at: datetime | None = None,
    ) -> bool:
        """
        Record the outcome of a run that is still open.

        Returns:
            False if the run was already closed, e.g. abandoned by another
            process, in which case the row is left untouched
        """
        now = utcnow()
        values: dict = {
            "status": str(status),
            "heartbeat_at": now,
            "error_message": truncate_error(error) if error else None,
            "rate_limit_reset_at": rate_limit_reset_at,
        }
        if status != SyncStatus.RATE_LIMITED:
            values["completed_at"] = now
        result = await self.db.execute(
            update(SyncRun)
            .where(
                SyncRun.id == run_id,
                SyncRun.status.in_([str(open_status) for open_status in OPEN_STATUSES]),
            )
            .values(**values)
        )
        await self.db.commit()
        if not result.rowcount:
            logger.warning(f"Sync run {run_id} was already closed, not recording {status}")
            return False
        logger.info(f"Sync run {run_id} finished: {status}")
        return True

    async def last_successful_run(self, sync_type: SyncType | None = None) -> SyncRun | None:
        query = select(SyncRun).where(SyncRun.status == SyncStatus.SUCCESS)
        if sync_type is not None:
            query = query.where(SyncRun.sync_type == sync_type)
        result = await self.db.execute(query.order_by(SyncRun.started_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def needs_full_sync(self) -> bool:
        """True until a full sync has completed successfully."""
        return await self.last_successful_run(SyncType.FULL) is None

    async def last_success_started_at(self) -> datetime | None:
        run = await self.last_successful_run()
        return ensure_utc(run.started_at) if run else None

    async def consecutive_failures(self) -> int:
        """Number of failed runs since the most recent non-failed terminal run."""
        result = await self.db.execute(
            select(SyncRun.status)
            .where(SyncRun.status.in_([str(status) for status in TERMINAL_STATUSES]))
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        )
        count = 0
        for status in result.scalars():
            if status != SyncStatus.FAILED:
                break
            count += 1
        return count

    async def history(self, limit: int = 20) -> list[SyncRun]:
        result = await self.db.execute(
            select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
        )
        return list(result.scalars().all())
