"""Durable checkpoint store for resumable batch syncs."""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from library_sync.config import get_settings
from library_sync.database import upsert_insert
from library_sync.errors import CheckpointError, CheckpointNotFoundError
from library_sync.models import EntityType, SyncCheckpoint, SyncPhase
from library_sync.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


def truncate_error(message: str, limit: int = settings.last_error_max_length) -> str:
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


class CheckpointStore:
    """
    Per-(entity type, phase) progress records.

    Every mutation is a targeted UPDATE of the affected columns followed by a
    commit, never a full-row replace, so readers never see a half-written
    checkpoint.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, checkpoint_id: int) -> SyncCheckpoint:
        result = await self.db.execute(
            select(SyncCheckpoint)
            .where(SyncCheckpoint.id == checkpoint_id)
            .execution_options(populate_existing=True)
        )
        checkpoint = result.scalar_one_or_none()
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return checkpoint

    async def find(self, entity_type: EntityType, phase: SyncPhase) -> SyncCheckpoint | None:
        result = await self.db.execute(
            select(SyncCheckpoint)
            .where(SyncCheckpoint.entity_type == entity_type, SyncCheckpoint.phase == phase)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, entity_type: EntityType, phase: SyncPhase) -> SyncCheckpoint:
        """Return the existing checkpoint or create one at offset 0."""
        checkpoint = await self.find(entity_type, phase)
        if checkpoint is not None:
            return checkpoint

        now = utcnow()
        stmt = (
            upsert_insert(self.db, SyncCheckpoint)
            .values(
                entity_type=str(entity_type),
                phase=str(phase),
                last_offset=0,
                estimated_total=0,
                items_processed=0,
                is_complete=False,
                started_at=now,
                last_updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["entity_type", "phase"])
        )
        await self.db.execute(stmt)
        await self.db.commit()
        logger.info(f"Created checkpoint {entity_type}/{phase}")

        result = await self.db.execute(
            select(SyncCheckpoint).where(
                SyncCheckpoint.entity_type == entity_type, SyncCheckpoint.phase == phase
            )
        )
        return result.scalar_one()

    async def list_for_phase(self, phase: SyncPhase) -> list[SyncCheckpoint]:
        result = await self.db.execute(
            select(SyncCheckpoint)
            .where(SyncCheckpoint.phase == phase)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _update(self, checkpoint_id: int, **values) -> None:
        values["last_updated_at"] = utcnow()
        result = await self.db.execute(
            update(SyncCheckpoint).where(SyncCheckpoint.id == checkpoint_id).values(**values)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise CheckpointNotFoundError(checkpoint_id)
        await self.db.commit()

    async def advance(
        self,
        checkpoint_id: int,
        new_offset: int,
        estimated_total: int | None = None,
        items_processed: int = 0,
    ) -> None:
        """
        Move the checkpoint forward after a batch has been committed.

        The offset never moves backwards; only ``reset`` rewinds it.
        """
        current = await self.get(checkpoint_id)
        if new_offset < current.last_offset:
            raise CheckpointError(
                f"Checkpoint {checkpoint_id} cannot move back from "
                f"{current.last_offset} to {new_offset}"
            )

        values: dict = {
            "last_offset": new_offset,
            "items_processed": SyncCheckpoint.items_processed + items_processed,
        }
        if estimated_total is not None:
            values["estimated_total"] = max(estimated_total, new_offset)
        elif new_offset > current.estimated_total:
            values["estimated_total"] = new_offset
        await self._update(checkpoint_id, **values)

    async def mark_rate_limited(
        self,
        checkpoint_id: int,
        reset_at: datetime,
        remaining: int | None = None,
    ) -> None:
        await self._update(
            checkpoint_id,
            rate_limit_hit_at=utcnow(),
            rate_limit_reset_at=reset_at,
            rate_limit_remaining=remaining,
            last_error="Rate limit hit",
        )

    async def clear_rate_limit(self, checkpoint_id: int) -> None:
        await self._update(
            checkpoint_id,
            rate_limit_hit_at=None,
            rate_limit_reset_at=None,
            rate_limit_remaining=None,
        )

    async def mark_complete(self, checkpoint_id: int) -> None:
        await self._update(
            checkpoint_id,
            is_complete=True,
            completed_at=utcnow(),
            last_error=None,
            rate_limit_hit_at=None,
            rate_limit_reset_at=None,
            rate_limit_remaining=None,
        )

    async def record_error(self, checkpoint_id: int, message: str) -> None:
        await self._update(checkpoint_id, last_error=truncate_error(message))

    async def reset(self, checkpoint_id: int) -> None:
        """Rewind to offset 0 and clear completion, error and rate-limit state."""
        await self._update(
            checkpoint_id,
            last_offset=0,
            estimated_total=0,
            items_processed=0,
            is_complete=False,
            completed_at=None,
            rate_limit_hit_at=None,
            rate_limit_reset_at=None,
            rate_limit_remaining=None,
            last_error=None,
            started_at=utcnow(),
        )
        logger.info(f"Checkpoint {checkpoint_id} reset")

    async def is_any_rate_limited(self) -> bool:
        """True if any checkpoint still waits for a rate-limit reset."""
        return await self.earliest_rate_limit_reset() is not None

    async def earliest_rate_limit_reset(self) -> datetime | None:
        result = await self.db.execute(
            select(func.min(SyncCheckpoint.rate_limit_reset_at)).where(
                SyncCheckpoint.rate_limit_reset_at > utcnow()
            )
        )
        return ensure_utc(result.scalar())
