"""Health and readiness endpoints."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from library_sync.database import get_db
from library_sync.models import (
    SYNC_ORDER,
    Album,
    Artist,
    EntityType,
    Playlist,
    PlayHistory,
    RateLimitState,
    SyncCheckpoint,
    SyncPhase,
    Track,
)
from library_sync.timeutils import ensure_utc, utcnow

router = APIRouter(tags=["health"])

ENTITY_MODELS = {
    EntityType.TRACKS: Track,
    EntityType.ARTISTS: Artist,
    EntityType.ALBUMS: Album,
    EntityType.PLAYLISTS: Playlist,
}


class EntityStatus(BaseModel):
    """Sync status of one entity type."""

    record_count: int
    initial_sync_complete: bool
    last_offset: int = 0
    last_sync: datetime | None = None
    last_error: str | None = None


class RateLimitStatus(BaseModel):
    is_rate_limited: bool
    retry_after: datetime | None = None
    requests_in_window: int = 0
    last_rate_limit_at: datetime | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    entities: dict[str, EntityStatus]
    play_history_count: int
    rate_limit: RateLimitStatus


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> HealthResponse:
    """
    Health check endpoint with sync status.

    Returns record counts and initial-sync checkpoint state per entity type,
    plus the shared rate-limit state.
    """
    result = await db.execute(
        select(SyncCheckpoint).where(SyncCheckpoint.phase == SyncPhase.INITIAL)
    )
    checkpoints = {checkpoint.entity_type: checkpoint for checkpoint in result.scalars().all()}

    entities = {}
    for entity_type in SYNC_ORDER:
        model = ENTITY_MODELS[entity_type]
        count = (await db.execute(select(func.count(model.id)))).scalar() or 0
        checkpoint = checkpoints.get(str(entity_type))
        entities[str(entity_type)] = EntityStatus(
            record_count=count,
            initial_sync_complete=bool(checkpoint and checkpoint.is_complete),
            last_offset=checkpoint.last_offset if checkpoint else 0,
            last_sync=ensure_utc(checkpoint.last_updated_at) if checkpoint else None,
            last_error=checkpoint.last_error if checkpoint else None,
        )

    plays = (await db.execute(select(func.count(PlayHistory.id)))).scalar() or 0

    state = (await db.execute(select(RateLimitState))).scalars().first()
    now = utcnow()
    retry_after = ensure_utc(state.retry_after) if state else None
    rate_limit = RateLimitStatus(
        is_rate_limited=bool(state and state.is_rate_limited and retry_after and retry_after > now),
        retry_after=retry_after,
        requests_in_window=state.request_count if state else 0,
        last_rate_limit_at=ensure_utc(state.last_rate_limit_at) if state else None,
    )

    return HealthResponse(
        status="rate_limited" if rate_limit.is_rate_limited else "healthy",
        timestamp=now,
        entities=entities,
        play_history_count=plays,
        rate_limit=rate_limit,
    )


@router.get("/ready")
async def readiness_check() -> dict:
    """Simple readiness probe for container orchestration."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict:
    """Simple liveness probe for container orchestration."""
    return {"status": "alive"}
