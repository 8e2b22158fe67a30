"""API routes for starting and inspecting library syncs."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from library_sync.models import EntityType, SyncPhase
from library_sync.schemas.sync import (
    SyncHistoryResponse,
    SyncRunOut,
    SyncStarted,
    SyncStatusSummary,
)
from library_sync.services.sync_control import SyncController, get_controller

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])

Controller = Annotated[SyncController, Depends(get_controller)]


@router.post("/full", response_model=SyncStarted, status_code=status.HTTP_202_ACCEPTED)
async def start_full_sync(controller: Controller) -> SyncStarted:
    """
    Start a full library sync in the background.

    Resumes from the stored checkpoints when a previous full sync was
    interrupted. Returns 409 if a run is already active.
    """
    run = await controller.start_full_sync()
    return SyncStarted(
        run_id=run.id,
        sync_type=run.sync_type,
        status=run.status,
        message=f"Full sync {run.id} started",
    )


@router.post("/incremental", response_model=SyncStarted, status_code=status.HTTP_202_ACCEPTED)
async def start_incremental_sync(controller: Controller) -> SyncStarted:
    """
    Start an incremental sync in the background.

    Falls back to a full sync until one has completed successfully.
    Returns 409 if a run is already active.
    """
    run = await controller.start_incremental_sync()
    return SyncStarted(
        run_id=run.id,
        sync_type=run.sync_type,
        status=run.status,
        message=f"{run.sync_type.capitalize()} sync {run.id} started",
    )


@router.post("/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_sync(controller: Controller) -> dict:
    """Ask the running sync to stop after its current batch."""
    if not controller.cancel():
        raise HTTPException(status_code=404, detail="No sync running in this process")
    return {"message": "Cancellation requested"}


@router.get("/status", response_model=SyncStatusSummary | None)
async def get_sync_status(controller: Controller) -> SyncStatusSummary | None:
    """Status of the active run with per-entity progress, or null when idle."""
    return await controller.get_status()


@router.get("/history", response_model=SyncHistoryResponse)
async def get_sync_history(
    controller: Controller,
    limit: int = Query(20, ge=1, le=200),
) -> SyncHistoryResponse:
    """Most recent sync runs, newest first."""
    runs = await controller.history(limit)
    return SyncHistoryResponse(runs=[SyncRunOut.model_validate(run) for run in runs])


@router.post("/checkpoints/{entity_type}/reset")
async def reset_checkpoint(
    entity_type: EntityType,
    controller: Controller,
    phase: SyncPhase = Query(SyncPhase.INITIAL),
) -> dict:
    """
    Rewind an entity type's checkpoint so the next sync starts from offset 0.

    Rejected with 409 while a run is active.
    """
    await controller.reset_checkpoint(entity_type, phase)
    logger.info(f"Checkpoint {entity_type}/{phase} reset via API")
    return {"message": f"{entity_type} checkpoint reset", "phase": str(phase)}
