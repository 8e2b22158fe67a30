"""Pydantic schemas for sync progress, status and history."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SyncProgress(BaseModel):
    """Progress event emitted after every batch."""

    entity_type: str
    message: str
    current: int
    total: int


class PhaseProgress(BaseModel):
    """Progress of one entity type within the active run."""

    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    phase: str
    last_offset: int
    estimated_total: int
    items_processed: int
    is_complete: bool
    last_error: str | None = None
    rate_limit_reset_at: datetime | None = None

    @property
    def percent_complete(self) -> int:
        if self.estimated_total <= 0:
            return 0
        return min(100, int(self.last_offset / self.estimated_total * 100))


class SyncStatusSummary(BaseModel):
    """Snapshot of the currently active sync run."""

    run_id: int
    sync_type: str
    started_at: datetime
    status: str
    per_entity_progress: dict[str, PhaseProgress | None]


class SyncRunOut(BaseModel):
    """Ledger row response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    rate_limit_reset_at: datetime | None = None
    tracks_added: int = 0
    tracks_updated: int = 0
    artists_added: int = 0
    artists_updated: int = 0
    albums_added: int = 0
    albums_updated: int = 0
    playlists_added: int = 0
    playlists_updated: int = 0
    missing_playlist_track_ids: list[str] = []
    error_message: str | None = None


class SyncStarted(BaseModel):
    """Response to a control command that started a run."""

    run_id: int
    sync_type: str
    status: str
    message: str


class SyncHistoryResponse(BaseModel):
    runs: list[SyncRunOut]
