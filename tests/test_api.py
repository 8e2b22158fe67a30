"""Tests for API endpoints."""

from datetime import timedelta

import pytest

from library_sync.models import EntityType, SyncPhase, SyncType
from library_sync.services.checkpoints import CheckpointStore
from library_sync.services.ledger import SyncLedger
from library_sync.timeutils import utcnow


class TestRootEndpoint:
    """Tests for root endpoint."""

    @pytest.mark.asyncio
    async def test_root_endpoint(self, client):
        """Test root endpoint returns API info."""
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Library Sync API"
        assert "version" in data
        assert "docs" in data


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    @pytest.mark.asyncio
    async def test_health_empty_database(self, client):
        """Test health endpoint before any sync."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data["entities"]) == {"tracks", "artists", "albums", "playlists"}
        assert data["entities"]["tracks"]["record_count"] == 0
        assert data["entities"]["tracks"]["initial_sync_complete"] is False
        assert data["play_history_count"] == 0
        assert data["rate_limit"]["is_rate_limited"] is False

    @pytest.mark.asyncio
    async def test_health_reports_rate_limit(self, client, tracker):
        """Test that a recorded rate limit shows in the health status."""
        await tracker.record_rate_limit_hit(utcnow() + timedelta(hours=1))

        response = await client.get("/health")

        data = response.json()
        assert data["status"] == "rate_limited"
        assert data["rate_limit"]["is_rate_limited"] is True
        assert data["rate_limit"]["retry_after"] is not None

    @pytest.mark.asyncio
    async def test_probes(self, client):
        """Test readiness and liveness probes."""
        assert (await client.get("/ready")).json() == {"status": "ready"}
        assert (await client.get("/live")).json() == {"status": "alive"}


class TestSyncEndpoints:
    """Tests for sync control endpoints."""

    @pytest.mark.asyncio
    async def test_status_idle(self, client):
        """Test that status is null without an active run."""
        response = await client.get("/api/v1/sync/status")

        assert response.status_code == 200
        assert response.json() is None

    @pytest.mark.asyncio
    async def test_full_sync_runs_in_background(self, client, controller):
        """Test starting a full sync and reading its result from history."""
        response = await client.post("/api/v1/sync/full")

        assert response.status_code == 202
        data = response.json()
        assert data["sync_type"] == "full"
        assert data["status"] == "in_progress"
        run_id = data["run_id"]

        await controller.wait_idle()

        response = await client.get("/api/v1/sync/history")
        assert response.status_code == 200
        runs = response.json()["runs"]
        assert runs[0]["id"] == run_id
        assert runs[0]["status"] == "success"
        assert runs[0]["tracks_added"] == 12
        assert runs[0]["missing_playlist_track_ids"] == ["t0900"]

        health = (await client.get("/health")).json()
        assert health["entities"]["tracks"]["initial_sync_complete"] is True
        # Saved tracks plus the playlist-only track
        assert health["entities"]["tracks"]["record_count"] == 13

    @pytest.mark.asyncio
    async def test_incremental_without_history_starts_full(self, client, controller):
        """Test that the first incremental request starts a full sync."""
        response = await client.post("/api/v1/sync/incremental")

        assert response.status_code == 202
        assert response.json()["sync_type"] == "full"
        await controller.wait_idle()

    @pytest.mark.asyncio
    async def test_start_rejected_while_running(self, client, db_session):
        """Test 409 when a run is already active."""
        active = await SyncLedger(db_session).begin(SyncType.FULL)

        response = await client.post("/api/v1/sync/full")

        assert response.status_code == 409
        data = response.json()
        assert data["run_id"] == active.id
        assert data["status"] == "in_progress"

        response = await client.get("/api/v1/sync/status")
        assert response.json()["run_id"] == active.id

    @pytest.mark.asyncio
    async def test_cancel_without_running_sync(self, client):
        """Test 404 when there is nothing to cancel."""
        response = await client.post("/api/v1/sync/cancel")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_history_limit_validation(self, client):
        """Test history limit bounds."""
        response = await client.get("/api/v1/sync/history?limit=0")

        assert response.status_code == 422


class TestCheckpointReset:
    """Tests for the checkpoint reset endpoint."""

    @pytest.mark.asyncio
    async def test_reset_checkpoint(self, client, db_session):
        """Test rewinding a checkpoint to offset 0."""
        store = CheckpointStore(db_session)
        checkpoint = await store.get_or_create(EntityType.TRACKS, SyncPhase.INITIAL)
        await store.advance(checkpoint.id, 400, estimated_total=450)

        response = await client.post("/api/v1/sync/checkpoints/tracks/reset")

        assert response.status_code == 200
        assert response.json()["phase"] == "initial_sync"
        checkpoint = await store.get(checkpoint.id)
        assert checkpoint.last_offset == 0

    @pytest.mark.asyncio
    async def test_reset_incremental_phase(self, client, db_session):
        """Test selecting the incremental checkpoint by query parameter."""
        response = await client.post(
            "/api/v1/sync/checkpoints/artists/reset?phase=incremental_sync"
        )

        assert response.status_code == 200
        checkpoint = await CheckpointStore(db_session).find(
            EntityType.ARTISTS, SyncPhase.INCREMENTAL
        )
        assert checkpoint.last_offset == 0

    @pytest.mark.asyncio
    async def test_reset_unknown_entity_type(self, client):
        """Test validation of the entity type path parameter."""
        response = await client.post("/api/v1/sync/checkpoints/podcasts/reset")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_reset_rejected_while_running(self, client, db_session):
        """Test 409 when resetting during an active run."""
        await SyncLedger(db_session).begin(SyncType.FULL)

        response = await client.post("/api/v1/sync/checkpoints/tracks/reset")

        assert response.status_code == 409
