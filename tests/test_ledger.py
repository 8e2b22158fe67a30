"""Tests for the sync run ledger."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from library_sync.errors import SyncAlreadyRunningError
from library_sync.models import EntityType, SyncRun, SyncStatus, SyncType
from library_sync.services.ledger import SyncLedger
from library_sync.timeutils import utcnow


async def finished_run(ledger: SyncLedger, status: SyncStatus, sync_type=SyncType.FULL) -> SyncRun:
    run = await ledger.begin(sync_type)
    await ledger.finish(run.id, status, error="boom" if status == SyncStatus.FAILED else None)
    return run


class TestSyncLedger:
    """Tests for SyncLedger."""

    @pytest.mark.asyncio
    async def test_begin_creates_in_progress_run(self, db_session):
        """Test that a new run starts in progress with zero counters."""
        ledger = SyncLedger(db_session)

        run = await ledger.begin(SyncType.FULL)

        assert run.id is not None
        assert run.status == SyncStatus.IN_PROGRESS
        assert run.sync_type == SyncType.FULL
        assert run.tracks_added == 0
        assert run.missing_playlist_track_ids == []
        assert (await ledger.active_run()).id == run.id

    @pytest.mark.asyncio
    async def test_second_begin_is_rejected(self, db_session):
        """Test that only one run can be active."""
        ledger = SyncLedger(db_session)
        run = await ledger.begin(SyncType.FULL)

        with pytest.raises(SyncAlreadyRunningError) as exc_info:
            await ledger.begin(SyncType.INCREMENTAL)

        assert exc_info.value.run_id == run.id

    @pytest.mark.asyncio
    async def test_stale_run_is_abandoned(self, db_session):
        """Test that a run without a recent heartbeat is failed on the next begin."""
        ledger = SyncLedger(db_session, stale_after=timedelta(minutes=30))
        stale = await ledger.begin(SyncType.FULL)
        await db_session.execute(
            update(SyncRun)
            .where(SyncRun.id == stale.id)
            .values(heartbeat_at=utcnow() - timedelta(hours=1))
        )
        await db_session.commit()

        run = await ledger.begin(SyncType.FULL)

        stale = await ledger.get(stale.id)
        assert run.id != stale.id
        assert stale.status == SyncStatus.FAILED
        assert stale.error_message == "abandoned"
        assert stale.completed_at is not None

    @pytest.mark.asyncio
    async def test_finish_leaves_abandoned_run_closed(self, db_session):
        """Test that a run abandoned by a newer one cannot be finished afterwards."""
        ledger = SyncLedger(db_session, stale_after=timedelta(minutes=30))
        stale = await ledger.begin(SyncType.FULL)
        await db_session.execute(
            update(SyncRun)
            .where(SyncRun.id == stale.id)
            .values(heartbeat_at=utcnow() - timedelta(hours=1))
        )
        await db_session.commit()
        newer = await ledger.begin(SyncType.FULL)

        recorded = await ledger.finish(stale.id, SyncStatus.SUCCESS)

        assert recorded is False
        stale = await ledger.get(stale.id)
        assert stale.status == SyncStatus.FAILED
        assert stale.error_message == "abandoned"
        assert (await ledger.active_run()).id == newer.id

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_run_alive(self, db_session):
        """Test that a heartbeat refreshes a run that would otherwise be stale."""
        ledger = SyncLedger(db_session, stale_after=timedelta(minutes=30))
        run = await ledger.begin(SyncType.FULL)
        await db_session.execute(
            update(SyncRun)
            .where(SyncRun.id == run.id)
            .values(heartbeat_at=utcnow() - timedelta(hours=1))
        )
        await db_session.commit()
        assert await ledger.active_run() is None

        await ledger.heartbeat(run.id)

        assert (await ledger.active_run()).id == run.id

    @pytest.mark.asyncio
    async def test_rate_limited_run_is_active_until_reset(self, db_session):
        """Test that a paused run blocks new runs only until its reset time."""
        ledger = SyncLedger(db_session)
        paused = await ledger.begin(SyncType.FULL)
        await ledger.finish(
            paused.id, SyncStatus.RATE_LIMITED, rate_limit_reset_at=utcnow() + timedelta(hours=1)
        )

        assert (await ledger.active_run()).id == paused.id
        paused = await ledger.get(paused.id)
        assert paused.completed_at is None

        await ledger.finish(
            paused.id,
            SyncStatus.RATE_LIMITED,
            rate_limit_reset_at=utcnow() - timedelta(seconds=1),
        )

        assert await ledger.active_run() is None

    @pytest.mark.asyncio
    async def test_counts_accumulate(self, db_session):
        """Test that per-entity counters add up across batches."""
        ledger = SyncLedger(db_session)
        run = await ledger.begin(SyncType.FULL)

        await ledger.add_counts(run.id, EntityType.TRACKS, added=200, updated=0)
        await ledger.add_counts(run.id, EntityType.TRACKS, added=150, updated=50)
        await ledger.add_counts(run.id, EntityType.PLAYLISTS, added=1, updated=2)

        run = await ledger.get(run.id)
        assert run.tracks_added == 350
        assert run.tracks_updated == 50
        assert run.playlists_added == 1
        assert run.playlists_updated == 2
        assert run.artists_added == 0

    @pytest.mark.asyncio
    async def test_missing_tracks_are_merged(self, db_session):
        """Test that missing playlist tracks are recorded once each."""
        ledger = SyncLedger(db_session)
        run = await ledger.begin(SyncType.FULL)

        await ledger.add_missing_tracks(run.id, ["t1", "t2"])
        await ledger.add_missing_tracks(run.id, ["t2", "t3"])
        await ledger.add_missing_tracks(run.id, [])

        run = await ledger.get(run.id)
        assert run.missing_playlist_track_ids == ["t1", "t2", "t3"]

    @pytest.mark.asyncio
    async def test_finish_truncates_error(self, db_session):
        """Test that stored errors are bounded."""
        ledger = SyncLedger(db_session)
        run = await ledger.begin(SyncType.FULL)

        await ledger.finish(run.id, SyncStatus.FAILED, error="x" * 5000)

        run = await ledger.get(run.id)
        assert run.status == SyncStatus.FAILED
        assert len(run.error_message) <= 500
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_needs_full_sync_until_full_success(self, db_session):
        """Test that only a successful full run satisfies the first-sync check."""
        ledger = SyncLedger(db_session)
        assert await ledger.needs_full_sync() is True

        await finished_run(ledger, SyncStatus.FAILED)
        assert await ledger.needs_full_sync() is True

        full = await finished_run(ledger, SyncStatus.SUCCESS)
        assert await ledger.needs_full_sync() is False
        assert await ledger.last_success_started_at() is not None
        assert (await ledger.last_successful_run(SyncType.FULL)).id == full.id
        assert await ledger.last_successful_run(SyncType.INCREMENTAL) is None

    @pytest.mark.asyncio
    async def test_consecutive_failures(self, db_session):
        """Test counting failures since the last non-failed terminal run."""
        ledger = SyncLedger(db_session)
        assert await ledger.consecutive_failures() == 0

        await finished_run(ledger, SyncStatus.FAILED)
        await finished_run(ledger, SyncStatus.SUCCESS)
        await finished_run(ledger, SyncStatus.FAILED)
        await finished_run(ledger, SyncStatus.FAILED)

        assert await ledger.consecutive_failures() == 2

        await finished_run(ledger, SyncStatus.CANCELLED)

        assert await ledger.consecutive_failures() == 0

    @pytest.mark.asyncio
    async def test_rate_limited_runs_do_not_break_failure_streak(self, db_session):
        """Test that paused runs are ignored when counting failures."""
        ledger = SyncLedger(db_session)
        await finished_run(ledger, SyncStatus.FAILED)
        paused = await ledger.begin(SyncType.FULL)
        await ledger.finish(
            paused.id, SyncStatus.RATE_LIMITED, rate_limit_reset_at=utcnow() - timedelta(seconds=1)
        )
        await finished_run(ledger, SyncStatus.FAILED)

        assert await ledger.consecutive_failures() == 2

    @pytest.mark.asyncio
    async def test_history_newest_first(self, db_session):
        """Test that history lists runs newest first, bounded by limit."""
        ledger = SyncLedger(db_session)
        runs = [await finished_run(ledger, SyncStatus.SUCCESS) for _ in range(3)]

        history = await ledger.history(limit=2)

        assert [run.id for run in history] == [runs[2].id, runs[1].id]
