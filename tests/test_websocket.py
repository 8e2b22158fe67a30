"""Tests for WebSocket progress broadcaster."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from library_sync.schemas.sync import SyncProgress
from library_sync.websocket.manager import ProgressBroadcaster


@pytest.fixture
def sample_event() -> SyncProgress:
    """Create sample progress event for testing."""
    return SyncProgress(entity_type="tracks", message="Synced 400 tracks", current=400, total=450)


class TestProgressBroadcaster:
    """Tests for ProgressBroadcaster."""

    @pytest.mark.asyncio
    async def test_connect(self):
        """Test connecting a WebSocket."""
        broadcaster = ProgressBroadcaster()
        ws = AsyncMock()

        await broadcaster.connect(ws)

        assert broadcaster.connection_count == 1
        ws.accept.assert_called_once()

    @pytest.mark.asyncio
    async def test_disconnect(self):
        """Test disconnecting a WebSocket."""
        broadcaster = ProgressBroadcaster()
        ws = AsyncMock()

        await broadcaster.connect(ws)
        await broadcaster.disconnect(ws)

        assert broadcaster.connection_count == 0

    @pytest.mark.asyncio
    async def test_disconnect_nonexistent(self):
        """Test disconnecting a WebSocket that's not connected."""
        broadcaster = ProgressBroadcaster()

        # Should not raise
        await broadcaster.disconnect(AsyncMock())
        assert broadcaster.connection_count == 0

    @pytest.mark.asyncio
    async def test_broadcast_no_connections(self, sample_event):
        """Test broadcast with no connected clients."""
        broadcaster = ProgressBroadcaster()

        # Should not raise
        await broadcaster.broadcast(sample_event)

    @pytest.mark.asyncio
    async def test_broadcast_message_format(self, sample_event):
        """Test the progress message sent to clients."""
        broadcaster = ProgressBroadcaster()
        ws = AsyncMock()
        await broadcaster.connect(ws)

        await broadcaster.broadcast(sample_event)

        message = ws.send_json.call_args[0][0]
        assert message["type"] == "sync_progress"
        assert message["data"] == {
            "entity_type": "tracks",
            "message": "Synced 400 tracks",
            "current": 400,
            "total": 450,
        }
        assert "timestamp" in message

    @pytest.mark.asyncio
    async def test_broadcast_to_all_connections(self, sample_event):
        """Test that every subscriber receives each event."""
        broadcaster = ProgressBroadcaster()
        connections = [AsyncMock() for _ in range(5)]
        for ws in connections:
            await broadcaster.connect(ws)

        await broadcaster.broadcast(sample_event)

        for ws in connections:
            ws.send_json.assert_called_once()

    @pytest.mark.asyncio
    async def test_broadcast_handles_send_error(self, sample_event):
        """Test that a broken connection is dropped without affecting others."""
        broadcaster = ProgressBroadcaster()
        broken = AsyncMock()
        broken.send_json.side_effect = Exception("Connection closed")
        healthy = AsyncMock()
        await broadcaster.connect(broken)
        await broadcaster.connect(healthy)

        await broadcaster.broadcast(sample_event)
        # The disconnect happens in a background task
        await asyncio.sleep(0.01)

        healthy.send_json.assert_called_once()
        assert broadcaster.connection_count == 1

    @pytest.mark.asyncio
    async def test_publish_before_start_is_dropped(self, sample_event):
        """Test that publishing without a running broadcaster is a no-op."""
        broadcaster = ProgressBroadcaster()
        ws = AsyncMock()
        await broadcaster.connect(ws)

        broadcaster.publish(sample_event)

        ws.send_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_published_events_are_delivered(self, sample_event):
        """Test that the drain task delivers published events in order."""
        broadcaster = ProgressBroadcaster()
        ws = AsyncMock()
        await broadcaster.connect(ws)
        broadcaster.start()

        broadcaster.publish(sample_event)
        broadcaster.publish(sample_event.model_copy(update={"current": 450}))
        await asyncio.wait_for(broadcaster._queue.join(), timeout=1.0)
        await broadcaster.stop()

        currents = [call[0][0]["data"]["current"] for call in ws.send_json.call_args_list]
        assert currents == [400, 450]

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self, sample_event):
        """Test that a slow consumer never blocks the publisher."""
        broadcaster = ProgressBroadcaster(max_queue_size=2)
        broadcaster.start()

        # The drain task has not run yet, so the queue fills up
        for _ in range(5):
            broadcaster.publish(sample_event)

        assert broadcaster.dropped == 3
        await broadcaster.stop()
