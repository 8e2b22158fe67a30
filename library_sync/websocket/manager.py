"""WebSocket broadcaster for sync progress events."""

import asyncio
import logging

from fastapi import WebSocket

from library_sync.schemas.sync import SyncProgress
from library_sync.timeutils import utcnow
from library_sync.websocket.schemas import ProgressMessage

logger = logging.getLogger(__name__)


class ProgressBroadcaster:
    """
    Fans sync progress events out to WebSocket subscribers.

    ``publish`` is the orchestrator's progress callback: it only enqueues and
    never blocks. A background task drains the bounded queue and sends each
    event to every connection. When the queue is full, events are dropped.

    Designed for single-instance deployment.
    """

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self.dropped = 0
        self._connections: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[SyncProgress] | None = None
        self._task: asyncio.Task | None = None

    @property
    def connection_count(self) -> int:
        """Number of active connections."""
        return len(self._connections)

    def start(self) -> None:
        """Start draining the queue on the running event loop."""
        if self._task is not None:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._task = asyncio.create_task(self._drain(self._queue))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._queue = None

    def publish(self, event: SyncProgress) -> None:
        """Enqueue an event for broadcast; drops it if the queue is full or not started."""
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Progress queue full, dropped event for {event.entity_type}")

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {self.connection_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a disconnected WebSocket."""
        async with self._lock:
            self._connections.discard(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {self.connection_count}")

    async def broadcast(self, event: SyncProgress) -> None:
        """Send one progress event to every connected subscriber."""
        async with self._lock:
            if not self._connections:
                return
            message = ProgressMessage(data=event, timestamp=utcnow())
            tasks = [self._send_safe(websocket, message) for websocket in self._connections]
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_safe(self, websocket: WebSocket, message: ProgressMessage) -> None:
        """Send message to websocket, handling errors gracefully."""
        try:
            await websocket.send_json(message.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Failed to send to websocket: {e}")
            # Schedule disconnect (don't do it here to avoid deadlock)
            asyncio.create_task(self.disconnect(websocket))

    async def _drain(self, queue: asyncio.Queue[SyncProgress]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.broadcast(event)
            except Exception as e:
                logger.error(f"Progress broadcast failed: {e}", exc_info=True)
            finally:
                queue.task_done()


# Global singleton instance
broadcaster = ProgressBroadcaster()
