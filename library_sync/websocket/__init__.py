"""WebSocket module for live sync progress."""

from library_sync.websocket.manager import ProgressBroadcaster, broadcaster
from library_sync.websocket.router import router as websocket_router

__all__ = ["ProgressBroadcaster", "broadcaster", "websocket_router"]
