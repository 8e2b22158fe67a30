"""WebSocket message schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from library_sync.schemas.sync import SyncProgress


class ProgressMessage(BaseModel):
    """Server message carrying one sync progress event."""

    type: Literal["sync_progress"] = "sync_progress"
    data: SyncProgress
    timestamp: datetime


class PongMessage(BaseModel):
    """Pong response for keep-alive."""

    type: Literal["pong"] = "pong"


class ErrorMessage(BaseModel):
    """Error message from server."""

    type: Literal["error"] = "error"
    message: str
