"""WebSocket router for live sync progress."""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from library_sync.websocket.manager import broadcaster
from library_sync.websocket.schemas import ErrorMessage, PongMessage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/sync")
async def websocket_sync(websocket: WebSocket):
    """
    WebSocket endpoint streaming sync progress.

    Protocol:
    - Client connects and receives every progress event of any run
    - Server sends pong in response to ping for keep-alive

    Message formats:
    Client -> Server:
        {"type": "ping"}

    Server -> Client:
        {"type": "sync_progress", "data": {"entity_type": "tracks", "message": "...",
         "current": 400, "total": 450}, "timestamp": "2026-01-18T10:30:00Z"}
        {"type": "pong"}
        {"type": "error", "message": "..."}
    """
    await broadcaster.connect(websocket)

    try:
        while True:
            raw_message = await websocket.receive_text()

            try:
                data = json.loads(raw_message)
                msg_type = data.get("type")

                if msg_type == "ping":
                    await websocket.send_json(PongMessage().model_dump())
                else:
                    error = ErrorMessage(message=f"Unknown message type: {msg_type}")
                    await websocket.send_json(error.model_dump())

            except json.JSONDecodeError:
                error = ErrorMessage(message="Invalid JSON")
                await websocket.send_json(error.model_dump())

    except WebSocketDisconnect:
        await broadcaster.disconnect(websocket)
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
        await broadcaster.disconnect(websocket)
