"""WebSocket endpoint for live collaboration.

Endpoints:
    WS /ws/collaboration  - JSON ``{"event", "data"}`` frames, see ``hub``
"""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .connection import Connection
from .hub import PresenceHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/collaboration")
async def collaboration_socket(websocket: WebSocket) -> None:
    """Accept a socket and feed its frames to the hub until it closes.

    Args:
        websocket: The WebSocket connection.
    """
    hub: PresenceHub = websocket.app.state.hub
    await websocket.accept()
    connection = Connection(websocket)
    logger.info(f"[WS] Connected: {connection}")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(code=message.get("code", 1000))

            if message.get("text") is not None:
                await hub.handle_frame(connection, message["text"])
            elif message.get("bytes") is not None:
                logger.warning(f"[WS] Binary frame from {connection} ignored")
                await hub.dispatcher.send(
                    connection, "error", {"message": "Binary frames are not supported"}
                )
    except WebSocketDisconnect:
        logger.info(f"[WS] Disconnected: {connection}")
    finally:
        await hub.disconnect(connection)
