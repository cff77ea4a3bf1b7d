"""Signaling socket endpoint."""
from __future__ import annotations

from fastapi import APIRouter, WebSocket, status

from ..services.errors import EngineUnavailableError
from ..services.peers import SignalingConnection
from ..services.signaling import SignalingRouter

router = APIRouter()


@router.websocket("/ws")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Bind one socket to one peer and feed its frames to the signaling router."""

    signaling: SignalingRouter = websocket.app.state.signaling
    await websocket.accept()

    client = websocket.client
    connection_id = f"{client.host}:{client.port}" if client else "unknown"
    connection = SignalingConnection(connection_id=connection_id, send=websocket.send_json)
    try:
        peer_id = await signaling.connect(connection)
    except EngineUnavailableError:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            frame = message.get("text")
            signaling.deliver(peer_id, frame if frame is not None else message.get("bytes"))
    finally:
        await signaling.disconnect(peer_id)
