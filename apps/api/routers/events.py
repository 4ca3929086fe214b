"""
Live events WebSocket

One socket per browser tab. Worker events reach it through the EventRelay
started in the app lifespan; this router only registers sessions.
"""
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

router = APIRouter(prefix="/v1/events", tags=["Events"])
logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def events_socket(websocket: WebSocket, user_id: str = Query(...)):
    manager = websocket.app.state.connection_manager
    await manager.connect(user_id, websocket)
    try:
        while True:
            # Clients only listen; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(user_id, websocket)
        logger.info(f"Client disconnected for user {user_id}")
