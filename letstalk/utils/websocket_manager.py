from typing import Dict, List

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from letstalk.core.logging import get_logger


logger = get_logger("letstalk.websocket")


class ConnectionManager:
    """Open sockets per user on this worker."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.active_connections.get(user_id)
        if sockets is None:
            return
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            del self.active_connections[user_id]

    async def send_personal_message(self, receiver_id: str, message: str) -> None:
        for conn in list(self.active_connections.get(receiver_id, [])):
            try:
                await conn.send_text(message)
            except (WebSocketDisconnect, RuntimeError):
                logger.info("websocket.dropped", extra={"user_id": receiver_id})
                self.disconnect(receiver_id, conn)
