"""Bedrock — WebSocket Connection Manager."""

import json
import logging
import uuid
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger("bedrock.ws")


class ConnectionManager:
    """Tracks live WebSocket connections by connection id."""

    def __init__(self):
        self._connections: dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = websocket
        logger.info("Client connected: %s (%d total)", connection_id, len(self._connections))
        return connection_id

    def disconnect(self, connection_id: str):
        if self._connections.pop(connection_id, None) is not None:
            logger.info("Client disconnected: %s (%d remaining)", connection_id, len(self._connections))

    def get(self, connection_id: str) -> Optional[WebSocket]:
        return self._connections.get(connection_id)

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """Send a message to one client. Returns False if it is gone or the send failed."""
        websocket = self._connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except Exception as e:
            logger.debug("Send to %s failed: %s", connection_id, e)
            self.disconnect(connection_id)
            return False

    async def broadcast(self, message: dict) -> int:
        """Broadcast a message to all connected clients."""
        delivered = 0
        for connection_id in list(self._connections):
            if await self.send_to(connection_id, message):
                delivered += 1
        return delivered

    @property
    def connection_count(self) -> int:
        return len(self._connections)
