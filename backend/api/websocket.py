"""WebSocket handler for real-time session events."""

import asyncio
import json
import logging
from collections import defaultdict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks WebSocket subscribers per session and fans out its events."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def subscriber_count(self, session_id: str) -> int:
        return len(self._connections.get(session_id, ()))

    async def connect(self, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections[session_id].append(websocket)
        logger.info(
            f"WebSocket subscribed to {session_id}. "
            f"Subscribers: {self.subscriber_count(session_id)}"
        )

    async def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(session_id)
            if sockets and websocket in sockets:
                sockets.remove(websocket)
            if not sockets:
                self._connections.pop(session_id, None)
        logger.info(f"WebSocket left {session_id}")

    async def send(self, websocket: WebSocket, event: str, data: dict) -> None:
        await websocket.send_text(json.dumps({"event": event, "data": data}))

    async def broadcast(self, session_id: str, event: str, data: dict) -> None:
        """Send an event to everyone watching ``session_id``."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            sockets = self._connections.get(session_id)
            if not sockets:
                return
            dead: list[WebSocket] = []
            for ws in sockets:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                sockets.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event handler compatible with SessionManager.on_event()."""
        session_id = data.get("session_id")
        if session_id:
            await self.broadcast(session_id, event_type, data)
