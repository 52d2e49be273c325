"""WebSocket Status Broadcaster Service.

Manages local WebSocket connections and fans hub events out to all of them:
hub connection status transitions and every state_changed event.
"""

import asyncio
import weakref
import orjson
from typing import Set, Dict, Any, Optional, TYPE_CHECKING
from fastapi import WebSocket
from core.logging import get_logger

if TYPE_CHECKING:
    from services.hub import HubEventClient

logger = get_logger(__name__)


class StatusBroadcaster:
    """Manages local WebSocket connections and broadcasts hub updates."""

    def __init__(self, hub_client: "HubEventClient"):
        self.hub_client = hub_client
        self._connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        # Serializes writes per socket so replies and broadcasts never interleave
        self._send_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    def bind_hub_events(self) -> None:
        """Subscribe to hub events. Called once at startup."""
        self.hub_client.on("connected", self.on_hub_connected)
        self.hub_client.on("disconnected", self.on_hub_disconnected)
        self.hub_client.on("state_changed", self.on_state_changed)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket):
        """Accept a new WebSocket connection and send the hub status."""
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)
        logger.info(f"[StatusBroadcaster] Client connected. Total: {len(self._connections)}")

        await self.send(websocket, {
            "type": "connection_status",
            "connected": self.hub_client.is_connected(),
        })

    async def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        async with self._lock:
            self._connections.discard(websocket)
        logger.info(f"[StatusBroadcaster] Client disconnected. Total: {len(self._connections)}")

    @property
    def client_count(self) -> int:
        return len(self._connections)

    # =========================================================================
    # Sending
    # =========================================================================

    def _lock_for(self, websocket: WebSocket) -> asyncio.Lock:
        lock = self._send_locks.get(websocket)
        if lock is None:
            lock = asyncio.Lock()
            self._send_locks[websocket] = lock
        return lock

    async def _send_text(self, websocket: WebSocket, text: str) -> None:
        async with self._lock_for(websocket):
            await websocket.send_text(text)

    async def send(self, websocket: WebSocket, message: Dict[str, Any], request_id: Optional[Any] = None) -> bool:
        """Send to one client, echoing request_id as 'id' when given."""
        if request_id is not None:
            message = {**message, "id": request_id}
        try:
            await self._send_text(websocket, orjson.dumps(message).decode())
            return True
        except Exception as e:
            logger.error(f"[StatusBroadcaster] Send error: {e}")
            return False

    async def send_error(self, websocket: WebSocket, error: str, request_id: Optional[Any] = None) -> bool:
        return await self.send(websocket, {"type": "error", "error": error}, request_id)

    async def broadcast(self, message: Dict[str, Any]):
        """Broadcast a message to all connected clients using TaskGroup.

        A failed send drops that client from the set; the rest still receive
        the message.
        """
        if not self._connections:
            return

        async with self._lock:
            connections_list = list(self._connections)

        if not connections_list:
            return

        message_text = orjson.dumps(message).decode()
        disconnected: set[WebSocket] = set()

        async def send_to_client(connection: WebSocket):
            try:
                await self._send_text(connection, message_text)
            except Exception as e:
                logger.warning(f"[StatusBroadcaster] Send failed: {e}")
                disconnected.add(connection)

        try:
            async with asyncio.TaskGroup() as tg:
                for conn in connections_list:
                    tg.create_task(send_to_client(conn))
        except* Exception as eg:
            for exc in eg.exceptions:
                logger.warning(f"[StatusBroadcaster] TaskGroup exception: {exc}")

        if disconnected:
            async with self._lock:
                self._connections -= disconnected

    # =========================================================================
    # Hub event handlers
    # =========================================================================

    async def on_hub_connected(self):
        await self.broadcast({"type": "connection_status", "connected": True})

    async def on_hub_disconnected(self):
        await self.broadcast({"type": "connection_status", "connected": False})

    async def on_state_changed(self, data: Dict[str, Any]):
        await self.broadcast({"type": "state_changed", "data": data})

    async def close(self):
        """Close all local connections (shutdown)."""
        async with self._lock:
            connections_list = list(self._connections)
            self._connections.clear()
        for conn in connections_list:
            try:
                await conn.close()
            except Exception as e:
                logger.debug(f"[StatusBroadcaster] Close failed: {e}")
