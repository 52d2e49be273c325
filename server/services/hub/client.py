"""
Hub WebSocket Client

Maintains one persistent connection to the Home Assistant WebSocket API,
subscribes to state_changed events, and exposes correlated request/response
calls (service calls, state queries) over the same socket.

Connection flow:
1. Connect to ws://supervisor/core/api/websocket
2. Receive auth_required, send {"type": "auth", "access_token": ...}
3. Receive auth_ok, subscribe to state_changed
4. Events are emitted to listeners; replies resolve pending requests
5. On close: pending requests fail, reconnect after a fixed delay
"""
import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import orjson

from constants import HUB_RECONNECT_DELAY, HUB_REQUEST_TIMEOUT
from core.logging import get_logger
from services.correlation import CorrelationTable
from services.timers import TimerRegistry
from .exceptions import HubNotConnectedError, HubRequestError

logger = get_logger(__name__)

Listener = Callable[..., Awaitable[None]]

HUB_EVENTS = ("connected", "disconnected", "state_changed")


class HubConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"


class HubEventClient:
    """WebSocket client for the Home Assistant event stream."""

    def __init__(
        self,
        ws_url: str,
        access_token: Optional[str],
        reconnect_delay: float = HUB_RECONNECT_DELAY,
        request_timeout: float = HUB_REQUEST_TIMEOUT,
    ):
        """
        Initialize hub client.

        Args:
            ws_url: Hub WebSocket URL (e.g., 'ws://supervisor/core/api/websocket')
            access_token: Bearer credential sent in the auth message
            reconnect_delay: Fixed delay between reconnect attempts
            request_timeout: Default timeout for correlated requests
        """
        self.ws_url = ws_url
        self.access_token = access_token
        self.reconnect_delay = reconnect_delay

        self.state = HubConnectionState.DISCONNECTED
        self.subscription_id: Optional[int] = None

        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.session: Optional[aiohttp.ClientSession] = None

        self._requests = CorrelationTable(default_timeout=request_timeout)
        self._timers = TimerRegistry("HubWS")
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in HUB_EVENTS}
        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False

    # =========================================================================
    # Listeners
    # =========================================================================

    def on(self, event: str, handler: Listener) -> None:
        """Register an async handler for 'connected', 'disconnected' or 'state_changed'."""
        if event not in self._listeners:
            raise ValueError(f"Unknown hub event: {event}")
        self._listeners[event].append(handler)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners[event]):
            try:
                await handler(*args)
            except Exception as e:
                logger.error("[HubWS] Listener failed", hub_event=event, error=str(e), exc_info=True)

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def start(self) -> None:
        self._closed = False
        self._timers.call_every("sweep", self._requests.default_timeout, self._sweep_expired)
        await self.connect()

    def _sweep_expired(self) -> None:
        expired = self._requests.sweep_expired()
        if expired:
            logger.warning("[HubWS] Expired pending requests", request_ids=expired)

    async def connect(self) -> None:
        """Open the hub socket. Failures schedule a reconnect."""
        if self._closed or self.state != HubConnectionState.DISCONNECTED:
            return

        self.state = HubConnectionState.CONNECTING
        logger.info("[HubWS] Connecting to Home Assistant WebSocket...", url=self.ws_url)

        try:
            if self.session is None or self.session.closed:
                self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=10))
            ws = await self.session.ws_connect(self.ws_url, heartbeat=30)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error("[HubWS] Failed to connect", error=str(e))
            self.state = HubConnectionState.DISCONNECTED
            self._schedule_reconnect()
            return

        if self._closed:
            await ws.close()
            self.state = HubConnectionState.DISCONNECTED
            return

        logger.info("[HubWS] WebSocket connected")
        self.ws = ws
        self.state = HubConnectionState.AUTHENTICATING
        self._receive_task = asyncio.create_task(self._receive_loop(ws))

    def _schedule_reconnect(self) -> None:
        if self._closed or self._timers.is_active("reconnect"):
            return
        logger.info(f"[HubWS] Reconnecting in {self.reconnect_delay:g}s...")
        self._timers.call_later("reconnect", self.reconnect_delay, self.connect)

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("[HubWS] WebSocket error", error=str(ws.exception()))
                    break
        except Exception as e:
            logger.error("[HubWS] Receive error", error=str(e))
        finally:
            if not ws.closed:
                await ws.close()
            await self._on_closed(ws)

    async def _on_closed(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if ws is not self.ws:
            return
        logger.info("[HubWS] WebSocket closed", code=ws.close_code)
        self.ws = None
        self.state = HubConnectionState.DISCONNECTED
        self.subscription_id = None
        self._requests.reject_all(HubNotConnectedError())
        await self._emit("disconnected")
        self._schedule_reconnect()

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closed = True
        self._timers.cancel_all()
        ws = self.ws
        if ws is not None and not ws.closed:
            await ws.close()
        if self._receive_task and not self._receive_task.done():
            await self._receive_task
        if self.session and not self.session.closed:
            await self.session.close()
        self.state = HubConnectionState.DISCONNECTED

    def is_connected(self) -> bool:
        """Connected, authenticated and subscribed."""
        return (
            self.state == HubConnectionState.SUBSCRIBED
            and self.ws is not None
            and not self.ws.closed
        )

    # =========================================================================
    # Message Handling
    # =========================================================================

    async def _handle_message(self, raw: str) -> None:
        try:
            msg = orjson.loads(raw)
        except ValueError as e:
            logger.error("[HubWS] Invalid JSON", error=str(e))
            return
        if not isinstance(msg, dict):
            return

        msg_type = msg.get("type")

        if msg_type == "auth_required":
            await self._send_auth()
            return

        if msg_type == "auth_ok":
            logger.info("[HubWS] Authenticated successfully")
            await self._subscribe_to_state_changes()
            await self._emit("connected")
            return

        if msg_type == "auth_invalid":
            logger.error("[HubWS] Authentication failed", message=msg.get("message"))
            if self.ws is not None:
                await self.ws.close()
            return

        if msg_type == "event":
            event = msg.get("event") or {}
            if event.get("event_type") == "state_changed":
                data = event.get("data") or {}
                await self._emit("state_changed", {
                    "entity_id": data.get("entity_id"),
                    "new_state": data.get("new_state"),
                    "old_state": data.get("old_state"),
                })
            return

        request_id = msg.get("id")
        if request_id is not None and request_id in self._requests:
            if msg.get("success") is False:
                error = msg.get("error") or {}
                self._requests.reject(request_id, HubRequestError(
                    error.get("message") or "Unknown error", error.get("code")
                ))
            else:
                self._requests.resolve(request_id, msg.get("result"))

    async def _send(self, msg: Dict[str, Any]) -> None:
        if self.ws is None or self.ws.closed:
            raise HubNotConnectedError()
        await self.ws.send_str(orjson.dumps(msg).decode())

    async def _send_auth(self) -> None:
        if not self.access_token:
            logger.error("[HubWS] No SUPERVISOR_TOKEN available")
            return
        await self._send({"type": "auth", "access_token": self.access_token})

    async def _subscribe_to_state_changes(self) -> None:
        subscription_id = self._requests.next_id()
        await self._send({
            "id": subscription_id,
            "type": "subscribe_events",
            "event_type": "state_changed",
        })
        self.subscription_id = subscription_id
        self.state = HubConnectionState.SUBSCRIBED
        logger.info("[HubWS] Subscribed to state_changed events", subscription_id=subscription_id)

    # =========================================================================
    # Requests
    # =========================================================================

    async def request(self, payload: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """Send a request and wait for the reply with the same id."""
        if not self.is_connected():
            raise HubNotConnectedError()

        request_id, future = self._requests.create(timeout)
        try:
            await self._send({**payload, "id": request_id})
        except (HubNotConnectedError, ConnectionError, RuntimeError, aiohttp.ClientError) as e:
            self._requests.reject(request_id, HubNotConnectedError(f"Failed to send request: {e}"))
        return await self._requests.wait(request_id, future, timeout)

    async def call_service(
        self,
        domain: str,
        service: str,
        data: Optional[Dict[str, Any]] = None,
        target: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call a Home Assistant service."""
        return await self.request({
            "type": "call_service",
            "domain": domain,
            "service": service,
            "service_data": data or {},
            "target": target or {},
        })

    async def get_states(self) -> List[Dict[str, Any]]:
        return await self.request({"type": "get_states"})

    async def get_state(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Current state of one entity, or None if unknown."""
        states = await self.get_states()
        return next((s for s in states or [] if s.get("entity_id") == entity_id), None)

    @property
    def pending_count(self) -> int:
        return self._requests.pending_count
