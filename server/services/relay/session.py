"""
Relay Session Manager

Keeps the optional outbound connection to the cloud relay alive and routes
relay traffic to the hub.

Connection flow:
1. start(): check the relay origin, read hub config for the home id
2. connect(): reuse the agent token or authenticate (challenge -> sign -> issue)
3. Open the relay WebSocket with Authorization: Bearer <agent_token>
4. Send register_bridge, wait up to 10s for register_ok
5. Serve call_service / get_states / ping, forward hub state changes
6. On close: reconnect with backoff, or stay idle until a viewer shows up
"""
import asyncio
import math
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp
import httpx
import orjson

from constants import (
    DEFAULT_TOKEN_TTL,
    IDLE_POLL_INTERVAL,
    IDLE_POLL_TIMEOUT,
    IDLE_TIMEOUT,
    MIN_TOKEN_REFRESH_DELAY,
    MIN_TOKEN_TTL,
    RECONNECT_BASE_DELAY,
    RECONNECT_JITTER_RATIO,
    RECONNECT_MAX_DELAY,
    REGISTER_TIMEOUT,
    RELAY_HEARTBEAT,
    SIGNATURE_BYTES,
    TOKEN_REFRESH_SAFETY,
    WORKER_STATUS_TIMEOUT,
)
from core.logging import get_logger
from services.hub import HubError, HubEventClient, HubRestClient
from services.identity import IdentityError, IdentityStore, decode_base64_any
from services.timers import TimerRegistry
from .api import RelayApiClient
from .exceptions import (
    AuthError,
    ProtocolError,
    RegistrationTimeoutError,
    RelayConfigError,
    RelayConnectionError,
    UnauthorizedError,
)
from .origin import RelayOrigin
from .protocol import (
    CLOSE_ABNORMAL,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    INBOUND_REQUEST_TYPES,
    REGISTER_ACK_TYPES,
    CloseIntent,
    IdleState,
    RelayStatus,
    build_register_message,
    derive_home_id,
    extract_app_count,
    is_unauthorized_error,
)

logger = get_logger(__name__)

Listener = Callable[..., Awaitable[None]]

RELAY_EVENTS = ("registered", "paired", "disconnected")

# Shown while a connection attempt is in flight. An unauthorized status is
# kept over these until the next successful registration.
_PROGRESS_STATUSES = frozenset([
    RelayStatus.CONNECTING,
    RelayStatus.AUTHENTICATING,
    RelayStatus.CONNECTED,
    RelayStatus.REGISTERING,
])

# Timer names
REGISTER_TIMER = "register"
TOKEN_REFRESH_TIMER = "token_refresh"
IDLE_TIMER = "idle"
IDLE_POLL_TIMER = "idle_poll"
RECONNECT_TIMER = "reconnect"


class RelaySessionManager:
    """Outbound relay connection: auth, registration, backoff, idle and routing."""

    def __init__(
        self,
        identity: IdentityStore,
        hub_client: HubEventClient,
        hub_rest: Optional[HubRestClient],
        relay_origin: RelayOrigin,
        api: Optional[RelayApiClient] = None,
        *,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        jitter_ratio: float = RECONNECT_JITTER_RATIO,
        register_timeout: float = REGISTER_TIMEOUT,
        idle_timeout: float = IDLE_TIMEOUT,
        idle_poll_interval: float = IDLE_POLL_INTERVAL,
        clock: Callable[[], float] = time.time,
        rand: Callable[[], float] = random.random,
    ):
        self.identity = identity
        self.hub_client = hub_client
        self.hub_rest = hub_rest
        self.relay_origin = relay_origin
        self.api = api or (RelayApiClient(relay_origin.origin) if relay_origin.valid else None)

        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self.register_timeout = register_timeout
        self.idle_timeout = idle_timeout
        self.idle_poll_interval = idle_poll_interval
        self._clock = clock
        self._rand = rand

        # Session state
        self.status = RelayStatus.DISCONNECTED
        self.last_error: Optional[str] = None
        self.enabled = False
        self.should_retry = True
        self.registered = False
        self.reconnect_delay = base_delay

        # Token state (memory only)
        self.agent_token: Optional[str] = None
        self.token_expires_at: Optional[float] = None
        self.ws_url: Optional[str] = None

        # Hub info for registration
        self.home_id: Optional[str] = None
        self.location_name: Optional[str] = None
        self.hub_version: Optional[str] = None

        # Viewer tracking
        self.app_count: Optional[int] = None
        self.idle_state = IdleState.ACTIVE

        # WebSocket connection
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.session: Optional[aiohttp.ClientSession] = None
        self._receive_task: Optional[asyncio.Task] = None

        self._awaiting_register = False
        self._close_intent: Optional[CloseIntent] = None
        self._connecting = False
        self._auth_task: Optional[asyncio.Task] = None
        # Bumped by stop(); in-flight connects from an older epoch bail out
        self._epoch = 0

        self._timers = TimerRegistry("Relay")
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in RELAY_EVENTS}

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            **{ack: self._on_register_ack for ack in REGISTER_ACK_TYPES},
            "agent_ok": self._on_agent_ok,
            "paired": self._on_paired,
            "app_count": self._on_app_count,
            "viewer_online": self._on_viewer_online,
            "viewer_offline": self._on_viewer_offline,
            "agent_unauthorized": self._on_agent_unauthorized,
            "call_service": self._on_call_service,
            "get_states": self._on_get_states,
            "ping": self._on_ping,
            "error": self._on_relay_error,
        }

    # =========================================================================
    # Listeners
    # =========================================================================

    def on(self, event: str, handler: Listener) -> None:
        """Register an async handler for 'registered', 'paired' or 'disconnected'."""
        if event not in self._listeners:
            raise ValueError(f"Unknown relay event: {event}")
        self._listeners[event].append(handler)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners[event]):
            try:
                await handler(*args)
            except Exception as e:
                logger.error("[Relay] Listener failed", relay_event=event, error=str(e), exc_info=True)

    def bind_hub_events(self) -> None:
        """Forward hub state changes to the relay. Called once at startup."""
        self.hub_client.on("state_changed", self.forward_state_change)

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def configured(self) -> bool:
        return self.relay_origin.valid

    def get_config_errors(self) -> List[str]:
        return list(self.relay_origin.errors)

    def get_worker_http_origin(self) -> Optional[str]:
        return self.relay_origin.origin

    def _require_origin(self) -> str:
        if not self.relay_origin.valid:
            errors = self.get_config_errors() or ["relay_origin is not set"]
            raise RelayConfigError(f"CONFIG ERROR: {'; '.join(errors)}")
        return self.relay_origin.origin

    def get_agent_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {}
        if self.home_id:
            info["home_id"] = self.home_id
        if self.location_name:
            info["location_name"] = self.location_name
        if self.hub_version:
            info["ha_version"] = self.hub_version
        agent_id = self.identity.get_agent_id()
        if agent_id:
            info["agent_id"] = agent_id
        return info

    async def _load_hub_info(self) -> None:
        if self.hub_rest is None:
            return
        try:
            config = await self.hub_rest.get_config()
        except (HubError, httpx.HTTPError, ValueError) as e:
            logger.error("[Relay] Failed to fetch hub config", error=str(e))
            return
        if isinstance(config, dict):
            self.hub_version = config.get("version")
            self.location_name = config.get("location_name")
            self.home_id = derive_home_id(config)

    # =========================================================================
    # Status
    # =========================================================================

    def _set_status(self, status: RelayStatus, error: Optional[str] = None) -> None:
        """Single transition point for the reported status."""
        if status in _PROGRESS_STATUSES and self.status == RelayStatus.UNAUTHORIZED:
            return
        previous = self.status
        self.status = status
        if error:
            self.last_error = error
        if previous != status:
            logger.info("[Relay] Status changed",
                        status=status.value,
                        previous=previous.value,
                        error=error)

    @property
    def relay_connected(self) -> bool:
        return self.ws is not None and not self.ws.closed

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for the control routes. Never includes the token."""
        token_expires_in = None
        if self.token_expires_at:
            token_expires_in = max(0, math.floor(self.token_expires_at - self._clock()))
        key_info = self.identity.get_key_info()

        return {
            "configured": self.configured,
            "config_errors": self.get_config_errors(),
            "enabled": self.enabled,
            "relay_connected": self.relay_connected,
            "registered": self.registered,
            "status": self.status.value,
            "last_error": self.last_error,
            "pair_code": self.identity.get_pair_code(),
            "agent_id": self.identity.get_agent_id(),
            "relay_origin": self.relay_origin.origin,
            "relay_origin_source": self.relay_origin.source,
            "worker_http_origin": self.get_worker_http_origin(),
            "idle_state": self.idle_state.value,
            "app_count": self.app_count,
            "token_set": bool(self.agent_token),
            "token_expires_in": token_expires_in,
            "should_retry": self.should_retry,
            "reconnect_delay_ms": int(self.reconnect_delay * 1000),
            "key_ok": {
                "public_key_bytes": key_info["public_key_bytes"],
                "signature_bytes": SIGNATURE_BYTES,
            },
        }

    async def fetch_worker_status(self, timeout: float = WORKER_STATUS_TIMEOUT) -> Dict[str, Any]:
        """Relay worker /api/status, best-effort. Never raises."""
        if self.api is None:
            return {"error": "relay_origin is not set"}
        return await self.api.fetch_status(timeout)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """Enable the relay and begin connecting. False on a config error."""
        try:
            self._require_origin()
        except RelayConfigError as e:
            logger.error(f"[Relay] {e}")
            self.should_retry = False
            self._set_status(RelayStatus.CONFIG_ERROR, str(e))
            return False

        await self._load_hub_info()

        self.enabled = True
        self.should_retry = True
        self.last_error = None
        self.reconnect_delay = self.base_delay
        self._spawn(self.connect())
        return True

    async def stop(self) -> None:
        """Disable the relay and drop the connection. Safe to call repeatedly."""
        logger.info("[Relay] Stopping relay connection")
        self._epoch += 1
        self.enabled = False
        self.should_retry = False
        self._connecting = False
        self._awaiting_register = False
        self._timers.cancel_all()
        self._cancel_tasks()
        auth_task = self._auth_task
        if auth_task and not auth_task.done() and auth_task is not asyncio.current_task():
            auth_task.cancel()

        ws, self.ws = self.ws, None
        self._close_intent = None
        if ws is not None and not ws.closed:
            try:
                await ws.close(code=CLOSE_NORMAL, message=CloseIntent.STOP.value.encode())
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.debug("[Relay] Close on stop failed", error=str(e))
        receive_task, self._receive_task = self._receive_task, None
        if receive_task and not receive_task.done() and receive_task is not asyncio.current_task():
            receive_task.cancel()

        self.registered = False
        self._set_status(RelayStatus.DISCONNECTED)

    async def close(self) -> None:
        """Stop and release the HTTP session (shutdown)."""
        await self.stop()
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """One connection attempt. Failures schedule a backoff reconnect."""
        if not self.enabled or not self.should_retry or self._connecting:
            return
        if self.relay_connected:
            return

        if self.idle_state == IdleState.IDLE:
            self._timers.cancel(IDLE_POLL_TIMER)
            self.idle_state = IdleState.ACTIVE

        self._timers.cancel(RECONNECT_TIMER)
        self._connecting = True
        epoch = self._epoch
        self._set_status(RelayStatus.CONNECTING)

        try:
            token, ws_url = await self.ensure_token()
            if epoch != self._epoch:
                return
            if not ws_url:
                raise AuthError("Missing ws_url from relay")
            await self._open_socket(ws_url, token, epoch)
        except (AuthError, IdentityError, RelayConfigError, RelayConnectionError) as e:
            if epoch != self._epoch:
                return
            error_msg = f"Relay connect failed: {e}"
            logger.error(f"[Relay] {error_msg}")
            self._set_status(RelayStatus.ERROR, error_msg)
            self._schedule_reconnect()
        except Exception as e:
            if epoch != self._epoch:
                return
            error_msg = f"Relay connect failed: {e}"
            logger.error(f"[Relay] {error_msg}", exc_info=True)
            self._set_status(RelayStatus.ERROR, error_msg)
            self._schedule_reconnect()
        finally:
            if epoch == self._epoch:
                self._connecting = False

    async def ensure_token(self) -> Tuple[str, Optional[str]]:
        """Current (token, ws_url), re-authenticating within 60s of expiry."""
        if (
            self.agent_token
            and self.token_expires_at
            and self.token_expires_at - self._clock() > TOKEN_REFRESH_SAFETY
        ):
            return self.agent_token, self.ws_url
        return await self.authenticate()

    async def authenticate(self) -> Tuple[str, Optional[str]]:
        """Challenge/issue exchange. Concurrent callers share one attempt."""
        if self._auth_task is None:
            self._auth_task = asyncio.create_task(self._authenticate())
            self._auth_task.add_done_callback(self._auth_done)
        return await asyncio.shield(self._auth_task)

    def _auth_done(self, task: asyncio.Task) -> None:
        if self._auth_task is task:
            self._auth_task = None

    async def _authenticate(self) -> Tuple[str, Optional[str]]:
        self._require_origin()
        epoch = self._epoch
        self._set_status(RelayStatus.AUTHENTICATING)

        public_key = self.identity.get_public_key()
        key_info = self.identity.get_key_info()
        logger.info("[Relay] Challenge request",
                    public_key_string_length=key_info["public_key_string_length"],
                    public_key_bytes=key_info["public_key_bytes"])

        challenge = await self.api.request_challenge(public_key, self.get_agent_info())
        agent_id = challenge["agent_id"]
        self.identity.set_agent_id(agent_id)

        signature = self.identity.sign(str(challenge["nonce"]))
        signature_bytes = len(decode_base64_any(signature))
        logger.info("[Relay] Issue request",
                    signature_string_length=len(signature),
                    signature_bytes=signature_bytes)
        if signature_bytes != SIGNATURE_BYTES:
            logger.error(f"[Relay] Signature must be {SIGNATURE_BYTES} bytes, got {signature_bytes}")

        issue = await self.api.request_issue(agent_id, public_key, signature)
        if epoch != self._epoch:
            raise AuthError("Relay stopped during authentication")

        try:
            expires_in = float(issue.get("token_expires_in") or DEFAULT_TOKEN_TTL)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL
        if math.isnan(expires_in):
            expires_in = DEFAULT_TOKEN_TTL
        ttl = max(expires_in, MIN_TOKEN_TTL)

        self.agent_token = issue["agent_token"]
        self.ws_url = issue["ws_url"]
        self.token_expires_at = self._clock() + ttl
        self._schedule_token_refresh()

        logger.info("[Relay] Agent token issued",
                    token_set=True,
                    token_length=len(self.agent_token),
                    ttl_s=ttl)
        return self.agent_token, self.ws_url

    def _clear_token(self) -> None:
        self.agent_token = None
        self.token_expires_at = None
        self._timers.cancel(TOKEN_REFRESH_TIMER)

    def _schedule_token_refresh(self) -> None:
        self._timers.cancel(TOKEN_REFRESH_TIMER)
        if not self.token_expires_at:
            return
        refresh_in = max(
            self.token_expires_at - self._clock() - TOKEN_REFRESH_SAFETY,
            MIN_TOKEN_REFRESH_DELAY,
        )
        self._timers.call_later(TOKEN_REFRESH_TIMER, refresh_in, self._refresh_token)

    async def _refresh_token(self) -> None:
        self._clear_token()
        if self.idle_state == IdleState.IDLE:
            logger.info("[Relay] Agent token expired while idle, re-authenticating on wake")
            return
        logger.info("[Relay] Agent token expiring, reconnecting with a fresh token")
        if not await self._close_socket(CloseIntent.TOKEN_REFRESH):
            await self.connect()

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=None, connect=10)
            self.session = aiohttp.ClientSession(timeout=timeout)
        return self.session

    async def _open_socket(self, ws_url: str, token: str, epoch: int) -> None:
        logger.info("[Relay] Connecting...", url=ws_url, token_set=bool(token), token_length=len(token or ""))
        try:
            ws = await self._get_session().ws_connect(
                ws_url,
                headers={"Authorization": f"Bearer {token}"},
                heartbeat=RELAY_HEARTBEAT,
            )
        except aiohttp.WSServerHandshakeError as e:
            await self._on_upgrade_rejected(e.status)
            return
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise RelayConnectionError(f"WebSocket connect failed: {e}") from e

        if epoch != self._epoch or not self.enabled:
            await ws.close()
            return

        logger.info("[Relay] WebSocket connected")
        self.ws = ws
        self._close_intent = None
        self.last_error = None
        self.reconnect_delay = self.base_delay
        self._set_status(RelayStatus.CONNECTED)
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        await self._register()

    async def _on_upgrade_rejected(self, status_code: int) -> None:
        error_msg = f"HTTP {status_code} during WebSocket upgrade"
        logger.error(f"[Relay] {error_msg}")
        if status_code in (401, 403):
            await self._handle_unauthorized(error_msg)
            return
        if status_code in (200, 400):
            self._set_status(RelayStatus.ERROR, "Wrong endpoint or no websocket upgrade")
        else:
            self._set_status(RelayStatus.ERROR, error_msg)
        self._schedule_reconnect()

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("[Relay] WebSocket error", error=str(ws.exception()))
                    break
        except Exception as e:
            logger.error("[Relay] Receive error", error=str(e), exc_info=True)
        finally:
            if not ws.closed:
                await ws.close()
            await self._on_closed(ws)

    async def _close_socket(self, intent: CloseIntent, code: int = CLOSE_NORMAL) -> bool:
        """Close the open socket, recording why. False if nothing was open."""
        ws = self.ws
        if ws is None or ws.closed:
            return False
        self._close_intent = intent
        await ws.close(code=code, message=intent.value.encode())
        return True

    async def _on_closed(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if ws is not self.ws:
            return
        code = ws.close_code
        intent, self._close_intent = self._close_intent, None
        self.ws = None
        self._receive_task = None
        self.registered = False
        self._awaiting_register = False
        self._timers.cancel(REGISTER_TIMER)

        logger.info("[Relay] WebSocket closed", code=code, intent=intent.value if intent else None)

        if intent == CloseIntent.IDLE:
            self._set_status(RelayStatus.IDLE)
            return

        preserve_status = (
            intent in (CloseIntent.UNAUTHORIZED, CloseIntent.REGISTER_TIMEOUT)
            or self.status in (RelayStatus.UNAUTHORIZED, RelayStatus.CONFIG_ERROR)
        )
        if not preserve_status:
            if code == CLOSE_ABNORMAL:
                self._set_status(RelayStatus.DISCONNECTED,
                                 "1006 Abnormal close: relay server unavailable or rejected connection.")
            else:
                self._set_status(RelayStatus.DISCONNECTED,
                                 f"Connection closed: {code}" if code else "Connection closed")

        await self._emit("disconnected")

        if intent == CloseIntent.TOKEN_REFRESH:
            self.reconnect_delay = self.base_delay
            self._spawn(self.connect())
        elif intent == CloseIntent.UNAUTHORIZED:
            self._schedule_fresh_reconnect()
        elif self.should_retry:
            self._schedule_reconnect()

    # =========================================================================
    # Reconnect
    # =========================================================================

    def _schedule_reconnect(self) -> None:
        """Backoff reconnect: d plus up to 30% jitter, capped; d then doubles."""
        if self._timers.is_active(RECONNECT_TIMER) or not self.enabled or not self.should_retry:
            return
        jitter = self._rand() * self.jitter_ratio * self.reconnect_delay
        delay = min(self.reconnect_delay + jitter, self.max_delay)
        logger.info(f"[Relay] Reconnecting in {round(delay)}s...")
        self._timers.call_later(RECONNECT_TIMER, delay, self.connect)
        self.reconnect_delay = min(self.reconnect_delay * 2, self.max_delay)

    def _schedule_fresh_reconnect(self) -> None:
        """Reconnect after the base delay without growing the backoff."""
        if not self.enabled or not self.should_retry:
            return
        logger.info(f"[Relay] Re-authenticating in {self.base_delay:g}s...")
        self._timers.call_later(RECONNECT_TIMER, self.base_delay, self.connect)

    @property
    def reconnect_pending(self) -> bool:
        return self._timers.is_active(RECONNECT_TIMER)

    async def _handle_unauthorized(self, reason: str) -> None:
        error = UnauthorizedError(reason)
        logger.error(f"[Relay] {error}")
        self._clear_token()
        self._set_status(RelayStatus.UNAUTHORIZED, str(error))
        if not await self._close_socket(CloseIntent.UNAUTHORIZED, CLOSE_POLICY_VIOLATION):
            self._schedule_fresh_reconnect()

    # =========================================================================
    # Registration
    # =========================================================================

    async def _register(self) -> bool:
        if not self.relay_connected:
            return False
        self._set_status(RelayStatus.REGISTERING)
        self._awaiting_register = True
        self._timers.call_later(REGISTER_TIMER, self.register_timeout, self._on_register_timeout)

        home_id = self.home_id or self.location_name or "Home"
        msg = build_register_message(
            self.identity.get_pair_code(),
            home_id,
            self.identity.get_agent_id(),
        )
        logger.info("[Relay] Sending register_bridge",
                    pair_code=msg["pair_code"],
                    home_id=msg["home_id"],
                    agent_id=msg.get("agent_id"))
        sent = await self._send(msg)
        if not sent:
            logger.error("[Relay] Failed to send register_bridge, WebSocket not open")
        return sent

    async def _on_register_timeout(self) -> None:
        if not self._awaiting_register:
            return
        error = RegistrationTimeoutError()
        logger.error(f"[Relay] {error}")
        self._awaiting_register = False
        self._set_status(RelayStatus.ERROR, str(error))
        if not await self._close_socket(CloseIntent.REGISTER_TIMEOUT):
            self._schedule_reconnect()

    async def _on_register_ack(self, msg: Dict[str, Any]) -> None:
        if not self._awaiting_register:
            logger.warning(f"[Relay] Unexpected {msg['type']}; ignoring")
            return
        self._awaiting_register = False
        self._timers.cancel(REGISTER_TIMER)
        self.registered = True
        if msg.get("agent_id"):
            self.identity.set_agent_id(msg["agent_id"])
        self.last_error = None
        self._set_status(RelayStatus.REGISTERED)
        logger.info("[Relay] Registered with relay", agent_id=self.identity.get_agent_id())
        await self._emit("registered")

    # =========================================================================
    # Pair code
    # =========================================================================

    def get_pair_code(self) -> str:
        return self.identity.get_pair_code()

    async def regenerate_pair_code(self) -> str:
        code = self.identity.regenerate_pair_code()
        if self.relay_connected:
            await self._register()
        return code

    async def set_pair_code(self, pair_code: Any) -> bool:
        ok = self.identity.set_pair_code(pair_code)
        if ok and self.relay_connected:
            await self._register()
        return ok

    # =========================================================================
    # Idle management
    # =========================================================================

    def update_app_count(self, count: Optional[int]) -> None:
        """Track the relay's viewer count; zero viewers starts the idle timer."""
        if count is None:
            return
        self.app_count = count

        if count > 0:
            was_idle = self.idle_state == IdleState.IDLE
            self.idle_state = IdleState.ACTIVE
            self._timers.cancel(IDLE_TIMER)
            self._timers.cancel(IDLE_POLL_TIMER)
            if was_idle and self.enabled:
                self._spawn(self.connect())
            return

        self._schedule_idle_check()

    def _schedule_idle_check(self) -> None:
        if self._timers.is_active(IDLE_TIMER) or self.app_count != 0:
            return
        if self.idle_state != IdleState.IDLE:
            self.idle_state = IdleState.PENDING
        self._timers.call_later(IDLE_TIMER, self.idle_timeout, self._on_idle_timeout)

    async def _on_idle_timeout(self) -> None:
        if self.app_count != 0 or not self.relay_connected:
            return
        await self._enter_idle()

    async def _enter_idle(self) -> None:
        logger.info("[Relay] No viewers, closing relay connection until one appears")
        self._timers.cancel(IDLE_TIMER)
        self.idle_state = IdleState.IDLE
        self._timers.call_every(IDLE_POLL_TIMER, self.idle_poll_interval, self._check_for_viewers)
        await self._close_socket(CloseIntent.IDLE)

    async def _check_for_viewers(self) -> None:
        result = await self.fetch_worker_status(IDLE_POLL_TIMEOUT)
        if not result.get("ok"):
            logger.debug("[Relay] Idle poll failed", error=result.get("error"))
            return
        count = extract_app_count(result.get("data"))
        if count is not None and count > 0:
            logger.info("[Relay] Viewer detected while idle, reconnecting", app_count=count)
            self.app_count = count
            self.idle_state = IdleState.ACTIVE
            self._timers.cancel(IDLE_POLL_TIMER)
            await self.connect()

    # =========================================================================
    # Message Handling
    # =========================================================================

    def _parse_message(self, raw: str) -> Dict[str, Any]:
        try:
            msg = orjson.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e
        if not isinstance(msg, dict):
            raise ProtocolError("Relay message is not an object")
        msg_type = msg.get("type")
        if msg_type not in self._handlers:
            raise ProtocolError(f"Unknown message type: {msg_type}")
        return msg

    async def _handle_message(self, raw: str) -> None:
        try:
            msg = self._parse_message(raw)
        except ProtocolError as e:
            logger.warning(f"[Relay] {e}")
            return

        msg_type = msg["type"]
        logger.debug("[Relay] Message received", msg_type=msg_type)

        if msg_type in INBOUND_REQUEST_TYPES and not self.registered:
            logger.warning("[Relay] Request before registration; rejecting", msg_type=msg_type)
            await self._send({
                "type": "error",
                "request_id": msg.get("request_id"),
                "error": "Bridge not registered",
            })
            return

        await self._handlers[msg_type](msg)

    async def _on_agent_ok(self, msg: Dict[str, Any]) -> None:
        logger.debug("[Relay] Received agent_ok (ignored)")

    async def _on_paired(self, msg: Dict[str, Any]) -> None:
        logger.info("[Relay] Bridge paired with remote client", client_id=msg.get("client_id"))
        await self._emit("paired", msg.get("client_id"))

    async def _on_app_count(self, msg: Dict[str, Any]) -> None:
        self.update_app_count(extract_app_count(msg))

    async def _on_viewer_online(self, msg: Dict[str, Any]) -> None:
        self.update_app_count(1)

    async def _on_viewer_offline(self, msg: Dict[str, Any]) -> None:
        self.update_app_count(0)

    async def _on_agent_unauthorized(self, msg: Dict[str, Any]) -> None:
        await self._handle_unauthorized("agent_unauthorized")

    async def _on_relay_error(self, msg: Dict[str, Any]) -> None:
        error = str(msg.get("error") or "unknown error")
        logger.error(f"[Relay] Relay error: {error}")
        if is_unauthorized_error(error):
            await self._handle_unauthorized("relay_error")
        else:
            self._set_status(RelayStatus.ERROR, f"Relay error: {error}")

    async def _on_ping(self, msg: Dict[str, Any]) -> None:
        await self._send({"type": "pong", "request_id": msg.get("request_id")})

    async def _on_call_service(self, msg: Dict[str, Any]) -> None:
        self._spawn(self._call_service(msg))

    async def _on_get_states(self, msg: Dict[str, Any]) -> None:
        self._spawn(self._get_states(msg))

    async def _call_service(self, msg: Dict[str, Any]) -> None:
        request_id = msg.get("request_id")
        try:
            result = await self.hub_client.call_service(
                msg.get("domain"),
                msg.get("service"),
                msg.get("data") or {},
                msg.get("target") or {},
            )
        except (HubError, TimeoutError) as e:
            await self._send({
                "type": "service_result",
                "request_id": request_id,
                "success": False,
                "error": str(e),
            })
            return
        await self._send({
            "type": "service_result",
            "request_id": request_id,
            "success": True,
            "result": result,
        })

    async def _get_states(self, msg: Dict[str, Any]) -> None:
        request_id = msg.get("request_id")
        try:
            states = await self.hub_client.get_states()
        except (HubError, TimeoutError) as e:
            await self._send({"type": "error", "request_id": request_id, "error": str(e)})
            return
        await self._send({"type": "states", "request_id": request_id, "data": states})

    async def _send(self, msg: Dict[str, Any]) -> bool:
        ws = self.ws
        if ws is None or ws.closed:
            logger.warning("[Relay] send() called but WebSocket is not open", msg_type=msg.get("type"))
            return False
        try:
            await ws.send_str(orjson.dumps(msg).decode())
            return True
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.error("[Relay] send() failed", error=str(e))
            return False

    async def forward_state_change(self, data: Dict[str, Any]) -> None:
        """Push a hub state change to the relay while someone may be watching."""
        if not self.registered or self.app_count == 0:
            return
        await self._send({"type": "state_changed", "data": data})
