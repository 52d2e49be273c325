"""
Pytest fixtures for bridge tests.

Fakes:
- FakeHubClient: stands in for HubEventClient (listeners, service calls, states)
- FakeRelay: aiohttp test server playing the relay worker (challenge/issue,
  /api/status and the agent WebSocket)
"""

import asyncio
import base64
import json
import os
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from services.hub import HubNotConnectedError
from services.identity import IdentityStore, decode_base64_any
from services.relay import RelayOrigin, RelaySessionManager, normalize_relay_origin


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeHubClient:
    """Minimal HubEventClient double."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.states: List[Dict[str, Any]] = [{"entity_id": "light.kitchen", "state": "on"}]
        self.calls: List[tuple] = []
        self.listeners: Dict[str, List[Callable]] = {}
        self.fail_with: Optional[Exception] = None

    def on(self, event: str, handler: Callable) -> None:
        self.listeners.setdefault(event, []).append(handler)

    async def emit(self, event: str, *args: Any) -> None:
        for handler in self.listeners.get(event, []):
            await handler(*args)

    def is_connected(self) -> bool:
        return self.connected

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if not self.connected:
            raise HubNotConnectedError()

    async def call_service(self, domain, service, data=None, target=None):
        self._check()
        self.calls.append((domain, service, data, target))
        return {"context": {"id": "ctx-1"}}

    async def get_states(self):
        self._check()
        return self.states


class FakeRelay:
    """In-process relay worker."""

    def __init__(self):
        self.server: Optional[TestServer] = None
        self.agent_id = "agent-1"
        self.nonce = base64.urlsafe_b64encode(os.urandom(32)).rstrip(b"=").decode()
        self.token_expires_in: Any = 300
        self.app_count = 0
        # When set, the agent socket upgrade is answered with this HTTP status
        self.upgrade_status: Optional[int] = None
        self.auto_register = True

        self.challenges = 0
        self.issues = 0
        self.connections = 0
        self.closes = 0
        self.status_polls = 0
        self.auth_headers: List[Optional[str]] = []
        self.received: List[Dict[str, Any]] = []
        self.sockets: List[web.WebSocketResponse] = []
        self.signature_valid: Optional[bool] = None
        self.public_key: Optional[str] = None

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/agent/challenge", self.challenge)
        app.router.add_post("/api/agent/issue", self.issue)
        app.router.add_get("/api/status", self.status)
        app.router.add_get("/agent", self.agent_socket)
        return app

    @property
    def origin(self) -> str:
        return normalize_relay_origin(str(self.server.make_url("/")))

    async def challenge(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.challenges += 1
        self.public_key = body["public_key"]
        return web.json_response({"agent_id": self.agent_id, "nonce": self.nonce})

    async def issue(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.issues += 1
        key = Ed25519PublicKey.from_public_bytes(decode_base64_any(body["public_key"]))
        try:
            key.verify(decode_base64_any(body["signature"]), decode_base64_any(self.nonce))
            self.signature_valid = True
        except InvalidSignature:
            self.signature_valid = False
            return web.json_response({"error": "bad signature"}, status=401)
        ws_url = self.origin.replace("http://", "ws://") + "/agent"
        return web.json_response({
            "agent_token": f"token-{self.issues}",
            "ws_url": ws_url,
            "token_expires_in": self.token_expires_in,
        })

    async def status(self, request: web.Request) -> web.Response:
        self.status_polls += 1
        return web.json_response({"app_count": self.app_count})

    async def agent_socket(self, request: web.Request):
        if self.upgrade_status is not None:
            return web.Response(status=self.upgrade_status, text="rejected")
        self.auth_headers.append(request.headers.get("Authorization"))
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        self.connections += 1
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = json.loads(msg.data)
            self.received.append(data)
            if data.get("type") == "register_bridge" and self.auto_register:
                await ws.send_json({"type": "register_ok", "agent_id": self.agent_id})
        self.closes += 1
        return ws

    def received_of(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.received if m.get("type") == msg_type]

    async def send(self, message: Dict[str, Any]) -> None:
        await self.sockets[-1].send_json(message)


@pytest.fixture
def identity(tmp_path) -> IdentityStore:
    return IdentityStore(str(tmp_path / "agent.json"))


@pytest.fixture
def fake_hub() -> FakeHubClient:
    return FakeHubClient()


@pytest.fixture
async def fake_relay():
    relay = FakeRelay()
    server = TestServer(relay.make_app())
    await server.start_server()
    relay.server = server
    yield relay
    await server.close()


@pytest.fixture
async def make_session(identity, fake_hub, fake_relay):
    """Factory for RelaySessionManager pointed at the fake relay."""
    sessions: List[RelaySessionManager] = []

    def factory(**kwargs) -> RelaySessionManager:
        kwargs.setdefault("rand", lambda: 0.0)
        session = RelaySessionManager(
            identity,
            fake_hub,
            None,
            RelayOrigin(fake_relay.origin, "env"),
            **kwargs,
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        await session.close()
