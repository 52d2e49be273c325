"""Tests for the local WebSocket endpoint and the HTTP control routes."""

import httpx
import pytest
from dependency_injector import providers
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse
from fastapi.testclient import TestClient

from conftest import wait_until
from core.container import container
from routers import health, relay, websocket
from services.relay import RelayOrigin, RelaySessionManager, RelayStatus
from services.status_broadcaster import StatusBroadcaster


def _make_app() -> FastAPI:
    app = FastAPI(default_response_class=ORJSONResponse)
    app.include_router(health.router)
    app.include_router(relay.router)
    app.include_router(websocket.router)
    return app


@pytest.fixture
def overrides(fake_hub):
    """Point the container at fakes; returns a setter for the relay session."""
    broadcaster = StatusBroadcaster(fake_hub)
    container.hub_client.override(providers.Object(fake_hub))
    container.broadcaster.override(providers.Object(broadcaster))

    def use_relay(session: RelaySessionManager) -> None:
        container.relay_session.override(providers.Object(session))

    yield use_relay
    container.hub_client.reset_override()
    container.broadcaster.reset_override()
    container.relay_session.reset_override()


@pytest.fixture
async def unconfigured_relay(identity, fake_hub):
    session = RelaySessionManager(identity, fake_hub, None, RelayOrigin(None, "env_invalid", ["RELAY_URL is invalid"]))
    yield session
    await session.close()


@pytest.fixture
async def http(overrides):
    transport = httpx.ASGITransport(app=_make_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://bridge") as client:
        yield client


# =============================================================================
# Local WebSocket
# =============================================================================

def test_request_while_hub_down_gets_error_with_id(overrides, fake_hub):
    fake_hub.connected = False
    client = TestClient(_make_app())

    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"type": "connection_status", "connected": False}

        ws.send_json({"type": "get_states", "id": 7})
        assert ws.receive_json() == {"type": "error", "id": 7, "error": "Not connected to Home Assistant"}

        # The connection stays usable after an error
        ws.send_json({"type": "ping", "id": 8})
        assert ws.receive_json() == {"type": "pong", "id": 8}


def test_call_service_and_get_states(overrides, fake_hub):
    client = TestClient(_make_app())

    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"type": "connection_status", "connected": True}

        ws.send_json({"type": "call_service", "id": "a", "domain": "light", "service": "turn_on", "data": {"brightness": 1}})
        assert ws.receive_json() == {
            "type": "service_result", "id": "a", "success": True, "result": {"context": {"id": "ctx-1"}},
        }

        ws.send_json({"type": "get_states", "id": "b"})
        assert ws.receive_json() == {"type": "states", "id": "b", "data": fake_hub.states}

    assert fake_hub.calls == [("light", "turn_on", {"brightness": 1}, None)]


def test_bad_messages_are_reported(overrides):
    client = TestClient(_make_app())

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()

        ws.send_text("{not json")
        assert ws.receive_json() == {"type": "error", "error": "Invalid JSON"}

        ws.send_json({"type": "bogus", "id": "x"})
        assert ws.receive_json() == {"type": "error", "id": "x", "error": "Unknown message type: bogus"}

        ws.send_json({"type": "call_service", "id": 1, "domain": "light"})
        assert ws.receive_json() == {"type": "error", "id": 1, "error": "service required"}

        ws.send_json({"type": "call_service", "id": 2})
        assert ws.receive_json() == {"type": "error", "id": 2, "error": "domain and service required"}


def test_binary_frame_is_rejected_without_dropping_connection(overrides):
    client = TestClient(_make_app())

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()

        ws.send_bytes(b"\x00\x01")
        assert ws.receive_json() == {"type": "error", "error": "Invalid message"}

        ws.send_json({"type": "ping", "id": 9})
        assert ws.receive_json() == {"type": "pong", "id": 9}


def test_ingress_path_serves_the_same_endpoint(overrides):
    client = TestClient(_make_app())

    with client.websocket_connect("/api/hassio_ingress/abc123/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


# =============================================================================
# Control routes
# =============================================================================

async def test_pair_rejects_invalid_code(http, overrides, unconfigured_relay):
    overrides(unconfigured_relay)

    response = await http.post("/relay/pair", json={"pair_code": "zzz"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid pair_code (expected 6 hex chars)"}


async def test_pair_without_origin_reports_config_error(http, overrides, unconfigured_relay):
    overrides(unconfigured_relay)

    response = await http.post("/relay/pair", json={"pair_code": "abcdef"})

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert body["pair_code"] == "ABCDEF"
    assert body["status"]["status"] == "config_error"
    assert body["status"]["last_error"] == "CONFIG ERROR: RELAY_URL is invalid"


async def test_pair_without_body_regenerates_code(http, overrides, unconfigured_relay):
    overrides(unconfigured_relay)
    unconfigured_relay.identity.set_pair_code("000000")

    response = await http.post("/relay/pair")

    assert response.status_code == 200
    assert response.json()["pair_code"] == unconfigured_relay.get_pair_code()
    assert len(response.json()["pair_code"]) == 6
    assert response.json()["success"] is False


async def test_pair_starts_relay_session(http, overrides, make_session, fake_relay):
    session = make_session()
    overrides(session)

    response = await http.post("/relay/pair", json={"pair_code": "a1b2c3"})

    assert response.json()["success"] is True
    await wait_until(lambda: session.status == RelayStatus.REGISTERED)
    assert fake_relay.received_of("register_bridge")[-1]["pair_code"] == "A1B2C3"


async def test_status_and_worker_status(http, overrides, make_session, fake_relay):
    fake_relay.app_count = 4
    overrides(make_session())

    status = (await http.get("/relay/status")).json()
    worker = (await http.get("/relay/worker-status")).json()

    assert status["status"] == "disconnected"
    assert status["worker_status"]["data"] == {"app_count": 4}
    assert worker == {"ok": True, "url": f"{fake_relay.origin}/api/status", "data": {"app_count": 4}}


async def test_worker_status_without_origin(http, overrides, unconfigured_relay):
    overrides(unconfigured_relay)

    response = await http.get("/relay/worker-status")
    assert response.json() == {"error": "relay_origin is not set"}


async def test_stop_and_regenerate(http, overrides, unconfigured_relay):
    overrides(unconfigured_relay)

    stopped = (await http.post("/relay/stop")).json()
    assert stopped["success"] is True
    assert stopped["status"]["status"] == "disconnected"

    regenerated = (await http.post("/relay/regenerate-code")).json()
    assert regenerated["pair_code"] == unconfigured_relay.get_pair_code()


async def test_wrong_method_is_405(http, overrides, unconfigured_relay):
    overrides(unconfigured_relay)
    assert (await http.get("/relay/pair")).status_code == 405


async def test_health_and_ws_status(http, overrides, unconfigured_relay, fake_hub):
    overrides(unconfigured_relay)
    fake_hub.connected = False

    body = (await http.get("/health")).json()
    ws_status = (await http.get("/ws/status")).json()

    assert body["status"] == "ok"
    assert body["service"] == "royaframe-bridge"
    assert body["hub_connected"] is False
    assert body["ws_clients"] == 0
    assert body["relay"]["configured"] is False
    assert body["relay_worker_status"] == {"error": "relay_origin is not set"}
    assert ws_status == {"hub_connected": False, "clients": 0}
