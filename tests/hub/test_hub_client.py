"""Tests for HubEventClient against an in-process fake hub."""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from conftest import wait_until
from services.correlation import RequestTimeoutError
from services.hub import (
    HubConnectionState,
    HubEventClient,
    HubNotConnectedError,
    HubRequestError,
)

TOKEN = "supervisor-token"


class FakeHub:
    """Speaks enough of the Home Assistant WebSocket API for the client."""

    def __init__(self):
        self.server = None
        self.sockets = []
        self.received = []
        self.connections = 0
        self.reply = True

    def make_app(self):
        app = web.Application()
        app.router.add_get("/api/websocket", self.handler)
        return app

    @property
    def ws_url(self):
        return str(self.server.make_url("/api/websocket")).replace("http://", "ws://")

    async def handler(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        self.connections += 1
        await ws.send_json({"type": "auth_required"})

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = json.loads(msg.data)
            self.received.append(data)
            msg_type = data.get("type")

            if msg_type == "auth":
                if data.get("access_token") == TOKEN:
                    await ws.send_json({"type": "auth_ok"})
                else:
                    await ws.send_json({"type": "auth_invalid", "message": "bad token"})
            elif not self.reply:
                continue
            elif msg_type == "subscribe_events":
                await ws.send_json({"id": data["id"], "type": "result", "success": True, "result": None})
            elif msg_type == "get_states":
                await ws.send_json({
                    "id": data["id"], "type": "result", "success": True,
                    "result": [{"entity_id": "light.kitchen", "state": "on"}],
                })
            elif msg_type == "call_service":
                if data["domain"] == "broken":
                    await ws.send_json({
                        "id": data["id"], "type": "result", "success": False,
                        "error": {"code": "not_found", "message": "Service not found"},
                    })
                else:
                    await ws.send_json({
                        "id": data["id"], "type": "result", "success": True,
                        "result": {"context": {"id": "ctx"}},
                    })
        return ws

    async def push_state_change(self, entity_id, new_state):
        await self.sockets[-1].send_json({
            "type": "event",
            "event": {
                "event_type": "state_changed",
                "data": {
                    "entity_id": entity_id,
                    "new_state": {"state": new_state},
                    "old_state": {"state": "off"},
                },
            },
        })


@pytest.fixture
async def fake_hub_server():
    hub = FakeHub()
    server = TestServer(hub.make_app())
    await server.start_server()
    hub.server = server
    yield hub
    await server.close()


@pytest.fixture
async def hub_client(fake_hub_server):
    client = HubEventClient(fake_hub_server.ws_url, TOKEN, reconnect_delay=0.05, request_timeout=1.0)
    yield client
    await client.close()


async def test_connects_authenticates_and_subscribes(hub_client, fake_hub_server):
    connected = []

    async def on_connected():
        connected.append(True)

    hub_client.on("connected", on_connected)
    await hub_client.start()
    await wait_until(hub_client.is_connected)

    assert connected == [True]
    assert hub_client.state == HubConnectionState.SUBSCRIBED
    sent_types = [m["type"] for m in fake_hub_server.received]
    assert sent_types[:2] == ["auth", "subscribe_events"]
    assert fake_hub_server.received[1]["event_type"] == "state_changed"


async def test_state_changed_events_reach_listeners(hub_client, fake_hub_server):
    events = []

    async def on_state(data):
        events.append(data)

    hub_client.on("state_changed", on_state)
    await hub_client.start()
    await wait_until(hub_client.is_connected)

    await fake_hub_server.push_state_change("light.kitchen", "on")
    await wait_until(lambda: events)

    assert events[0] == {
        "entity_id": "light.kitchen",
        "new_state": {"state": "on"},
        "old_state": {"state": "off"},
    }


async def test_failing_listener_does_not_block_others(hub_client, fake_hub_server):
    events = []

    async def broken(data):
        raise RuntimeError("listener bug")

    async def working(data):
        events.append(data["entity_id"])

    hub_client.on("state_changed", broken)
    hub_client.on("state_changed", working)
    await hub_client.start()
    await wait_until(hub_client.is_connected)

    await fake_hub_server.push_state_change("switch.fan", "on")
    await wait_until(lambda: events)
    assert events == ["switch.fan"]


async def test_requests_are_correlated(hub_client):
    await hub_client.start()
    await wait_until(hub_client.is_connected)

    states = await hub_client.get_states()
    result = await hub_client.call_service("light", "turn_on", {"brightness": 100}, {"entity_id": "light.kitchen"})

    assert states == [{"entity_id": "light.kitchen", "state": "on"}]
    assert result == {"context": {"id": "ctx"}}
    assert await hub_client.get_state("light.kitchen") == {"entity_id": "light.kitchen", "state": "on"}
    assert await hub_client.get_state("light.missing") is None
    assert hub_client.pending_count == 0


async def test_call_service_sends_service_data_and_target(hub_client, fake_hub_server):
    await hub_client.start()
    await wait_until(hub_client.is_connected)

    await hub_client.call_service("light", "turn_on", {"brightness": 100}, {"entity_id": "light.kitchen"})

    sent = [m for m in fake_hub_server.received if m["type"] == "call_service"][-1]
    assert sent["service_data"] == {"brightness": 100}
    assert sent["target"] == {"entity_id": "light.kitchen"}


async def test_failed_reply_raises_hub_request_error(hub_client):
    await hub_client.start()
    await wait_until(hub_client.is_connected)

    with pytest.raises(HubRequestError) as excinfo:
        await hub_client.call_service("broken", "service")
    assert str(excinfo.value) == "Service not found"


async def test_request_without_reply_times_out(hub_client, fake_hub_server):
    await hub_client.start()
    await wait_until(hub_client.is_connected)
    fake_hub_server.reply = False

    with pytest.raises(RequestTimeoutError):
        await hub_client.request({"type": "get_states"}, timeout=0.05)
    assert hub_client.pending_count == 0


async def test_request_while_disconnected_raises(hub_client):
    with pytest.raises(HubNotConnectedError) as excinfo:
        await hub_client.get_states()
    assert str(excinfo.value) == "Not connected to Home Assistant"


async def test_disconnect_rejects_pending_and_reconnects(hub_client, fake_hub_server):
    disconnects = []

    async def on_disconnected():
        disconnects.append(True)

    hub_client.on("disconnected", on_disconnected)
    await hub_client.start()
    await wait_until(hub_client.is_connected)
    fake_hub_server.reply = False

    pending = asyncio.create_task(hub_client.get_states())
    await wait_until(lambda: hub_client.pending_count == 1)

    await fake_hub_server.sockets[-1].close()

    with pytest.raises(HubNotConnectedError):
        await pending
    assert disconnects == [True]

    fake_hub_server.reply = True
    await wait_until(lambda: fake_hub_server.connections == 2)
    await wait_until(hub_client.is_connected)


async def test_message_handling_failure_closes_socket_and_reconnects(hub_client, fake_hub_server):
    await hub_client.start()
    await wait_until(hub_client.is_connected)

    handle_message = hub_client._handle_message
    failed = []

    async def fail_once(raw):
        if not failed:
            failed.append(raw)
            raise RuntimeError("handler bug")
        await handle_message(raw)

    hub_client._handle_message = fail_once
    await fake_hub_server.push_state_change("light.kitchen", "on")

    await wait_until(lambda: fake_hub_server.sockets[0].closed)
    await wait_until(lambda: fake_hub_server.connections == 2)
    await wait_until(hub_client.is_connected)
    assert len(failed) == 1


async def test_invalid_token_closes_socket(fake_hub_server):
    client = HubEventClient(fake_hub_server.ws_url, "wrong", reconnect_delay=10)
    try:
        await client.start()
        await wait_until(lambda: client.state == HubConnectionState.DISCONNECTED and client.ws is None)
        assert not client.is_connected()
    finally:
        await client.close()
