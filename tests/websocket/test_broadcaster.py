"""Tests for the local WebSocket fan-out."""

import json

from services.status_broadcaster import StatusBroadcaster


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.closed = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True


async def _connected(broadcaster, *sockets):
    for socket in sockets:
        await broadcaster.connect(socket)
        socket.sent.clear()


async def test_connect_sends_hub_status(fake_hub):
    fake_hub.connected = False
    broadcaster = StatusBroadcaster(fake_hub)
    socket = FakeSocket()

    await broadcaster.connect(socket)

    assert socket.accepted
    assert socket.sent == [{"type": "connection_status", "connected": False}]
    assert broadcaster.client_count == 1


async def test_failed_client_is_dropped_and_others_still_receive(fake_hub):
    broadcaster = StatusBroadcaster(fake_hub)
    first, second, third = FakeSocket(), FakeSocket(), FakeSocket()
    await _connected(broadcaster, first, second, third)
    second.fail = True

    await broadcaster.on_state_changed({"entity_id": "light.kitchen"})

    expected = [{"type": "state_changed", "data": {"entity_id": "light.kitchen"}}]
    assert first.sent == expected
    assert third.sent == expected
    assert broadcaster.client_count == 2


async def test_hub_events_are_broadcast(fake_hub):
    broadcaster = StatusBroadcaster(fake_hub)
    broadcaster.bind_hub_events()
    socket = FakeSocket()
    await _connected(broadcaster, socket)

    await fake_hub.emit("disconnected")
    await fake_hub.emit("connected")
    await fake_hub.emit("state_changed", {"entity_id": "switch.fan"})

    assert socket.sent == [
        {"type": "connection_status", "connected": False},
        {"type": "connection_status", "connected": True},
        {"type": "state_changed", "data": {"entity_id": "switch.fan"}},
    ]


async def test_send_echoes_request_id(fake_hub):
    broadcaster = StatusBroadcaster(fake_hub)
    socket = FakeSocket()

    assert await broadcaster.send_error(socket, "boom", request_id=7) is True
    assert socket.sent == [{"type": "error", "error": "boom", "id": 7}]

    socket.fail = True
    assert await broadcaster.send(socket, {"type": "pong"}) is False


async def test_close_closes_every_client(fake_hub):
    broadcaster = StatusBroadcaster(fake_hub)
    sockets = [FakeSocket(), FakeSocket()]
    await _connected(broadcaster, *sockets)

    await broadcaster.close()

    assert all(s.closed for s in sockets)
    assert broadcaster.client_count == 0
