from __future__ import annotations

import asyncio

import pytest
from socketio.exceptions import ConnectionError as SocketConnectionError

from adapters.socketio_transport import SocketIOTransport
from core.errors import TransportUnavailable
from core.models import PresenceStatus
from core.ports import (
    EVENT_MESSAGE_NEW,
    EVENT_MESSAGE_SEND,
    EVENT_PRESENCE_CHANGED,
    EVENT_TRANSPORT_DOWN,
    EVENT_TRANSPORT_UP,
)

from fakes import msg


class FakeSocketClient:
    """Stands in for socketio.AsyncClient; ``deliver`` plays server events."""

    def __init__(self, refuse: bool = False) -> None:
        self.connected = False
        self.refuse = refuse
        self.handlers: dict = {}
        self.emitted: list[tuple[str, dict]] = []
        self.connect_args: dict = {}

    def on(self, event, handler) -> None:
        self.handlers[event] = handler

    async def connect(self, url, **kwargs) -> None:
        if self.refuse:
            raise SocketConnectionError("refused")
        self.connect_args = {"url": url, **kwargs}
        self.connected = True
        await self.handlers["connect"]()

    async def disconnect(self) -> None:
        self.connected = False
        self.handlers["disconnect"]()

    async def emit(self, event, payload) -> None:
        self.emitted.append((event, payload))

    async def wait(self) -> None:
        return None

    def deliver(self, event, payload) -> None:
        self.handlers[event](payload)


def _transport(sio: FakeSocketClient):
    transport = SocketIOTransport("http://registry.test", "tok", "J", client=sio)
    seen: dict = {}
    for event in (EVENT_MESSAGE_NEW, EVENT_PRESENCE_CHANGED, EVENT_TRANSPORT_UP, EVENT_TRANSPORT_DOWN):
        transport.on(event, lambda value, event=event: seen.setdefault(event, []).append(value))
    return transport, seen


def test_connect_sends_setup_and_reports_up() -> None:
    sio = FakeSocketClient()
    transport, seen = _transport(sio)

    asyncio.run(transport.connect())

    assert sio.connect_args["auth"] == {"token": "tok"}
    assert sio.emitted[0] == ("setup", {"_id": "J"})
    assert seen[EVENT_TRANSPORT_UP] == [None]
    assert transport.connected


def test_refused_connection_raises_transport_unavailable() -> None:
    transport, _ = _transport(FakeSocketClient(refuse=True))

    with pytest.raises(TransportUnavailable):
        asyncio.run(transport.connect())


def test_inbound_messages_are_decoded() -> None:
    sio = FakeSocketClient()
    transport, seen = _transport(sio)

    sio.deliver(
        "message:new",
        {"_id": "m1", "sender": "A", "receiver": "J", "text": "hi", "createdAt": "2024-05-01T09:00:00Z"},
    )
    sio.deliver("message:new", {"text": "no id"})

    messages = seen[EVENT_MESSAGE_NEW]
    assert [message.id for message in messages] == ["m1"]
    assert messages[0].channel_id == "direct:A|J"


def test_presence_events_and_online_list() -> None:
    sio = FakeSocketClient()
    transport, seen = _transport(sio)

    sio.deliver("connected", {"onlineUsers": ["A"]})
    sio.deliver("presence:offline", {"userId": "A", "lastSeen": "2024-05-01T09:00:00Z"})
    sio.deliver("presence:online", {})

    statuses = [(record.identity_id, record.status) for record in seen[EVENT_PRESENCE_CHANGED]]
    assert statuses == [("A", PresenceStatus.ONLINE), ("A", PresenceStatus.OFFLINE)]


def test_rooms_and_emit_require_connection() -> None:
    sio = FakeSocketClient()
    transport, seen = _transport(sio)

    async def scenario():
        with pytest.raises(TransportUnavailable):
            await transport.subscribe("room:broadcast")
        await transport.connect()
        await transport.subscribe("room:broadcast")
        await transport.unsubscribe("room:broadcast")
        await transport.emit(EVENT_MESSAGE_SEND, msg("m1"))
        await transport.disconnect()

    asyncio.run(scenario())

    events = [event for event, _ in sio.emitted]
    assert events == ["setup", "room:join", "room:leave", EVENT_MESSAGE_SEND]
    assert sio.emitted[1][1] == {"room": "room:broadcast"}
    assert sio.emitted[3][1]["_id"] == "m1"
    assert seen[EVENT_TRANSPORT_DOWN] == [None]


def test_failing_handler_does_not_stop_others() -> None:
    sio = FakeSocketClient()
    transport = SocketIOTransport("http://registry.test", None, "J", client=sio)
    received = []

    def broken(_value) -> None:
        raise RuntimeError("bad handler")

    transport.on(EVENT_PRESENCE_CHANGED, broken)
    transport.on(EVENT_PRESENCE_CHANGED, received.append)
    sio.deliver("presence:online", {"userId": "A"})

    assert len(received) == 1
