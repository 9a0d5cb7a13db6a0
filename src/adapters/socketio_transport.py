"""Socket.IO push transport adapter.

Implements the core EventTransportPort on top of python-socketio's asyncio
client. Wire payloads are decoded here, so core handlers only ever receive
Message and PresenceRecord objects. A payload that fails to decode is logged
and dropped; one bad frame must not take the listener down.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError

from adapters.wire import (
    message_from_payload,
    message_to_payload,
    presence_from_online_list,
    presence_from_payload,
)
from core.errors import TransportUnavailable
from core.models import Message
from core.ports import (
    EVENT_MESSAGE_NEW,
    EVENT_MESSAGE_UPDATED,
    EVENT_PRESENCE_CHANGED,
    EVENT_TRANSPORT_DOWN,
    EVENT_TRANSPORT_UP,
)

LOGGER = logging.getLogger(__name__)

JOIN_EVENT = "room:join"
LEAVE_EVENT = "room:leave"
SETUP_EVENT = "setup"
PRESENCE_EVENTS = ("presence:online", "presence:offline", "presence:changed")


class SocketIOTransport:
    """Long-lived socket.io connection for one signed-in identity."""

    def __init__(
        self,
        url: str,
        access_token: Optional[str],
        identity_id: str,
        *,
        client: Optional[socketio.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._access_token = access_token
        self._identity_id = identity_id
        self._sio = client or socketio.AsyncClient(reconnection=True, logger=False)
        self._handlers: Dict[str, List[Callable[[Any], None]]] = defaultdict(list)

        self._sio.on("connect", self._on_connect)
        self._sio.on("disconnect", self._on_disconnect)
        self._sio.on("connected", self._on_connected)
        self._sio.on(EVENT_MESSAGE_NEW, self._on_message_new)
        self._sio.on(EVENT_MESSAGE_UPDATED, self._on_message_updated)
        for event in PRESENCE_EVENTS:
            self._sio.on(event, self._presence_handler(event))

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self._handlers[event].append(handler)

    async def connect(self) -> None:
        auth = {"token": self._access_token} if self._access_token else None
        try:
            await self._sio.connect(self._url, auth=auth, transports=["websocket", "polling"])
        except SocketConnectionError as exc:
            raise TransportUnavailable(f"Could not reach {self._url}: {exc}") from exc

    async def disconnect(self) -> None:
        if self._sio.connected:
            await self._sio.disconnect()

    async def wait(self) -> None:
        await self._sio.wait()

    async def subscribe(self, room: str) -> None:
        await self._send(JOIN_EVENT, {"room": room})

    async def unsubscribe(self, room: str) -> None:
        await self._send(LEAVE_EVENT, {"room": room})

    async def emit(self, event: str, message: Message) -> None:
        await self._send(event, message_to_payload(message))

    async def _send(self, event: str, payload: Dict[str, Any]) -> None:
        if not self._sio.connected:
            raise TransportUnavailable(f"Cannot emit {event}: push transport is down")
        await self._sio.emit(event, payload)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _on_connect(self) -> None:
        await self._sio.emit(SETUP_EVENT, {"_id": self._identity_id})
        self._dispatch(EVENT_TRANSPORT_UP, None)

    def _on_disconnect(self, *_reason) -> None:
        self._dispatch(EVENT_TRANSPORT_DOWN, None)

    def _on_connected(self, payload: Dict[str, Any]) -> None:
        for record in presence_from_online_list(payload or {}):
            self._dispatch(EVENT_PRESENCE_CHANGED, record)

    def _on_message_new(self, payload: Dict[str, Any]) -> None:
        self._dispatch_message(EVENT_MESSAGE_NEW, payload)

    def _on_message_updated(self, payload: Dict[str, Any]) -> None:
        self._dispatch_message(EVENT_MESSAGE_UPDATED, payload)

    def _presence_handler(self, event: str) -> Callable[[Dict[str, Any]], None]:
        def handler(payload: Dict[str, Any]) -> None:
            try:
                record = presence_from_payload(event, payload or {})
            except ValueError as exc:
                LOGGER.warning("Dropping malformed %s event: %s", event, exc)
                return
            self._dispatch(EVENT_PRESENCE_CHANGED, record)

        return handler

    def _dispatch_message(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            message = message_from_payload(payload)
        except ValueError as exc:
            LOGGER.warning("Dropping malformed %s event: %s", event, exc)
            return
        self._dispatch(event, message)

    def _dispatch(self, event: str, value: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(value)
            except Exception:
                LOGGER.exception("Handler for %s failed", event)
