"""Ports (interfaces) used by the messaging core.

Ports define the minimal contracts for the request/response collaborator,
the push transport and the notice sink so that the core can be reused with
different backends.
"""

from __future__ import annotations

from typing import Any, Callable, List, Protocol

from core.models import Channel, ChannelSelector, Identity, Message, MessageBody, Notice

# Events delivered to handlers registered on the transport. Message events
# carry a decoded Message, presence events a PresenceRecord and the link
# events carry None.
EVENT_MESSAGE_NEW = "message:new"
EVENT_MESSAGE_UPDATED = "message:updated"
EVENT_PRESENCE_CHANGED = "presence:changed"
EVENT_TRANSPORT_UP = "transport:up"
EVENT_TRANSPORT_DOWN = "transport:down"

# Outbound event used to mirror a confirmed send to other clients.
EVENT_MESSAGE_SEND = "message:send"


class ChatApiPort(Protocol):
    """Request/response operations offered by the registry backend."""

    async def fetch_history(self, selector: ChannelSelector, limit: int) -> List[Message]:
        ...

    async def post_message(self, selector: ChannelSelector, body: MessageBody) -> Message:
        ...

    async def patch_message(self, message_id: str, new_text: str) -> Message:
        ...

    async def delete_message(self, message_id: str) -> None:
        ...

    async def list_channels(self, identity: Identity) -> List[Channel]:
        ...


class EventTransportPort(Protocol):
    """Persistent duplex event stream.

    Handlers registered with ``on`` are plain callables. The adapter decodes
    wire payloads before invoking them, so the core never sees raw frames.
    """

    @property
    def connected(self) -> bool:
        ...

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        ...

    async def subscribe(self, room: str) -> None:
        ...

    async def unsubscribe(self, room: str) -> None:
        ...

    async def emit(self, event: str, message: Message) -> None:
        ...


class NoticePort(Protocol):
    """Sink for user-visible, non-fatal notifications."""

    def notify(self, notice: Notice) -> None:
        ...
