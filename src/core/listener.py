"""Live event listener.

Routes pushed message and presence events into the store and the presence
tracker. Handlers run synchronously on the event loop and never await in
the middle of a store mutation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional, Set

from core.channel_keys import room_key
from core.directory import ChannelDirectory
from core.models import Message, Notice, PresenceRecord
from core.ports import (
    EVENT_MESSAGE_NEW,
    EVENT_MESSAGE_UPDATED,
    EVENT_PRESENCE_CHANGED,
    EVENT_TRANSPORT_DOWN,
    EVENT_TRANSPORT_UP,
    EventTransportPort,
    NoticePort,
)
from core.presence import PresenceTracker
from core.store import MergeOutcome, MessageStore

LOGGER = logging.getLogger(__name__)


class LiveEventListener:
    """Subscribes to the push transport and feeds the store."""

    def __init__(
        self,
        transport: EventTransportPort,
        directory: ChannelDirectory,
        store: MessageStore,
        presence: PresenceTracker,
        notices: Optional[NoticePort] = None,
        on_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._transport = transport
        self._directory = directory
        self._store = store
        self._presence = presence
        self._notices = notices
        self._on_change = on_change
        self._rooms: Set[str] = set()
        self._started = False
        self._resubscribe_task: Optional[asyncio.Task] = None
        self.transport_up = transport.connected

    @property
    def rooms(self) -> Set[str]:
        return set(self._rooms)

    def start(self) -> None:
        """Register handlers once; the transport owns reconnection."""

        if self._started:
            return
        self._transport.on(EVENT_MESSAGE_NEW, self.handle_message_created)
        self._transport.on(EVENT_MESSAGE_UPDATED, self.handle_message_updated)
        self._transport.on(EVENT_PRESENCE_CHANGED, self.handle_presence_changed)
        self._transport.on(EVENT_TRANSPORT_UP, self._handle_transport_up)
        self._transport.on(EVENT_TRANSPORT_DOWN, self._handle_transport_down)
        self._started = True

    async def follow(self, channel_id: Optional[str]) -> None:
        """Move the room subscription to the newly active channel.

        Rooms of channels that are no longer active are released. Events
        already queued for them are still accepted by the store.
        """

        wanted = {room_key(channel_id)} if channel_id else set()
        if not self._transport.connected:
            # Remember the wish; resubscribed on the next transport:up.
            self._rooms = wanted
            return
        for room in sorted(self._rooms - wanted):
            await self._transport.unsubscribe(room)
        for room in sorted(wanted - self._rooms):
            await self._transport.subscribe(room)
        self._rooms = wanted

    def handle_message_created(self, message: Message) -> Optional[MergeOutcome]:
        channel = self._directory.resolve(message)
        if channel is None:
            LOGGER.debug("Discarding message %s with no matching channel", message.id)
            return None
        if message.channel_id != channel.id:
            message = replace(message, channel_id=channel.id)
        outcome = self._store.insert(message)
        self._changed(channel.id)
        return outcome

    def handle_message_updated(self, message: Message) -> MergeOutcome:
        known = self._store.get(message.id) if message.id else None
        if known is None:
            channel = self._directory.resolve(message)
            if channel is not None and message.channel_id != channel.id:
                message = replace(message, channel_id=channel.id)
        outcome = self._store.apply_update(message)
        if outcome is not MergeOutcome.BUFFERED:
            self._changed(known.channel_id if known else message.channel_id)
        return outcome

    def handle_presence_changed(self, record: PresenceRecord) -> None:
        self._presence.apply(record)

    def _handle_transport_up(self, _payload=None) -> None:
        self.transport_up = True
        LOGGER.info("Push transport connected")
        if self._rooms:
            self._resubscribe()

    def _handle_transport_down(self, _payload=None) -> None:
        self.transport_up = False
        LOGGER.warning("Push transport lost; live updates paused")
        if self._notices is not None:
            self._notices.notify(Notice("warning", "Live updates are unavailable, showing last known state"))

    def _resubscribe(self) -> None:
        rooms = sorted(self._rooms)

        async def _run() -> None:
            for room in rooms:
                try:
                    await self._transport.subscribe(room)
                except Exception:
                    LOGGER.exception("Failed to resubscribe to %s", room)

        self._resubscribe_task = asyncio.get_running_loop().create_task(_run())

    def _changed(self, channel_id: str) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(channel_id)
        except Exception:
            LOGGER.exception("Change callback failed for %s", channel_id)
