"""Messenger: the read model and actions exposed to the presentation layer.

Wires the directory, history loader, live listener, store, composer and
presence tracker together. The store is only ever mutated through its merge
path; nothing here manipulates message lists directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from core.composer import OutboundComposer
from core.config import MessagingConfig
from core.directory import ChannelDirectory
from core.errors import PermissionDenied, StaleResponse
from core.history import HistoryLoader
from core.listener import LiveEventListener
from core.models import Channel, Identity, Message, MessageBody, Notice, PresenceRecord
from core.ports import ChatApiPort, EventTransportPort, NoticePort
from core.presence import PresenceTracker
from core.store import MessageStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelView:
    """Snapshot of one channel for rendering."""

    channel: Channel
    messages: List[Message]
    unread: int
    is_read_only: bool
    loading: bool = False


class Messenger:
    def __init__(
        self,
        identity: Identity,
        api: ChatApiPort,
        transport: EventTransportPort,
        config: Optional[MessagingConfig] = None,
        notices: Optional[NoticePort] = None,
        *,
        store: Optional[MessageStore] = None,
        on_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.identity = identity
        self._config = config or MessagingConfig()
        self._notices = notices
        self.store = store or MessageStore(identity.id, self._config)
        self.directory = ChannelDirectory(api, identity)
        self.presence = PresenceTracker()
        self.history = HistoryLoader(api, self._config)
        self.listener = LiveEventListener(
            transport, self.directory, self.store, self.presence, notices, on_change=on_change
        )
        self.composer = OutboundComposer(api, transport, self.directory, self.store)
        self._loading: Optional[str] = None

    def start(self) -> None:
        self.listener.start()

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def selected_channel_id(self) -> Optional[str]:
        return self.history.selected_channel_id

    def channels(self) -> List[Channel]:
        return self.directory.channels()

    def view(self, channel_id: str) -> ChannelView:
        channel = self.directory.get(channel_id)
        if channel is None:
            raise KeyError(channel_id)
        return ChannelView(
            channel=channel,
            messages=self.store.messages(channel_id),
            unread=self.store.unread(channel_id),
            is_read_only=channel.is_read_only,
            loading=self._loading == channel_id,
        )

    def unread_total(self) -> int:
        return self.store.total_unread()

    def presence_map(self) -> Dict[str, PresenceRecord]:
        return self.presence.snapshot()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def refresh_channels(self) -> List[Channel]:
        """Reload the directory; failures keep the previous list."""

        try:
            return await self.directory.list_channels()
        except StaleResponse:
            LOGGER.debug("Discarded stale channel list")
            return self.directory.channels()
        except Exception as exc:
            self._notify("error", f"Could not refresh conversations: {exc}")
            raise

    async def select_channel(self, channel_id: str) -> Optional[ChannelView]:
        """Open a channel: focus it, follow its room and load its history.

        Returns None when a newer selection superseded this one before its
        history arrived.
        """

        channel = self.directory.require(channel_id)
        token = self.history.begin(channel.id)
        self.store.set_active(channel.id)
        self._loading = channel.id
        try:
            await self.listener.follow(channel.id)
        except Exception:
            LOGGER.exception("Room subscription for %s failed; relying on history", channel.id)

        try:
            messages = await self.history.load_for_selection(channel, token)
        except StaleResponse:
            LOGGER.debug("Discarded stale history for %s", channel.id)
            return None
        except Exception as exc:
            if self.history.is_current(token):
                self._loading = None
            self._notify("error", f"Could not load messages: {exc}")
            raise

        self.store.apply_snapshot(channel.id, messages)
        self._loading = None
        return self.view(channel.id)

    def blur(self) -> None:
        """The open channel lost focus; new arrivals count as unread again."""

        self.store.set_active(None)

    def focus(self) -> None:
        selected = self.history.selected_channel_id
        if selected is not None:
            self.store.set_active(selected)

    async def close(self) -> None:
        """Deselect; any in-flight history load becomes stale."""

        self.history.begin(None)
        self.store.set_active(None)
        self._loading = None
        await self.listener.follow(None)

    async def send(self, channel_id: str, body: MessageBody) -> Message:
        try:
            return await self.composer.send(channel_id, body)
        except PermissionDenied as exc:
            self._notify("error", str(exc))
            raise

    async def send_text(self, channel_id: str, text: str) -> Message:
        return await self.send(channel_id, MessageBody(text=text))

    async def edit(self, message_id: str, new_text: str) -> Message:
        try:
            return await self.composer.edit(message_id, new_text)
        except PermissionDenied as exc:
            self._notify("error", str(exc))
            raise

    async def delete(self, message_id: str) -> Optional[Message]:
        try:
            return await self.composer.delete(message_id)
        except PermissionDenied as exc:
            self._notify("error", str(exc))
            raise

    def mark_read(self, channel_id: str) -> List[str]:
        return self.store.mark_read(channel_id)

    async def sign_out(self) -> None:
        """Drop session state; late responses for the old session are discarded."""

        self.history.begin(None)
        self.directory.reset()
        self.store.clear()
        self._loading = None
        await self.listener.follow(None)

    def _notify(self, level: str, text: str) -> None:
        if self._notices is None:
            return
        self._notices.notify(Notice(level, text))
