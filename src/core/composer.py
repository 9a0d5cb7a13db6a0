"""Outbound composer: send, edit and delete against the channel policy.

Policy violations that can be detected locally fail fast without touching
the network. Every successful result flows back through the store's merge
path, and confirmed sends are mirrored on the push transport.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from core.channel_keys import split_channel_id
from core.directory import ChannelDirectory
from core.errors import PermissionDenied
from core.history import selector_for
from core.models import Channel, ChannelKind, Message, MessageBody
from core.ports import EVENT_MESSAGE_SEND, ChatApiPort, EventTransportPort
from core.store import MessageStore

LOGGER = logging.getLogger(__name__)


class OutboundComposer:
    def __init__(
        self,
        api: ChatApiPort,
        transport: EventTransportPort,
        directory: ChannelDirectory,
        store: MessageStore,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._api = api
        self._transport = transport
        self._directory = directory
        self._store = store
        self._clock = clock

    async def send(self, channel_id: str, body: MessageBody) -> Message:
        """Submit a new message and return the server-confirmed version."""

        if body.is_empty:
            raise ValueError("A message needs text or an attachment")
        channel = self._directory.require(channel_id)
        identity = self._directory.identity
        if channel.is_read_only:
            raise PermissionDenied(f"{identity.role.value} cannot post to {channel.display_name}")

        is_broadcast = channel.kind is ChannelKind.BROADCAST
        token = self._store.add_pending(
            channel.id,
            body,
            identity.role,
            receiver_id=self._receiver_id(channel),
            group_id=self._group_id(channel),
            is_broadcast=is_broadcast,
            created_at=self._clock(),
        )
        try:
            confirmed = await self._api.post_message(selector_for(channel), body)
        except Exception:
            self._store.discard(token)
            raise

        confirmed = replace(
            confirmed,
            channel_id=channel.id,
            is_broadcast=confirmed.is_broadcast or is_broadcast,
        )
        stored = self._store.confirm(token, confirmed)
        await self._mirror(stored)
        LOGGER.info("Message %s sent to %s", stored.id, channel.id)
        return stored

    async def edit(self, message_id: str, new_text: str) -> Message:
        if not new_text or not new_text.strip():
            raise ValueError("Edited text must not be empty")
        self._require_own(message_id, "edit")
        updated = await self._api.patch_message(message_id, new_text)
        if updated.edited_at is None:
            updated = replace(updated, edited_at=self._clock())
        return self._apply(updated)

    async def delete(self, message_id: str) -> Optional[Message]:
        existing = self._require_own(message_id, "delete")
        await self._api.delete_message(message_id)
        if existing is None:
            # Nothing to tombstone locally; the next history load shows it.
            return None
        tombstone = replace(existing, deleted_at=self._clock(), body=MessageBody())
        return self._apply(tombstone)

    def _apply(self, message: Message) -> Message:
        known = self._store.get(message.id)
        if known is not None and message.channel_id != known.channel_id:
            message = replace(message, channel_id=known.channel_id)
        self._store.apply_update(message)
        return self._store.get(message.id) or message

    def _require_own(self, message_id: str, action: str) -> Optional[Message]:
        """Check ownership locally when we can; otherwise let the server decide."""

        existing = self._store.get(message_id)
        if existing is None:
            LOGGER.debug("Message %s not held locally; deferring %s check to server", message_id, action)
            return None
        if existing.sender_id != self._directory.identity.id:
            raise PermissionDenied(f"Only the sender can {action} message {message_id}")
        if existing.is_deleted:
            raise PermissionDenied(f"Message {message_id} was already removed")
        return existing

    @staticmethod
    def _receiver_id(channel: Channel) -> Optional[str]:
        if channel.kind is not ChannelKind.DIRECT or channel.group_id:
            return None
        return channel.counterpart_id

    @staticmethod
    def _group_id(channel: Channel) -> Optional[str]:
        if channel.group_id:
            return channel.group_id
        if channel.kind is not ChannelKind.GROUP:
            return None
        return split_channel_id(channel.id)[1][0]

    async def _mirror(self, message: Message) -> None:
        if not self._transport.connected:
            LOGGER.warning("Push transport down; %s not mirrored to other clients", message.id)
            return
        try:
            await self._transport.emit(EVENT_MESSAGE_SEND, message)
        except Exception:
            LOGGER.exception("Failed to mirror message %s", message.id)
