"""Channel directory for the signed-in identity.

The directory always carries one synthetic broadcast channel, the groups the
backend reports and direct channels that are synthesized on demand from a
participant pair. Write capability is computed here per (channel, identity).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from core.channel_keys import BROADCAST_CHANNEL_ID, counterpart_of, direct_channel_id, group_channel_id
from core.errors import StaleResponse
from core.models import Channel, ChannelKind, Identity, Message, Role
from core.ports import ChatApiPort

LOGGER = logging.getLogger(__name__)

BROADCAST_DISPLAY_NAME = "Broadcast"


def can_write(kind: ChannelKind, role: Role) -> bool:
    """Broadcast is read-only for everyone but administrators."""

    if kind is ChannelKind.BROADCAST:
        return role is Role.ADMIN
    return True


class ChannelDirectory:
    """Resolves the channels visible to one identity."""

    def __init__(self, api: ChatApiPort, identity: Identity) -> None:
        self._api = api
        self._identity = identity
        self._groups: Dict[str, Channel] = {}
        self._directs: Dict[str, Channel] = {}
        # backing group id -> direct channel id, for private two-party groups
        self._private_groups: Dict[str, str] = {}
        self._broadcast = self._build_broadcast(BROADCAST_DISPLAY_NAME)
        self._generation = 0
        self.last_error: Optional[Exception] = None

    @property
    def identity(self) -> Identity:
        return self._identity

    def channels(self) -> List[Channel]:
        """Return the last resolved directory without touching the network.

        Order: broadcast first, then groups in backend order, then direct
        channels by display name.
        """

        directs = sorted(self._directs.values(), key=lambda channel: channel.display_name.lower())
        return [self._broadcast, *self._groups.values(), *directs]

    def get(self, channel_id: str) -> Optional[Channel]:
        if channel_id == BROADCAST_CHANNEL_ID:
            return self._broadcast
        return self._groups.get(channel_id) or self._directs.get(channel_id)

    def require(self, channel_id: str) -> Channel:
        """Like get, but synthesizes direct channels from their id."""

        channel = self.get(channel_id)
        if channel is not None:
            return channel
        try:
            counterpart = counterpart_of(channel_id, self._identity.id)
        except ValueError:
            counterpart = None
        if counterpart is None:
            raise KeyError(channel_id)
        return self.ensure_direct(counterpart)

    async def list_channels(self, identity: Optional[Identity] = None) -> List[Channel]:
        """Fetch the directory from the backend and merge it in.

        A failed fetch is re-raised but keeps the previously resolved list.
        A response that lands after ``reset`` raises StaleResponse.
        """

        identity = identity or self._identity
        generation = self._generation
        try:
            fetched = await self._api.list_channels(identity)
        except Exception as exc:
            self.last_error = exc
            LOGGER.warning("Channel directory fetch failed, keeping %s known channels: %s", len(self.channels()), exc)
            raise

        if generation != self._generation:
            raise StaleResponse("Channel list arrived after the session changed")

        self.last_error = None
        groups: Dict[str, Channel] = {}
        private_groups: Dict[str, str] = {}
        for channel in fetched:
            if channel.kind is ChannelKind.BROADCAST:
                self._broadcast = self._build_broadcast(channel.display_name or BROADCAST_DISPLAY_NAME)
            elif channel.kind is ChannelKind.GROUP:
                groups[channel.id] = self._with_capability(channel)
            else:
                self._directs[channel.id] = self._with_capability(channel)
                if channel.group_id:
                    private_groups[channel.group_id] = channel.id
        self._groups = groups
        self._private_groups = private_groups
        LOGGER.info("Channel directory resolved: %s groups, %s direct", len(self._groups), len(self._directs))
        return self.channels()

    def ensure_direct(self, counterpart_id: str, display_name: Optional[str] = None) -> Channel:
        """Return the direct channel with a counterpart, creating the entry if needed."""

        channel_id = direct_channel_id(self._identity.id, counterpart_id)
        existing = self._directs.get(channel_id)
        if existing is not None:
            if display_name and existing.display_name == counterpart_id:
                existing = replace(existing, display_name=display_name)
                self._directs[channel_id] = existing
            return existing

        channel = Channel(
            id=channel_id,
            kind=ChannelKind.DIRECT,
            display_name=display_name or counterpart_id,
            participants=frozenset({self._identity.id, counterpart_id}),
            can_write=can_write(ChannelKind.DIRECT, self._identity.role),
            counterpart_id=counterpart_id,
        )
        self._directs[channel_id] = channel
        LOGGER.debug("Synthesized direct channel %s", channel_id)
        return channel

    def resolve(self, message: Message) -> Optional[Channel]:
        """Find the channel an incoming message belongs to, or None to discard."""

        if message.is_broadcast:
            return self._broadcast
        if message.group_id:
            private = self._private_groups.get(message.group_id)
            if private is not None:
                return self._directs.get(private)
            return self._groups.get(group_channel_id(message.group_id))

        self_id = self._identity.id
        if message.sender_id == self_id and message.receiver_id:
            return self.ensure_direct(message.receiver_id)
        if message.receiver_id == self_id:
            return self.ensure_direct(message.sender_id)
        return None

    def reset(self) -> None:
        """Forget everything, e.g. on sign-out; in-flight fetches become stale."""

        self._generation += 1
        self._groups = {}
        self._directs = {}
        self._private_groups = {}
        self._broadcast = self._build_broadcast(BROADCAST_DISPLAY_NAME)

    def _build_broadcast(self, display_name: str) -> Channel:
        return Channel(
            id=BROADCAST_CHANNEL_ID,
            kind=ChannelKind.BROADCAST,
            display_name=display_name,
            can_write=can_write(ChannelKind.BROADCAST, self._identity.role),
        )

    def _with_capability(self, channel: Channel) -> Channel:
        allowed = channel.can_write and can_write(channel.kind, self._identity.role)
        counterpart = channel.counterpart_id
        if channel.kind is ChannelKind.DIRECT and counterpart is None:
            others = channel.participants - {self._identity.id}
            counterpart = next(iter(others), None)
        return replace(channel, can_write=allowed, counterpart_id=counterpart)
