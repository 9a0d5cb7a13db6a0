"""History loading for the selected channel.

Loads are idempotent snapshots. Each selection bumps a generation token and
a response is only handed back while its token is still current, so a slow
answer for channel A can never land in channel B after a switch. Network
cancellation is not relied upon.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from core.channel_keys import split_channel_id
from core.config import MessagingConfig
from core.errors import HistoryUnavailable, StaleResponse
from core.models import Channel, ChannelKind, ChannelSelector, Message
from core.ports import ChatApiPort

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestToken:
    generation: int
    channel_id: str


def selector_for(channel: Channel) -> ChannelSelector:
    """Pick the backing query for a channel kind."""

    if channel.kind is ChannelKind.BROADCAST:
        return ChannelSelector(broadcast=True)
    if channel.kind is ChannelKind.GROUP:
        _, parts = split_channel_id(channel.id)
        return ChannelSelector(group_id=parts[0])
    if channel.group_id:
        # Private two-party groups are stored under their group id.
        return ChannelSelector(group_id=channel.group_id)
    if not channel.counterpart_id:
        raise ValueError(f"Direct channel {channel.id} has no counterpart")
    return ChannelSelector(direct_with=channel.counterpart_id)


class HistoryLoader:
    def __init__(self, api: ChatApiPort, config: Optional[MessagingConfig] = None) -> None:
        self._api = api
        self._config = config or MessagingConfig()
        self._generation = 0
        self._selected_channel_id: Optional[str] = None

    @property
    def selected_channel_id(self) -> Optional[str]:
        return self._selected_channel_id

    def begin(self, channel_id: Optional[str]) -> RequestToken:
        """Record a new selection; every older token becomes stale."""

        self._generation += 1
        self._selected_channel_id = channel_id
        return RequestToken(self._generation, channel_id or "")

    def is_current(self, token: RequestToken) -> bool:
        return token.generation == self._generation and token.channel_id == self._selected_channel_id

    async def load_history(self, channel: Channel) -> List[Message]:
        """Fetch the ascending backlog for a channel with a request timeout."""

        selector = selector_for(channel)
        timeout = self._config.history_timeout_seconds
        try:
            messages = await asyncio.wait_for(
                self._api.fetch_history(selector, self._config.history_limit),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            LOGGER.warning("History for %s timed out after %ss", channel.id, timeout)
            raise HistoryUnavailable(f"History for {channel.id} timed out") from exc
        except HistoryUnavailable:
            raise
        except Exception as exc:
            LOGGER.warning("History for %s failed: %s", channel.id, exc)
            raise HistoryUnavailable(f"History for {channel.id} failed: {exc}") from exc

        # The backend owns placement; we file the snapshot under the
        # channel that asked for it.
        stamped = [
            message if message.channel_id == channel.id else replace(message, channel_id=channel.id)
            for message in messages
        ]
        stamped.sort(key=lambda message: message.created_at)
        LOGGER.debug("Loaded %s messages for %s", len(stamped), channel.id)
        return stamped

    async def load_for_selection(self, channel: Channel, token: RequestToken) -> List[Message]:
        """Load history for a selection and refuse to return it if stale."""

        try:
            messages = await self.load_history(channel)
        except HistoryUnavailable as exc:
            if not self.is_current(token):
                raise StaleResponse(f"Failed history for {channel.id} is no longer relevant") from exc
            raise
        if not self.is_current(token):
            raise StaleResponse(f"History for {channel.id} arrived after the selection changed")
        return messages
