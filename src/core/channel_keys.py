"""Helpers for working with channel ids and transport room keys.

Direct channels have no server-side conversation record, so their id is a
pure function of the two participant ids. Both sides compute the same id
without a creation step.
"""

from __future__ import annotations

from typing import Optional, Tuple

from core.models import ChannelKind

BROADCAST_CHANNEL_ID = "broadcast"
DIRECT_PREFIX = "direct:"
GROUP_PREFIX = "group:"
PAIR_SEPARATOR = "|"


def direct_channel_id(first_id: str, second_id: str) -> str:
    """Return the channel id for the conversation between two identities."""

    if not first_id or not second_id:
        raise ValueError("Direct channels need two participant ids")
    low, high = sorted((str(first_id), str(second_id)))
    return f"{DIRECT_PREFIX}{low}{PAIR_SEPARATOR}{high}"


def group_channel_id(group_id: str) -> str:
    return f"{GROUP_PREFIX}{group_id}"


def split_channel_id(channel_id: str) -> Tuple[ChannelKind, Tuple[str, ...]]:
    """Split a channel id into (kind, parts).

    Direct ids yield the participant pair, group ids the group id and the
    broadcast id yields no parts.
    """

    if channel_id == BROADCAST_CHANNEL_ID:
        return ChannelKind.BROADCAST, ()
    if channel_id.startswith(DIRECT_PREFIX):
        pair = channel_id[len(DIRECT_PREFIX) :]
        first, sep, second = pair.partition(PAIR_SEPARATOR)
        if sep and first and second:
            return ChannelKind.DIRECT, (first, second)
    if channel_id.startswith(GROUP_PREFIX):
        group_id = channel_id[len(GROUP_PREFIX) :]
        if group_id:
            return ChannelKind.GROUP, (group_id,)
    raise ValueError(f"Unrecognized channel id: {channel_id}")


def counterpart_of(channel_id: str, self_id: str) -> Optional[str]:
    """Return the other participant of a direct channel, if self is in it."""

    kind, parts = split_channel_id(channel_id)
    if kind is not ChannelKind.DIRECT or self_id not in parts:
        return None
    first, second = parts
    if first == second:
        return first
    return second if first == self_id else first


def room_key(channel_id: str) -> str:
    """Return the push-transport room that carries a channel's events."""

    kind, parts = split_channel_id(channel_id)
    if kind is ChannelKind.BROADCAST:
        return "room:broadcast"
    if kind is ChannelKind.GROUP:
        return f"room:group:{parts[0]}"
    return f"room:direct:{parts[0]}{PAIR_SEPARATOR}{parts[1]}"
