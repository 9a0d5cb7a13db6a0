"""Message store: the single source of truth for channel timelines.

History snapshots, live pushes and our own optimistic writes all go through
one idempotent merge keyed by the server message id:

1) Known id -> merge fields in place (edit, tombstone, readBy union)
2) Unknown id matching one of our placeholders -> promote the placeholder
3) Otherwise -> insert and re-sort by createdAt (stable, ties by arrival)

Every mutation is synchronous. Callers must not await between reading and
writing the store, so partial merges are never observable.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from core.config import MessagingConfig
from core.errors import ReconciliationConflict
from core.models import Message, MessageBody, Role

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pending:
    """An optimistic write that the server has not confirmed yet."""

    temp_id: str


@dataclass(frozen=True)
class Confirmed:
    id: str


EntryRef = Union[Pending, Confirmed]


class MergeOutcome(str, Enum):
    INSERTED = "inserted"
    MERGED = "merged"
    PROMOTED = "promoted"
    BUFFERED = "buffered"


@dataclass
class _Entry:
    ref: EntryRef
    message: Message


@dataclass
class _Timeline:
    entries: List[_Entry] = field(default_factory=list)
    by_id: Dict[str, _Entry] = field(default_factory=dict)
    unread: int = 0


@dataclass
class _BufferedUpdate:
    message: Message
    expires_at: float


def _earliest(first: Optional[datetime], second: Optional[datetime]) -> Optional[datetime]:
    if first is None:
        return second
    if second is None:
        return first
    return min(first, second)


def merge_messages(existing: Message, incoming: Message) -> Message:
    """Fold a newer observation of a message into the one we already hold.

    The newest edit wins the body, a tombstone is sticky and clears the body,
    and readBy only ever grows.
    """

    body = existing.body
    edited_at = existing.edited_at
    if incoming.edited_at is not None and (edited_at is None or incoming.edited_at >= edited_at):
        body = incoming.body
        edited_at = incoming.edited_at

    deleted_at = _earliest(existing.deleted_at, incoming.deleted_at)
    if deleted_at is not None:
        body = MessageBody()

    return replace(
        existing,
        body=body,
        edited_at=edited_at,
        deleted_at=deleted_at,
        read_by=existing.read_by | incoming.read_by,
        is_broadcast=existing.is_broadcast or incoming.is_broadcast,
    )


def _same_body(first: MessageBody, second: MessageBody) -> bool:
    return (first.text or "").strip() == (second.text or "").strip() and (
        first.attachment_url or None
    ) == (second.attachment_url or None)


class MessageStore:
    """Per-channel, deduplicated, createdAt-ordered message timelines."""

    def __init__(
        self,
        self_id: str,
        config: Optional[MessagingConfig] = None,
        *,
        now_func: Callable[[], float] = time.monotonic,
    ) -> None:
        self._self_id = self_id
        self._config = config or MessagingConfig()
        self._now = now_func
        self._timelines: Dict[str, _Timeline] = {}
        # message id -> channel id; a message lives in exactly one channel.
        self._locations: Dict[str, str] = {}
        self._buffered: Dict[str, _BufferedUpdate] = {}
        self._active_channel_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def self_id(self) -> str:
        return self._self_id

    @property
    def active_channel_id(self) -> Optional[str]:
        return self._active_channel_id

    def messages(self, channel_id: str) -> List[Message]:
        timeline = self._timelines.get(channel_id)
        if timeline is None:
            return []
        return [entry.message for entry in timeline.entries]

    def get(self, message_id: str) -> Optional[Message]:
        channel_id = self._locations.get(message_id)
        if channel_id is None:
            return None
        return self._timelines[channel_id].by_id[message_id].message

    def unread(self, channel_id: str) -> int:
        timeline = self._timelines.get(channel_id)
        return timeline.unread if timeline else 0

    def total_unread(self) -> int:
        return sum(timeline.unread for timeline in self._timelines.values())

    def channel_ids(self) -> List[str]:
        return list(self._timelines)

    def buffered_update_ids(self) -> List[str]:
        return list(self._buffered)

    # ------------------------------------------------------------------
    # Focus and read state
    # ------------------------------------------------------------------

    def clear(self) -> None:
        self._timelines.clear()
        self._locations.clear()
        self._buffered.clear()
        self._active_channel_id = None

    def set_active(self, channel_id: Optional[str]) -> None:
        """Mark a channel as the one on screen; opening it clears its badge."""

        self._active_channel_id = channel_id
        if channel_id is not None:
            self._timeline(channel_id).unread = 0

    def mark_read(self, channel_id: str) -> List[str]:
        """Acknowledge every confirmed message in a channel.

        Returns the ids whose readBy gained the current identity.
        """

        timeline = self._timeline(channel_id)
        timeline.unread = 0
        acknowledged: List[str] = []
        for entry in timeline.entries:
            if not isinstance(entry.ref, Confirmed):
                continue
            if self._self_id in entry.message.read_by:
                continue
            entry.message = replace(entry.message, read_by=entry.message.read_by | {self._self_id})
            acknowledged.append(entry.ref.id)
        return acknowledged

    # ------------------------------------------------------------------
    # Merge path
    # ------------------------------------------------------------------

    def insert(self, message: Message, *, count_unread: bool = True) -> MergeOutcome:
        """Merge one server-issued message into its channel."""

        if message.id is None:
            raise ValueError("Server messages must carry an id; use add_pending for local writes")
        self.expire_buffered()

        known_channel = self._locations.get(message.id)
        if known_channel is not None:
            entry = self._timelines[known_channel].by_id[message.id]
            entry.message = merge_messages(entry.message, message)
            return MergeOutcome.MERGED

        timeline = self._timeline(message.channel_id)
        placeholder = self._find_placeholder(timeline, message)
        if placeholder is not None:
            self._promote(timeline, placeholder, message)
            outcome = MergeOutcome.PROMOTED
        else:
            entry = _Entry(ref=Confirmed(message.id), message=message)
            timeline.entries.append(entry)
            self._index(timeline, entry)
            self._sort(timeline)
            if count_unread and self._counts_as_unread(message):
                timeline.unread += 1
            outcome = MergeOutcome.INSERTED

        self._replay_buffered(message.id)
        return outcome

    def apply_snapshot(self, channel_id: str, messages: Iterable[Message]) -> None:
        """Merge a history snapshot; safe to apply repeatedly."""

        for message in messages:
            if message.channel_id != channel_id:
                message = replace(message, channel_id=channel_id)
            self.insert(message, count_unread=False)

    def apply_update(self, message: Message) -> MergeOutcome:
        """Merge an edit/delete/read-receipt for a message we may not hold yet."""

        if message.id is None:
            raise ValueError("Updates must reference a server message id")
        self.expire_buffered()

        channel_id = self._locations.get(message.id)
        if channel_id is not None:
            entry = self._timelines[channel_id].by_id[message.id]
            entry.message = merge_messages(entry.message, message)
            return MergeOutcome.MERGED

        conflict = ReconciliationConflict(f"Update for unknown message {message.id}")
        LOGGER.debug("Buffering update: %s", conflict)
        previous = self._buffered.get(message.id)
        if previous is not None:
            message = merge_messages(previous.message, message)
        self._buffered[message.id] = _BufferedUpdate(
            message=message,
            expires_at=self._now() + self._config.pending_update_ttl_seconds,
        )
        return MergeOutcome.BUFFERED

    def expire_buffered(self) -> int:
        """Drop orphan updates whose base message never showed up."""

        now = self._now()
        expired = [key for key, item in self._buffered.items() if item.expires_at <= now]
        for key in expired:
            del self._buffered[key]
        if expired:
            LOGGER.info("Dropped %s orphan update(s); next history load will self-heal", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Optimistic writes
    # ------------------------------------------------------------------

    def add_pending(
        self,
        channel_id: str,
        body: MessageBody,
        sender_role: Role,
        *,
        receiver_id: Optional[str] = None,
        group_id: Optional[str] = None,
        is_broadcast: bool = False,
        created_at: Optional[datetime] = None,
    ) -> Pending:
        """Show a message we are about to send before the server confirms it."""

        token = Pending(temp_id=uuid.uuid4().hex)
        message = Message(
            id=None,
            channel_id=channel_id,
            sender_id=self._self_id,
            sender_role=sender_role,
            body=body,
            created_at=created_at or datetime.now(timezone.utc),
            receiver_id=receiver_id,
            group_id=group_id,
            read_by=frozenset({self._self_id}),
            is_broadcast=is_broadcast,
        )
        timeline = self._timeline(channel_id)
        timeline.entries.append(_Entry(ref=token, message=message))
        self._sort(timeline)
        return token

    def confirm(self, token: Pending, message: Message) -> Message:
        """Swap a placeholder for the server's confirmed message."""

        if message.id is None:
            raise ValueError("Confirmation must carry the server id")

        located = self._find_pending(token)
        if located is None:
            # A live echo already promoted the placeholder.
            self.insert(message, count_unread=False)
            return self.get(message.id)

        timeline, entry = located
        if message.id in self._locations:
            # The echo arrived first but did not match the placeholder.
            timeline.entries.remove(entry)
            self.insert(message, count_unread=False)
        else:
            self._promote(timeline, entry, message)
            self._replay_buffered(message.id)
        return self.get(message.id)

    def discard(self, token: Pending) -> bool:
        """Remove a placeholder whose send failed."""

        located = self._find_pending(token)
        if located is None:
            return False
        timeline, entry = located
        timeline.entries.remove(entry)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _timeline(self, channel_id: str) -> _Timeline:
        timeline = self._timelines.get(channel_id)
        if timeline is None:
            timeline = _Timeline()
            self._timelines[channel_id] = timeline
        return timeline

    def _index(self, timeline: _Timeline, entry: _Entry) -> None:
        message_id = entry.message.id
        timeline.by_id[message_id] = entry
        self._locations[message_id] = entry.message.channel_id

    @staticmethod
    def _sort(timeline: _Timeline) -> None:
        # list.sort is stable, so equal timestamps keep arrival order.
        timeline.entries.sort(key=lambda entry: entry.message.created_at)

    def _counts_as_unread(self, message: Message) -> bool:
        if message.sender_id == self._self_id:
            return False
        if message.channel_id == self._active_channel_id:
            return False
        return self._self_id not in message.read_by

    def _find_placeholder(self, timeline: _Timeline, message: Message) -> Optional[_Entry]:
        if message.sender_id != self._self_id:
            return None
        window = self._config.reconcile_window_seconds
        for entry in timeline.entries:
            if not isinstance(entry.ref, Pending):
                continue
            candidate = entry.message
            if not _same_body(candidate.body, message.body):
                continue
            if abs((candidate.created_at - message.created_at).total_seconds()) <= window:
                return entry
        return None

    def _find_pending(self, token: Pending):
        for timeline in self._timelines.values():
            for entry in timeline.entries:
                if entry.ref == token:
                    return timeline, entry
        return None

    def _promote(self, timeline: _Timeline, entry: _Entry, message: Message) -> None:
        entry.ref = Confirmed(message.id)
        entry.message = replace(
            message,
            channel_id=entry.message.channel_id,
            read_by=message.read_by | entry.message.read_by,
        )
        self._index(timeline, entry)
        self._sort(timeline)

    def _replay_buffered(self, message_id: str) -> None:
        buffered = self._buffered.pop(message_id, None)
        if buffered is None:
            return
        entry = self._timelines[self._locations[message_id]].by_id[message_id]
        entry.message = merge_messages(entry.message, buffered.message)
        LOGGER.debug("Replayed buffered update for %s", message_id)
