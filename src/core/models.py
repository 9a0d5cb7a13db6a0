"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any wire format or transport-specific payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional, Union


class Role(str, Enum):
    """Role of an identity inside the registry."""

    ADMIN = "admin"
    JUDGE = "judge"
    GUEST = "guest"


class ChannelKind(str, Enum):
    """The three conversation semantics the messaging core unifies."""

    DIRECT = "direct"
    GROUP = "group"
    BROADCAST = "broadcast"


@dataclass(frozen=True)
class Identity:
    """The signed-in identity the client acts as."""

    id: str
    role: Role
    name: Optional[str] = None


@dataclass(frozen=True)
class MessageBody:
    text: Optional[str] = None
    attachment_url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.text and self.text.strip()) and not self.attachment_url


@dataclass(frozen=True)
class Message:
    """A message as seen by the client.

    ``id`` is None only while the message is an optimistic placeholder that
    the server has not confirmed yet. Server-issued ids are never replaced.
    """

    id: Optional[str]
    channel_id: str
    sender_id: str
    sender_role: Role
    body: MessageBody
    created_at: datetime
    receiver_id: Optional[str] = None
    group_id: Optional[str] = None
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    read_by: FrozenSet[str] = field(default_factory=frozenset)
    is_broadcast: bool = False

    @property
    def is_pending(self) -> bool:
        return self.id is None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_edited(self) -> bool:
        return self.edited_at is not None


@dataclass(frozen=True)
class Channel:
    """A conversation visible to the current identity.

    ``can_write`` is computed per (channel, identity) by the directory; a
    channel is never subclassed per role. A direct channel backed by a
    private backend group keeps that group id in ``group_id``; its traffic
    is addressed by group, not by receiver.
    """

    id: str
    kind: ChannelKind
    display_name: str
    participants: FrozenSet[str] = field(default_factory=frozenset)
    can_write: bool = True
    counterpart_id: Optional[str] = None
    group_id: Optional[str] = None

    @property
    def is_read_only(self) -> bool:
        return not self.can_write


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class PresenceRecord:
    identity_id: str
    status: PresenceStatus
    last_seen_at: Optional[datetime] = None

    @property
    def is_online(self) -> bool:
        return self.status is PresenceStatus.ONLINE


@dataclass(frozen=True)
class ChannelSelector:
    """Which backing query the history collaborator should run.

    Exactly one of the fields is set.
    """

    direct_with: Optional[str] = None
    group_id: Optional[str] = None
    broadcast: bool = False


@dataclass(frozen=True)
class MessageCreated:
    message: Message


@dataclass(frozen=True)
class MessageUpdated:
    message: Message


@dataclass(frozen=True)
class PresenceChanged:
    record: PresenceRecord


LiveEvent = Union[MessageCreated, MessageUpdated, PresenceChanged]


@dataclass(frozen=True)
class Notice:
    """A user-visible, non-fatal notification for the presentation layer."""

    level: str
    text: str
