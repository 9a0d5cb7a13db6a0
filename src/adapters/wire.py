"""Registry-backend-to-core mapping adapter.

This keeps the backend's JSON shapes (``_id``, embedded sender objects,
``isEdited``/``isDeleted`` flags) out of the core.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.channel_keys import BROADCAST_CHANNEL_ID, direct_channel_id, group_channel_id
from core.models import (
    Channel,
    ChannelKind,
    ChannelSelector,
    Message,
    MessageBody,
    PresenceRecord,
    PresenceStatus,
    Role,
)

# The user-facing client labels guests as "user".
_ROLE_ALIASES = {
    "admin": Role.ADMIN,
    "administrator": Role.ADMIN,
    "judge": Role.JUDGE,
    "guest": Role.GUEST,
    "user": Role.GUEST,
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch milliseconds or datetimes into aware UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def ref_id(value: Any) -> Optional[str]:
    """Return the id of a reference that may be a bare id or an embedded object."""

    if value is None or value == "":
        return None
    if isinstance(value, dict):
        inner = value.get("_id") or value.get("id")
        return str(inner) if inner else None
    return str(value)


def parse_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    return _ROLE_ALIASES.get(str(value or "").strip().lower(), Role.GUEST)


def channel_id_for(
    *,
    is_broadcast: bool,
    group_id: Optional[str],
    sender_id: Optional[str],
    receiver_id: Optional[str],
) -> str:
    """Compute where a message is filed from its routing fields."""

    if is_broadcast:
        return BROADCAST_CHANNEL_ID
    if group_id:
        return group_channel_id(group_id)
    if sender_id and receiver_id:
        return direct_channel_id(sender_id, receiver_id)
    raise ValueError("Message has neither broadcast flag, group nor receiver")


def message_from_payload(payload: Dict[str, Any]) -> Message:
    """Build a core Message from a backend message document."""

    if not isinstance(payload, dict):
        raise ValueError(f"Message payload must be an object, got {type(payload).__name__}")
    message_id = ref_id(payload.get("_id") or payload.get("id"))
    if not message_id:
        raise ValueError("Message payload has no id")

    sender = payload.get("sender")
    sender_id = ref_id(sender)
    if not sender_id:
        raise ValueError(f"Message {message_id} has no sender")
    role_value = payload.get("senderType") or payload.get("senderRole")
    if not role_value and isinstance(sender, dict):
        role_value = sender.get("role")

    receiver_id = ref_id(payload.get("receiver"))
    group_id = ref_id(payload.get("group"))
    is_broadcast = bool(payload.get("isBroadcast", False))

    created_at = parse_timestamp(payload.get("createdAt"))
    if created_at is None:
        raise ValueError(f"Message {message_id} has no createdAt")
    updated_at = parse_timestamp(payload.get("updatedAt"))

    edited_at = parse_timestamp(payload.get("editedAt"))
    if edited_at is None and payload.get("isEdited"):
        edited_at = updated_at or created_at
    deleted_at = parse_timestamp(payload.get("deletedAt"))
    if deleted_at is None and payload.get("isDeleted"):
        deleted_at = updated_at or created_at

    if deleted_at is not None:
        body = MessageBody()
    else:
        body = MessageBody(
            text=payload.get("text") or None,
            attachment_url=payload.get("attachmentUrl") or payload.get("imageUrl") or None,
        )

    read_by = frozenset(filter(None, (ref_id(item) for item in payload.get("readBy") or [])))

    return Message(
        id=message_id,
        channel_id=channel_id_for(
            is_broadcast=is_broadcast,
            group_id=group_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
        ),
        sender_id=sender_id,
        sender_role=parse_role(role_value),
        body=body,
        created_at=created_at,
        receiver_id=receiver_id,
        group_id=group_id,
        edited_at=edited_at,
        deleted_at=deleted_at,
        read_by=read_by,
        is_broadcast=is_broadcast,
    )


def messages_from_payload(payload: Any) -> List[Message]:
    """Accept either a bare list or a paginated ``{"messages": [...]}`` envelope."""

    if isinstance(payload, dict):
        payload = payload.get("messages", [])
    return [message_from_payload(item) for item in payload or []]


def message_to_payload(message: Message) -> Dict[str, Any]:
    """Serialize a confirmed message for the push transport."""

    return {
        "_id": message.id,
        "sender": message.sender_id,
        "senderType": message.sender_role.value,
        "receiver": message.receiver_id,
        "group": message.group_id,
        "text": message.body.text,
        "imageUrl": message.body.attachment_url,
        "isBroadcast": message.is_broadcast,
        "readBy": sorted(message.read_by),
        "isEdited": message.is_edited,
        "isDeleted": message.is_deleted,
        "createdAt": format_timestamp(message.created_at),
        "editedAt": format_timestamp(message.edited_at),
        "deletedAt": format_timestamp(message.deleted_at),
    }


def _member_ids(members: Iterable[Any]) -> frozenset:
    return frozenset(filter(None, (ref_id(member) for member in members or [])))


def channel_from_group(payload: Dict[str, Any], self_id: str) -> Optional[Channel]:
    """Normalize a backend group record into a channel.

    ``private`` records between two identities become direct channels keyed
    by the participant pair that still carry the backing group id, since
    the backend files their messages under that group. Inactive or deleted
    groups are skipped.
    """

    if payload.get("isDeleted") or payload.get("isActive") is False:
        return None
    group_id = ref_id(payload.get("_id") or payload.get("id"))
    if not group_id:
        return None

    kind_label = str(payload.get("type") or "group").lower()
    members = _member_ids(payload.get("members"))
    name = payload.get("name") or group_id
    writable = not payload.get("isReadOnly", False)

    if kind_label == "broadcast":
        return Channel(id=BROADCAST_CHANNEL_ID, kind=ChannelKind.BROADCAST, display_name=name)

    if kind_label == "private" and len(members) == 2 and self_id in members:
        counterpart = next(iter(members - {self_id}))
        return Channel(
            id=direct_channel_id(self_id, counterpart),
            kind=ChannelKind.DIRECT,
            display_name=name,
            participants=members,
            can_write=writable,
            counterpart_id=counterpart,
            group_id=group_id,
        )

    return Channel(
        id=group_channel_id(group_id),
        kind=ChannelKind.GROUP,
        display_name=name,
        participants=members,
        can_write=writable,
    )


def presence_from_payload(event: str, payload: Dict[str, Any]) -> PresenceRecord:
    """Map presence events (``presence:online``/``offline``/``changed``)."""

    identity_id = ref_id(payload.get("userId") or payload.get("identityId"))
    if not identity_id:
        raise ValueError(f"Presence event {event} has no userId")

    if event == "presence:online":
        status = PresenceStatus.ONLINE
    elif event == "presence:offline":
        status = PresenceStatus.OFFLINE
    else:
        status = PresenceStatus(str(payload.get("status", "offline")).lower())

    last_seen = None
    if status is PresenceStatus.OFFLINE:
        last_seen = parse_timestamp(payload.get("lastSeen") or payload.get("lastSeenAt"))
    return PresenceRecord(identity_id=identity_id, status=status, last_seen_at=last_seen)


def presence_from_online_list(payload: Dict[str, Any]) -> List[PresenceRecord]:
    """Map the ``connected`` handshake's online user list."""

    return [
        PresenceRecord(identity_id=identity_id, status=PresenceStatus.ONLINE)
        for identity_id in _member_ids(payload.get("onlineUsers"))
    ]


def selector_params(selector: ChannelSelector) -> Dict[str, str]:
    """Query/form fields that pick the backing message set."""

    if selector.broadcast:
        return {"isBroadcast": "true"}
    if selector.group_id:
        return {"group": selector.group_id}
    if selector.direct_with:
        return {"receiver": selector.direct_with}
    raise ValueError("Empty channel selector")
