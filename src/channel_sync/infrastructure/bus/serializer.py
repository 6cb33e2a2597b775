from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from channel_sync.domain.entities.message import Message
from channel_sync.domain.events.change_event import ChangeEvent
from channel_sync.domain.value_objects.enums import ChangeOp

EVENT_PREFIX = "message."


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, UUID):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": str(message.id),
        "channel_id": str(message.channel_id),
        "sender_id": str(message.sender_id),
        "content": message.content,
        "created_at": message.created_at.isoformat(),
        "is_deleted": message.is_deleted,
        "edited_at": message.edited_at.isoformat() if message.edited_at else None,
        "client_msg_id": str(message.client_msg_id) if message.client_msg_id else None,
    }


def message_from_dict(data: dict[str, Any]) -> Message:
    edited_at = data.get("edited_at")
    client_msg_id = data.get("client_msg_id")
    return Message(
        id=UUID(data["id"]),
        channel_id=UUID(data["channel_id"]),
        sender_id=UUID(data["sender_id"]),
        content=data["content"],
        created_at=datetime.fromisoformat(data["created_at"]),
        is_deleted=bool(data.get("is_deleted", False)),
        edited_at=datetime.fromisoformat(edited_at) if edited_at else None,
        client_msg_id=UUID(client_msg_id) if client_msg_id else None,
    )


def event_type_for(op: ChangeOp) -> str:
    return f"{EVENT_PREFIX}{op}"


def event_from_payload(event_type: str, payload: dict[str, Any]) -> ChangeEvent:
    """Raises ValueError for event types that are not message changes."""
    if not event_type.startswith(EVENT_PREFIX):
        raise ValueError(f"Not a message change event: {event_type!r}")
    op = ChangeOp(event_type.removeprefix(EVENT_PREFIX))
    return ChangeEvent(op=op, row=message_from_dict(payload))


def serialize_event(event_type: str, payload: dict[str, Any]) -> str:
    envelope = {"event": event_type, "data": payload}
    return json.dumps(envelope, cls=_Encoder)


def deserialize_event(raw: str | bytes) -> tuple[str, dict[str, Any]]:
    data = json.loads(raw)
    return data["event"], data["data"]


def encode_change(event: ChangeEvent) -> str:
    return serialize_event(event_type_for(event.op), message_to_dict(event.row))


def decode_change(raw: str | bytes) -> ChangeEvent:
    event_type, data = deserialize_event(raw)
    return event_from_payload(event_type, data)
