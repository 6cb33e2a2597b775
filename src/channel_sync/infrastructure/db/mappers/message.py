from __future__ import annotations

from channel_sync.domain.entities.message import Message
from channel_sync.infrastructure.db.models.message import MessageModel


def model_to_entity(model: MessageModel) -> Message:
    return Message(
        id=model.id,
        channel_id=model.channel_id,
        sender_id=model.sender_id,
        content=model.content,
        created_at=model.created_at,
        is_deleted=model.is_deleted,
        edited_at=model.edited_at,
        client_msg_id=model.client_msg_id,
    )
