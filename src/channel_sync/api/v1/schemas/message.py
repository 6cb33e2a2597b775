from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from channel_sync.domain.value_objects.enums import ConnectionStatus


class MessageResponse(BaseModel):
    id: UUID
    channel_id: UUID
    sender_id: UUID
    content: str
    created_at: datetime
    edited_at: datetime | None = None
    client_msg_id: UUID | None = None
    pending: bool = False

    model_config = {"from_attributes": True}


class SnapshotResponse(BaseModel):
    channel_id: UUID | None
    messages: list[MessageResponse]
    connection_status: ConnectionStatus
    last_error: str | None = None

    model_config = {"from_attributes": True}


class SendMessageRequest(BaseModel):
    content: str


class EditMessageRequest(BaseModel):
    message_id: UUID
    content: str


class DeleteMessageRequest(BaseModel):
    message_id: UUID


class LoadOlderRequest(BaseModel):
    before: str | None = None
    limit: int | None = Field(default=None, ge=1, le=500)
