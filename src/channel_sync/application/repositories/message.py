from __future__ import annotations

from typing import Protocol
from uuid import UUID

from channel_sync.domain.entities.message import Message


class MessageStore(Protocol):
    """Durable append-only message log, one timeline per channel."""

    async def insert(
        self,
        channel_id: UUID,
        sender_id: UUID,
        content: str,
        *,
        client_msg_id: UUID | None = None,
    ) -> Message:
        """Persist a message. Repeating a call with the same client_msg_id returns the original row."""
        ...

    async def soft_delete(self, message_id: UUID, actor: UUID) -> None:
        """Flag a message deleted. Raises ForbiddenError unless actor is the sender."""
        ...

    async def update_content(self, message_id: UUID, actor: UUID, content: str) -> Message: ...

    async def list_since(
        self,
        channel_id: UUID,
        cursor: str | None,
        limit: int,
    ) -> list[Message]:
        """Messages strictly after cursor, ascending by (created_at, id)."""
        ...

    async def list_latest(self, channel_id: UUID, limit: int) -> list[Message]:
        """The most recent non-deleted messages, ascending by (created_at, id)."""
        ...

    async def list_before(
        self,
        channel_id: UUID,
        cursor: str | None,
        limit: int,
    ) -> list[Message]:
        """Up to ``limit`` non-deleted messages strictly before cursor, ascending.

        Without a cursor this is the newest page, same as list_latest.
        """
        ...
