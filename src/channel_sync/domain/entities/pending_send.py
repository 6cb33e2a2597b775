from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from channel_sync.domain.entities.message import Message


@dataclass(slots=True, eq=False)
class PendingSend:
    """A locally submitted message the store has not acknowledged yet.

    ``outcome`` resolves with the store-confirmed Message, or raises the
    error that caused the optimistic entry to be rolled back.
    """

    client_temp_id: UUID
    channel_id: UUID
    sender_id: UUID
    content: str
    submitted_at: datetime
    outcome: asyncio.Future[Message] = field(repr=False)

    def as_message(self) -> Message:
        return Message(
            id=self.client_temp_id,
            channel_id=self.channel_id,
            sender_id=self.sender_id,
            content=self.content,
            created_at=self.submitted_at,
            client_msg_id=self.client_temp_id,
            pending=True,
        )

    async def result(self) -> Message:
        return await asyncio.shield(self.outcome)

    @property
    def done(self) -> bool:
        return self.outcome.done()
