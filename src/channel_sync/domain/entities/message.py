from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True, slots=True)
class Message:
    id: UUID
    channel_id: UUID
    sender_id: UUID
    content: str
    created_at: datetime
    is_deleted: bool = False
    edited_at: datetime | None = None
    client_msg_id: UUID | None = None
    pending: bool = False

    @property
    def sort_key(self) -> tuple[datetime, UUID]:
        """Visible ordering: created_at ascending, id as tie-break."""
        return self.created_at, self.id
