from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from channel_sync.domain.entities.message import Message
from channel_sync.domain.value_objects.enums import ConnectionStatus, DeltaKind


@dataclass(frozen=True, slots=True)
class SyncSnapshot:
    channel_id: UUID | None
    messages: tuple[Message, ...]
    connection_status: ConnectionStatus
    last_error: str | None = None

    @property
    def pending(self) -> tuple[Message, ...]:
        return tuple(m for m in self.messages if m.pending)


@dataclass(frozen=True, slots=True)
class SyncDelta:
    """One state mutation, handed to change observers."""

    kind: DeltaKind
    message: Message | None = None
    connection_status: ConnectionStatus | None = None
    error: str | None = None
