from __future__ import annotations

from typing import Protocol
from uuid import UUID

from channel_sync.domain.entities.channel import Channel


class ChannelTable(Protocol):
    async def find_by_name(self, name: str) -> Channel | None: ...

    async def insert(self, name: str, actor: UUID) -> Channel:
        """Create a channel. Raises ConflictError if the name is taken."""
        ...
