from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from channel_sync.domain.entities.channel import Channel
from channel_sync.infrastructure.db.mappers import channel as mapper
from channel_sync.infrastructure.db.models.channel import ChannelModel


class ChannelRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_name(self, name: str) -> Channel | None:
        stmt = select(ChannelModel).where(ChannelModel.name == name)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return mapper.model_to_entity(model) if model else None

    async def create(self, name: str, created_by: UUID) -> Channel:
        """Flushes immediately so a name collision raises IntegrityError here."""
        model = ChannelModel(name=name, created_by=created_by)
        self._session.add(model)
        await self._session.flush()
        await self._session.refresh(model)
        return mapper.model_to_entity(model)
