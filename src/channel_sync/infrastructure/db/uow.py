from __future__ import annotations

from types import TracebackType
from typing import Self

from sqlalchemy.ext.asyncio import AsyncSession

from channel_sync.infrastructure.db.repositories.channel import ChannelRepo
from channel_sync.infrastructure.db.repositories.message import MessageRepo
from channel_sync.infrastructure.db.repositories.outbox import OutboxRepo


class SqlAlchemyUoW:
    """Unit-of-Work backed by a single AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.channels = ChannelRepo(session)
        self.messages = MessageRepo(session)
        self.outbox = OutboxRepo(session)

    async def flush(self) -> None:
        await self._session.flush()

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()
