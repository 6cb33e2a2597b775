from __future__ import annotations

import uuid
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from channel_sync.domain.entities.message import Message
from channel_sync.domain.value_objects.cursor import decode_cursor
from channel_sync.infrastructure.db.mappers import message as mapper
from channel_sync.infrastructure.db.models.message import MessageModel


class MessageRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, message_id: UUID) -> Message | None:
        model = await self._session.get(MessageModel, message_id)
        return mapper.model_to_entity(model) if model else None

    async def list_since(
        self,
        channel_id: UUID,
        *,
        cursor: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        stmt = (
            select(MessageModel)
            .where(MessageModel.channel_id == channel_id)
            .order_by(MessageModel.created_at.asc(), MessageModel.id.asc())
            .limit(limit)
        )
        if cursor:
            ts, mid = decode_cursor(cursor)
            stmt = stmt.where(
                (MessageModel.created_at > ts)
                | ((MessageModel.created_at == ts) & (MessageModel.id > mid))
            )
        result = await self._session.execute(stmt)
        return [mapper.model_to_entity(m) for m in result.scalars().all()]

    async def list_latest(self, channel_id: UUID, *, limit: int = 100) -> list[Message]:
        stmt = (
            select(MessageModel)
            .where(
                MessageModel.channel_id == channel_id,
                MessageModel.is_deleted.is_(False),
            )
            .order_by(MessageModel.created_at.desc(), MessageModel.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        rows = [mapper.model_to_entity(m) for m in result.scalars().all()]
        rows.reverse()
        return rows

    async def list_before(
        self,
        channel_id: UUID,
        *,
        cursor: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        stmt = (
            select(MessageModel)
            .where(
                MessageModel.channel_id == channel_id,
                MessageModel.is_deleted.is_(False),
            )
            .order_by(MessageModel.created_at.desc(), MessageModel.id.desc())
            .limit(limit)
        )
        if cursor:
            ts, mid = decode_cursor(cursor)
            stmt = stmt.where(
                (MessageModel.created_at < ts)
                | ((MessageModel.created_at == ts) & (MessageModel.id < mid))
            )
        result = await self._session.execute(stmt)
        rows = [mapper.model_to_entity(m) for m in result.scalars().all()]
        rows.reverse()
        return rows

    async def create_if_not_exists(
        self,
        channel_id: UUID,
        sender_id: UUID,
        content: str,
        client_msg_id: UUID | None,
    ) -> tuple[Message, bool]:
        """Insert idempotently on (channel, sender, client_msg_id). Returns (message, created)."""
        stmt = (
            pg_insert(MessageModel)
            .values(
                id=uuid.uuid4(),
                channel_id=channel_id,
                sender_id=sender_id,
                content=content,
                client_msg_id=client_msg_id,
            )
            .on_conflict_do_nothing(constraint="uq_message_idempotency")
            .returning(MessageModel)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is not None:
            return mapper.model_to_entity(row), True

        existing = await self.get_by_client_msg_id(channel_id, sender_id, client_msg_id)
        assert existing is not None
        return existing, False

    async def get_by_client_msg_id(
        self,
        channel_id: UUID,
        sender_id: UUID,
        client_msg_id: UUID | None,
    ) -> Message | None:
        stmt = select(MessageModel).where(
            MessageModel.channel_id == channel_id,
            MessageModel.sender_id == sender_id,
            MessageModel.client_msg_id == client_msg_id,
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return mapper.model_to_entity(model) if model else None

    async def mark_deleted(self, message_id: UUID, ts: datetime) -> Message:
        stmt = (
            update(MessageModel)
            .where(MessageModel.id == message_id)
            .values(is_deleted=True, deleted_at=ts)
            .returning(MessageModel)
        )
        result = await self._session.execute(stmt)
        return mapper.model_to_entity(result.scalar_one())

    async def set_content(self, message_id: UUID, content: str, ts: datetime) -> Message:
        stmt = (
            update(MessageModel)
            .where(MessageModel.id == message_id)
            .values(content=content, edited_at=ts)
            .returning(MessageModel)
        )
        result = await self._session.execute(stmt)
        return mapper.model_to_entity(result.scalar_one())
