"""Postgres-backed collaborators: ChannelTable and MessageStore.

Each call runs in its own session. Message writes record a change event in
the outbox within the same transaction; the outbox worker publishes it on
the change feed after commit.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channel_sync.application.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from channel_sync.domain.entities.channel import Channel
from channel_sync.domain.entities.message import Message
from channel_sync.domain.value_objects.enums import ChangeOp
from channel_sync.infrastructure.bus.serializer import event_type_for, message_to_dict
from channel_sync.infrastructure.db.uow import SqlAlchemyUoW

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _unit_of_work(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[SqlAlchemyUoW]:
    try:
        async with sessionmaker() as session:
            async with SqlAlchemyUoW(session) as uow:
                yield uow
    except IntegrityError:
        raise
    except (DBAPIError, OSError) as exc:
        raise StoreUnavailableError(f"Database unavailable: {exc}") from exc


class SqlChannelTable:
    """Implements application.repositories.channel.ChannelTable."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def find_by_name(self, name: str) -> Channel | None:
        async with _unit_of_work(self._sessionmaker) as uow:
            return await uow.channels.get_by_name(name)

    async def insert(self, name: str, actor: UUID) -> Channel:
        try:
            async with _unit_of_work(self._sessionmaker) as uow:
                channel = await uow.channels.create(name, actor)
                await uow.commit()
                return channel
        except IntegrityError as exc:
            raise ConflictError(f"Channel {name!r} already exists") from exc


class SqlMessageStore:
    """Implements application.repositories.message.MessageStore."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def insert(
        self,
        channel_id: UUID,
        sender_id: UUID,
        content: str,
        *,
        client_msg_id: UUID | None = None,
    ) -> Message:
        try:
            async with _unit_of_work(self._sessionmaker) as uow:
                message, created = await uow.messages.create_if_not_exists(
                    channel_id, sender_id, content, client_msg_id,
                )
                if created:
                    await uow.outbox.add(
                        channel_id, event_type_for(ChangeOp.INSERT), message_to_dict(message),
                    )
                    await uow.commit()
                else:
                    logger.debug("Duplicate send %s returned existing message %s", client_msg_id, message.id)
                return message
        except IntegrityError as exc:
            # The channel foreign key is the only other constraint on insert.
            raise ValidationError(f"Channel {channel_id} does not exist") from exc

    async def soft_delete(self, message_id: UUID, actor: UUID) -> None:
        async with _unit_of_work(self._sessionmaker) as uow:
            existing = await uow.messages.get_by_id(message_id)
            self._check_sender(existing, actor)
            assert existing is not None
            if existing.is_deleted:
                return
            message = await uow.messages.mark_deleted(message_id, datetime.now(timezone.utc))
            await uow.outbox.add(
                message.channel_id, event_type_for(ChangeOp.UPDATE), message_to_dict(message),
            )
            await uow.commit()

    async def update_content(self, message_id: UUID, actor: UUID, content: str) -> Message:
        async with _unit_of_work(self._sessionmaker) as uow:
            existing = await uow.messages.get_by_id(message_id)
            self._check_sender(existing, actor)
            assert existing is not None
            if existing.is_deleted:
                raise NotFoundError("Message not found")
            message = await uow.messages.set_content(message_id, content, datetime.now(timezone.utc))
            await uow.outbox.add(
                message.channel_id, event_type_for(ChangeOp.UPDATE), message_to_dict(message),
            )
            await uow.commit()
            return message

    async def list_since(
        self,
        channel_id: UUID,
        cursor: str | None,
        limit: int,
    ) -> list[Message]:
        try:
            async with _unit_of_work(self._sessionmaker) as uow:
                return await uow.messages.list_since(channel_id, cursor=cursor, limit=limit)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    async def list_latest(self, channel_id: UUID, limit: int) -> list[Message]:
        async with _unit_of_work(self._sessionmaker) as uow:
            return await uow.messages.list_latest(channel_id, limit=limit)

    async def list_before(
        self,
        channel_id: UUID,
        cursor: str | None,
        limit: int,
    ) -> list[Message]:
        try:
            async with _unit_of_work(self._sessionmaker) as uow:
                return await uow.messages.list_before(channel_id, cursor=cursor, limit=limit)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    @staticmethod
    def _check_sender(message: Message | None, actor: UUID) -> None:
        if message is None:
            raise NotFoundError("Message not found")
        if message.sender_id != actor:
            raise ForbiddenError("Only the sender can change this message")
