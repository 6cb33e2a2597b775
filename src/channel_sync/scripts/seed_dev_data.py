"""Seed development data: creates the schema, a sample channel and a few messages."""
from __future__ import annotations

import asyncio
import logging
import uuid

from channel_sync.application.dto.principal import Principal
from channel_sync.config import settings
from channel_sync.infrastructure.db import models  # noqa: F401  registers tables
from channel_sync.infrastructure.db.base import Base
from channel_sync.infrastructure.db.session import create_engine, create_sessionmaker
from channel_sync.infrastructure.db.store import SqlChannelTable, SqlMessageStore
from channel_sync.services.channel_resolver import ChannelResolver

logger = logging.getLogger(__name__)

ALICE = Principal(subject_id=uuid.UUID("00000000-0000-0000-0000-00000000a11c"))
BOB = Principal(subject_id=uuid.UUID("00000000-0000-0000-0000-000000000b0b"))


async def seed() -> None:
    engine = create_engine(settings)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        sessionmaker = create_sessionmaker(engine)
        resolver = ChannelResolver(
            SqlChannelTable(sessionmaker),
            max_name_length=settings.CHANNEL_NAME_MAX_LENGTH,
        )
        store = SqlMessageStore(sessionmaker)

        channel_id = await resolver.resolve_or_create("general", ALICE)

        messages_data = [
            (ALICE, "Hi everyone!"),
            (BOB, "Hello Alice."),
            (ALICE, "Welcome to #general."),
        ]
        for actor, content in messages_data:
            # Fixed ids keep re-runs idempotent.
            client_msg_id = uuid.uuid5(uuid.NAMESPACE_URL, f"seed:{actor.subject_id}:{content}")
            await store.insert(channel_id, actor.subject_id, content, client_msg_id=client_msg_id)

        logger.info("Seeded channel %s with %d messages", channel_id, len(messages_data))
    finally:
        await engine.dispose()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(seed())


if __name__ == "__main__":
    main()
