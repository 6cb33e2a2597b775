"""Outbox worker: polls pending change events and publishes them on the change feed."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channel_sync.application.ports.feed import ChangePublisher
from channel_sync.config import settings
from channel_sync.infrastructure.bus.redis_pubsub import RedisChangePublisher
from channel_sync.infrastructure.bus.serializer import event_from_payload
from channel_sync.infrastructure.db.session import create_engine, create_sessionmaker
from channel_sync.infrastructure.db.uow import SqlAlchemyUoW

logger = logging.getLogger(__name__)

BASE_DELAY_SECONDS = 5
MAX_DELAY_SECONDS = 300


def _calc_backoff(attempts: int) -> datetime:
    delay = min(BASE_DELAY_SECONDS * (2 ** attempts), MAX_DELAY_SECONDS)
    return datetime.now(timezone.utc) + timedelta(seconds=delay)


async def run_outbox_worker() -> None:
    redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    publisher = RedisChangePublisher(redis, settings.CHANGE_FEED_PREFIX)
    engine = create_engine(settings)
    sessionmaker = create_sessionmaker(engine)

    logger.info(
        "Outbox worker started (poll=%.1fs, batch=%d, max_attempts=%d)",
        settings.OUTBOX_POLL_INTERVAL,
        settings.OUTBOX_BATCH_SIZE,
        settings.OUTBOX_MAX_ATTEMPTS,
    )

    try:
        while True:
            try:
                await process_batch(sessionmaker, publisher)
            except Exception:
                logger.exception("Outbox worker loop error")
            await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL)
    finally:
        await redis.aclose()
        await engine.dispose()


async def process_batch(
    sessionmaker: async_sessionmaker[AsyncSession],
    publisher: ChangePublisher,
    *,
    batch_size: int | None = None,
    max_attempts: int | None = None,
) -> int:
    """Publish one batch in insertion order. Returns the number published."""
    batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
    max_attempts = max_attempts or settings.OUTBOX_MAX_ATTEMPTS

    async with sessionmaker() as session:
        uow = SqlAlchemyUoW(session)
        batch = await uow.outbox.fetch_pending(batch_size)
        if not batch:
            return 0

        sent_ids: list[int] = []
        for record in batch:
            if record.attempts >= max_attempts:
                logger.warning("Outbox record %d exceeded max attempts, parking it", record.id)
                await uow.outbox.mark_dead(record.id)
                continue
            try:
                event = event_from_payload(record.event_type, record.payload)
            except (ValueError, KeyError):
                logger.exception("Outbox record %d is not a valid change event", record.id)
                await uow.outbox.mark_dead(record.id)
                continue
            try:
                await publisher.publish(event)
                sent_ids.append(record.id)
            except Exception:
                logger.exception("Failed to publish outbox record %d", record.id)
                await uow.outbox.mark_failed(record.id, _calc_backoff(record.attempts))

        if sent_ids:
            await uow.outbox.mark_sent(sent_ids)

        await uow.commit()
        if sent_ids:
            logger.info("Published %d change events", len(sent_ids))
        return len(sent_ids)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run_outbox_worker())


if __name__ == "__main__":
    main()
