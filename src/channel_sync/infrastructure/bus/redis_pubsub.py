"""Redis Pub/Sub change feed: one topic per channel."""
from __future__ import annotations

import logging
from typing import AsyncIterator
from uuid import UUID

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub

from channel_sync.domain.events.change_event import ChangeEvent, FeedItem, FeedSignal
from channel_sync.domain.value_objects.enums import FeedStatus
from channel_sync.infrastructure.bus.serializer import decode_change, encode_change

logger = logging.getLogger(__name__)


def channel_topic(prefix: str, channel_id: UUID) -> str:
    return f"{prefix}:{channel_id}"


class RedisChangePublisher:
    """Implements application.ports.feed.ChangePublisher."""

    def __init__(self, redis: aioredis.Redis, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    async def publish(self, event: ChangeEvent) -> None:
        topic = channel_topic(self._prefix, event.row.channel_id)
        await self._redis.publish(topic, encode_change(event))


class RedisFeedSubscription:
    """Implements application.ports.feed.FeedSubscription over one Pub/Sub topic."""

    def __init__(self, pubsub: PubSub, topic: str) -> None:
        self._pubsub = pubsub
        self._topic = topic
        self._closed = False

    def __aiter__(self) -> AsyncIterator[FeedItem]:
        return self._listen()

    async def _listen(self) -> AsyncIterator[FeedItem]:
        async for message in self._pubsub.listen():
            kind = message["type"]
            if kind == "subscribe":
                yield FeedSignal(FeedStatus.SUBSCRIBED)
            elif kind == "unsubscribe":
                yield FeedSignal(FeedStatus.CLOSED)
                return
            elif kind == "message":
                try:
                    event = decode_change(message["data"])
                except (ValueError, KeyError):
                    logger.exception("Dropping malformed change event on %s", self._topic)
                    continue
                yield event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._topic)
        finally:
            await self._pubsub.aclose()


class RedisChangeFeed:
    """Implements application.ports.feed.ChangeFeed."""

    def __init__(self, redis: aioredis.Redis, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    async def subscribe(self, channel_id: UUID) -> RedisFeedSubscription:
        topic = channel_topic(self._prefix, channel_id)
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(topic)
        logger.debug("Redis feed subscribed to %s", topic)
        return RedisFeedSubscription(pubsub, topic)
