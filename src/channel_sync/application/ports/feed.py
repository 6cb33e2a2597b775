from __future__ import annotations

from typing import AsyncIterator, Protocol
from uuid import UUID

from channel_sync.domain.events.change_event import ChangeEvent, FeedItem


class FeedSubscription(Protocol):
    """One live change-feed subscription scoped to a single channel.

    Iteration yields FeedSignal status items interleaved with ChangeEvents.
    Exhaustion means the feed closed; an exception means it failed.
    """

    def __aiter__(self) -> AsyncIterator[FeedItem]: ...

    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    async def subscribe(self, channel_id: UUID) -> FeedSubscription: ...


class ChangePublisher(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...
