from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Protocol
from uuid import UUID

from channel_sync.application.exceptions import AppError, SubscriptionClosedError
from channel_sync.application.ports.feed import ChangeFeed, FeedSubscription
from channel_sync.domain.events.change_event import ChangeEvent, FeedItem, FeedSignal
from channel_sync.domain.value_objects.enums import FeedStatus, SubscriptionState

logger = logging.getLogger(__name__)

BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0

SleepFn = Callable[[float], Awaitable[None]]


class FeedError(AppError):
    """The change feed reported an error or failed its handshake."""


@dataclass(frozen=True, slots=True)
class SubscriptionTransition:
    state: SubscriptionState
    previous: SubscriptionState
    error: Exception | None = None
    attempt: int = 0
    resumed: bool = False


class SubscriptionConsumer(Protocol):
    def on_subscription_state(self, transition: SubscriptionTransition) -> None: ...

    def on_feed_event(self, event: ChangeEvent) -> None: ...


def compute_backoff(
    attempt: int,
    *,
    base: float = BASE_DELAY_SECONDS,
    maximum: float = MAX_DELAY_SECONDS,
    jitter: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """min(base * 2**attempt, maximum), plus up to ``jitter`` of that delay on top."""
    delay = min(base * (2 ** attempt), maximum)
    if jitter > 0:
        delay += delay * jitter * rng()
    return delay


class SubscriptionManager:
    """Keeps one live change-feed subscription for a channel and re-establishes it.

    State transitions and raw feed events go to a single consumer; message
    semantics are left to it.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        consumer: SubscriptionConsumer,
        *,
        base_delay: float = BASE_DELAY_SECONDS,
        max_delay: float = MAX_DELAY_SECONDS,
        max_attempts: int = 0,
        jitter: float = 0.2,
        handshake_timeout: float | None = 10.0,
        sleep: SleepFn = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._feed = feed
        self._consumer = consumer
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._jitter = jitter
        self._handshake_timeout = handshake_timeout
        self._sleep = sleep
        self._rng = rng

        self._state = SubscriptionState.IDLE
        self._channel_id: UUID | None = None
        self._attempt = 0
        self._ever_subscribed = False
        self._task: asyncio.Task[None] | None = None
        self._subscription: FeedSubscription | None = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def channel_id(self) -> UUID | None:
        return self._channel_id

    @property
    def attempt(self) -> int:
        return self._attempt

    async def start(self, channel_id: UUID) -> SubscriptionState:
        active = self._state in (
            SubscriptionState.CONNECTING,
            SubscriptionState.SUBSCRIBED,
            SubscriptionState.DISCONNECTED,
        )
        if active and channel_id == self._channel_id:
            return self._state
        if active:
            logger.info(
                "Re-targeting subscription from channel=%s to channel=%s",
                self._channel_id, channel_id,
            )
            await self.stop()

        self._channel_id = channel_id
        self._attempt = 0
        self._ever_subscribed = False
        self._transition(SubscriptionState.CONNECTING)
        self._task = asyncio.create_task(
            self._run(channel_id), name=f"feed-subscription-{channel_id}",
        )
        return self._state

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_subscription()
        if self._state not in (SubscriptionState.IDLE, SubscriptionState.CLOSED):
            self._transition(SubscriptionState.CLOSED)
            logger.info("Subscription stopped for channel=%s", self._channel_id)

    async def _run(self, channel_id: UUID) -> None:
        while True:
            error: Exception | None = None
            try:
                await self._connect_and_pump(channel_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = exc

            if error is None:
                logger.info("Feed closed for channel=%s", channel_id)
            else:
                logger.warning("Feed failed for channel=%s: %s", channel_id, error)
            self._transition(SubscriptionState.DISCONNECTED, error)

            if self._max_attempts and self._attempt >= self._max_attempts:
                terminal = SubscriptionClosedError(
                    f"Gave up reconnecting to channel {channel_id} "
                    f"after {self._attempt} attempts"
                )
                logger.error("%s", terminal.detail)
                self._task = None
                self._transition(SubscriptionState.CLOSED, terminal)
                return

            delay = compute_backoff(
                self._attempt,
                base=self._base_delay,
                maximum=self._max_delay,
                jitter=self._jitter,
                rng=self._rng,
            )
            self._attempt += 1
            logger.info(
                "Reconnecting channel=%s in %.2fs (attempt %d)",
                channel_id, delay, self._attempt,
            )
            await self._sleep(delay)
            self._transition(SubscriptionState.CONNECTING)

    async def _connect_and_pump(self, channel_id: UUID) -> None:
        subscription = await self._feed.subscribe(channel_id)
        self._subscription = subscription
        try:
            items = subscription.__aiter__()
            subscribed = False
            while True:
                try:
                    item = await self._next_item(items, subscribed)
                except StopAsyncIteration:
                    return
                if isinstance(item, FeedSignal):
                    if item.status == FeedStatus.SUBSCRIBED:
                        if not subscribed:
                            subscribed = True
                            self._on_subscribed()
                    elif item.status == FeedStatus.CLOSED:
                        return
                    else:
                        raise FeedError(item.detail or "Change feed reported an error")
                else:
                    try:
                        self._consumer.on_feed_event(item)
                    except Exception:
                        logger.exception("Subscription consumer failed on feed event")
        finally:
            await self._close_subscription()

    async def _next_item(
        self, items: AsyncIterator[FeedItem], subscribed: bool,
    ) -> FeedItem:
        if subscribed or self._handshake_timeout is None:
            return await anext(items)
        try:
            async with asyncio.timeout(self._handshake_timeout):
                return await anext(items)
        except TimeoutError:
            raise FeedError(
                f"No subscription handshake within {self._handshake_timeout}s"
            ) from None

    def _on_subscribed(self) -> None:
        resumed = self._ever_subscribed
        self._ever_subscribed = True
        self._attempt = 0
        logger.info(
            "Subscribed to channel=%s%s", self._channel_id, " (resumed)" if resumed else "",
        )
        self._transition(SubscriptionState.SUBSCRIBED, resumed=resumed)

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except Exception:
            logger.exception("Error closing feed subscription")

    def _transition(
        self,
        state: SubscriptionState,
        error: Exception | None = None,
        *,
        resumed: bool = False,
    ) -> None:
        previous, self._state = self._state, state
        transition = SubscriptionTransition(
            state=state,
            previous=previous,
            error=error,
            attempt=self._attempt,
            resumed=resumed,
        )
        try:
            self._consumer.on_subscription_state(transition)
        except Exception:
            logger.exception("Subscription consumer failed on %s", state)
