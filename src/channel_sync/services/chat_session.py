from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable
from uuid import UUID

from channel_sync.application.dto.options import SyncOptions
from channel_sync.application.dto.principal import Principal
from channel_sync.application.dto.snapshot import SyncDelta, SyncSnapshot
from channel_sync.application.exceptions import (
    AppError,
    OperationTimeoutError,
    SessionClosedError,
    ValidationError,
)
from channel_sync.application.ports.clock import Clock
from channel_sync.application.ports.feed import ChangeFeed
from channel_sync.application.repositories.channel import ChannelTable
from channel_sync.application.repositories.message import MessageStore
from channel_sync.domain.entities.message import Message
from channel_sync.domain.entities.pending_send import PendingSend
from channel_sync.domain.events.change_event import ChangeEvent
from channel_sync.domain.value_objects.enums import (
    ConnectionStatus,
    SessionState,
    SubscriptionState,
)
from channel_sync.services.channel_resolver import ChannelResolver
from channel_sync.services.message_synchronizer import ChangeObserver, MessageSynchronizer
from channel_sync.services.subscription_manager import (
    SubscriptionManager,
    SubscriptionTransition,
)

logger = logging.getLogger(__name__)


class ChatSession:
    """Per-user, per-channel handle: resolve, subscribe, load, then sync.

    A session is either fully open or closed; a failed ``open`` leaves
    nothing running. ``close`` may be called at any time, including while
    ``open`` is still in progress, and wins the race.
    """

    def __init__(
        self,
        resolver: ChannelResolver,
        store: MessageStore,
        feed: ChangeFeed,
        *,
        options: SyncOptions | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._feed = feed
        self._options = options or SyncOptions()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._state = SessionState.CLOSED
        self._actor: Principal | None = None
        self._channel_name: str | None = None
        self._channel_id: UUID | None = None
        self._sync: MessageSynchronizer | None = None
        self._subscriptions: SubscriptionManager | None = None
        self._observers: list[ChangeObserver] = []

        self._open_task: asyncio.Task | None = None
        self._close_requested = False
        self._was_subscribed = False
        self._gap_open = False
        self._resume_from: Message | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def channel_id(self) -> UUID | None:
        return self._channel_id

    @property
    def channel_name(self) -> str | None:
        return self._channel_name

    @property
    def actor(self) -> Principal | None:
        return self._actor

    async def open(
        self,
        name: str,
        actor: Principal | None,
        *,
        timeout: float | None = None,
    ) -> SyncSnapshot:
        if self._state != SessionState.CLOSED:
            raise ValidationError(f"Session is already {self._state}")

        self._state = SessionState.OPENING
        self._close_requested = False
        self._was_subscribed = False
        self._gap_open = False
        self._resume_from = None
        self._actor = actor
        self._channel_name = name
        self._channel_id = None
        self._open_task = asyncio.current_task()

        sync = MessageSynchronizer(
            self._store, options=self._options, clock=self._clock, sleep=self._sleep,
        )
        sync.on_change(self._forward)
        subscriptions = SubscriptionManager(
            self._feed,
            self,
            base_delay=self._options.reconnect_base_delay,
            max_delay=self._options.reconnect_max_delay,
            max_attempts=self._options.reconnect_max_attempts,
            jitter=self._options.reconnect_jitter,
            handshake_timeout=self._options.subscribe_timeout,
            sleep=self._sleep,
            rng=self._rng,
        )
        self._sync, self._subscriptions = sync, subscriptions

        deadline = timeout if timeout is not None else self._options.open_timeout
        try:
            async with asyncio.timeout(deadline):
                channel_id = await self._resolver.resolve_or_create(name, actor)
                self._channel_id = channel_id
                sync.bind(channel_id)
                await sync.start()
                await subscriptions.start(channel_id)
                await sync.load_history(channel_id)
        except asyncio.CancelledError:
            await self._teardown()
            task = asyncio.current_task()
            if self._close_requested and task is not None:
                task.uncancel()
                raise SessionClosedError("Session closed while opening") from None
            raise
        except TimeoutError:
            await self._teardown()
            raise OperationTimeoutError(f"Opening channel {name!r} timed out") from None
        except Exception:
            await self._teardown()
            raise
        finally:
            self._open_task = None

        self._state = SessionState.OPEN
        logger.info("Session open on channel %r (%s)", name, self._channel_id)
        return sync.snapshot()

    async def close(self) -> None:
        if self._state == SessionState.CLOSED:
            return
        self._state = SessionState.CLOSING
        self._close_requested = True

        open_task = self._open_task
        if open_task is not None and open_task is not asyncio.current_task() and not open_task.done():
            open_task.cancel()
        await self._teardown()
        logger.info("Session closed on channel %r", self._channel_name)

    def snapshot(self) -> SyncSnapshot:
        if self._sync is None:
            return SyncSnapshot(
                channel_id=None,
                messages=(),
                connection_status=ConnectionStatus.DISCONNECTED,
            )
        return self._sync.snapshot()

    async def send(self, content: str, *, timeout: float | None = None) -> PendingSend:
        return await self._require_open().send(content, self._actor, timeout=timeout)

    async def delete(self, message_id: UUID, *, timeout: float | None = None) -> None:
        await self._require_open().delete(message_id, self._actor, timeout=timeout)

    async def edit(
        self, message_id: UUID, content: str, *, timeout: float | None = None,
    ) -> Message:
        return await self._require_open().edit(
            message_id, content, self._actor, timeout=timeout,
        )

    async def load_older(
        self, before_cursor: str | None = None, *, limit: int | None = None,
    ) -> list[Message]:
        return await self._require_open().load_older(before_cursor, limit)

    def on_change(self, observer: ChangeObserver) -> Callable[[], None]:
        """Register a callback fired on every insert/update/delete/status change."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    # -- SubscriptionConsumer ---------------------------------------------

    def on_feed_event(self, event: ChangeEvent) -> None:
        if self._discarding or self._sync is None:
            return
        self._sync.submit(event)

    def on_subscription_state(self, transition: SubscriptionTransition) -> None:
        sync = self._sync
        if sync is None or self._discarding:
            return

        state = transition.state
        if state == SubscriptionState.CONNECTING:
            status = ConnectionStatus.RECONNECTING if self._was_subscribed else ConnectionStatus.CONNECTING
            sync.set_connection_status(status)
        elif state == SubscriptionState.SUBSCRIBED:
            self._was_subscribed = True
            sync.set_connection_status(ConnectionStatus.CONNECTED)
            if transition.resumed and self._gap_open:
                self._spawn_catch_up()
        elif state == SubscriptionState.DISCONNECTED:
            if self._was_subscribed and not self._gap_open:
                self._gap_open = True
                self._resume_from = sync.newest_confirmed()
            error = str(transition.error) if transition.error else None
            sync.set_connection_status(ConnectionStatus.DISCONNECTED, error)
        elif state == SubscriptionState.CLOSED and transition.error is not None:
            sync.set_connection_status(ConnectionStatus.DISCONNECTED, str(transition.error))

    # -- internals --------------------------------------------------------

    @property
    def _discarding(self) -> bool:
        return self._state in (SessionState.CLOSING, SessionState.CLOSED)

    def _require_open(self) -> MessageSynchronizer:
        if self._state != SessionState.OPEN or self._sync is None:
            raise SessionClosedError(f"Session is {self._state}")
        return self._sync

    def _forward(self, delta: SyncDelta) -> None:
        for observer in list(self._observers):
            try:
                observer(delta)
            except Exception:
                logger.exception("Session observer failed")

    def _spawn_catch_up(self) -> None:
        since, self._resume_from = self._resume_from, None
        self._gap_open = False
        task = asyncio.create_task(self._catch_up(since), name=f"catch-up-{self._channel_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _catch_up(self, since: Message | None) -> None:
        assert self._sync is not None
        try:
            await self._sync.catch_up(since)
        except AppError as exc:
            logger.warning("Catch-up after reconnect failed on %r: %s", self._channel_name, exc.detail)

    async def _teardown(self) -> None:
        if self._state != SessionState.CLOSED:
            self._state = SessionState.CLOSING

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._subscriptions is not None:
            await self._subscriptions.stop()
        if self._sync is not None:
            await self._sync.stop()
        self._state = SessionState.CLOSED


class ChatSessionFactory:
    """Builds sessions that share one channel resolver and one set of collaborators."""

    def __init__(
        self,
        channels: ChannelTable,
        store: MessageStore,
        feed: ChangeFeed,
        *,
        options: SyncOptions | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._options = options or SyncOptions()
        self._store = store
        self._feed = feed
        self._clock = clock
        self.resolver = ChannelResolver(
            channels,
            max_name_length=self._options.channel_name_max_length,
            cache_size=self._options.channel_cache_size,
        )

    def new_session(self) -> ChatSession:
        return ChatSession(
            self.resolver, self._store, self._feed, options=self._options, clock=self._clock,
        )

    async def open(
        self,
        name: str,
        actor: Principal | None,
        *,
        timeout: float | None = None,
    ) -> ChatSession:
        session = self.new_session()
        await session.open(name, actor, timeout=timeout)
        return session
