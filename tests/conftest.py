"""Shared test fixtures and in-memory collaborators."""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from channel_sync.application.dto.options import SyncOptions
from channel_sync.application.dto.principal import Principal
from channel_sync.application.exceptions import ConflictError, ForbiddenError, NotFoundError
from channel_sync.domain.entities.channel import Channel
from channel_sync.domain.entities.message import Message
from channel_sync.domain.events.change_event import ChangeEvent, FeedItem, FeedSignal
from channel_sync.domain.value_objects.cursor import decode_cursor
from channel_sync.domain.value_objects.enums import ChangeOp, FeedStatus

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def alice() -> Principal:
    return Principal(subject_id=uuid.UUID("00000000-0000-0000-0000-00000000a11c"))


@pytest.fixture
def bob() -> Principal:
    return Principal(subject_id=uuid.UUID("00000000-0000-0000-0000-000000000b0b"))


def fast_options(**overrides) -> SyncOptions:
    """Options with no retry pauses worth waiting for."""
    defaults = dict(
        reconnect_base_delay=0.0,
        reconnect_max_delay=0.0,
        reconnect_jitter=0.0,
        subscribe_timeout=1.0,
        open_timeout=2.0,
        send_timeout=1.0,
        store_max_attempts=1,
        store_retry_delay=0.0,
    )
    defaults.update(overrides)
    return SyncOptions(**defaults)


def make_message(
    *,
    channel_id: UUID | None = None,
    sender_id: UUID | None = None,
    content: str = "hello",
    created_at: datetime | None = None,
    message_id: UUID | None = None,
    client_msg_id: UUID | None = None,
) -> Message:
    return Message(
        id=message_id or uuid.uuid4(),
        channel_id=channel_id or uuid.uuid4(),
        sender_id=sender_id or uuid.uuid4(),
        content=content,
        created_at=created_at or T0,
        client_msg_id=client_msg_id,
    )


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


@dataclass
class RecordingSleep:
    """Records requested delays and returns immediately."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass
class FakeClock:
    current: datetime = T0

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


async def settle(rounds: int = 20) -> None:
    """Let background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# -- change feed ------------------------------------------------------------

_END = object()


class FakeSubscription:
    def __init__(self, channel_id: UUID) -> None:
        self.channel_id = channel_id
        self.closed = False
        self._queue: asyncio.Queue[object] = asyncio.Queue()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def push(self, item: FeedItem) -> None:
        self._queue.put_nowait(item)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    def end(self) -> None:
        self._queue.put_nowait(_END)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_END)


@dataclass
class FakeChangeFeed:
    """In-memory change feed. ``deliver`` fans events out to live subscriptions."""

    auto_ack: bool = True
    fail_subscribe: int = 0
    subscribe_calls: int = 0
    subscriptions: list[FakeSubscription] = field(default_factory=list)

    async def subscribe(self, channel_id: UUID) -> FakeSubscription:
        self.subscribe_calls += 1
        if self.fail_subscribe:
            self.fail_subscribe -= 1
            raise ConnectionError("feed unreachable")
        subscription = FakeSubscription(channel_id)
        if self.auto_ack:
            subscription.push(FeedSignal(FeedStatus.SUBSCRIBED))
        self.subscriptions.append(subscription)
        return subscription

    def live(self, channel_id: UUID | None = None) -> list[FakeSubscription]:
        return [
            s for s in self.subscriptions
            if not s.closed and (channel_id is None or s.channel_id == channel_id)
        ]

    def deliver(self, event: ChangeEvent) -> None:
        for subscription in self.live(event.row.channel_id):
            subscription.push(event)


# -- stores -----------------------------------------------------------------


@dataclass
class FakeChannelTable:
    channels: dict[str, Channel] = field(default_factory=dict)
    find_calls: int = 0
    insert_calls: int = 0
    conflict_on_insert: bool = False
    fail_find: int = 0

    async def find_by_name(self, name: str) -> Channel | None:
        self.find_calls += 1
        await asyncio.sleep(0)
        if self.fail_find:
            self.fail_find -= 1
            raise OSError("connection reset")
        return self.channels.get(name)

    async def insert(self, name: str, actor: UUID) -> Channel:
        self.insert_calls += 1
        await asyncio.sleep(0)
        if self.conflict_on_insert:
            # Another process won the race.
            self.channels[name] = Channel(uuid.uuid4(), name, uuid.uuid4(), T0)
            raise ConflictError(f"Channel {name!r} already exists")
        if name in self.channels:
            raise ConflictError(f"Channel {name!r} already exists")
        channel = Channel(uuid.uuid4(), name, actor, T0)
        self.channels[name] = channel
        return channel


@dataclass
class FakeMessageStore:
    """In-memory MessageStore; committed writes are delivered on ``feed`` if set."""

    feed: FakeChangeFeed | None = None
    clock: FakeClock = field(default_factory=FakeClock)
    messages: dict[UUID, Message] = field(default_factory=dict)
    failures: list[Exception] = field(default_factory=list)
    blocked: asyncio.Event | None = None
    insert_calls: int = 0

    async def insert(
        self,
        channel_id: UUID,
        sender_id: UUID,
        content: str,
        *,
        client_msg_id: UUID | None = None,
    ) -> Message:
        self.insert_calls += 1
        await self._io()
        if client_msg_id is not None:
            for existing in self.messages.values():
                if (
                    existing.channel_id == channel_id
                    and existing.sender_id == sender_id
                    and existing.client_msg_id == client_msg_id
                ):
                    return existing
        message = Message(
            id=uuid.uuid4(),
            channel_id=channel_id,
            sender_id=sender_id,
            content=content,
            created_at=self.clock.now(),
            client_msg_id=client_msg_id,
        )
        self.messages[message.id] = message
        self._publish(ChangeOp.INSERT, message)
        return message

    async def soft_delete(self, message_id: UUID, actor: UUID) -> None:
        await self._io()
        message = self._owned(message_id, actor)
        deleted = replace(message, is_deleted=True)
        self.messages[message_id] = deleted
        self._publish(ChangeOp.UPDATE, deleted)

    async def update_content(self, message_id: UUID, actor: UUID, content: str) -> Message:
        await self._io()
        message = self._owned(message_id, actor)
        updated = replace(message, content=content, edited_at=self.clock.now())
        self.messages[message_id] = updated
        self._publish(ChangeOp.UPDATE, updated)
        return updated

    async def list_since(self, channel_id: UUID, cursor: str | None, limit: int) -> list[Message]:
        await self._io()
        rows = self._ordered(channel_id)
        if cursor:
            after = decode_cursor(cursor)
            rows = [m for m in rows if m.sort_key > after]
        return rows[:limit]

    async def list_latest(self, channel_id: UUID, limit: int) -> list[Message]:
        await self._io()
        return self._ordered(channel_id)[-limit:]

    async def list_before(self, channel_id: UUID, cursor: str | None, limit: int) -> list[Message]:
        await self._io()
        rows = [m for m in self._ordered(channel_id) if not m.is_deleted]
        if cursor:
            before = decode_cursor(cursor)
            rows = [m for m in rows if m.sort_key < before]
        return rows[-limit:]

    def add(self, message: Message) -> Message:
        self.messages[message.id] = message
        return message

    def _ordered(self, channel_id: UUID) -> list[Message]:
        return sorted(
            (m for m in self.messages.values() if m.channel_id == channel_id),
            key=lambda m: m.sort_key,
        )

    def _owned(self, message_id: UUID, actor: UUID) -> Message:
        message = self.messages.get(message_id)
        if message is None or message.is_deleted:
            raise NotFoundError("Message not found")
        if message.sender_id != actor:
            raise ForbiddenError("Only the sender can change this message")
        return message

    def _publish(self, op: ChangeOp, message: Message) -> None:
        if self.feed is not None:
            self.feed.deliver(ChangeEvent(op, message))

    async def _io(self) -> None:
        await asyncio.sleep(0)
        if self.blocked is not None:
            await self.blocked.wait()
        if self.failures:
            raise self.failures.pop(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)
