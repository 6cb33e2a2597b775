from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from channel_sync.application.exceptions import (
    InvalidNameError,
    SessionClosedError,
    StoreUnavailableError,
    UnauthenticatedError,
    ValidationError,
)
from channel_sync.domain.entities.channel import Channel
from channel_sync.domain.events.change_event import ChangeEvent
from channel_sync.domain.value_objects.enums import ChangeOp, ConnectionStatus, DeltaKind, SessionState
from channel_sync.services.chat_session import ChatSessionFactory
from tests.conftest import (
    T0,
    FakeChangeFeed,
    FakeChannelTable,
    FakeClock,
    FakeMessageStore,
    fast_options,
    make_message,
    wait_until,
)


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()


@pytest.fixture
def channels() -> FakeChannelTable:
    return FakeChannelTable()


@pytest.fixture
def store(feed) -> FakeMessageStore:
    return FakeMessageStore(feed=feed)


@pytest.fixture
def factory(channels, store, feed) -> ChatSessionFactory:
    return ChatSessionFactory(channels, store, feed, options=fast_options(), clock=FakeClock())


def _contents(session) -> list[str]:
    return [m.content for m in session.snapshot().messages]


@pytest.mark.asyncio
async def test_two_users_see_each_others_messages(factory, channels, feed, alice, bob):
    alice_session, bob_session = await asyncio.gather(
        factory.open("general", alice), factory.open("General", bob),
    )

    assert alice_session.channel_id == bob_session.channel_id
    assert channels.insert_calls == 1

    await wait_until(lambda: all(
        s.snapshot().connection_status == ConnectionStatus.CONNECTED
        for s in (alice_session, bob_session)
    ))
    pending = await alice_session.send("hi")
    confirmed = await pending.result()
    await wait_until(lambda: _contents(bob_session) == ["hi"])

    # Redelivery of the same insert changes nothing.
    feed.deliver(ChangeEvent(ChangeOp.INSERT, confirmed))
    await asyncio.sleep(0.05)

    assert bob_session.snapshot().messages == (confirmed,)
    assert alice_session.snapshot().messages == (confirmed,)

    await alice_session.close()
    await bob_session.close()


@pytest.mark.asyncio
async def test_sessions_on_different_channels_are_isolated(factory, alice, bob):
    general = await factory.open("general", alice)
    other = await factory.open("hi", bob)

    pending = await general.send("only in general")
    await pending.result()
    await wait_until(lambda: _contents(general) == ["only in general"])

    assert other.snapshot().messages == ()
    assert general.channel_id != other.channel_id

    await general.close()
    await other.close()


@pytest.mark.asyncio
async def test_open_returns_history(factory, channels, store, alice):
    channel = Channel(id=make_message().channel_id, name="general", created_by=alice.subject_id, created_at=T0)
    channels.channels["general"] = channel
    for n in range(3):
        store.add(make_message(
            channel_id=channel.id, content=str(n), created_at=T0 + timedelta(seconds=n),
        ))

    session = await factory.open("general", alice)
    snapshot = session.snapshot()

    assert snapshot.channel_id == channel.id
    assert [m.content for m in snapshot.messages] == ["0", "1", "2"]
    assert session.state == SessionState.OPEN
    await session.close()


@pytest.mark.asyncio
async def test_invalid_name_leaves_session_closed(factory, feed, alice):
    session = factory.new_session()

    with pytest.raises(InvalidNameError):
        await session.open("   ", alice)

    assert session.state == SessionState.CLOSED
    assert feed.subscribe_calls == 0


@pytest.mark.asyncio
async def test_anonymous_open_is_rejected(factory):
    session = factory.new_session()

    with pytest.raises(UnauthenticatedError):
        await session.open("general", None)

    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_failed_history_load_tears_everything_down(factory, store, feed, alice):
    store.failures.append(StoreUnavailableError("down"))
    session = factory.new_session()

    with pytest.raises(StoreUnavailableError):
        await session.open("general", alice)

    assert session.state == SessionState.CLOSED
    assert feed.live() == []
    with pytest.raises(SessionClosedError):
        await session.send("hi")


@pytest.mark.asyncio
async def test_close_during_open_wins(factory, store, feed, alice):
    store.blocked = asyncio.Event()
    session = factory.new_session()
    opening = asyncio.create_task(session.open("general", alice))
    await wait_until(lambda: session.channel_id is not None)

    await session.close()

    with pytest.raises(SessionClosedError):
        await opening
    assert session.state == SessionState.CLOSED
    assert feed.live() == []


@pytest.mark.asyncio
async def test_close_is_idempotent(factory, feed, alice):
    session = await factory.open("general", alice)

    await session.close()
    await session.close()

    assert session.state == SessionState.CLOSED
    assert feed.live() == []
    with pytest.raises(SessionClosedError):
        await session.send("hi")


@pytest.mark.asyncio
async def test_open_twice_is_rejected(factory, alice):
    session = await factory.open("general", alice)

    with pytest.raises(ValidationError):
        await session.open("general", alice)
    await session.close()


@pytest.mark.asyncio
async def test_reconnect_catches_up_missed_messages(factory, channels, store, feed, alice, bob):
    channel = Channel(id=make_message().channel_id, name="general", created_by=alice.subject_id, created_at=T0)
    channels.channels["general"] = channel
    store.add(make_message(channel_id=channel.id, content="before"))

    session = await factory.open("general", alice)
    statuses: list[ConnectionStatus] = []
    session.on_change(
        lambda d: statuses.append(d.connection_status) if d.kind == DeltaKind.STATUS else None
    )
    await wait_until(lambda: session.snapshot().connection_status == ConnectionStatus.CONNECTED)

    # A write the feed never delivers, then the feed drops.
    store.feed = None
    store.clock.advance(5)
    await store.insert(channel.id, bob.subject_id, "during gap")
    store.feed = feed
    assert _contents(session) == ["before"]
    feed.live()[0].fail(ConnectionError("socket closed"))

    await wait_until(lambda: _contents(session) == ["before", "during gap"])
    await wait_until(lambda: session.snapshot().connection_status == ConnectionStatus.CONNECTED)

    assert ConnectionStatus.RECONNECTING in statuses
    assert len(feed.live()) == 1
    await session.close()


@pytest.mark.asyncio
async def test_close_right_after_open_returns(factory, feed, alice):
    for _ in range(5):
        session = await factory.open("general", alice)
        async with asyncio.timeout(1.0):
            await session.close()

        assert session.state == SessionState.CLOSED
    assert feed.live() == []


@pytest.mark.asyncio
async def test_load_older_pages_back_to_the_start(channels, store, feed, alice):
    factory = ChatSessionFactory(
        channels, store, feed, options=fast_options(history_limit=2), clock=FakeClock(),
    )
    channel = Channel(id=make_message().channel_id, name="general", created_by=alice.subject_id, created_at=T0)
    channels.channels["general"] = channel
    for n in range(5):
        store.add(make_message(
            channel_id=channel.id, content=str(n), created_at=T0 + timedelta(seconds=n),
        ))
    session = await factory.open("general", alice)
    assert _contents(session) == ["3", "4"]

    first = await session.load_older()
    second = await session.load_older()
    third = await session.load_older()

    assert [m.content for m in first] == ["1", "2"]
    assert [m.content for m in second] == ["0"]
    assert third == []
    assert _contents(session) == ["0", "1", "2", "3", "4"]
    await session.close()
