from __future__ import annotations

import asyncio

import pytest

from channel_sync.application.exceptions import (
    InvalidNameError,
    StoreUnavailableError,
    UnauthenticatedError,
)
from channel_sync.services.channel_resolver import ChannelResolver
from tests.conftest import FakeChannelTable


@pytest.fixture
def channels() -> FakeChannelTable:
    return FakeChannelTable()


@pytest.fixture
def resolver(channels) -> ChannelResolver:
    return ChannelResolver(channels, max_name_length=16, cache_size=2)


@pytest.mark.asyncio
async def test_creates_channel_on_first_use(resolver, channels, alice):
    channel_id = await resolver.resolve_or_create("general", alice)

    assert channels.channels["general"].id == channel_id
    assert channels.channels["general"].created_by == alice.subject_id


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_create(resolver, channels, alice, bob):
    results = await asyncio.gather(
        *(resolver.resolve_or_create("general", p) for p in (alice, bob, alice, bob, alice))
    )

    assert len(set(results)) == 1
    assert channels.insert_calls == 1
    assert channels.find_calls == 1


@pytest.mark.asyncio
async def test_names_are_normalized(resolver, alice):
    first = await resolver.resolve_or_create("General", alice)
    second = await resolver.resolve_or_create("  general ", alice)

    assert first == second
    assert resolver.cached("GENERAL") == first


@pytest.mark.asyncio
async def test_cached_resolution_skips_the_table(resolver, channels, alice):
    await resolver.resolve_or_create("general", alice)
    calls = channels.find_calls

    await resolver.resolve_or_create("general", alice)

    assert channels.find_calls == calls


@pytest.mark.asyncio
async def test_cache_is_bounded(resolver, channels, alice):
    for name in ("a", "b", "c"):
        await resolver.resolve_or_create(name, alice)

    assert resolver.cached("a") is None
    assert resolver.cached("c") == channels.channels["c"].id


@pytest.mark.asyncio
async def test_conflict_on_create_returns_winner(resolver, channels, alice):
    channels.conflict_on_insert = True

    channel_id = await resolver.resolve_or_create("general", alice)

    assert channel_id == channels.channels["general"].id
    assert channels.insert_calls == 1
    assert channels.find_calls == 2


@pytest.mark.asyncio
async def test_existing_channel_is_not_recreated(resolver, channels, alice, bob):
    created = await ChannelResolver(channels).resolve_or_create("general", alice)

    assert await resolver.resolve_or_create("general", bob) == created
    assert channels.insert_calls == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", "x" * 17])
async def test_invalid_names_are_rejected(resolver, channels, alice, name):
    with pytest.raises(InvalidNameError):
        await resolver.resolve_or_create(name, alice)

    assert channels.find_calls == 0


@pytest.mark.asyncio
async def test_anonymous_actor_is_rejected(resolver, channels):
    with pytest.raises(UnauthenticatedError):
        await resolver.resolve_or_create("general", None)

    assert channels.find_calls == 0


@pytest.mark.asyncio
async def test_store_errors_are_not_cached(resolver, channels, alice):
    channels.fail_find = 1

    with pytest.raises(StoreUnavailableError):
        await resolver.resolve_or_create("general", alice)
    assert resolver.cached("general") is None

    channel_id = await resolver.resolve_or_create("general", alice)
    assert channel_id == channels.channels["general"].id


@pytest.mark.asyncio
async def test_waiter_recovers_when_the_resolving_caller_is_cancelled(resolver, channels, alice, bob):
    owner = asyncio.create_task(resolver.resolve_or_create("general", alice))
    waiter = asyncio.create_task(resolver.resolve_or_create("general", bob))
    await asyncio.sleep(0)

    owner.cancel()
    channel_id = await waiter

    with pytest.raises(asyncio.CancelledError):
        await owner
    assert channel_id == channels.channels["general"].id
    assert channels.insert_calls == 1


def test_invalidate_drops_cached_entry(resolver, alice):
    resolver._cache["general"] = alice.subject_id

    resolver.invalidate("General")

    assert resolver.cached("general") is None
