from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from uuid import UUID

from channel_sync.application.dto.principal import Principal
from channel_sync.application.exceptions import (
    AppError,
    ConflictError,
    InvalidNameError,
    StoreUnavailableError,
    UnauthenticatedError,
)
from channel_sync.application.repositories.channel import ChannelTable
from channel_sync.domain.entities.channel import normalize_channel_name

logger = logging.getLogger(__name__)


class ChannelResolver:
    """Maps channel names to stable ids, creating the channel on first use.

    Resolutions are cached per normalized name in a bounded LRU. Concurrent
    callers on the same event loop share one in-flight lookup, so the create
    path runs at most once per name per process; races with other processes
    are settled by the table's uniqueness constraint and a re-lookup.
    """

    def __init__(
        self,
        channels: ChannelTable,
        *,
        max_name_length: int = 64,
        cache_size: int = 1024,
    ) -> None:
        self._channels = channels
        self._max_name_length = max_name_length
        self._cache_size = cache_size
        self._cache: OrderedDict[str, UUID] = OrderedDict()
        self._inflight: dict[str, asyncio.Future[UUID]] = {}
        self._lock = threading.Lock()

    async def resolve_or_create(self, name: str, actor: Principal | None) -> UUID:
        if actor is None:
            raise UnauthenticatedError("Sign in to join a channel")
        key = self._validate(name)

        loop = asyncio.get_running_loop()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached
            inflight = self._inflight.get(key)
            if inflight is None or inflight.get_loop() is not loop:
                inflight = loop.create_future()
                self._inflight[key] = inflight
                owner = True
            else:
                owner = False

        if not owner:
            try:
                return await asyncio.shield(inflight)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if inflight.cancelled() and task is not None and not task.cancelling():
                    # The resolving caller was cancelled, not us; resolve ourselves.
                    return await self.resolve_or_create(name, actor)
                raise

        try:
            channel_id = await self._lookup_or_create(key, actor)
        except BaseException as exc:
            with self._lock:
                self._cache.pop(key, None)
                if self._inflight.get(key) is inflight:
                    del self._inflight[key]
            if isinstance(exc, asyncio.CancelledError):
                inflight.cancel()
            else:
                inflight.set_exception(exc)
                # Waiters re-raise it; keep the loop from warning when there are none.
                inflight.exception()
            raise

        with self._lock:
            self._cache[key] = channel_id
            self._cache.move_to_end(key)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
            if self._inflight.get(key) is inflight:
                del self._inflight[key]
        inflight.set_result(channel_id)
        return channel_id

    def cached(self, name: str) -> UUID | None:
        with self._lock:
            return self._cache.get(normalize_channel_name(name))

    def invalidate(self, name: str) -> None:
        with self._lock:
            self._cache.pop(normalize_channel_name(name), None)

    def _validate(self, name: str) -> str:
        key = normalize_channel_name(name)
        if not key:
            raise InvalidNameError("Channel name must not be empty")
        if len(key) > self._max_name_length:
            raise InvalidNameError(
                f"Channel name exceeds {self._max_name_length} characters"
            )
        return key

    async def _lookup_or_create(self, key: str, actor: Principal) -> UUID:
        try:
            existing = await self._channels.find_by_name(key)
            if existing is not None:
                return existing.id

            try:
                created = await self._channels.insert(key, actor.subject_id)
            except ConflictError:
                logger.info("Channel %r created concurrently, re-reading winner", key)
                winner = await self._channels.find_by_name(key)
                if winner is None:
                    raise StoreUnavailableError(
                        f"Channel {key!r} conflicted on create but is not readable"
                    ) from None
                return winner.id

            logger.info("Created channel %r (%s)", key, created.id)
            return created.id
        except AppError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Channel lookup failed: {exc}") from exc
