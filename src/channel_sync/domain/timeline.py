"""Ordered, id-unique message set backing a channel view."""
from __future__ import annotations

from bisect import bisect_left, insort
from datetime import datetime
from typing import Iterator
from uuid import UUID

from channel_sync.domain.entities.message import Message

_Key = tuple[datetime, UUID]


class Timeline:
    """Messages kept sorted by (created_at, id) with at most one entry per id."""

    __slots__ = ("_keys", "_by_id")

    def __init__(self) -> None:
        self._keys: list[_Key] = []
        self._by_id: dict[UUID, Message] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[Message]:
        for _, mid in self._keys:
            yield self._by_id[mid]

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def get(self, message_id: UUID) -> Message | None:
        return self._by_id.get(message_id)

    def upsert(self, message: Message) -> bool:
        """Insert or replace by id. Returns True if the id was new."""
        existing = self._by_id.get(message.id)
        if existing is not None:
            if existing.sort_key != message.sort_key:
                self._remove_key(existing.sort_key)
                insort(self._keys, message.sort_key)
            self._by_id[message.id] = message
            return False
        insort(self._keys, message.sort_key)
        self._by_id[message.id] = message
        return True

    def remove(self, message_id: UUID) -> Message | None:
        existing = self._by_id.pop(message_id, None)
        if existing is not None:
            self._remove_key(existing.sort_key)
        return existing

    def oldest(self) -> Message | None:
        for message in self:
            if not message.pending:
                return message
        return None

    def newest_confirmed(self) -> Message | None:
        for _, mid in reversed(self._keys):
            message = self._by_id[mid]
            if not message.pending:
                return message
        return None

    def to_tuple(self) -> tuple[Message, ...]:
        return tuple(self)

    def _remove_key(self, key: _Key) -> None:
        idx = bisect_left(self._keys, key)
        if idx < len(self._keys) and self._keys[idx] == key:
            del self._keys[idx]
