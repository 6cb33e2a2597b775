from __future__ import annotations

from dataclasses import dataclass

from channel_sync.domain.entities.message import Message
from channel_sync.domain.value_objects.enums import ChangeOp, FeedStatus


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Row-level change delivered by a change feed."""

    op: ChangeOp
    row: Message

    @property
    def removes(self) -> bool:
        return self.op == ChangeOp.DELETE or self.row.is_deleted


@dataclass(frozen=True, slots=True)
class FeedSignal:
    """Connection status reported by a change feed subscription."""

    status: FeedStatus
    detail: str | None = None


FeedItem = ChangeEvent | FeedSignal
