from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True, slots=True)
class Channel:
    id: UUID
    name: str
    created_by: UUID
    created_at: datetime


def normalize_channel_name(name: str) -> str:
    return name.strip().lower()
