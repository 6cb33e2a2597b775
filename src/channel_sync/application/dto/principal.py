from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller identity extracted from a verified token."""

    subject_id: UUID

    @property
    def principal_key(self) -> str:
        return str(self.subject_id)
