from __future__ import annotations

from typing import Protocol

from channel_sync.application.dto.principal import Principal


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> Principal:
        """Return the caller behind ``token``; raise if it is invalid or expired."""
        ...
