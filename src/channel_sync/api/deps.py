"""FastAPI dependency injection helpers."""
from __future__ import annotations

from typing import Annotated

from fastapi import Depends, WebSocket

from channel_sync.application.ports.auth import TokenVerifier
from channel_sync.config import settings
from channel_sync.infrastructure.auth.hs256_verifier import HS256Verifier
from channel_sync.services.chat_session import ChatSessionFactory

_verifier: TokenVerifier | None = None


def get_verifier() -> TokenVerifier:
    global _verifier  # noqa: PLW0603
    if _verifier is None:
        _verifier = HS256Verifier(settings.JWT_SECRET, settings.JWT_ALGORITHM)
    return _verifier


def get_session_factory(websocket: WebSocket) -> ChatSessionFactory:
    return websocket.app.state.sessions


VerifierDep = Annotated[TokenVerifier, Depends(get_verifier)]
SessionFactoryDep = Annotated[ChatSessionFactory, Depends(get_session_factory)]

