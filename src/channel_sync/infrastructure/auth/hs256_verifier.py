from __future__ import annotations

from uuid import UUID

import jwt

from channel_sync.application.dto.principal import Principal


class HS256Verifier:
    """Verify JWTs signed with a shared HS256 secret; ``sub`` carries the user id."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    async def verify(self, token: str) -> Principal:
        payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        try:
            subject_id = UUID(str(payload["sub"]))
        except (KeyError, ValueError) as exc:
            raise jwt.InvalidTokenError("Token subject is not a user id") from exc
        return Principal(subject_id=subject_id)
