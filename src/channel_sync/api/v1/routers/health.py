from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


async def _check_postgres(request: Request) -> None:
    async with request.app.state.sessionmaker() as session:
        await session.execute(text("SELECT 1"))


async def _check_redis(request: Request) -> None:
    await request.app.state.redis.ping()


_CHECKS = {
    "postgres": _check_postgres,
    "redis": _check_redis,
}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    """Ready when the message store and the change-feed broker both answer."""
    checks: dict[str, str] = {}
    for name, check in _CHECKS.items():
        try:
            await check(request)
            checks[name] = "ok"
        except Exception as exc:  # noqa: BLE001
            logger.warning("Readiness check %s failed: %s", name, exc)
            checks[name] = str(exc) or type(exc).__name__

    ready = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "unavailable", "checks": checks},
    )
