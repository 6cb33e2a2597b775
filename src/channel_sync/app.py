from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from channel_sync.api.middleware.correlation_id import CorrelationIdMiddleware
from channel_sync.api.v1.routers import health, ws
from channel_sync.application.dto.options import SyncOptions
from channel_sync.config import settings
from channel_sync.infrastructure.bus.redis_pubsub import RedisChangeFeed
from channel_sync.infrastructure.db.session import create_engine, create_sessionmaker
from channel_sync.infrastructure.db.store import SqlChannelTable, SqlMessageStore
from channel_sync.services.chat_session import ChatSessionFactory

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    app.state.redis = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
    )
    logger.info("Redis connection pool created")

    engine = create_engine(settings)
    app.state.sessionmaker = create_sessionmaker(engine)

    app.state.sessions = ChatSessionFactory(
        SqlChannelTable(app.state.sessionmaker),
        SqlMessageStore(app.state.sessionmaker),
        RedisChangeFeed(app.state.redis, settings.CHANGE_FEED_PREFIX),
        options=SyncOptions.from_settings(settings),
    )

    yield

    await engine.dispose()
    await app.state.redis.aclose()
    logger.info("Redis connection pool closed")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Channel Sync Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(health.router)
    app.include_router(ws.router)

    return app
