from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    POSTGRES_USER: str = "channel_sync"
    POSTGRES_PASSWORD: str = "channel_sync"
    POSTGRES_DB: str = "channel_sync"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432

    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE: int = 300

    REDIS_URL: str = "redis://localhost:6379/0"
    CHANGE_FEED_PREFIX: str = "channel_messages"

    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"

    OUTBOX_POLL_INTERVAL: float = 1.0
    OUTBOX_BATCH_SIZE: int = 50
    OUTBOX_MAX_ATTEMPTS: int = 5

    WS_HEARTBEAT_SECONDS: int = 30
    WS_OUTBOUND_QUEUE_SIZE: int = 1000
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    CHANNEL_NAME_MAX_LENGTH: int = 64
    CHANNEL_CACHE_SIZE: int = 1024

    MESSAGE_MAX_LENGTH: int = 4000
    HISTORY_LIMIT: int = 100
    RECONCILE_WINDOW_SECONDS: float = 10.0
    TOMBSTONE_LIMIT: int = 1000

    RECONNECT_BASE_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 30.0
    RECONNECT_MAX_ATTEMPTS: int = 0  # 0 = unbounded
    RECONNECT_JITTER: float = 0.2
    SUBSCRIBE_TIMEOUT: float = 10.0

    OPEN_TIMEOUT: float | None = 15.0
    SEND_TIMEOUT: float | None = 5.0
    STORE_MAX_ATTEMPTS: int = 3
    STORE_RETRY_DELAY: float = 1.0

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.POSTGRES_DB}"
        )

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
