from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from channel_sync.config import Settings


@dataclass(frozen=True, slots=True)
class SyncOptions:
    channel_name_max_length: int = 64
    channel_cache_size: int = 1024

    message_max_length: int = 4000
    history_limit: int = 100
    reconcile_window_seconds: float = 10.0
    tombstone_limit: int = 1000

    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 0
    reconnect_jitter: float = 0.2
    subscribe_timeout: float = 10.0

    open_timeout: float | None = 15.0
    send_timeout: float | None = 5.0
    store_max_attempts: int = 3
    store_retry_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncOptions:
        return cls(
            channel_name_max_length=settings.CHANNEL_NAME_MAX_LENGTH,
            channel_cache_size=settings.CHANNEL_CACHE_SIZE,
            message_max_length=settings.MESSAGE_MAX_LENGTH,
            history_limit=settings.HISTORY_LIMIT,
            reconcile_window_seconds=settings.RECONCILE_WINDOW_SECONDS,
            tombstone_limit=settings.TOMBSTONE_LIMIT,
            reconnect_base_delay=settings.RECONNECT_BASE_DELAY,
            reconnect_max_delay=settings.RECONNECT_MAX_DELAY,
            reconnect_max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
            reconnect_jitter=settings.RECONNECT_JITTER,
            subscribe_timeout=settings.SUBSCRIBE_TIMEOUT,
            open_timeout=settings.OPEN_TIMEOUT,
            send_timeout=settings.SEND_TIMEOUT,
            store_max_attempts=settings.STORE_MAX_ATTEMPTS,
            store_retry_delay=settings.STORE_RETRY_DELAY,
        )
