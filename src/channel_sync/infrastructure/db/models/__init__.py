"""Import all models so Base.metadata sees every table."""
from channel_sync.infrastructure.db.models.channel import ChannelModel
from channel_sync.infrastructure.db.models.message import MessageModel
from channel_sync.infrastructure.db.models.outbox import OutboxMessageModel

__all__ = [
    "ChannelModel",
    "MessageModel",
    "OutboxMessageModel",
]
