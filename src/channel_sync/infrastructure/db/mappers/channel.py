from __future__ import annotations

from channel_sync.domain.entities.channel import Channel
from channel_sync.infrastructure.db.models.channel import ChannelModel


def model_to_entity(model: ChannelModel) -> Channel:
    return Channel(
        id=model.id,
        name=model.name,
        created_by=model.created_by,
        created_at=model.created_at,
    )
