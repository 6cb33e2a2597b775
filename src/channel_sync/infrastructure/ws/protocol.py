"""WebSocket envelopes exchanged with channel clients.

Client → Server: ``message.send``, ``message.delete``, ``message.edit``,
``history.load_older``, ``ping``.
Server → Client: ``session.opened``, ``message.accepted``, ``history.page``, one event per
SyncDelta (``message.inserted|updated|deleted|failed``, ``connection.status``),
``error`` and ``pong``.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from channel_sync.api.v1.schemas.message import MessageResponse, SnapshotResponse
from channel_sync.application.dto.snapshot import SyncDelta, SyncSnapshot
from channel_sync.domain.entities.message import Message
from channel_sync.domain.entities.pending_send import PendingSend
from channel_sync.domain.value_objects.cursor import cursor_after
from channel_sync.domain.value_objects.enums import DeltaKind

DELTA_TYPES = {
    DeltaKind.INSERTED: "message.inserted",
    DeltaKind.UPDATED: "message.updated",
    DeltaKind.DELETED: "message.deleted",
    DeltaKind.SEND_FAILED: "message.failed",
    DeltaKind.STATUS: "connection.status",
}


class WsInbound(BaseModel):
    type: str
    data: dict[str, Any] = {}


class WsOutbound(BaseModel):
    type: str
    data: dict[str, Any] = {}


def session_opened(channel: str | None, snapshot: SyncSnapshot) -> WsOutbound:
    return WsOutbound(
        type="session.opened",
        data={
            "channel": channel,
            "snapshot": SnapshotResponse.model_validate(snapshot).model_dump(mode="json"),
        },
    )


def send_accepted(pending: PendingSend) -> WsOutbound:
    return WsOutbound(
        type="message.accepted",
        data={"client_temp_id": str(pending.client_temp_id)},
    )


def history_page(messages: list[Message]) -> WsOutbound:
    """Page rows reach the client as ``message.inserted`` deltas; this only reports progress."""
    before = cursor_after(messages[0]) if messages else None
    return WsOutbound(type="history.page", data={"count": len(messages), "before": before})


def delta_to_outbound(delta: SyncDelta) -> WsOutbound:
    data: dict[str, Any] = {}
    if delta.message is not None:
        data["message"] = MessageResponse.model_validate(delta.message).model_dump(mode="json")
    if delta.connection_status is not None:
        data["connection_status"] = str(delta.connection_status)
    if delta.error is not None:
        data["error"] = delta.error
    return WsOutbound(type=DELTA_TYPES[delta.kind], data=data)


def error(code: str, detail: str | None = None, **extra: Any) -> WsOutbound:
    data: dict[str, Any] = {"code": code, **extra}
    if detail is not None:
        data["detail"] = detail
    return WsOutbound(type="error", data=data)


def pong() -> WsOutbound:
    return WsOutbound(type="pong", data={})
