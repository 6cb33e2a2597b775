from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from channel_sync.api.deps import SessionFactoryDep, VerifierDep
from channel_sync.api.middleware.correlation_id import correlation_id_ctx, correlation_id_for
from channel_sync.api.v1.schemas.message import (
    DeleteMessageRequest,
    EditMessageRequest,
    LoadOlderRequest,
    SendMessageRequest,
)
from channel_sync.application.dto.principal import Principal
from channel_sync.application.exceptions import (
    AppError,
    ConflictError,
    ForbiddenError,
    InvalidNameError,
    NotFoundError,
    OperationTimeoutError,
    SessionClosedError,
    StoreUnavailableError,
    SubscriptionClosedError,
    UnauthenticatedError,
    ValidationError,
)
from channel_sync.application.ports.auth import TokenVerifier
from channel_sync.config import settings
from channel_sync.infrastructure.ws import protocol
from channel_sync.infrastructure.ws.protocol import WsInbound, WsOutbound
from channel_sync.services.chat_session import ChatSession

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])

# Most specific first; matched with isinstance.
_ERROR_CODES: list[tuple[type[AppError], str]] = [
    (InvalidNameError, "invalid_name"),
    (ValidationError, "invalid_data"),
    (UnauthenticatedError, "unauthenticated"),
    (ForbiddenError, "forbidden"),
    (NotFoundError, "not_found"),
    (ConflictError, "conflict"),
    (OperationTimeoutError, "timeout"),
    (StoreUnavailableError, "unavailable"),
    (SubscriptionClosedError, "subscription_closed"),
    (SessionClosedError, "session_closed"),
]


def error_code(exc: AppError) -> str:
    for cls, code in _ERROR_CODES:
        if isinstance(exc, cls):
            return code
    return "error"


class OutboundQueue:
    """Bounded per-connection send buffer. Overflow marks the client as too slow."""

    def __init__(self, maxsize: int) -> None:
        self.queue: asyncio.Queue[WsOutbound] = asyncio.Queue(maxsize)
        self.overflowed = asyncio.Event()

    def put(self, message: WsOutbound) -> None:
        if self.overflowed.is_set():
            return
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Outbound queue full (%d); dropping slow client", self.queue.maxsize)
            self.overflowed.set()

    def clear(self) -> None:
        while not self.queue.empty():
            self.queue.get_nowait()
        self.overflowed.clear()


async def _authenticate(verifier: TokenVerifier, token: str) -> Principal | None:
    try:
        return await verifier.verify(token)
    except Exception:
        logger.debug("WS auth failed", exc_info=True)
        return None


@router.websocket("/ws/channels/{name}")
async def ws_channel(
    websocket: WebSocket,
    name: str,
    verifier: VerifierDep,
    sessions: SessionFactoryDep,
    token: str = Query(...),
) -> None:
    principal = await _authenticate(verifier, token)
    if principal is None:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    correlation_id_ctx.set(correlation_id_for(websocket))
    await websocket.accept()
    pkey = principal.principal_key
    outbound = OutboundQueue(settings.WS_OUTBOUND_QUEUE_SIZE)
    session = sessions.new_session()
    session.on_change(lambda delta: outbound.put(protocol.delta_to_outbound(delta)))

    try:
        snapshot = await session.open(name, principal)
    except AppError as exc:
        logger.info("Could not open channel %r for %s: %s", name, pkey, exc.detail)
        await websocket.send_text(protocol.error(error_code(exc), exc.detail).model_dump_json())
        await websocket.close(code=4000, reason=error_code(exc))
        return

    # Deltas raised while opening are already folded into the snapshot.
    outbound.clear()
    opened = protocol.session_opened(session.channel_name, snapshot)
    await websocket.send_text(opened.model_dump_json())

    writer_task = asyncio.create_task(
        _writer(websocket, outbound.queue), name=f"ws-writer-{pkey}",
    )
    heartbeat_task = asyncio.create_task(
        _heartbeat(outbound), name=f"ws-heartbeat-{pkey}",
    )
    reader_task = asyncio.create_task(
        _read_loop(websocket, session, outbound), name=f"ws-reader-{pkey}",
    )
    overflow_task = asyncio.create_task(outbound.overflowed.wait())
    try:
        await asyncio.wait({reader_task, overflow_task}, return_when=asyncio.FIRST_COMPLETED)
        if outbound.overflowed.is_set():
            await websocket.close(code=1013, reason="outbound_overflow")
        else:
            reader_task.result()
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WS error for %s", pkey)
    finally:
        tasks = (reader_task, overflow_task, heartbeat_task, writer_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await session.close()


async def _writer(ws: WebSocket, queue: asyncio.Queue[WsOutbound]) -> None:
    while True:
        message = await queue.get()
        await ws.send_text(message.model_dump_json())


async def _heartbeat(outbound: OutboundQueue) -> None:
    interval = settings.WS_HEARTBEAT_SECONDS
    while True:
        await asyncio.sleep(interval)
        outbound.put(protocol.pong())


async def _read_loop(ws: WebSocket, session: ChatSession, outbound: OutboundQueue) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            msg = WsInbound.model_validate_json(raw)
        except Exception:
            outbound.put(protocol.error("invalid_payload"))
            continue

        if msg.type == "ping":
            outbound.put(protocol.pong())
            continue

        handler = _HANDLERS.get(msg.type)
        if handler is None:
            outbound.put(protocol.error("unknown_type", type=msg.type))
            continue

        try:
            reply = await handler(session, msg.data)
        except AppError as exc:
            outbound.put(protocol.error(error_code(exc), exc.detail, request=msg.type))
            continue
        except ValueError as exc:
            outbound.put(protocol.error("invalid_data", str(exc), request=msg.type))
            continue
        if reply is not None:
            outbound.put(reply)


async def _handle_send(session: ChatSession, data: dict[str, Any]) -> WsOutbound:
    request = SendMessageRequest.model_validate(data)
    pending = await session.send(request.content)
    return protocol.send_accepted(pending)


async def _handle_delete(session: ChatSession, data: dict[str, Any]) -> None:
    request = DeleteMessageRequest.model_validate(data)
    await session.delete(request.message_id)


async def _handle_edit(session: ChatSession, data: dict[str, Any]) -> None:
    request = EditMessageRequest.model_validate(data)
    await session.edit(request.message_id, request.content)


async def _handle_load_older(session: ChatSession, data: dict[str, Any]) -> WsOutbound:
    request = LoadOlderRequest.model_validate(data)
    rows = await session.load_older(request.before, limit=request.limit)
    return protocol.history_page(rows)


_HANDLERS = {
    "message.send": _handle_send,
    "message.delete": _handle_delete,
    "message.edit": _handle_edit,
    "history.load_older": _handle_load_older,
}
