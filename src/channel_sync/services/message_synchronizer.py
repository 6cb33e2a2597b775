"""Merges change-feed events and local sends into one ordered channel view.

All mutation of the view happens on a single worker task draining a command
queue. Feed events, history pages, send outcomes and connection-status
changes are posted to that queue; collaborator I/O runs on separate tasks
and reports back through it.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from channel_sync.application.dto.options import SyncOptions
from channel_sync.application.dto.principal import Principal
from channel_sync.application.dto.snapshot import SyncDelta, SyncSnapshot
from channel_sync.application.exceptions import (
    AppError,
    ForbiddenError,
    NotFoundError,
    OperationTimeoutError,
    SessionClosedError,
    StoreUnavailableError,
    UnauthenticatedError,
    ValidationError,
)
from channel_sync.application.ports.clock import Clock, SystemClock
from channel_sync.application.repositories.message import MessageStore
from channel_sync.domain.entities.message import Message
from channel_sync.domain.entities.pending_send import PendingSend
from channel_sync.domain.events.change_event import ChangeEvent
from channel_sync.domain.timeline import Timeline
from channel_sync.domain.value_objects.cursor import cursor_after, decode_cursor
from channel_sync.domain.value_objects.enums import ChangeOp, ConnectionStatus, DeltaKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
ChangeObserver = Callable[[SyncDelta], None]

MAX_CATCH_UP_PAGES = 10


@dataclass(slots=True)
class _ApplyEvent:
    event: ChangeEvent
    ack: asyncio.Future[None] | None = None


@dataclass(slots=True)
class _MergeHistory:
    messages: list[Message]
    ack: asyncio.Future[None] | None = None


@dataclass(slots=True)
class _AddPending:
    pending: PendingSend
    ack: asyncio.Future[None] | None = None


@dataclass(slots=True)
class _SendSucceeded:
    client_temp_id: UUID
    message: Message
    ack: asyncio.Future[None] | None = None


@dataclass(slots=True)
class _SendFailed:
    client_temp_id: UUID
    error: AppError
    ack: asyncio.Future[None] | None = None


@dataclass(slots=True)
class _StatusChanged:
    status: ConnectionStatus
    error: str | None = None
    ack: asyncio.Future[None] | None = None


_Command = _ApplyEvent | _MergeHistory | _AddPending | _SendSucceeded | _SendFailed | _StatusChanged


def _is_stale(row: Message, existing: Message) -> bool:
    """True when ``row`` predates the edit already held for the same message."""
    if existing.edited_at is None:
        return False
    return row.edited_at is None or row.edited_at < existing.edited_at


class MessageSynchronizer:
    def __init__(
        self,
        store: MessageStore,
        *,
        options: SyncOptions | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._options = options or SyncOptions()
        self._clock = clock or SystemClock()
        self._sleep = sleep

        self._channel_id: UUID | None = None
        self._timeline = Timeline()
        self._pending: dict[UUID, PendingSend] = {}
        self._tombstones: OrderedDict[UUID, None] = OrderedDict()
        self._status = ConnectionStatus.DISCONNECTED
        self._last_error: str | None = None
        self._observers: list[ChangeObserver] = []

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[_Command] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def channel_id(self) -> UUID | None:
        return self._channel_id

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def bind(self, channel_id: UUID) -> None:
        if self._channel_id is not None and self._channel_id != channel_id:
            raise ValidationError("Synchronizer is already bound to another channel")
        self._channel_id = channel_id

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self._closed = False
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._drain(), name="message-synchronizer")

    async def stop(self) -> None:
        """Cancel in-flight work, fail outstanding sends and stop the worker."""
        if self._closed:
            return
        self._closed = True

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        queue, self._queue = self._queue, None
        while queue is not None and not queue.empty():
            command = queue.get_nowait()
            if command.ack is not None and not command.ack.done():
                command.ack.set_exception(SessionClosedError("Session closed"))
                command.ack.exception()

        for pending in list(self._pending.values()):
            self._fail_pending(pending, SessionClosedError("Session closed before send completed"))

    # -- inputs -----------------------------------------------------------

    def submit(self, event: ChangeEvent) -> None:
        """Queue a feed event. Safe to call from any thread."""
        self._post(_ApplyEvent(event))

    def set_connection_status(self, status: ConnectionStatus, error: str | None = None) -> None:
        self._post(_StatusChanged(status, error))

    async def drain(self) -> None:
        """Wait until every queued command has been applied."""
        if self._queue is not None and self.running:
            await self._queue.join()

    def on_change(self, observer: ChangeObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def snapshot(self) -> SyncSnapshot:
        return SyncSnapshot(
            channel_id=self._channel_id,
            messages=self._timeline.to_tuple(),
            connection_status=self._status,
            last_error=self._last_error,
        )

    def newest_confirmed(self) -> Message | None:
        return self._timeline.newest_confirmed()

    # -- commands ---------------------------------------------------------

    async def load_history(self, channel_id: UUID, limit: int | None = None) -> list[Message]:
        """Fetch the latest page of messages and merge it into the view."""
        self.bind(channel_id)
        limit = limit or self._options.history_limit
        rows = await self._with_retries(
            lambda: self._store.list_latest(channel_id, limit), "load history",
        )
        rows = sorted((m for m in rows if not m.is_deleted), key=lambda m: m.sort_key)
        await self._dispatch(_MergeHistory(rows))
        logger.debug("Loaded %d messages for channel=%s", len(rows), channel_id)
        return rows

    async def load_older(
        self, before_cursor: str | None = None, limit: int | None = None,
    ) -> list[Message]:
        """Fetch the page preceding ``before_cursor`` and merge it into the view.

        Defaults to the page before the oldest message already loaded. An empty
        result means the start of the channel has been reached.
        """
        channel_id = self._require_channel()
        if before_cursor is None:
            oldest = self._timeline.oldest()
            if oldest is not None:
                before_cursor = cursor_after(oldest)
        else:
            try:
                decode_cursor(before_cursor)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        limit = limit or self._options.history_limit
        rows = await self._with_retries(
            lambda: self._store.list_before(channel_id, before_cursor, limit), "load older",
        )
        rows = sorted((m for m in rows if not m.is_deleted), key=lambda m: m.sort_key)
        if rows:
            await self._dispatch(_MergeHistory(rows))
        logger.debug("Loaded %d older messages for channel=%s", len(rows), channel_id)
        return rows

    async def catch_up(self, since: Message | None) -> int:
        """Replay what the store recorded after ``since`` (e.g. while disconnected)."""
        channel_id = self._require_channel()
        if since is None:
            return len(await self.load_history(channel_id))

        limit = self._options.history_limit
        cursor = cursor_after(since)
        total = 0
        for _ in range(MAX_CATCH_UP_PAGES):
            rows = await self._with_retries(
                lambda: self._store.list_since(channel_id, cursor, limit), "catch up",
            )
            if not rows:
                break
            await self._dispatch(_MergeHistory(rows))
            total += len(rows)
            if len(rows) < limit:
                break
            cursor = cursor_after(rows[-1])
        if total:
            logger.info("Caught up %d messages for channel=%s", total, channel_id)
        return total

    async def send(
        self,
        content: str,
        actor: Principal | None,
        *,
        timeout: float | None = None,
    ) -> PendingSend:
        """Show the message optimistically, then persist it in the background.

        Await ``PendingSend.result()`` for the confirmed Message; it raises if
        persistence failed or timed out, by which point the optimistic entry
        has been removed from the view.
        """
        if actor is None:
            raise UnauthenticatedError("Sign in to send messages")
        channel_id = self._require_channel()
        text = self._validate_content(content)

        pending = PendingSend(
            client_temp_id=uuid.uuid4(),
            channel_id=channel_id,
            sender_id=actor.subject_id,
            content=text,
            submitted_at=self._clock.now(),
            outcome=asyncio.get_running_loop().create_future(),
        )
        await self._dispatch(_AddPending(pending))
        deadline = timeout if timeout is not None else self._options.send_timeout
        self._spawn(self._persist(pending, deadline), f"send-{pending.client_temp_id}")
        return pending

    async def delete(
        self,
        message_id: UUID,
        actor: Principal | None,
        *,
        timeout: float | None = None,
    ) -> None:
        """Soft-delete through the store; the view changes when the feed confirms it."""
        self._authorize(message_id, actor)
        assert actor is not None
        await self._with_deadline(
            lambda: self._with_retries(
                lambda: self._store.soft_delete(message_id, actor.subject_id), "delete",
            ),
            timeout,
            "delete",
        )
        logger.info("Delete of message %s accepted by store", message_id)

    async def edit(
        self,
        message_id: UUID,
        content: str,
        actor: Principal | None,
        *,
        timeout: float | None = None,
    ) -> Message:
        """Change a message's content; the view changes when the feed confirms it."""
        text = self._validate_content(content)
        self._authorize(message_id, actor)
        assert actor is not None
        return await self._with_deadline(
            lambda: self._with_retries(
                lambda: self._store.update_content(message_id, actor.subject_id, text), "edit",
            ),
            timeout,
            "edit",
        )

    # -- merge ------------------------------------------------------------

    def apply(self, event: ChangeEvent) -> None:
        """Merge one feed event into the view.

        Runs on the worker; call it directly only when no worker is running.
        """
        row = event.row
        if self._channel_id is not None and row.channel_id != self._channel_id:
            logger.debug("Ignoring event for foreign channel=%s", row.channel_id)
            return
        if event.removes:
            self._remove(row.id)
        elif event.op == ChangeOp.INSERT:
            self._merge_insert(row)
        else:
            self._merge_update(row)

    def _merge_insert(self, row: Message) -> None:
        if row.id in self._tombstones:
            logger.debug("Suppressing insert of deleted message %s", row.id)
            return

        existing = self._timeline.get(row.id)
        if existing is not None:
            if _is_stale(row, existing):
                logger.debug("Ignoring stale copy of message %s", row.id)
                return
            if row.created_at != existing.created_at:
                logger.warning("Message %s arrived with a changed created_at; keeping original", row.id)
                row = replace(row, created_at=existing.created_at)
            if row != existing:
                self._timeline.upsert(row)
                self._notify(SyncDelta(DeltaKind.UPDATED, message=row))
            return

        pending = self._match_pending(row)
        if pending is not None:
            self._reconcile(pending, row)
        self._timeline.upsert(row)
        self._notify(SyncDelta(DeltaKind.INSERTED, message=row))

    def _merge_update(self, row: Message) -> None:
        if row.id in self._tombstones:
            return
        existing = self._timeline.get(row.id)
        if existing is None:
            floor = self._timeline.oldest()
            if floor is None or row.sort_key >= floor.sort_key:
                self._merge_insert(row)
            else:
                logger.debug("Ignoring update for message %s outside the loaded window", row.id)
            return

        if row.created_at != existing.created_at:
            logger.warning("Update for message %s tried to change created_at; ignored", row.id)
        if _is_stale(row, existing):
            logger.debug("Ignoring out-of-order update for message %s", row.id)
            return
        merged = replace(existing, content=row.content, edited_at=row.edited_at)
        if merged != existing:
            self._timeline.upsert(merged)
            self._notify(SyncDelta(DeltaKind.UPDATED, message=merged))

    def _remove(self, message_id: UUID) -> None:
        self._tombstones[message_id] = None
        self._tombstones.move_to_end(message_id)
        while len(self._tombstones) > self._options.tombstone_limit:
            self._tombstones.popitem(last=False)

        removed = self._timeline.remove(message_id)
        if removed is not None:
            self._notify(SyncDelta(DeltaKind.DELETED, message=removed))

    def _match_pending(self, row: Message) -> PendingSend | None:
        if not self._pending:
            return None
        if row.client_msg_id is not None:
            # Rows that carry a correlation id only ever match their own send.
            return self._pending.get(row.client_msg_id)

        window = timedelta(seconds=self._options.reconcile_window_seconds)
        candidates = [
            p for p in self._pending.values()
            if p.sender_id == row.sender_id
            and p.content == row.content
            and abs(row.created_at - p.submitted_at) <= window
        ]
        return min(candidates, key=lambda p: p.submitted_at, default=None)

    def _reconcile(self, pending: PendingSend, confirmed: Message) -> None:
        self._pending.pop(pending.client_temp_id, None)
        self._timeline.remove(pending.client_temp_id)
        if not pending.outcome.done():
            pending.outcome.set_result(confirmed)
        logger.debug("Reconciled pending send %s as %s", pending.client_temp_id, confirmed.id)

    def _fail_pending(self, pending: PendingSend, error: AppError) -> None:
        self._pending.pop(pending.client_temp_id, None)
        removed = self._timeline.remove(pending.client_temp_id)
        if not pending.outcome.done():
            pending.outcome.set_exception(error)
            # Surfaced through the delta as well; awaiting callers still see it.
            pending.outcome.exception()
        self._last_error = error.detail
        self._notify(SyncDelta(
            DeltaKind.SEND_FAILED,
            message=removed or pending.as_message(),
            error=error.detail,
        ))

    # -- worker -----------------------------------------------------------

    def _handle(self, command: _Command) -> None:
        if isinstance(command, _ApplyEvent):
            self.apply(command.event)
        elif isinstance(command, _MergeHistory):
            self._merge_history(command.messages)
        elif isinstance(command, _AddPending):
            pending = command.pending
            self._pending[pending.client_temp_id] = pending
            message = pending.as_message()
            self._timeline.upsert(message)
            self._notify(SyncDelta(DeltaKind.INSERTED, message=message))
        elif isinstance(command, _SendSucceeded):
            pending = self._pending.get(command.client_temp_id)
            if pending is not None:
                self._reconcile(pending, command.message)
            self._merge_insert(command.message)
        elif isinstance(command, _SendFailed):
            pending = self._pending.get(command.client_temp_id)
            if pending is not None:
                logger.warning("Send %s rolled back: %s", command.client_temp_id, command.error.detail)
                self._fail_pending(pending, command.error)
        elif isinstance(command, _StatusChanged):
            self._status = command.status
            if command.error is not None:
                self._last_error = command.error
            elif command.status == ConnectionStatus.CONNECTED:
                self._last_error = None
            self._notify(SyncDelta(
                DeltaKind.STATUS,
                connection_status=command.status,
                error=command.error,
            ))

    def _merge_history(self, messages: list[Message]) -> None:
        for message in messages:
            if message.is_deleted:
                self._remove(message.id)
            else:
                self._merge_insert(message)

    async def _drain(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            command = await queue.get()
            try:
                self._handle(command)
            except Exception:
                logger.exception("Error applying %s", type(command).__name__)
            finally:
                if command.ack is not None and not command.ack.done():
                    command.ack.set_result(None)
                queue.task_done()

    def _post(self, command: _Command) -> None:
        if self._closed:
            logger.debug("Dropping %s after close", type(command).__name__)
            return
        if self._queue is None or self._loop is None:
            self._handle(command)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(command)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, command)

    async def _dispatch(self, command: _Command) -> None:
        """Post a command and wait until the worker has applied it."""
        if self._closed:
            raise SessionClosedError("Session closed")
        if self._queue is None or self._loop is None:
            self._handle(command)
            return
        command.ack = self._loop.create_future()
        self._post(command)
        await command.ack

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- collaborator calls ----------------------------------------------

    async def _persist(self, pending: PendingSend, timeout: float | None) -> None:
        try:
            message = await self._with_deadline(
                lambda: self._with_retries(
                    lambda: self._store.insert(
                        pending.channel_id,
                        pending.sender_id,
                        pending.content,
                        client_msg_id=pending.client_temp_id,
                    ),
                    "send",
                ),
                timeout,
                "send",
            )
        except AppError as exc:
            self._post(_SendFailed(pending.client_temp_id, exc))
            return
        self._post(_SendSucceeded(pending.client_temp_id, message))

    async def _with_deadline(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None,
        what: str,
    ) -> T:
        try:
            async with asyncio.timeout(timeout):
                return await operation()
        except TimeoutError:
            raise OperationTimeoutError(f"{what} timed out after {timeout}s") from None

    async def _with_retries(self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        attempts = max(1, self._options.store_max_attempts)
        delay = self._options.store_retry_delay
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except StoreUnavailableError as exc:
                error = exc
            except AppError:
                raise
            except Exception as exc:
                error = StoreUnavailableError(f"{what} failed: {exc}")
                error.__cause__ = exc
            if attempt == attempts:
                raise error
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                what, attempt, attempts, error.detail, delay,
            )
            await self._sleep(delay)
            delay *= 1.5
        raise AssertionError("unreachable")

    # -- helpers ----------------------------------------------------------

    def _require_channel(self) -> UUID:
        if self._closed:
            raise SessionClosedError("Session closed")
        if self._channel_id is None:
            raise SessionClosedError("No channel is open")
        return self._channel_id

    def _validate_content(self, content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        if len(text) > self._options.message_max_length:
            raise ValidationError(
                f"Message exceeds {self._options.message_max_length} characters"
            )
        return text

    def _authorize(self, message_id: UUID, actor: Principal | None) -> Message:
        if actor is None:
            raise UnauthenticatedError("Sign in to change messages")
        message = self._timeline.get(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.pending:
            raise ValidationError("Message has not been sent yet")
        if message.sender_id != actor.subject_id:
            raise ForbiddenError("Only the sender can change this message")
        return message

    def _notify(self, delta: SyncDelta) -> None:
        for observer in list(self._observers):
            try:
                observer(delta)
            except Exception:
                logger.exception("Change observer failed")
