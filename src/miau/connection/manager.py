"""Lifecycle of the one live session to the chat backend.

``ConnectionManager`` owns at most one ``Session`` at a time. Every session gets
its own task that pumps backend events; a single supervisor task consumes close
notifications and runs the bounded reconnect loop, so reconnects never overlap.

Inbound messages are handed to the registered handlers one at a time, in
registration order. A slow handler delays the ones after it (and the next
message); in exchange, memory stays bounded and delivery order is the order
the backend emitted.
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

import anyio
from anyio.abc import TaskGroup

from ..caches import GroupMetadataCache, MessageStore, RetryCounterCache
from ..constants import (
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_OPEN_TIMEOUT_S,
    DEFAULT_RECONNECT_DELAY_S,
)
from ..jids import JidFilter
from ..logging import bind_context, get_logger
from .auth import AuthStateError, FileAuthStore
from .disconnect import (
    DisconnectKind,
    DisconnectReason,
    classify_disconnect,
    status_code_of,
)
from .events import (
    REVOKE_STUB_TYPE,
    CloseReason,
    ConnectionPhase,
    ConnectionUpdate,
    CredentialsUpdate,
    GroupParticipantsUpdate,
    GroupsUpdate,
    InboundMessage,
    MessagesUpdate,
    MessagesUpsert,
    SessionEvent,
)
from .pairing import PairingFlow
from .session import (
    GroupMetadata,
    MessageHandler,
    Session,
    SessionFactory,
    SessionOptions,
)

logger = get_logger(__name__)


class ConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FATAL = "fatal"


class ConnectionFatalError(RuntimeError):
    pass


class ReconnectLimitExceeded(ConnectionFatalError):
    def __init__(self, attempts: int, reason: CloseReason | None) -> None:
        super().__init__(f"gave up after {attempts} reconnect attempts")
        self.attempts = attempts
        self.reason = reason


class ConnectAborted(RuntimeError):
    pass


@dataclass(slots=True)
class _SessionSlot:
    generation: int
    session: Session
    opened: anyio.Event = field(default_factory=anyio.Event)
    scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)
    handlers: tuple[MessageHandler, ...] | None = None
    closed: bool = False
    task_id: int | None = None


@dataclass(slots=True)
class _ConnectAttempt:
    done: anyio.Event = field(default_factory=anyio.Event)
    session: Session | None = None
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class _Closed:
    generation: int
    reason: CloseReason | None
    epoch: int


async def _end_quietly(session: Session) -> None:
    with anyio.CancelScope(shield=True):
        try:
            await session.end()
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "connection.end.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )


class ConnectionManager:
    def __init__(
        self,
        *,
        factory: SessionFactory,
        auth_store: FileAuthStore,
        task_group: TaskGroup,
        pairing: PairingFlow | None = None,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
        open_timeout_s: float | None = DEFAULT_OPEN_TIMEOUT_S,
        mark_online_on_connect: bool = False,
        jid_filter: JidFilter | None = None,
        message_store: MessageStore | None = None,
        group_cache: GroupMetadataCache | None = None,
        retry_counter_cache: RetryCounterCache | None = None,
        on_fatal: Callable[[ConnectionFatalError], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        if max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        self._factory = factory
        self._auth_store = auth_store
        self._tg = task_group
        self._pairing = pairing
        self._max_attempts = max_reconnect_attempts
        self._delay_s = reconnect_delay_s
        self._open_timeout_s = open_timeout_s
        self._jid_filter = jid_filter or JidFilter()
        self._message_store = message_store or MessageStore()
        self._group_cache = group_cache or GroupMetadataCache()
        self._on_fatal = on_fatal
        self._sleep = sleep
        self._options = SessionOptions(
            mark_online_on_connect=mark_online_on_connect,
            should_ignore_jid=self._should_ignore_jid,
            cached_group_metadata=self._cached_group_metadata,
            get_message=self._message_store.get,
            retry_counter_cache=retry_counter_cache or RetryCounterCache(),
        )

        self._handlers: list[MessageHandler] = []
        self._state = ConnectionState.IDLE
        self._slot: _SessionSlot | None = None
        self._generation = 0
        self._attempts = 0
        self._inflight: _ConnectAttempt | None = None
        # bumped by disconnect/aclose so queued closes stop driving reconnects
        self._epoch = 0
        self._fatal: ConnectionFatalError | None = None
        self._closed = False
        self._closes_send, self._closes_receive = anyio.create_memory_object_stream[
            _Closed
        ](math.inf)
        self._supervisor_scope: anyio.CancelScope | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def get_session(self) -> Session | None:
        slot = self._slot
        return slot.session if slot is not None else None

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)
        if self._state is ConnectionState.OPEN:
            # the open session keeps the handler set it was bound with
            logger.warning(
                "connection.handler.late_registration",
                handler=getattr(handler, "__qualname__", repr(handler)),
            )

    async def connect(self) -> Session:
        if self._closed:
            raise RuntimeError("connection manager is closed")
        if self._fatal is not None:
            raise self._fatal
        attempt = self._inflight
        if attempt is not None:
            logger.debug("connection.connect.waiting")
            await attempt.done.wait()
            if attempt.error is not None:
                raise attempt.error
            assert attempt.session is not None
            return attempt.session

        attempt = _ConnectAttempt()
        self._inflight = attempt
        try:
            attempt.session = await self._open_session()
            return attempt.session
        except Exception as exc:
            attempt.error = exc
            raise
        finally:
            if attempt.session is None and attempt.error is None:
                attempt.error = ConnectAborted("connect attempt was cancelled")
            self._inflight = None
            attempt.done.set()

    async def disconnect(self) -> None:
        self._epoch += 1
        slot = self._slot
        if slot is None:
            return
        logger.info("connection.disconnecting", session=slot.generation)
        self._state = ConnectionState.IDLE
        self._attempts = 0
        try:
            await slot.session.logout()
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "connection.logout.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
        await self._retire(slot)

    async def aclose(self) -> None:
        """Drop the session without logging out and stop all manager tasks."""
        if self._closed:
            return
        self._closed = True
        self._epoch += 1
        slot = self._slot
        if slot is not None:
            await self._retire(slot)
        if self._state is not ConnectionState.FATAL:
            self._state = ConnectionState.IDLE
        self._closes_send.close()
        if self._supervisor_scope is not None:
            self._supervisor_scope.cancel()

    async def _open_session(self) -> Session:
        self._ensure_supervisor()
        self._state = ConnectionState.CONNECTING
        previous = self._slot
        if previous is not None:
            logger.info("connection.replacing", session=previous.generation)
            await self._retire(previous)
        try:
            auth = await self._auth_store.load()
            session = await self._factory(auth, self._options)
        except Exception as exc:
            self._state = ConnectionState.IDLE
            logger.error(
                "connection.create_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise

        if self._closed:
            # aclose() ran while the factory was still building the session
            await _end_quietly(session)
            raise ConnectAborted("connection manager closed during connect")

        self._generation += 1
        slot = _SessionSlot(generation=self._generation, session=session)
        self._slot = slot
        self._tg.start_soon(self._run_slot, slot)
        logger.info("connection.connecting", session=slot.generation)

        if not auth.registered and self._pairing is not None:
            try:
                await self._pairing.begin(session)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "connection.pairing.failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
        return session

    async def _retire(self, slot: _SessionSlot) -> None:
        slot.closed = True
        if self._slot is slot:
            self._slot = None
        await _end_quietly(slot.session)
        # a handler retiring its own session must finish; the pump exits after it
        if slot.task_id != anyio.get_current_task().id:
            slot.scope.cancel()

    async def _run_slot(self, slot: _SessionSlot) -> None:
        slot.task_id = anyio.get_current_task().id
        bind_context(session=slot.generation)
        with slot.scope:
            async with anyio.create_task_group() as tg:
                if self._open_timeout_s is not None:
                    tg.start_soon(self._watch_open, slot, self._open_timeout_s)
                await self._pump(slot)
                tg.cancel_scope.cancel()

    async def _pump(self, slot: _SessionSlot) -> None:
        try:
            async for event in slot.session.events():
                if slot.closed:
                    return
                await self._handle_event(slot, event)
                if slot.closed:
                    return
        except Exception as exc:  # noqa: BLE001
            if slot.closed:
                return
            logger.error(
                "connection.events.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._mark_closed(slot, CloseReason(message=str(exc)))
            return
        if not slot.closed:
            self._mark_closed(
                slot,
                CloseReason(
                    status_code=DisconnectReason.CONNECTION_CLOSED,
                    message="event stream ended",
                ),
            )

    async def _watch_open(self, slot: _SessionSlot, timeout_s: float) -> None:
        with anyio.move_on_after(timeout_s):
            await slot.opened.wait()
            return
        if slot.closed:
            return
        logger.warning("connection.open_timeout", timeout_s=timeout_s)
        self._mark_closed(
            slot,
            CloseReason(
                status_code=DisconnectReason.TIMED_OUT,
                message=f"not open after {timeout_s:g}s",
            ),
        )
        await _end_quietly(slot.session)
        slot.scope.cancel()

    async def _handle_event(self, slot: _SessionSlot, event: SessionEvent) -> None:
        match event:
            case ConnectionUpdate(phase=phase, close_reason=reason, qr=qr):
                if qr is not None:
                    await self._show_pairing(slot, qr)
                if phase is ConnectionPhase.CONNECTING:
                    logger.info("connection.handshake")
                elif phase is ConnectionPhase.OPEN:
                    self._mark_open(slot)
                elif phase is ConnectionPhase.CLOSE:
                    self._mark_closed(slot, reason)
            case CredentialsUpdate():
                await self._save_credentials(event)
            case MessagesUpsert(messages=messages, kind=kind):
                await self._dispatch(slot, messages, kind)
            case MessagesUpdate(updates=updates):
                logger.debug("connection.messages.update", count=len(updates))
                for update in updates:
                    if update.stub_type == REVOKE_STUB_TYPE:
                        logger.debug("connection.message.revoked", id=update.key.id)
                        self._message_store.delete(update.key)
            case GroupsUpdate(group_ids=group_ids):
                for jid in group_ids:
                    await self._refresh_group(slot, jid)
            case GroupParticipantsUpdate(
                group_id=jid, participants=participants, action=action
            ):
                logger.debug(
                    "connection.group.participants",
                    jid=jid,
                    action=action,
                    participants=list(participants),
                )
                await self._refresh_group(slot, jid)
            case _:
                logger.debug(
                    "connection.event.ignored", event_type=type(event).__name__
                )

    def _mark_open(self, slot: _SessionSlot) -> None:
        self._state = ConnectionState.OPEN
        self._attempts = 0
        slot.handlers = tuple(self._handlers)
        slot.opened.set()
        logger.info(
            "connection.open",
            session=slot.generation,
            handlers=len(slot.handlers),
        )

    def _mark_closed(self, slot: _SessionSlot, reason: CloseReason | None) -> None:
        if slot.closed:
            return
        slot.closed = True
        if self._slot is slot:
            self._slot = None
        self._state = ConnectionState.CLOSED
        logger.info(
            "connection.closed",
            session=slot.generation,
            status_code=status_code_of(reason),
            reason=(reason.message if reason else None) or "unknown reason",
        )
        if self._closed or self._fatal is not None:
            return
        self._closes_send.send_nowait(
            _Closed(generation=slot.generation, reason=reason, epoch=self._epoch)
        )

    async def _dispatch(
        self,
        slot: _SessionSlot,
        messages: tuple[InboundMessage, ...],
        kind: str,
    ) -> None:
        logger.debug("connection.messages.upsert", kind=kind, count=len(messages))
        handlers = slot.handlers
        if handlers is None:
            logger.debug("connection.messages.before_open", count=len(messages))
            return
        for message in messages:
            self._message_store.store(message.key, message.message)
            for handler in handlers:
                if slot.closed:
                    return
                try:
                    await handler(slot.session, message)
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "connection.handler.failed",
                        handler=getattr(handler, "__qualname__", repr(handler)),
                        message_id=message.key.id,
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )

    async def _save_credentials(self, update: CredentialsUpdate) -> None:
        try:
            await self._auth_store.save(update)
        except AuthStateError as exc:
            logger.error(
                "connection.credentials.save_failed",
                path=str(exc.path),
                error=exc.reason,
                error_type=exc.__class__.__name__,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "connection.credentials.save_failed",
                path=str(self._auth_store.path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def _show_pairing(self, slot: _SessionSlot, code: str) -> None:
        if self._pairing is None:
            logger.warning("connection.pairing.unhandled")
            return
        try:
            await self._pairing.show(slot.session, code)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "connection.pairing.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def _refresh_group(self, slot: _SessionSlot, jid: str) -> None:
        try:
            metadata = await slot.session.group_metadata(jid)
        except Exception as exc:  # noqa: BLE001
            # most likely no longer a member
            logger.debug("connection.group.refresh_failed", jid=jid, error=str(exc))
            self._group_cache.evict(jid)
            return
        if metadata:
            self._group_cache.set(jid, metadata)

    async def _cached_group_metadata(self, jid: str) -> GroupMetadata | None:
        metadata = self._group_cache.get(jid)
        if metadata is not None:
            return metadata
        session = self.get_session()
        if session is None:
            return None
        try:
            metadata = await session.group_metadata(jid)
        except Exception as exc:  # noqa: BLE001
            logger.debug("connection.group.fetch_failed", jid=jid, error=str(exc))
            return None
        if metadata:
            self._group_cache.set(jid, metadata)
        return metadata

    def _should_ignore_jid(self, jid: str) -> bool:
        session = self.get_session()
        own_id = session.user_id if session is not None else None
        return self._jid_filter.should_ignore(jid, own_id)

    def _ensure_supervisor(self) -> None:
        if self._supervisor_scope is not None:
            return
        self._supervisor_scope = anyio.CancelScope()
        self._tg.start_soon(self._supervise, self._supervisor_scope)

    async def _supervise(self, scope: anyio.CancelScope) -> None:
        with scope:
            async with self._closes_receive:
                async for closed in self._closes_receive:
                    if closed.epoch != self._epoch:
                        logger.debug(
                            "connection.close.stale", session=closed.generation
                        )
                        continue
                    await self._recover(closed.reason)
                    if self._state is ConnectionState.FATAL:
                        return

    async def _recover(self, reason: CloseReason | None) -> None:
        kind = classify_disconnect(status_code_of(reason))
        if not kind.should_reconnect:
            self._attempts = 0
            self._state = ConnectionState.IDLE
            if kind is DisconnectKind.REPLACED:
                logger.warning(
                    "connection.stopped.replaced",
                    hint="another device took over this session",
                )
            else:
                logger.warning(
                    "connection.stopped.permanent",
                    status_code=status_code_of(reason),
                    hint="pair the device again to resume",
                )
            return

        epoch = self._epoch
        while True:
            if self._attempts >= self._max_attempts:
                self._fail(reason)
                return
            self._attempts += 1
            logger.info(
                "connection.reconnecting",
                attempt=self._attempts,
                max_attempts=self._max_attempts,
                delay_s=self._delay_s,
                kind=str(kind),
            )
            await self._sleep(self._delay_s)
            if epoch != self._epoch or self._slot is not None:
                logger.debug("connection.reconnect.skipped", attempt=self._attempts)
                return
            try:
                await self.connect()
            except Exception as exc:  # noqa: BLE001
                self._state = ConnectionState.CLOSED
                logger.error(
                    "connection.reconnect.failed",
                    attempt=self._attempts,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                continue
            return

    def _fail(self, reason: CloseReason | None) -> None:
        self._state = ConnectionState.FATAL
        error = ReconnectLimitExceeded(self._max_attempts, reason)
        self._fatal = error
        logger.error(
            "connection.reconnect.exhausted",
            max_attempts=self._max_attempts,
            status_code=status_code_of(reason),
        )
        if self._on_fatal is None:
            raise error
        self._on_fatal(error)

