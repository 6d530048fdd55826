"""Connection — one WebSocket session with the gateway.

A connection owns its transport and runs three tasks:

  - the writer loop drains the bounded outbound queue in order, stamps each
    command with the next message id, registers the pending slot, then sends;
  - the reader loop decodes every inbound frame and routes it to the
    handshake, the pending-request table, or the subscription table;
  - the supervisor waits for either loop to stop and tears the whole
    connection down, failing every outstanding request exactly once.

Nothing here is process-wide: each ``Connection`` has its own counter,
tables and tasks, so several can coexist and close independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, NoReturn

from .correlation import PendingTable, SequenceCounter
from .errors import (
    AuthenticationFailed,
    DeserializationFailed,
    HassError,
    NotAuthenticated,
    TransportClosed,
    TransportError,
)
from .messages import (
    Auth,
    AuthInvalid,
    AuthOk,
    AuthRequired,
    Command,
    WSEvent,
    parse_response,
    peek_id,
)
from .subscriptions import SubscriptionTable
from .transport import FrameStream

logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 20


class AuthState(str, Enum):
    AWAIT_AUTH_REQUIRED = "await_auth_required"
    SEND_AUTH_TOKEN = "send_auth_token"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


_HANDSHAKING = (AuthState.AWAIT_AUTH_REQUIRED, AuthState.SEND_AUTH_TOKEN)


@dataclass
class _Outbound:
    command: Command
    reply: asyncio.Future[Any] | None = None
    on_ack: Callable[[Any], None] | None = None


class Connection:
    """Owns one transport, its reader/writer loops and correlation tables."""

    def __init__(self, stream: FrameStream, *, queue_size: int = OUTBOUND_QUEUE_SIZE) -> None:
        self.auth_state = AuthState.AWAIT_AUTH_REQUIRED
        self.pending = PendingTable()
        self.subscriptions = SubscriptionTable()
        self._stream = stream
        self._sequence = SequenceCounter()
        # None on the queue is the terminal close request
        self._outbound: asyncio.Queue[_Outbound | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = asyncio.Event()
        self._handshake_inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._handshake_begun = False
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._close_error: HassError | None = None

    def __repr__(self) -> str:
        return (
            f"Connection(auth_state={self.auth_state.value}, closed={self.closed}, "
            f"pending={len(self.pending)}, subscriptions={len(self.subscriptions)})"
        )

    @property
    def closed(self) -> bool:
        return self._close_error is not None

    @property
    def close_error(self) -> HassError | None:
        """The error every outstanding request was failed with, once closed."""
        return self._close_error

    @property
    def running(self) -> bool:
        return self._supervisor is not None and not self._supervisor.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the reader, writer and supervisor tasks on the running loop."""
        if self._supervisor is not None:
            raise RuntimeError("Connection already started")
        if self._close_error is not None:
            raise self._connection_closed()
        self._reader_task = asyncio.create_task(self._reader_loop(), name="hassws-reader")
        self._writer_task = asyncio.create_task(self._writer_loop(), name="hassws-writer")
        self._supervisor = asyncio.create_task(self._supervise(), name="hassws-supervisor")

    async def close(self) -> None:
        """Close the transport through the writer and wait for teardown."""
        if self._supervisor is None:
            if self._close_error is None:
                self._close_error = TransportClosed("Connection closed")
                self._closed.set()
                await self._stream.close()
            return
        if self._close_error is None and self._writer_task is not None and not self._writer_task.done():
            await self._enqueue(None)
        await asyncio.shield(self._supervisor)

    async def wait_closed(self) -> None:
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)

    # ------------------------------------------------------------------
    # Authentication handshake
    # ------------------------------------------------------------------

    async def authenticate(self, access_token: str) -> None:
        """Run the auth handshake. Must complete before any other command."""
        self._ensure_open()
        if self._supervisor is None:
            raise RuntimeError("Connection not started")
        if self._handshake_begun:
            raise AuthenticationFailed(
                f"handshake already attempted (state={self.auth_state.value})"
            )
        self._handshake_begun = True

        greeting = await self._next_handshake_frame()
        if not isinstance(greeting, AuthRequired):
            self._handshake_violation(greeting, "auth_required")

        self.auth_state = AuthState.SEND_AUTH_TOKEN
        logger.debug("auth_required received; sending access token.")
        await self._enqueue(_Outbound(Auth(access_token=access_token)))

        reply = await self._next_handshake_frame()
        match reply:
            case AuthOk():
                self.auth_state = AuthState.AUTHENTICATED
                logger.info("Authenticated with gateway (version %s).", reply.ha_version or "?")
            case AuthInvalid():
                self.auth_state = AuthState.FAILED
                logger.warning("Gateway rejected the access token: %s", reply.message)
                raise AuthenticationFailed(reply.message)
            case _:
                self._handshake_violation(reply, "auth_ok")

    async def _next_handshake_frame(self) -> Any:
        item = await self._handshake_inbox.get()
        if isinstance(item, DeserializationFailed):
            self.auth_state = AuthState.FAILED
            raise AuthenticationFailed(f"malformed frame during handshake: {item}") from item
        if isinstance(item, HassError):
            self.auth_state = AuthState.FAILED
            raise item
        return item

    def _handshake_violation(self, frame: Any, expected: str) -> NoReturn:
        self.auth_state = AuthState.FAILED
        got = getattr(frame, "type", type(frame).__name__)
        logger.warning("Handshake violation: expected %s, got %s", expected, got)
        raise AuthenticationFailed(f"expected {expected}, got {got}")

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------

    async def execute(
        self,
        command: Command,
        *,
        on_ack: Callable[[Any], None] | None = None,
    ) -> Any:
        """Send *command* and wait for the response carrying its id.

        Blocks while the outbound queue is full. There is no timeout; wrap
        the call in ``asyncio.timeout`` if one is needed.
        """
        self._ensure_open()
        if self.auth_state is not AuthState.AUTHENTICATED:
            raise NotAuthenticated(
                f"cannot send {command.type!r} before authentication "
                f"(state={self.auth_state.value})"
            )
        if not command.expects_reply:
            raise ValueError(f"{command.type!r} does not expect a reply")

        reply: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._enqueue(_Outbound(command, reply, on_ack))
        # Teardown may have drained the queue, or the put was abandoned
        if self._close_error is not None and not reply.done():
            reply.set_exception(self._close_error)
        return await reply

    async def _enqueue(self, item: _Outbound | None) -> None:
        """Put *item* on the outbound queue, giving up once the connection closes."""
        try:
            self._outbound.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass
        put = asyncio.ensure_future(self._outbound.put(item))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait((put, closed), return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not put.done():
                put.cancel()

    def _ensure_open(self) -> None:
        if self._close_error is not None:
            raise self._connection_closed()

    def _connection_closed(self) -> TransportClosed:
        return TransportClosed(f"Connection is closed: {self._close_error}")

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _writer_loop(self) -> None:
        while True:
            item = await self._outbound.get()
            if item is None:
                logger.debug("Close requested; closing transport.")
                await self._stream.close()
                return
            command = item.command
            if command.expects_reply:
                msg_id = self._sequence.next()
                command = command.with_id(msg_id)
                self.pending.register(msg_id, item.reply, item.on_ack)
            logger.debug("Sending %s (id=%s)", command.type, command.id)
            await self._stream.send(command.to_frame())

    async def _reader_loop(self) -> None:
        while True:
            raw = await self._stream.recv()
            self._dispatch(raw)

    def _dispatch(self, raw: str) -> None:
        try:
            response = parse_response(raw)
        except DeserializationFailed as exc:
            if self.auth_state in _HANDSHAKING:
                self._handshake_inbox.put_nowait(exc)
                return
            msg_id = peek_id(raw)
            if msg_id is not None and self.pending.fail(msg_id, exc):
                return
            logger.warning("Dropping undecodable frame: %.200s", raw)
            return

        if self.auth_state in _HANDSHAKING:
            self._handshake_inbox.put_nowait(response)
            return
        if self.auth_state is AuthState.FAILED:
            logger.debug("Dropping %s after failed handshake.", response.type)
            return

        match response:
            case WSEvent():
                self._route_event(response)
            case AuthRequired() | AuthOk() | AuthInvalid():
                logger.warning("Unexpected %s after authentication; ignored.", response.type)
            case _:
                if not self.pending.resolve(response.id, response):
                    logger.debug("No pending request for id=%s; %s dropped.", response.id, response.type)

    def _route_event(self, event: WSEvent) -> None:
        subscription = self.subscriptions.get(event.id)
        if subscription is None:
            logger.warning("Event for unknown subscription %s dropped.", event.id)
            return
        subscription.deliver(event)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _supervise(self) -> None:
        loops = [t for t in (self._reader_task, self._writer_task) if t is not None]
        done, _ = await asyncio.wait(loops, return_when=asyncio.FIRST_COMPLETED)
        await self._teardown(self._terminal_error(done))

    @staticmethod
    def _terminal_error(done: Iterable[asyncio.Task[None]]) -> HassError:
        errors: list[BaseException] = []
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                return TransportClosed("Connection closed by client")
            errors.append(exc)
        for exc in errors:
            if isinstance(exc, HassError):
                return exc
        if not errors:
            return TransportClosed("Connection closed")
        crash = errors[0]
        logger.error("Connection loop crashed: %r", crash)
        error = TransportError(f"Connection loop failed: {crash}")
        error.__cause__ = crash
        return error

    async def _teardown(self, error: HassError) -> None:
        if self._close_error is not None:
            return
        self._close_error = error
        self._closed.set()

        failed = self.pending.cancel_all(error)
        failed += self._fail_queued(error)
        closed = self.subscriptions.close_all()
        self._handshake_inbox.put_nowait(error)
        logger.info(
            "Connection closed (%s); failed %d request(s), closed %d subscription(s).",
            error,
            failed,
            closed,
        )

        loops = [t for t in (self._reader_task, self._writer_task) if t is not None]
        for task in loops:
            if not task.done():
                task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        try:
            await self._stream.close()
        except Exception as exc:
            logger.debug("Error while closing transport: %s", exc)

    def _fail_queued(self, error: HassError) -> int:
        failed = 0
        while True:
            try:
                item = self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                return failed
            if item is not None and item.reply is not None and not item.reply.done():
                item.reply.set_exception(error)
                failed += 1
