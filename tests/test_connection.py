"""Tests for the connection engine: handshake, correlation and teardown.

All tests run against the in-memory FakeStream; frames fed to it are what
the gateway would send.
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from fakes import FakeStream, authenticated_client, result
from hassws.connection import AuthState, Connection
from hassws.errors import (
    AuthenticationFailed,
    DeserializationFailed,
    NotAuthenticated,
    TransportClosed,
    TransportError,
)
from hassws.messages import Ask, Auth, Pong, WSResult


class GatedStream(FakeStream):
    """FakeStream whose sends block while the gate is closed."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.gate.set()

    async def send(self, frame: str) -> None:
        await self.gate.wait()
        await super().send(frame)


class BrokenSendStream(FakeStream):
    """FakeStream that fails every send once ``broken`` is set."""

    broken = False

    async def send(self, frame: str) -> None:
        if self.broken:
            raise TransportError("Send failed: broken pipe")
        await super().send(frame)


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:
    """Tests for the auth handshake state machine."""

    @pytest.mark.asyncio
    async def test_success(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)

        assert client.connection.auth_state is AuthState.AUTHENTICATED
        # the auth frame is the only frame without an id
        assert "id" not in stream.sent[0]

    @pytest.mark.asyncio
    async def test_invalid_token(self, stream: FakeStream) -> None:
        conn = Connection(stream)
        conn.start()
        stream.feed({"type": "auth_required", "ha_version": "2024.6.1"})
        stream.feed({"type": "auth_invalid", "message": "bad token"})

        with pytest.raises(AuthenticationFailed) as exc_info:
            await conn.authenticate("wrong")

        assert exc_info.value.message == "bad token"
        assert conn.auth_state is AuthState.FAILED
        assert await stream.next_sent() == {"type": "auth", "access_token": "wrong"}

        with pytest.raises(NotAuthenticated):
            await conn.execute(Ask(type="get_states"))
        await asyncio.sleep(0.01)
        assert len(stream.sent) == 1

    @pytest.mark.asyncio
    async def test_unexpected_greeting(self, stream: FakeStream) -> None:
        conn = Connection(stream)
        conn.start()
        stream.feed({"id": 1, "type": "pong"})

        with pytest.raises(AuthenticationFailed) as exc_info:
            await conn.authenticate("secret")

        assert "auth_required" in exc_info.value.message
        assert conn.auth_state is AuthState.FAILED
        assert stream.sent == []

    @pytest.mark.asyncio
    async def test_unexpected_reply(self, stream: FakeStream) -> None:
        conn = Connection(stream)
        conn.start()
        stream.feed({"type": "auth_required"})
        stream.feed({"id": 1, "type": "result", "success": True})

        with pytest.raises(AuthenticationFailed):
            await conn.authenticate("secret")

        assert conn.auth_state is AuthState.FAILED

    @pytest.mark.asyncio
    async def test_malformed_frame(self, stream: FakeStream) -> None:
        conn = Connection(stream)
        conn.start()
        stream.feed("this is not json")

        with pytest.raises(AuthenticationFailed) as exc_info:
            await conn.authenticate("secret")

        assert isinstance(exc_info.value.__cause__, DeserializationFailed)

    @pytest.mark.asyncio
    async def test_transport_drop(self, stream: FakeStream) -> None:
        conn = Connection(stream)
        conn.start()
        stream.drop()

        with pytest.raises(TransportClosed):
            await conn.authenticate("secret")

        await conn.wait_closed()
        assert conn.closed

    @pytest.mark.asyncio
    async def test_second_attempt_rejected(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)

        with pytest.raises(AuthenticationFailed):
            await client.authenticate("secret-token")

        assert client.connection.auth_state is AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_commands_rejected_before_auth(self, stream: FakeStream) -> None:
        conn = Connection(stream)
        conn.start()

        with pytest.raises(NotAuthenticated):
            await conn.execute(Ask(type="ping"))

        assert stream.sent == []
        await conn.close()

    @pytest.mark.asyncio
    async def test_not_started(self, stream: FakeStream) -> None:
        conn = Connection(stream)

        with pytest.raises(RuntimeError):
            await conn.authenticate("secret")


# =============================================================================
# Correlation
# =============================================================================


class TestCorrelation:
    """Tests for request/response matching by id."""

    @pytest.mark.asyncio
    async def test_ids_strictly_increasing(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        conn = client.connection

        for expected in (1, 2, 3):
            task = asyncio.create_task(conn.execute(Ask(type="ping")))
            frame = await stream.next_sent()
            assert frame == {"id": expected, "type": "ping"}
            stream.feed({"id": expected, "type": "pong"})
            assert isinstance(await task, Pong)

    @pytest.mark.asyncio
    async def test_out_of_order_replies(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        conn = client.connection

        tasks = [asyncio.create_task(conn.execute(Ask(type="get_states"))) for _ in range(5)]
        frames = [await stream.next_sent() for _ in range(5)]
        assert [f["id"] for f in frames] == [1, 2, 3, 4, 5]

        for frame in reversed(frames):
            stream.feed(result(frame["id"], frame["id"] * 10))
        responses = await asyncio.wait_for(asyncio.gather(*tasks), 1.0)

        for frame, response in zip(frames, responses):
            assert isinstance(response, WSResult)
            assert response.id == frame["id"]
            assert response.result == frame["id"] * 10
        assert len(conn.pending) == 0

    @pytest.mark.asyncio
    async def test_malformed_reply_fails_only_its_request(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        conn = client.connection

        first = asyncio.create_task(conn.execute(Ask(type="get_config")))
        second = asyncio.create_task(conn.execute(Ask(type="get_states")))
        await stream.next_sent()
        await stream.next_sent()

        stream.feed('{"id": 1, "type": "result"}')
        stream.feed(result(2, []))

        with pytest.raises(DeserializationFailed):
            await first
        assert (await second).result == []
        assert not conn.closed

    @pytest.mark.asyncio
    async def test_undecodable_frame_dropped(
        self, stream: FakeStream, caplog: pytest.LogCaptureFixture
    ) -> None:
        client = await authenticated_client(stream)

        with caplog.at_level(logging.WARNING, logger="hassws.connection"):
            stream.feed("garbage")
            task = asyncio.create_task(client.ping())
            frame = await stream.next_sent()
            stream.feed({"id": frame["id"], "type": "pong"})
            await task

        assert "undecodable" in caplog.text

    @pytest.mark.asyncio
    async def test_reply_for_unknown_id_dropped(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)

        stream.feed(result(77, None))
        task = asyncio.create_task(client.ping())
        frame = await stream.next_sent()
        assert frame["id"] == 1
        stream.feed({"id": 1, "type": "pong"})
        await task

    @pytest.mark.asyncio
    async def test_event_for_unknown_subscription_dropped(
        self, stream: FakeStream, caplog: pytest.LogCaptureFixture
    ) -> None:
        client = await authenticated_client(stream)

        with caplog.at_level(logging.WARNING, logger="hassws.connection"):
            stream.feed({"id": 99, "type": "event", "event": {"event_type": "x"}})
            task = asyncio.create_task(client.ping())
            await stream.next_sent()
            stream.feed({"id": 1, "type": "pong"})
            await task

        assert "unknown subscription 99" in caplog.text
        assert client.subscriptions == []

    @pytest.mark.asyncio
    async def test_auth_command_not_executable(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)

        with pytest.raises(ValueError):
            await client.connection.execute(Auth(access_token="again"))


# =============================================================================
# Backpressure
# =============================================================================


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_full_queue_blocks_callers(self) -> None:
        stream = GatedStream()
        client = await authenticated_client(stream, queue_size=1)
        conn = client.connection

        stream.gate.clear()
        tasks = [asyncio.create_task(conn.execute(Ask(type="ping"))) for _ in range(3)]
        await asyncio.sleep(0.05)

        # one command held by the writer, one queued, one caller waiting
        assert len(stream.sent) == 1
        assert conn._outbound.full()
        assert not any(task.done() for task in tasks)

        stream.gate.set()
        frames = [await stream.next_sent() for _ in range(3)]
        assert [f["id"] for f in frames] == [1, 2, 3]
        for frame in frames:
            stream.feed({"id": frame["id"], "type": "pong"})
        await asyncio.wait_for(asyncio.gather(*tasks), 1.0)

    @pytest.mark.asyncio
    async def test_blocked_callers_fail_on_teardown(self) -> None:
        stream = GatedStream()
        client = await authenticated_client(stream, queue_size=1)
        conn = client.connection

        stream.gate.clear()
        tasks = [asyncio.create_task(conn.execute(Ask(type="ping"))) for _ in range(3)]
        await asyncio.sleep(0.05)
        stream.drop()

        outcomes = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), 1.0)

        assert all(isinstance(outcome, TransportClosed) for outcome in outcomes)

    @pytest.mark.asyncio
    async def test_every_blocked_caller_fails_on_teardown(self) -> None:
        """More callers wait on the queue than it can hold after draining."""
        stream = GatedStream()
        client = await authenticated_client(stream, queue_size=1)
        conn = client.connection

        stream.gate.clear()
        tasks = [asyncio.create_task(conn.execute(Ask(type="ping"))) for _ in range(6)]
        await asyncio.sleep(0.05)
        stream.drop()

        done, blocked = await asyncio.wait(tasks, timeout=1.0)

        assert blocked == set()
        assert all(isinstance(task.exception(), TransportClosed) for task in done)
        assert conn.closed

    @pytest.mark.asyncio
    async def test_close_with_full_queue(self) -> None:
        stream = GatedStream()
        client = await authenticated_client(stream, queue_size=1)
        conn = client.connection

        stream.gate.clear()
        tasks = [asyncio.create_task(conn.execute(Ask(type="ping"))) for _ in range(3)]
        await asyncio.sleep(0.05)
        closer = asyncio.create_task(conn.close())
        await asyncio.sleep(0.05)
        stream.drop()

        await asyncio.wait_for(closer, 1.0)
        outcomes = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), 1.0)
        assert all(isinstance(outcome, TransportClosed) for outcome in outcomes)


# =============================================================================
# Teardown
# =============================================================================


class TestTeardown:
    """Tests for connection shutdown and failure propagation."""

    @pytest.mark.asyncio
    async def test_drop_fails_all_pending(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        conn = client.connection

        tasks = [asyncio.create_task(conn.execute(Ask(type="get_states"))) for _ in range(3)]
        for _ in range(3):
            await stream.next_sent()
        stream.drop()

        outcomes = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), 1.0)
        await asyncio.wait_for(conn.wait_closed(), 1.0)

        assert all(isinstance(outcome, TransportClosed) for outcome in outcomes)
        assert conn.closed
        assert not conn.running
        assert len(conn.pending) == 0
        assert stream.closed

    @pytest.mark.asyncio
    async def test_requests_after_close_fail_fast(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        stream.drop()
        await client.connection.wait_closed()

        with pytest.raises(TransportClosed):
            await client.ping()

    @pytest.mark.asyncio
    async def test_abnormal_drop(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        task = asyncio.create_task(client.ping())
        await stream.next_sent()
        stream.drop(TransportError("Connection lost: 1006"))

        with pytest.raises(TransportError) as exc_info:
            await task

        assert not isinstance(exc_info.value, TransportClosed)

    @pytest.mark.asyncio
    async def test_send_failure_tears_down(self) -> None:
        stream = BrokenSendStream()
        client = await authenticated_client(stream)
        stream.broken = True

        with pytest.raises(TransportError):
            await asyncio.wait_for(client.ping(), 1.0)

        await client.connection.wait_closed()
        assert client.connection.closed

    @pytest.mark.asyncio
    async def test_loop_crash_wrapped(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        stream.drop(RuntimeError("boom"))
        await asyncio.wait_for(client.connection.wait_closed(), 1.0)

        error = client.connection.close_error
        assert isinstance(error, TransportError)
        assert isinstance(error.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_close(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        conn = client.connection

        task = asyncio.create_task(client.ping())
        await stream.next_sent()
        await asyncio.wait_for(client.close(), 1.0)

        with pytest.raises(TransportClosed):
            await task
        assert stream.closed
        assert conn.closed
        # closing twice is harmless
        await client.close()

    @pytest.mark.asyncio
    async def test_close_ends_subscriptions(self, stream: FakeStream) -> None:
        client = await authenticated_client(stream)
        task = asyncio.create_task(client.subscribe("state_changed"))
        await stream.next_sent()
        stream.feed(result(1, None))
        sub_id = await task

        async def _drain() -> list:
            return [event async for event in client.events(sub_id)]

        consumer = asyncio.create_task(_drain())
        await asyncio.sleep(0)
        await client.close()

        assert await asyncio.wait_for(consumer, 1.0) == []
        assert client.subscriptions == []

    @pytest.mark.asyncio
    async def test_close_unstarted(self, stream: FakeStream) -> None:
        conn = Connection(stream)
        await conn.close()

        assert conn.closed
        assert stream.closed
        with pytest.raises(TransportClosed):
            conn.start()

    @pytest.mark.asyncio
    async def test_connections_independent(self) -> None:
        first_stream, second_stream = FakeStream(), FakeStream()
        first = await authenticated_client(first_stream)
        second = await authenticated_client(second_stream)

        first_stream.drop()
        await first.connection.wait_closed()

        task = asyncio.create_task(second.ping())
        frame = await second_stream.next_sent()
        assert frame["id"] == 1
        second_stream.feed({"id": 1, "type": "pong"})
        await task
        assert not second.connection.closed
