"""Tests for the realtime relay: credential placement and session pairing."""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest


class FakeDownstream:
    """Browser side; ``None`` in the inbox means the client disconnected."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.notifications: list[dict] = []
        self.closed = None

    async def receive(self):
        return await self.inbox.get()

    async def send(self, frame) -> None:
        self.sent.append(frame)

    async def notify(self, payload: dict) -> None:
        self.notifications.append(payload)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


class FakeUpstream:
    """Upstream whose lifecycle events are pushed by the test."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.received: list = []
        self.closed = None

    async def events(self):
        from companion.relay.upstream import UpstreamClosed
        while True:
            event = await self.queue.get()
            yield event
            if isinstance(event, UpstreamClosed):
                return

    async def send(self, frame) -> None:
        self.received.append(frame)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


async def _settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


# ======================================================================
# Credential placement
# ======================================================================

class TestUpstreamAuth:

    @pytest.mark.parametrize("value,valid", [
        ("realtime", True),
        ("openai-insecure-api-key.sk-abc_123", True),
        ("a!#$%&'*+-.^_`|~z", True),
        ("", False),
        ("has space", False),
        ("slash/in/it", False),
        ("equals=", False),
        ("comma,sep", False),
        ("quote\"", False),
        ("ключ", False),
    ])
    def test_is_valid_token(self, value, valid):
        from companion.relay.auth import is_valid_token
        assert is_valid_token(value) is valid

    def test_token_safe_key_goes_in_subprotocols(self):
        from companion.relay.auth import select_upstream_auth
        url = "wss://rt.example.com/v1/realtime?model=m1"
        auth = select_upstream_auth(url, "sk-abc123")
        assert auth.strategy == "subprotocol"
        assert auth.url == url
        assert auth.subprotocols == ["realtime", "openai-insecure-api-key.sk-abc123"]

    def test_unsafe_key_goes_in_query(self):
        from companion.relay.auth import select_upstream_auth
        auth = select_upstream_auth("wss://rt.example.com/v1/realtime?model=m1", "ab/cd+e=")
        assert auth.strategy == "query"
        assert auth.subprotocols == ["realtime"]
        query = parse_qs(urlsplit(auth.url).query)
        assert query == {"model": ["m1"], "api_key": ["ab/cd+e="]}

    def test_custom_prefix_and_param(self):
        from companion.relay.auth import select_upstream_auth
        auth = select_upstream_auth(
            "wss://rt.example.com/ws", "key with space",
            capability_token="voice", credential_prefix="bearer.", query_param="token",
        )
        assert auth.subprotocols == ["voice"]
        assert parse_qs(urlsplit(auth.url).query) == {"token": ["key with space"]}

    def test_missing_credential(self):
        from companion.relay.auth import select_upstream_auth
        auth = select_upstream_auth("wss://rt.example.com/ws", "")
        assert auth.strategy == "none"
        assert auth.subprotocols == ["realtime"]


# ======================================================================
# Session pairing
# ======================================================================

class TestRelaySession:

    @pytest.mark.asyncio
    async def test_queued_frames_flushed_in_order_once(self):
        from companion.relay.session import RelaySession, RelayState
        from companion.relay.upstream import UpstreamOpened

        down, up = FakeDownstream(), FakeUpstream()
        session = RelaySession(down, up)
        for frame in ("a", "b", b"\x01\x02"):
            down.inbox.put_nowait(frame)

        task = asyncio.create_task(session.run())
        await _settle()
        assert session.state is RelayState.CONNECTING
        assert up.received == []
        assert list(session.pending) == ["a", "b", b"\x01\x02"]

        up.queue.put_nowait(UpstreamOpened())
        await _settle()
        assert session.state is RelayState.PAIRED
        assert up.received == ["a", "b", b"\x01\x02"]
        assert not session.pending

        down.inbox.put_nowait("c")
        await _settle()
        assert up.received == ["a", "b", b"\x01\x02", "c"]

        down.inbox.put_nowait(None)
        await asyncio.wait_for(task, 1)
        assert session.frames_up == 4

    @pytest.mark.asyncio
    async def test_upstream_frames_forwarded_verbatim(self):
        from companion.relay.session import RelaySession
        from companion.relay.upstream import UpstreamMessage, UpstreamOpened

        down, up = FakeDownstream(), FakeUpstream()
        session = RelaySession(down, up)
        task = asyncio.create_task(session.run())

        up.queue.put_nowait(UpstreamOpened())
        up.queue.put_nowait(UpstreamMessage('{"type":"session.created"}'))
        up.queue.put_nowait(UpstreamMessage(b"\x00audio"))
        await _settle()
        assert down.sent == ['{"type":"session.created"}', b"\x00audio"]
        assert down.notifications == []

        down.inbox.put_nowait(None)
        await asyncio.wait_for(task, 1)
        assert session.frames_down == 2

    @pytest.mark.asyncio
    async def test_upstream_error_is_reported_not_fatal(self):
        from companion.relay.session import RelaySession, RelayState
        from companion.relay.upstream import UpstreamError, UpstreamOpened

        down, up = FakeDownstream(), FakeUpstream()
        session = RelaySession(down, up)
        task = asyncio.create_task(session.run())

        up.queue.put_nowait(UpstreamOpened())
        up.queue.put_nowait(UpstreamError("hiccup"))
        await _settle()
        assert down.notifications == [{"type": "proxy.error", "message": "hiccup"}]
        assert session.state is RelayState.PAIRED

        down.inbox.put_nowait("still here")
        await _settle()
        assert up.received == ["still here"]

        down.inbox.put_nowait(None)
        await asyncio.wait_for(task, 1)

    @pytest.mark.asyncio
    async def test_upstream_close_closes_downstream(self):
        from companion.relay.session import RelaySession, RelayState
        from companion.relay.upstream import UpstreamClosed, UpstreamOpened

        down, up = FakeDownstream(), FakeUpstream()
        session = RelaySession(down, up)
        task = asyncio.create_task(session.run())

        up.queue.put_nowait(UpstreamOpened())
        up.queue.put_nowait(UpstreamClosed(4000, "session expired"))
        await asyncio.wait_for(task, 1)

        assert down.notifications == [
            {"type": "proxy.closed", "code": 4000, "reason": "session expired"},
        ]
        assert down.closed == (1000, "Upstream connection closed")
        assert session.state is RelayState.CLOSED

    @pytest.mark.asyncio
    async def test_handshake_failure(self):
        from companion.relay.session import RelaySession
        from companion.relay.upstream import UpstreamClosed, UpstreamError

        down, up = FakeDownstream(), FakeUpstream()
        session = RelaySession(down, up)
        down.inbox.put_nowait("early")
        task = asyncio.create_task(session.run())
        await _settle()

        up.queue.put_nowait(UpstreamError("Upstream connection failed: refused"))
        up.queue.put_nowait(UpstreamClosed(1006, "Upstream handshake failed"))
        await asyncio.wait_for(task, 1)

        assert [n["type"] for n in down.notifications] == ["proxy.error", "proxy.closed"]
        assert down.notifications[1]["code"] == 1006
        assert down.closed == (1000, "Upstream connection closed")
        assert up.received == []
        assert not session.pending

    @pytest.mark.asyncio
    async def test_client_disconnect_closes_upstream(self):
        from companion.relay.session import RelaySession, RelayState
        from companion.relay.upstream import UpstreamMessage, UpstreamOpened

        down, up = FakeDownstream(), FakeUpstream()
        session = RelaySession(down, up)
        task = asyncio.create_task(session.run())

        up.queue.put_nowait(UpstreamOpened())
        await _settle()
        down.inbox.put_nowait(None)
        await asyncio.wait_for(task, 1)

        assert up.closed == (1000, "Client disconnected")
        assert session.state is RelayState.CLOSED
        assert down.closed is None

        up.queue.put_nowait(UpstreamMessage("too late"))
        await _settle()
        assert down.sent == []

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting_drops_queue(self):
        from companion.relay.session import RelaySession

        down, up = FakeDownstream(), FakeUpstream()
        session = RelaySession(down, up)
        down.inbox.put_nowait("queued")
        down.inbox.put_nowait(None)
        await asyncio.wait_for(session.run(), 1)

        assert up.received == []
        assert not session.pending
        assert up.closed == (1000, "Client disconnected")


def test_encode_notification_keeps_unicode():
    from companion.relay.session import encode_notification
    assert encode_notification({"type": "proxy.error", "message": "连接失败"}) == (
        '{"type": "proxy.error", "message": "连接失败"}'
    )


# ======================================================================
# websockets backend
# ======================================================================

async def _echo_handler(ws):
    async for frame in ws:
        if frame == "expire":
            await ws.close(4000, "session expired")
            return
        if frame == "drop":
            ws.transport.abort()
            return
        await ws.send(frame)


def _free_port() -> int:
    import socket
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestWebsocketsUpstream:

    @pytest.mark.asyncio
    async def test_echo_and_application_close(self):
        from websockets.asyncio.server import serve

        from companion.relay.auth import select_upstream_auth
        from companion.relay.upstream import (
            UpstreamClosed,
            UpstreamMessage,
            UpstreamOpened,
            websockets_connector,
        )

        async with serve(_echo_handler, "127.0.0.1", 0, subprotocols=["realtime"]) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            auth = select_upstream_auth(f"ws://127.0.0.1:{port}/v1/realtime", "sk-test")
            upstream = websockets_connector(open_timeout=5)(auth)
            events = upstream.events()

            assert await events.__anext__() == UpstreamOpened()
            await upstream.send('{"type":"session.update"}')
            assert await events.__anext__() == UpstreamMessage('{"type":"session.update"}')
            await upstream.send(b"\x00\x01pcm")
            assert await events.__anext__() == UpstreamMessage(b"\x00\x01pcm")

            await upstream.send("expire")
            # A close frame with an application code is not an error.
            assert await events.__anext__() == UpstreamClosed(4000, "session expired")
            with pytest.raises(StopAsyncIteration):
                await events.__anext__()

            # Sending after the close is silently dropped.
            await upstream.send("late")
            await upstream.close()

    @pytest.mark.asyncio
    async def test_connection_lost(self):
        from websockets.asyncio.server import serve

        from companion.relay.auth import UpstreamAuth
        from companion.relay.upstream import (
            UpstreamClosed,
            UpstreamError,
            UpstreamOpened,
            WebsocketsUpstream,
        )

        async with serve(_echo_handler, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            upstream = WebsocketsUpstream(UpstreamAuth(url=f"ws://127.0.0.1:{port}/"), open_timeout=5)
            events = upstream.events()

            assert await events.__anext__() == UpstreamOpened()
            await upstream.send("drop")
            error = await events.__anext__()
            assert isinstance(error, UpstreamError)
            assert error.message.startswith("Upstream connection lost")
            assert await events.__anext__() == UpstreamClosed(1006, "")

    @pytest.mark.asyncio
    async def test_refused_connect(self):
        from companion.relay.auth import UpstreamAuth
        from companion.relay.upstream import UpstreamClosed, UpstreamError, WebsocketsUpstream

        upstream = WebsocketsUpstream(
            UpstreamAuth(url=f"ws://127.0.0.1:{_free_port()}/"), open_timeout=5,
        )
        events = [event async for event in upstream.events()]

        assert len(events) == 2
        assert isinstance(events[0], UpstreamError)
        assert events[0].message.startswith("Upstream connection failed")
        assert events[1] == UpstreamClosed(1006, "Upstream handshake failed")
        # Closing a connection that never opened is a no-op.
        await upstream.close()

    @pytest.mark.asyncio
    async def test_send_before_connect_raises(self):
        from companion.relay.auth import UpstreamAuth
        from companion.relay.upstream import WebsocketsUpstream

        upstream = WebsocketsUpstream(UpstreamAuth(url="ws://127.0.0.1:1/"))
        with pytest.raises(RuntimeError):
            await upstream.send("hello")

    @pytest.mark.asyncio
    async def test_relay_session_over_websockets(self):
        from websockets.asyncio.server import serve

        from companion.relay.auth import UpstreamAuth
        from companion.relay.session import RelaySession
        from companion.relay.upstream import WebsocketsUpstream

        async with serve(_echo_handler, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            down = FakeDownstream()
            session = RelaySession(
                down, WebsocketsUpstream(UpstreamAuth(url=f"ws://127.0.0.1:{port}/"), open_timeout=5),
            )
            down.inbox.put_nowait("one")
            down.inbox.put_nowait("expire")
            await asyncio.wait_for(session.run(), 5)

        assert down.sent == ["one"]
        assert down.notifications == [
            {"type": "proxy.closed", "code": 4000, "reason": "session expired"},
        ]
        assert down.closed == (1000, "Upstream connection closed")
