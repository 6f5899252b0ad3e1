"""Tests for the relay FastAPI application."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient


class EchoUpstream:
    """Echoes every frame; the text frame ``bye`` makes it close."""

    instances: list["EchoUpstream"] = []

    def __init__(self, auth) -> None:
        self.auth = auth
        self.closed = None
        self._queue = None
        EchoUpstream.instances.append(self)

    async def events(self):
        from companion.relay.upstream import UpstreamClosed, UpstreamMessage, UpstreamOpened
        self._queue = asyncio.Queue()
        yield UpstreamOpened()
        while True:
            frame = await self._queue.get()
            if frame == "bye":
                yield UpstreamClosed(1000, "done")
                return
            yield UpstreamMessage(frame)

    async def send(self, frame) -> None:
        await self._queue.put(frame)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


class AsgiWebSocket:
    """Client side of one WebSocket, spoken as raw ASGI messages to the app.

    The app runs as a task; leaving the block disconnects the client and
    waits for the app to finish.
    """

    def __init__(self, app, path: str = "/realtime") -> None:
        self.app = app
        self.scope = {
            "type": "websocket",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "http_version": "1.1",
            "scheme": "ws",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver")],
            "subprotocols": [],
            "server": ("testserver", 80),
            "client": ("testclient", 50000),
            "state": {},
        }
        self._to_app: asyncio.Queue = asyncio.Queue()
        self._from_app: asyncio.Queue = asyncio.Queue()
        self._task = None

    async def __aenter__(self) -> "AsgiWebSocket":
        self._task = asyncio.create_task(self.app(self.scope, self._to_app.get, self._from_app.put))
        await self._to_app.put({"type": "websocket.connect"})
        message = await self.receive()
        assert message["type"] == "websocket.accept"
        return self

    async def __aexit__(self, *exc_info) -> None:
        if not self._task.done():
            await self._to_app.put({"type": "websocket.disconnect", "code": 1000})
        await asyncio.wait_for(self._task, 1)

    async def send_text(self, text: str) -> None:
        await self._to_app.put({"type": "websocket.receive", "text": text})

    async def send_bytes(self, data: bytes) -> None:
        await self._to_app.put({"type": "websocket.receive", "bytes": data})

    async def receive(self) -> dict:
        return await asyncio.wait_for(self._from_app.get(), 1)


def _app(**overrides):
    from companion.config import Settings
    from companion.relay.ws_server import create_relay_app

    values = dict(realtime_url="wss://rt.example.com/v1/realtime", realtime_key="sk-live")
    values.update(overrides)
    settings = Settings(_env_file=None, **values)
    return create_relay_app(settings, connector=EchoUpstream)


def _client(**overrides) -> TestClient:
    return TestClient(_app(**overrides))


@pytest.fixture(autouse=True)
def _reset_instances():
    EchoUpstream.instances.clear()
    yield


class TestHttpRoutes:

    def test_health(self):
        resp = _client().get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["realtime_configured"] is True
        assert data["chat_transport"] == "gateway"

    def test_realtime_get_reports_readiness(self):
        resp = _client().get("/realtime")
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "message": "Connect via WebSocket for realtime voice",
            "upstream": True,
        }
        assert EchoUpstream.instances == []

    def test_realtime_get_unconfigured(self):
        resp = _client(realtime_key="").get("/realtime")
        assert resp.json()["upstream"] is False


class TestRealtimeSocket:

    @pytest.mark.asyncio
    async def test_echo_text_and_binary(self):
        async with AsgiWebSocket(_app()) as ws:
            await ws.send_text('{"type":"session.update"}')
            assert await ws.receive() == {"type": "websocket.send", "text": '{"type":"session.update"}'}
            await ws.send_bytes(b"\x00\x01pcm")
            assert await ws.receive() == {"type": "websocket.send", "bytes": b"\x00\x01pcm"}

        upstream = EchoUpstream.instances[0]
        assert upstream.auth.strategy == "subprotocol"
        assert upstream.auth.subprotocols == ["realtime", "openai-insecure-api-key.sk-live"]
        assert upstream.closed == (1000, "Client disconnected")

    @pytest.mark.asyncio
    async def test_upstream_close_is_reported(self):
        async with AsgiWebSocket(_app()) as ws:
            await ws.send_text("bye")
            notice = await ws.receive()
            assert json.loads(notice["text"]) == {"type": "proxy.closed", "code": 1000, "reason": "done"}
            closing = await ws.receive()
            assert closing["type"] == "websocket.close"
            assert closing["code"] == 1000

    @pytest.mark.asyncio
    async def test_query_credential_for_unsafe_key(self):
        async with AsgiWebSocket(_app(realtime_key="sk/with=odd")) as ws:
            await ws.send_text("ping")
            assert (await ws.receive())["text"] == "ping"

        auth = EchoUpstream.instances[0].auth
        assert auth.strategy == "query"
        assert "api_key=" in auth.url

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        async with AsgiWebSocket(_app(realtime_key="")) as ws:
            notice = await ws.receive()
            assert json.loads(notice["text"]) == {"type": "proxy.error", "message": "Missing API credentials"}
            closing = await ws.receive()
            assert closing["type"] == "websocket.close"
            assert closing["code"] == 1011
        assert EchoUpstream.instances == []
