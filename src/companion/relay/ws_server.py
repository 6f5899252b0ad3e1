"""FastAPI application exposing the realtime voice relay.

The browser opens a WebSocket at ``/realtime``; the server immediately
dials the upstream realtime API and relays frames both ways.  A plain
``GET /realtime`` only reports readiness and opens nothing.

Frames the proxy injects (server → client) are JSON text::

    {"type": "proxy.error", "message": "..."}
    {"type": "proxy.closed", "code": 1000, "reason": "..."}

Every other frame is opaque and forwarded unmodified.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from companion import __version__
from companion.config import Settings, get_settings
from companion.relay.auth import select_upstream_auth
from companion.relay.session import RelaySession, encode_notification
from companion.relay.upstream import (
    NORMAL_CLOSURE,
    Frame,
    UpstreamConnector,
    websockets_connector,
)

logger = logging.getLogger(__name__)

INTERNAL_ERROR = 1011


class FastAPIDownstream:
    """Adapts a Starlette WebSocket to the relay's Downstream protocol."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws

    async def receive(self) -> Optional[Frame]:
        msg = await self.ws.receive()
        if msg["type"] == "websocket.disconnect":
            return None
        if msg.get("bytes") is not None:
            return msg["bytes"]
        return msg.get("text") or ""

    async def send(self, frame: Frame) -> None:
        if isinstance(frame, bytes):
            await self.ws.send_bytes(frame)
        else:
            await self.ws.send_text(frame)

    async def notify(self, payload: dict) -> None:
        if self.ws.application_state is not WebSocketState.CONNECTED:
            return
        try:
            await self.ws.send_text(encode_notification(payload))
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("Could not deliver %s notification", payload.get("type"))

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if self.ws.application_state is WebSocketState.DISCONNECTED:
            return
        try:
            await self.ws.close(code=code, reason=reason)
        except RuntimeError:
            logger.debug("Client socket already closed")


def create_relay_app(
    settings: Optional[Settings] = None,
    connector: Optional[UpstreamConnector] = None,
) -> FastAPI:
    """Build the relay FastAPI application.

    ``connector`` opens upstream connections; the websockets client is
    used when it is omitted.
    """
    settings = settings or get_settings()
    connect_upstream = connector or websockets_connector(open_timeout=settings.connect_timeout)

    app = FastAPI(title="Companion Relay", version=__version__)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "realtime_configured": settings.realtime_configured,
            "chat_transport": "custom" if settings.custom_api_active else "gateway",
        }

    @app.get("/realtime")
    async def realtime_info():
        return {
            "status": "ok",
            "message": "Connect via WebSocket for realtime voice",
            "upstream": settings.realtime_configured,
        }

    @app.websocket("/realtime")
    async def realtime(ws: WebSocket):
        await ws.accept()
        downstream = FastAPIDownstream(ws)

        if not settings.realtime_configured:
            logger.error("Realtime relay requested but no upstream credentials are configured")
            await downstream.notify({"type": "proxy.error", "message": "Missing API credentials"})
            await downstream.close(INTERNAL_ERROR, "Missing API credentials")
            return

        auth = select_upstream_auth(
            settings.realtime_url,
            settings.realtime_key,
            capability_token=settings.realtime_capability_token,
            credential_prefix=settings.realtime_credential_prefix,
            query_param=settings.realtime_credential_param,
        )
        session = RelaySession(downstream, connect_upstream(auth))
        logger.info("Relay session starting (credential via %s)", auth.strategy)
        await session.run()

    return app
