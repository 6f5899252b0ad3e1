"""Upstream side of the relay: lifecycle events and the websockets adapter.

The relay session never talks to a socket library directly.  It consumes
``UpstreamConnection.events()``, an async iterator of lifecycle events
shaped after the browser WebSocket API::

    UpstreamOpened → UpstreamMessage* → [UpstreamError] → UpstreamClosed

and forwards frames through ``UpstreamConnection.send``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Protocol, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from companion.relay.auth import UpstreamAuth

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UpstreamOpened:
    """Handshake done; frames may now be sent."""


@dataclass(frozen=True)
class UpstreamMessage:
    frame: Frame


@dataclass(frozen=True)
class UpstreamError:
    message: str


@dataclass(frozen=True)
class UpstreamClosed:
    code: int
    reason: str = ""


UpstreamEvent = Union[UpstreamOpened, UpstreamMessage, UpstreamError, UpstreamClosed]


class UpstreamConnection(Protocol):
    """Protocol that all upstream backends implement."""

    def events(self) -> AsyncIterator[UpstreamEvent]:
        """Open the connection and yield its lifecycle events."""
        ...

    async def send(self, frame: Frame) -> None:
        ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ...


UpstreamConnector = Callable[[UpstreamAuth], UpstreamConnection]


# ---------------------------------------------------------------------------
# websockets backend
# ---------------------------------------------------------------------------

class WebsocketsUpstream:
    """Upstream connection over the ``websockets`` asyncio client.

    Parameters
    ----------
    auth : UpstreamAuth
        Target URL and sub-protocols chosen by the credential strategy.
    open_timeout : float
        Seconds allowed for the opening handshake.
    """

    def __init__(self, auth: UpstreamAuth, open_timeout: float = 10.0) -> None:
        self.auth = auth
        self.open_timeout = open_timeout
        self._ws: Optional[ClientConnection] = None

    async def events(self) -> AsyncIterator[UpstreamEvent]:
        try:
            self._ws = await connect(
                self.auth.url,
                subprotocols=self.auth.subprotocols or None,  # type: ignore[arg-type]
                open_timeout=self.open_timeout,
                max_size=None,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            logger.warning("Upstream connect failed: %s", exc)
            yield UpstreamError(f"Upstream connection failed: {exc}")
            yield UpstreamClosed(ABNORMAL_CLOSURE, "Upstream handshake failed")
            return

        logger.info("Upstream connected (auth via %s)", self.auth.strategy)
        yield UpstreamOpened()

        try:
            async for frame in self._ws:
                yield UpstreamMessage(frame)
        except ConnectionClosedError as exc:
            # A close frame with an application code (4000, ...) is still a clean close.
            if exc.rcvd is None:
                yield UpstreamError(f"Upstream connection lost: {exc}")

        code = self._ws.close_code or ABNORMAL_CLOSURE
        reason = self._ws.close_reason or ""
        yield UpstreamClosed(code, reason)

    async def send(self, frame: Frame) -> None:
        if self._ws is None:
            raise RuntimeError("Upstream not connected")
        try:
            await self._ws.send(frame)
        except ConnectionClosed:
            # The close surfaces through events(); nothing left to deliver to.
            logger.debug("Dropped frame for closed upstream")

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if self._ws is not None:
            await self._ws.close(code, reason)


def websockets_connector(open_timeout: float = 10.0) -> UpstreamConnector:
    """Default connector factory used by the relay app."""

    def _connect(auth: UpstreamAuth) -> UpstreamConnection:
        return WebsocketsUpstream(auth, open_timeout=open_timeout)

    return _connect
