"""One relay session: a browser socket paired with an upstream connection.

State machine::

    CONNECTING ──upstream opened──▶ PAIRED
        │                              │
        └──── either side closes ──────┴──▶ CLOSED

Frames arriving from the browser while CONNECTING are queued and
flushed, in order, the moment the upstream opens.  After that every
frame is forwarded verbatim in both directions.  Whichever side closes
first takes the other one down with it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from enum import Enum
from typing import Optional, Protocol

from companion.relay.upstream import (
    NORMAL_CLOSURE,
    Frame,
    UpstreamClosed,
    UpstreamConnection,
    UpstreamError,
    UpstreamMessage,
    UpstreamOpened,
)

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    CONNECTING = "connecting"
    PAIRED = "paired"
    CLOSED = "closed"


class Downstream(Protocol):
    """The browser-facing socket as seen by the session."""

    async def receive(self) -> Optional[Frame]:
        """Next frame, or None once the client has disconnected."""
        ...

    async def send(self, frame: Frame) -> None:
        ...

    async def notify(self, payload: dict) -> None:
        """Best-effort JSON notification; never raises."""
        ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ...


class RelaySession:
    """Pairs one downstream socket with one upstream connection.

    Parameters
    ----------
    downstream : Downstream
        The accepted browser socket.
    upstream : UpstreamConnection
        Not yet opened; :meth:`run` opens it immediately.
    """

    def __init__(self, downstream: Downstream, upstream: UpstreamConnection) -> None:
        self.downstream = downstream
        self.upstream = upstream
        self.state = RelayState.CONNECTING
        self.pending: deque[Frame] = deque()
        self.frames_up = 0
        self.frames_down = 0
        self._lock = asyncio.Lock()
        self._downstream_gone = False
        self._downstream_closed_by_us = False

    async def run(self) -> None:
        """Relay until either side closes."""
        pump = asyncio.create_task(self._pump_upstream(), name="relay-upstream")
        reader = asyncio.create_task(self._pump_downstream(), name="relay-downstream")
        try:
            await asyncio.wait({pump, reader}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self._shutdown(pump, reader)

    # -- directions ---------------------------------------------------------

    async def _pump_downstream(self) -> None:
        while self.state is not RelayState.CLOSED:
            frame = await self.downstream.receive()
            if frame is None:
                self._downstream_gone = True
                logger.info("Client disconnected")
                return
            await self._to_upstream(frame)

    async def _to_upstream(self, frame: Frame) -> None:
        async with self._lock:
            if self.state is RelayState.CLOSED:
                return
            if self.state is RelayState.CONNECTING:
                self.pending.append(frame)
                return
            await self.upstream.send(frame)
            self.frames_up += 1

    async def _pump_upstream(self) -> None:
        async for event in self.upstream.events():
            if self.state is RelayState.CLOSED:
                return

            if isinstance(event, UpstreamOpened):
                async with self._lock:
                    queued = len(self.pending)
                    while self.pending:
                        await self.upstream.send(self.pending.popleft())
                        self.frames_up += 1
                    self.state = RelayState.PAIRED
                logger.info("Relay paired, flushed %d queued frames", queued)

            elif isinstance(event, UpstreamMessage):
                await self.downstream.send(event.frame)
                self.frames_down += 1

            elif isinstance(event, UpstreamError):
                logger.warning("Upstream error: %s", event.message)
                await self.downstream.notify({"type": "proxy.error", "message": event.message})

            elif isinstance(event, UpstreamClosed):
                logger.info("Upstream closed: %s %s", event.code, event.reason)
                self.state = RelayState.CLOSED
                await self.downstream.notify({
                    "type": "proxy.closed",
                    "code": event.code,
                    "reason": event.reason,
                })
                self._downstream_closed_by_us = True
                await self.downstream.close(NORMAL_CLOSURE, "Upstream connection closed")
                return

    # -- teardown -----------------------------------------------------------

    async def _shutdown(self, pump: asyncio.Task, reader: asyncio.Task) -> None:
        self.state = RelayState.CLOSED
        self.pending.clear()
        for task in (pump, reader):
            if not task.done():
                task.cancel()
        results = await asyncio.gather(pump, reader, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Relay task failed", exc_info=result)

        await self.upstream.close(NORMAL_CLOSURE, "Client disconnected")
        if not self._downstream_gone and not self._downstream_closed_by_us:
            await self.downstream.close(NORMAL_CLOSURE, "Relay closed")

        logger.info(
            "Relay session ended (%d frames up, %d frames down)",
            self.frames_up, self.frames_down,
        )


def encode_notification(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False)
