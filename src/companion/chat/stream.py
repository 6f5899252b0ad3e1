"""Incremental decoder for chat-completion event streams.

The provider answers with newline-delimited ``data: {...}`` records, but
the transport hands us byte chunks that do not line up with records,
lines, or even UTF-8 characters.  ``StreamDecoder`` buffers partial
input and emits text deltas in order as soon as they are complete.

Wire format::

    : keep-alive comment
    data: {"choices": [{"delta": {"content": "He"}}]}

    data: {"choices": [{"delta": {"content": "llo"}}]}

    data: [DONE]

Each line is classified as one of ``Delta``, ``NoDelta``, ``Terminal``
or ``Incomplete``.  An ``Incomplete`` record is pushed back and retried
once more bytes arrive; it is never an error.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, Optional, Union

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
COMMENT_PREFIX = ":"
DONE_SENTINEL = "[DONE]"


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Delta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True)
class NoDelta:
    """A line that carries nothing to emit (comment, keep-alive, role-only record)."""


@dataclass(frozen=True)
class Terminal:
    """The ``[DONE]`` sentinel."""


@dataclass(frozen=True)
class Incomplete:
    """A data payload that did not parse, most likely cut short."""

    payload: str


ParseResult = Union[Delta, NoDelta, Terminal, Incomplete]

NO_DELTA = NoDelta()
TERMINAL = Terminal()


def _extract_content(record: object) -> Optional[str]:
    """Return ``choices[0].delta.content`` or None if any segment is missing."""
    if not isinstance(record, dict):
        return None
    choices = record.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


def parse_event_line(line: str) -> ParseResult:
    """Classify one line of an event stream."""
    if line.endswith("\r"):
        line = line[:-1]
    if not line.strip() or line.startswith(COMMENT_PREFIX):
        return NO_DELTA
    if not line.startswith(DATA_PREFIX):
        return NO_DELTA

    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_SENTINEL:
        return TERMINAL

    try:
        record = json.loads(payload)
    except json.JSONDecodeError:
        return Incomplete(payload)

    content = _extract_content(record)
    if content:
        return Delta(content)
    return NO_DELTA


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class StreamDecoder:
    """Per-request decode state.

    Feed raw chunks with :meth:`feed`; call :meth:`finish` once the
    transport reports end-of-stream.  Both return the deltas that became
    available, in order.  ``content`` holds everything emitted so far.

    A decoder is single use: a new request needs a new decoder.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._deferred = False  # head of _pending was already pushed back once
        self._finished = False
        self.content = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one chunk and return the deltas it completed."""
        if self._finished:
            raise RuntimeError("StreamDecoder.feed() called after finish()")
        text = self._decoder.decode(chunk)
        if self.done:
            # Sentinel seen; the caller keeps draining the transport.
            return []
        self._pending += text
        return self._drain(final=False)

    def finish(self) -> list[str]:
        """Flush buffered input at end-of-stream."""
        if self._finished:
            return []
        self._finished = True
        tail = self._decoder.decode(b"", final=True)
        if self.done:
            return []
        self._pending += tail
        if self._pending and not self._pending.endswith("\n"):
            self._pending += "\n"
        return self._drain(final=True)

    def _drain(self, final: bool) -> list[str]:
        deltas: list[str] = []
        while not self.done:
            idx = self._pending.find("\n")
            if idx == -1:
                break
            line = self._pending[:idx]
            self._pending = self._pending[idx + 1:]
            retried, self._deferred = self._deferred, False

            result = parse_event_line(line)

            if isinstance(result, Incomplete):
                if final or retried:
                    logger.debug("Dropping malformed event record: %.120r", result.payload)
                    continue
                # Put the line back and wait for the next chunk.
                self._pending = line + "\n" + self._pending
                self._deferred = True
                break

            if isinstance(result, Terminal):
                self.done = True
                self._pending = ""
                break

            if isinstance(result, Delta):
                self.content += result.text
                deltas.append(result.text)
        return deltas


async def iter_deltas(
    chunks: AsyncIterable[bytes],
    decoder: Optional[StreamDecoder] = None,
) -> AsyncIterator[str]:
    """Yield deltas from an async byte stream until it ends."""
    decoder = decoder or StreamDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
    for delta in decoder.finish():
        yield delta


def decode_chunks(
    chunks: Iterable[bytes],
    decoder: Optional[StreamDecoder] = None,
) -> Iterator[str]:
    """Synchronous counterpart of :func:`iter_deltas`."""
    decoder = decoder or StreamDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.finish()
