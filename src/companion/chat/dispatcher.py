"""Chat dispatcher: log → memory context → streaming request → log.

One call to :meth:`ChatDispatcher.send` appends the user turn, lets the
memory collaborator condense old turns, builds the request for either
the custom OpenAI-compatible endpoint or the managed gateway, and
streams the reply into a fresh assistant message.  Failures never
escape as exceptions: they end the turn as an assistant message holding
the user-facing error text.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import httpx

from companion.chat.errors import (
    ChatError,
    ChatTransportError,
    UnreadableResponseError,
    classify_status,
)
from companion.chat.log import MessageLog
from companion.chat.memory import MemoryCollaborator
from companion.chat.prompt import inject_current_time, normalize_endpoint, to_multimodal
from companion.chat.stream import StreamDecoder, iter_deltas
from companion.config import Settings, get_settings
from companion.models import Message, Role

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], None]


@dataclass
class ChatRequest:
    """Everything needed to issue one streaming POST."""

    url: str
    headers: dict[str, str]
    body: dict


@dataclass
class _Turn:
    user: Optional[Message] = None
    assistant: Optional[Message] = None
    superseded: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class ChatDispatcher:
    """Turns user input into streamed assistant turns on a MessageLog.

    Parameters
    ----------
    log : MessageLog
        The conversation; the dispatcher is its only writer during a send.
    memory : MemoryCollaborator
        Decides about summarization and builds the context window.
    settings : Settings or None
        Endpoint, credentials, prompt and overlap policy.
    client : httpx.AsyncClient or None
        Shared HTTP client.  A short-lived one is created per send otherwise.
    clock : callable or None
        Returns the current moment for the prompt's live timestamp.
    """

    def __init__(
        self,
        log: MessageLog,
        memory: MemoryCollaborator,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        system_prompt: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.log = log
        self.memory = memory
        self.settings = settings or get_settings()
        self.client = client
        self.system_prompt = system_prompt or self.settings.resolved_system_prompt
        self._clock = clock
        self._lock = asyncio.Lock()
        self._inflight: Optional[_Turn] = None

    @property
    def overlap_policy(self) -> str:
        return self.settings.overlap_policy

    @property
    def busy(self) -> bool:
        return self._inflight is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def send(
        self,
        content: str,
        image_url: Optional[str] = None,
        on_delta: Optional[DeltaCallback] = None,
    ) -> Optional[Message]:
        """Send one user turn and return the assistant message it produced.

        Returns None only when the ``cancel`` overlap policy superseded
        this send before any reply arrived.
        """
        turn = _Turn()
        policy = self.overlap_policy

        if policy == "queue":
            async with self._lock:
                return await self._run(turn, content, image_url, on_delta)

        if policy == "cancel":
            previous = self._inflight
            if previous is not None and previous.task is not None and not previous.task.done():
                previous.superseded = True
                previous.task.cancel()
                logger.info("Cancelled in-flight reply in favour of a new message")
            self._inflight = turn
            turn.task = asyncio.create_task(self._run(turn, content, image_url, on_delta))
            try:
                return await turn.task
            except asyncio.CancelledError:
                if not turn.superseded:
                    raise
                return turn.assistant

        return await self._run(turn, content, image_url, on_delta)

    def build_request(self, context: list[dict], image_url: Optional[str] = None) -> ChatRequest:
        """Shape the outbound request for the configured transport."""
        messages = list(context)
        if image_url and messages and messages[-1]["role"] == Role.USER.value:
            messages[-1] = to_multimodal(messages[-1], image_url)

        settings = self.settings
        if settings.custom_api_active:
            now = self._clock() if self._clock else None
            system = inject_current_time(self.system_prompt, settings.timezone, now=now)
            return ChatRequest(
                url=normalize_endpoint(settings.api_endpoint),
                headers={"Authorization": f"Bearer {settings.api_key}"},
                body={
                    "model": settings.resolved_model,
                    "messages": [{"role": "system", "content": system}, *messages],
                    "stream": True,
                },
            )

        return ChatRequest(
            url=settings.gateway_chat_url,
            headers={"Authorization": f"Bearer {settings.gateway_key}"},
            body={"messages": messages, "systemPrompt": self.system_prompt},
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _run(
        self,
        turn: _Turn,
        content: str,
        image_url: Optional[str],
        on_delta: Optional[DeltaCallback],
    ) -> Message:
        self._inflight = turn
        try:
            turn.user = self.log.append(Role.USER, content, image_url=image_url)
            try:
                full_log = self.log.messages
                if self.memory.should_summarize(full_log):
                    await self.memory.summarize(full_log)
                context = self.memory.build_context(full_log)
                request = self.build_request(context, image_url=image_url)
                return await self._stream(request, turn, on_delta)
            except ChatError as exc:
                logger.warning("Chat request failed (%s): %s", type(exc).__name__, exc)
                return self.log.append(Role.ASSISTANT, exc.user_message)
        finally:
            if self._inflight is turn:
                self._inflight = None

    async def _stream(
        self,
        request: ChatRequest,
        turn: _Turn,
        on_delta: Optional[DeltaCallback],
    ) -> Message:
        client = self.client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.connect_timeout, read=None)
        )
        try:
            async with client.stream(
                "POST", request.url, json=request.body, headers=request.headers
            ) as resp:
                if not resp.is_success:
                    raise classify_status(resp.status_code)

                # Stable target for the UI before the first delta lands.
                assistant = self.log.append(Role.ASSISTANT, "")
                turn.assistant = assistant

                decoder = StreamDecoder()
                async for delta in iter_deltas(resp.aiter_bytes(), decoder):
                    self.log.append_content(assistant.id, delta)
                    if on_delta is not None:
                        on_delta(delta)
                logger.debug("Reply complete: %d chars", len(decoder.content))
                return assistant
        except (httpx.StreamError, httpx.DecodingError) as exc:
            raise UnreadableResponseError(str(exc)) from exc
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            raise ChatTransportError(str(exc)) from exc
        finally:
            if self.client is None:
                await client.aclose()
