"""Long-term conversation memory.

The dispatcher only consumes the ``MemoryCollaborator`` protocol: it asks
whether older turns should be condensed, lets the collaborator do so, and
then takes the context window it builds.  ``ConversationMemory`` is the
default collaborator: once the log grows past a threshold, turns older
than the recent window are condensed into a short first-person memory
note by a pluggable summarizer, and the note is sent ahead of the recent
turns on every request.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from companion.chat.storage import KeyValueStorage
from companion.chat.stream import iter_deltas
from companion.models import MemorySummary, Message, Role

logger = logging.getLogger(__name__)

MEMORY_SUMMARY_KEY = "companion-memory-summary"
_RECENT_LIMIT = 20  # turns always sent verbatim
_SUMMARIZE_THRESHOLD = 30  # log length that triggers condensing
_MERGE_LIMIT = 400  # merged notes longer than this are condensed again

SUMMARY_PREAMBLE = "[Memory summary]\n{text}\n\n[Recent conversation follows]"
SUMMARY_ACK = "Okay, I remember what we talked about before."

_MEMORY_SYSTEM_PROMPT = (
    "You are a character's memory. Record what matters about the user in "
    "the fewest words, like a private diary. Do not list the conversation, "
    "only remember the important things."
)

_SUMMARIZE_PROMPT = """Distill the conversation below into character memory notes (under 150 words).

Requirements:
1. What you know about the user (personality, likes, habits, how they like to be addressed)
2. Important matters (plans, promises, mood)
3. How the relationship is developing (closeness, shared topics)
4. Do not retell the conversation, only keep key insights
5. Write in the first person, like a diary

Conversation:
{transcript}"""

_MERGE_PROMPT = """Merge the memory notes below into one (under 100 words), removing duplicates and keeping only the most important insights.

Old notes: {old}

New notes: {new}"""


class MemoryCollaborator(Protocol):
    """What the dispatcher needs from a memory subsystem."""

    def should_summarize(self, messages: Sequence[Message]) -> bool:
        ...

    async def summarize(self, messages: Sequence[Message]) -> None:
        ...

    def build_context(self, messages: Sequence[Message]) -> list[dict]:
        ...

    def current_summary(self) -> Optional[MemorySummary]:
        ...

    def clear(self) -> None:
        ...

    def update(self, text: str) -> None:
        ...


class Summarizer(Protocol):
    """Turns conversation turns into a memory note."""

    async def summarize(self, messages: Sequence[Message]) -> str:
        ...

    async def merge(self, old: str, new: str) -> str:
        ...


def format_transcript(messages: Sequence[Message]) -> str:
    return "\n".join(
        f"{'User' if m.role == Role.USER else 'AI'}: {m.content}" for m in messages
    )


# ---------------------------------------------------------------------------
# Summarizer backed by the chat gateway
# ---------------------------------------------------------------------------

class GatewaySummarizer:
    """Summarizer that asks the managed chat gateway for memory notes.

    Parameters
    ----------
    url : str
        Full gateway chat URL (``.../functions/v1/chat``).
    key : str
        Gateway bearer token.
    client : httpx.AsyncClient or None
        Shared client; one is created per call when omitted.
    """

    def __init__(
        self,
        url: str,
        key: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.key = key
        self.client = client

    async def summarize(self, messages: Sequence[Message]) -> str:
        prompt = _SUMMARIZE_PROMPT.format(transcript=format_transcript(messages))
        return await self._complete(prompt)

    async def merge(self, old: str, new: str) -> str:
        return await self._complete(_MERGE_PROMPT.format(old=old, new=new))

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=8),
        reraise=True,
    )
    async def _complete(self, prompt: str) -> str:
        body = {
            "messages": [{"role": "user", "content": prompt}],
            "systemPrompt": _MEMORY_SYSTEM_PROMPT,
        }
        headers = {"Authorization": f"Bearer {self.key}"}

        client = self.client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, read=None))
        try:
            async with client.stream("POST", self.url, json=body, headers=headers) as resp:
                resp.raise_for_status()
                parts = [d async for d in iter_deltas(resp.aiter_bytes())]
        finally:
            if self.client is None:
                await client.aclose()
        return "".join(parts).strip()


# ---------------------------------------------------------------------------
# Default collaborator
# ---------------------------------------------------------------------------

class ConversationMemory:
    """Threshold-triggered memory with a persisted summary note.

    Parameters
    ----------
    storage : KeyValueStorage
        Where the summary note is persisted.
    summarizer : Summarizer or None
        Condenses old turns.  Without one, a plain count sentence is kept.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        summarizer: Optional[Summarizer] = None,
        recent_limit: int = _RECENT_LIMIT,
        threshold: int = _SUMMARIZE_THRESHOLD,
        key: str = MEMORY_SUMMARY_KEY,
    ) -> None:
        self.storage = storage
        self.summarizer = summarizer
        self.recent_limit = recent_limit
        self.threshold = threshold
        self.key = key
        self._summary: Optional[MemorySummary] = self._load()

    # -- persistence --------------------------------------------------------

    def _load(self) -> Optional[MemorySummary]:
        try:
            stored = self.storage.get(self.key)
        except OSError:
            logger.exception("Failed to load memory summary")
            return None
        if not stored:
            return None
        try:
            return MemorySummary.model_validate_json(stored)
        except ValidationError:
            logger.warning("Stored memory summary is invalid, ignoring it")
            return None

    def _save(self) -> None:
        try:
            if self._summary is None:
                self.storage.remove(self.key)
            else:
                self.storage.set(self.key, self._summary.model_dump_json())
        except OSError:
            logger.exception("Failed to save memory summary")

    # -- collaborator protocol ------------------------------------------------

    def _uncovered(self, messages: Sequence[Message]) -> list[Message]:
        """Turns older than the recent window not yet folded into the summary.

        Coverage is tracked by the id of the newest summarized message, so
        it survives reloads of a truncated log and deletions.  When that
        message is no longer in the log at all, every older turn counts as
        uncovered.
        """
        older = list(messages[:-self.recent_limit]) if self.recent_limit else list(messages)
        last_id = self._summary.last_covered_id if self._summary else None
        if last_id is None:
            return older
        for i, m in enumerate(older):
            if m.id == last_id:
                return older[i + 1:]
        if any(m.id == last_id for m in messages):
            # Still inside the recent window.
            return []
        return older

    def should_summarize(self, messages: Sequence[Message]) -> bool:
        if len(messages) <= self.threshold:
            return False
        return bool(self._uncovered(messages))

    async def summarize(self, messages: Sequence[Message]) -> None:
        """Fold uncovered older turns into the summary note."""
        pending = self._uncovered(messages)
        if not pending:
            return

        new_note = await self._summarize(pending)
        old_note = self._summary.text if self._summary else ""
        if old_note:
            merged = f"{old_note}\n{new_note}"
            if len(merged) > _MERGE_LIMIT:
                merged = await self._merge(old_note, new_note)
        else:
            merged = new_note

        covered = (self._summary.covered_count if self._summary else 0) + len(pending)
        self._summary = MemorySummary(
            text=merged,
            covered_count=covered,
            last_covered_id=pending[-1].id,
            last_updated=datetime.now(timezone.utc),
        )
        self._save()
        logger.info("Memory summary now covers %d turns", covered)

    async def _summarize(self, pending: Sequence[Message]) -> str:
        fallback = f"The conversation contained {len(pending)} messages between the user and me."
        if self.summarizer is None:
            return fallback
        try:
            return await self.summarizer.summarize(pending) or fallback
        except Exception:
            logger.exception("Failed to summarize messages")
            return fallback

    async def _merge(self, old: str, new: str) -> str:
        if self.summarizer is None:
            return f"{old}\n{new}"
        try:
            return await self.summarizer.merge(old, new) or f"{old}\n{new}"
        except Exception:
            logger.exception("Failed to merge memory notes")
            return f"{old}\n{new}"

    def build_context(self, messages: Sequence[Message]) -> list[dict]:
        """Recent turns, preceded by the memory note when one exists."""
        context: list[dict] = []
        if self._summary and self._summary.text:
            context.append({
                "role": Role.USER.value,
                "content": SUMMARY_PREAMBLE.format(text=self._summary.text),
            })
            context.append({"role": Role.ASSISTANT.value, "content": SUMMARY_ACK})

        recent = messages[-self.recent_limit:] if self.recent_limit else []
        context.extend(m.to_wire() for m in recent)
        return context

    def current_summary(self) -> Optional[MemorySummary]:
        return self._summary

    def clear(self) -> None:
        self._summary = None
        self._save()

    def update(self, text: str) -> None:
        """Replace the note by hand."""
        previous = self._summary
        self._summary = MemorySummary(
            text=text,
            covered_count=previous.covered_count if previous else 0,
            last_covered_id=previous.last_covered_id if previous else None,
        )
        self._save()
