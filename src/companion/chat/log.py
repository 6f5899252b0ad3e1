"""Conversation log with bounded persistence and a single undo slot.

The log is the only owner of the message sequence.  Every mutation goes
through one of the methods below and is followed by a save of the most
recent ``max_stored`` messages.  Deleting or clearing keeps a snapshot
of the previous sequence for a short window so the user can undo it.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from companion.chat.storage import KeyValueStorage
from companion.models import Message, Role

logger = logging.getLogger(__name__)

CHAT_HISTORY_KEY = "companion-chat-history"
_MAX_STORED = 100  # max messages written to storage
_UNDO_WINDOW = 5.0  # seconds


@dataclass
class UndoSnapshot:
    """Copy of the full sequence taken before a destructive operation."""

    messages: list[Message]
    expires_at: float


def serialize_messages(messages: Iterable[Message]) -> str:
    """Serialize messages to a JSON array with ISO-8601 timestamps."""
    return json.dumps(
        [m.model_dump(mode="json", by_alias=True, exclude_none=True) for m in messages],
        ensure_ascii=False,
    )


def deserialize_messages(data: str) -> list[Message]:
    """Rebuild messages from storage text, dropping entries that fail to parse."""
    try:
        raw = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Stored chat history is not valid JSON, starting empty")
        return []
    if not isinstance(raw, list):
        return []

    messages: list[Message] = []
    for entry in raw:
        try:
            messages.append(Message.model_validate(entry))
        except ValidationError:
            logger.debug("Dropping unparseable stored message: %r", entry)
    return messages


class MessageLog:
    """Ordered, mutable record of conversation turns.

    Parameters
    ----------
    storage : KeyValueStorage
        Where the bounded suffix of the log is persisted.
    max_stored : int
        Number of most recent messages written to storage.
    undo_window : float
        Seconds a delete/clear snapshot stays restorable.
    clock : callable
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        key: str = CHAT_HISTORY_KEY,
        max_stored: int = _MAX_STORED,
        undo_window: float = _UNDO_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage
        self.key = key
        self.max_stored = max_stored
        self.undo_window = undo_window
        self._clock = clock
        self._messages: list[Message] = []
        self._undo: Optional[UndoSnapshot] = None
        self._load()

    # -- persistence --------------------------------------------------------

    def _load(self) -> None:
        try:
            stored = self.storage.get(self.key)
        except OSError:
            logger.exception("Failed to load chat history")
            return
        if stored:
            self._messages = deserialize_messages(stored)

    def save(self) -> None:
        """Persist the most recent ``max_stored`` messages."""
        try:
            if self._messages:
                self.storage.set(self.key, serialize_messages(self._messages[-self.max_stored:]))
            else:
                self.storage.remove(self.key)
        except OSError:
            logger.exception("Failed to save chat history")

    # -- read access --------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        """A shallow copy of the current sequence."""
        return list(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        for m in self._messages:
            if m.id == message_id:
                return m
        return None

    def starred(self) -> list[Message]:
        return [m for m in self._messages if m.starred]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(list(self._messages))

    # -- mutation -----------------------------------------------------------

    def append(
        self,
        role: Role,
        content: str = "",
        image_url: Optional[str] = None,
    ) -> Message:
        """Add a new message at the end and return it."""
        message = Message(role=role, content=content, image_url=image_url)
        self._messages.append(message)
        self.save()
        return message

    def edit(self, message_id: str, content: str) -> bool:
        """Replace the content of one message.  No-op if the id is unknown."""
        message = self.get(message_id)
        if message is None:
            return False
        message.content = content
        self.save()
        return True

    def append_content(self, message_id: str, delta: str) -> bool:
        """Append a streamed fragment to a message in place."""
        message = self.get(message_id)
        if message is None:
            return False
        message.content += delta
        self.save()
        return True

    def toggle_star(self, message_id: str) -> bool:
        message = self.get(message_id)
        if message is None:
            return False
        message.starred = not message.starred
        self.save()
        return True

    def delete(self, message_ids: Iterable[str]) -> int:
        """Remove every message whose id is in ``message_ids``.

        The previous sequence is kept for undo only when something was
        actually removed.  Returns the number of removed messages.
        """
        ids = set(message_ids)
        kept = [m for m in self._messages if m.id not in ids]
        removed = len(self._messages) - len(kept)
        if removed == 0:
            return 0
        self._snapshot()
        self._messages = kept
        self.save()
        return removed

    def clear(self) -> None:
        """Empty the log and its persisted copy.  Always undoable."""
        self._snapshot()
        self._messages = []
        self.save()

    # -- undo ---------------------------------------------------------------

    def _snapshot(self) -> None:
        # Only one slot; a newer snapshot replaces the older one.
        self._undo = UndoSnapshot(
            messages=[m.model_copy() for m in self._messages],
            expires_at=self._clock() + self.undo_window,
        )

    @property
    def can_undo(self) -> bool:
        if self._undo is None:
            return False
        if self._clock() >= self._undo.expires_at:
            self._undo = None
            return False
        return True

    def undo(self) -> bool:
        """Restore the last delete/clear snapshot if it has not expired."""
        if not self.can_undo:
            return False
        assert self._undo is not None
        self._messages = self._undo.messages
        self._undo = None
        self.save()
        logger.debug("Restored %d messages from undo snapshot", len(self._messages))
        return True
