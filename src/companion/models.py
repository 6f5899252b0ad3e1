"""Core domain models used across the application."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ======================================================================
# Enumerations
# ======================================================================
class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# ======================================================================
# Conversation models
# ======================================================================
class Message(BaseModel):
    """A single conversation turn.

    ``id`` is assigned at creation and never reused.  ``content`` is
    mutable: it is edited by the user or appended to while a reply streams.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    id: str = Field(default_factory=_new_id)
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=_now)
    image_url: Optional[str] = Field(
        default=None, alias="imageUrl",
        description="Inline image reference (usually a data: URL)",
    )
    starred: bool = False

    def to_wire(self) -> dict:
        """Plain ``{role, content}`` shape sent to chat-completion APIs."""
        return {"role": self.role.value, "content": self.content}


class MemorySummary(BaseModel):
    """Long-term memory note covering turns no longer sent verbatim."""

    text: str
    covered_count: int = 0
    last_covered_id: Optional[str] = Field(
        default=None,
        description="Id of the newest message folded into the note",
    )
    last_updated: datetime = Field(default_factory=_now)
