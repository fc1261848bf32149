"""Conversation, turn and result models."""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant"]

TurnStatus = Literal["pending", "confirmed", "failed"]


def now_ms() -> int:
    """Current time as a Unix millisecond timestamp."""
    return int(time.time() * 1000)


class Conversation(BaseModel):
    """A conversation row. ``running_summary`` is only ever grown by the compactor."""

    id: str
    """ULID-based id, e.g. ``conv_01JXYZ6K3MNPQR4STUVWXYZ01``."""
    title: str = "New chat"
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    running_summary: str = ""


class Turn(BaseModel):
    """
    One message of a conversation.

    ``idx`` is the dense, zero-based position within the conversation and
    ``role`` never changes once the turn exists; only ``content`` is editable.

    A turn appended optimistically starts out ``pending`` with no ``id``; it
    becomes ``confirmed`` once the store has assigned an id, or ``failed`` if
    the insert raised. Turns read back from the store are always confirmed.
    """

    id: str | None = None
    conversation_id: str
    role: Role
    content: str
    idx: int = Field(ge=0)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    status: TurnStatus = "pending"

    @property
    def is_persisted(self) -> bool:
        return self.id is not None and self.status == "confirmed"

    def as_payload(self) -> dict[str, str]:
        """Role/content pair in the shape the inference endpoint expects."""
        return {"role": self.role, "content": self.content}


# ── Result Types ───────────────────────────────────────────────────────────────


class CompactionResult(BaseModel):
    """
    The result of a compaction attempt.

    A failed attempt leaves the sequence and the running summary untouched and
    is reported here with ``succeeded=False`` rather than raised.
    """

    conversation_id: str
    compacted_turn_count: int = 0
    turns_before: int = 0
    turns_after: int = 0
    summary_length: int = 0
    """Length in characters of the running summary after this pass."""
    elapsed_ms: float = 0.0
    succeeded: bool = True
    error: str | None = None


class TurnResult(BaseModel):
    """The result of a single ``ChatSession.send()`` call."""

    user_turn: Turn
    assistant_turn: Turn
    title_updated: bool = False
    compaction_result: CompactionResult | None = None

    @property
    def text(self) -> str:
        return self.assistant_turn.content


class RegenerationResult(BaseModel):
    """The result of a ``ChatSession.regenerate()`` call."""

    cut_at: int
    """Index of the last turn kept before the new reply."""
    removed_count: int
    assistant_turn: Turn
