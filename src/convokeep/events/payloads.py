"""Typed payload definitions for each ChatEvent.

Usage example::

    from convokeep.events.bus import ChatEvent, EventBus
    from convokeep.events.payloads import DispatchFailedPayload

    def on_failure(event: ChatEvent, payload: DispatchFailedPayload) -> None:
        print(f"{payload['operation']} failed: {payload['error']}")

    bus.subscribe(ChatEvent.DISPATCH_FAILED, on_failure)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Conversation lifecycle ────────────────────────────────────────────────────


class ConversationCreatedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.CONVERSATION_CREATED` and ``CONVERSATION_LOADED``."""

    conversation_id: str
    turn_count: int


class ConversationUpdatedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.CONVERSATION_UPDATED`."""

    conversation_id: str
    fields: list[str]
    """Names of the fields that changed, e.g. ``["title"]``."""


# ── Turn lifecycle ────────────────────────────────────────────────────────────


class TurnPayload(TypedDict):
    """Payload for ``TURN_APPENDED``, ``TURN_EDITED`` and ``TURN_DELETED``."""

    conversation_id: str
    idx: int
    role: str
    message_id: str | None


class TurnPersistFailedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.TURN_PERSIST_FAILED`."""

    conversation_id: str
    idx: int
    operation: str
    """``"append"``, ``"edit"``, ``"delete"`` or ``"repack"``."""
    error: str


# ── Sequence maintenance ──────────────────────────────────────────────────────


class SequenceRepackedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.SEQUENCE_REPACKED`."""

    conversation_id: str
    writes: int
    """Number of index updates issued. Zero when indices were already dense."""
    turn_count: int


class SequenceTruncatedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.SEQUENCE_TRUNCATED`."""

    conversation_id: str
    cut_at: int
    removed: int


# ── Dispatch ──────────────────────────────────────────────────────────────────


class DispatchFailedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.DISPATCH_FAILED`."""

    conversation_id: str
    operation: str
    """``"send"`` or ``"regenerate"``."""
    error: str
    status_code: NotRequired[int | None]


# ── Compaction lifecycle ──────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for :attr:`ChatEvent.COMPACTION_TRIGGERED`."""

    conversation_id: str
    turn_count: int
    window_size: int


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.COMPACTION_COMPLETED`.

    This is the ``model_dump()`` of a :class:`convokeep.models.message.CompactionResult`.
    """

    conversation_id: str
    compacted_turn_count: int
    turns_before: int
    turns_after: int
    summary_length: int
    elapsed_ms: float
    succeeded: bool
    error: str | None


class CompactionFailedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.COMPACTION_FAILED`."""

    conversation_id: str
    error: str


class SessionClosedPayload(TypedDict):
    """Payload for :attr:`ChatEvent.SESSION_CLOSED`."""

    conversation_id: str
