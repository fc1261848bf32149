"""Exception hierarchy shared by every convokeep component."""

from __future__ import annotations


class ConvokeepError(Exception):
    """Base class for convokeep errors."""


class NoActiveConversationError(ConvokeepError):
    """Raised when an operation needs a loaded conversation and none is loaded."""

    def __init__(self) -> None:
        super().__init__("No conversation is loaded in this session.")


class TurnNotFoundError(ConvokeepError):
    """Raised when no turn exists at the requested index."""

    def __init__(self, index: int) -> None:
        super().__init__(f"No turn at index {index}")
        self.index = index


class ForbiddenError(ConvokeepError):
    """Raised when an operation is never allowed, e.g. deleting the system turn."""


class InvalidRangeError(ConvokeepError):
    """Raised when regeneration would start before the first user turn."""

    def __init__(self, index: int, cut_at: int) -> None:
        super().__init__(
            f"Cannot regenerate from index {index}: nothing to respond to before idx {cut_at + 1}"
        )
        self.index = index
        self.cut_at = cut_at


class NotPersistedYetError(ConvokeepError):
    """Raised when mutating a turn that still has no store-assigned id after a reload."""

    def __init__(self, index: int) -> None:
        super().__init__(f"Turn at index {index} has not been persisted yet; reload and retry")
        self.index = index


class UpstreamError(ConvokeepError):
    """
    Raised when the inference or summarizer call fails.

    Covers provider errors, timeouts, and malformed responses. ``detail`` holds
    the (truncated) error body as returned by the provider.
    """

    def __init__(self, operation: str, detail: str, status_code: int | None = None) -> None:
        prefix = f"{operation} failed"
        if status_code is not None:
            prefix += f" ({status_code})"
        super().__init__(f"{prefix}: {detail}")
        self.operation = operation
        self.detail = detail
        self.status_code = status_code


# ── Store errors ───────────────────────────────────────────────────────────────


class StoreError(ConvokeepError):
    """Raised when a store operation fails."""


class ConversationNotFoundError(StoreError):
    """Raised when a conversation_id does not exist in the store."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id!r}")
        self.conversation_id = conversation_id


class MessageNotFoundError(StoreError):
    """Raised when a message id does not exist in the store."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id!r}")
        self.message_id = message_id
