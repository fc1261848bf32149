"""Explicit per-session context shared by the dispatcher, regenerator and compactor."""

from __future__ import annotations

import structlog

from convokeep.errors import ConversationNotFoundError, NoActiveConversationError, StoreError
from convokeep.models.config import ChatConfig
from convokeep.models.message import Conversation
from convokeep.sequence import MessageSequence
from convokeep.store.sqlite import ConversationStore


class ConversationState:
    """
    Everything an operation needs about the conversation it acts on.

    Holds the loaded :class:`Conversation` (``None`` once the session is
    closed or the conversation disappeared from the store), its
    :class:`MessageSequence`, the store both are read from, and the
    session's current settings.  Passed explicitly to every component; no
    component keeps conversation state of its own.
    """

    def __init__(
        self,
        store: ConversationStore,
        conversation: Conversation | None,
        sequence: MessageSequence,
        config: ChatConfig,
    ) -> None:
        self.store = store
        self.conversation = conversation
        self.sequence = sequence
        self.config = config
        self._logger = structlog.get_logger("convokeep.state").bind(
            conversation_id=sequence.conversation_id
        )

    def require_conversation(self) -> Conversation:
        if self.conversation is None:
            raise NoActiveConversationError()
        return self.conversation

    async def reload(self) -> None:
        """
        Re-read the conversation row and the full sequence from the store.

        Raises:
            ConversationNotFoundError: If the conversation no longer exists;
                the state is left without an active conversation.
            StoreError: If the store cannot be read.
        """
        try:
            self.conversation = await self.store.get_conversation(self.sequence.conversation_id)
        except ConversationNotFoundError:
            self.conversation = None
            raise
        await self.sequence.load()

    async def resync(self) -> None:
        """Reload after a failed operation; a reload failure is logged, not raised."""
        try:
            await self.reload()
        except StoreError as exc:
            self._logger.error("resync_failed", error=str(exc))
