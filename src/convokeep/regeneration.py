"""Regeneration: drop everything after a chosen turn and ask for a fresh reply."""

from __future__ import annotations

import structlog

from convokeep.context.builder import ContextBuilder
from convokeep.errors import InvalidRangeError, TurnNotFoundError, UpstreamError
from convokeep.events.bus import ChatEvent, EventBus
from convokeep.llm.client import InferenceBackend
from convokeep.models.message import RegenerationResult
from convokeep.state import ConversationState


class RegenerationController:
    """
    Regenerates the conversation from turn *index* onwards.

    If the turn at *index* is an assistant turn the reply itself is
    regenerated and its eliciting turn (``index - 1``) is the last one kept;
    otherwise the turn at *index* is the last one kept.  The kept prefix must
    contain more than the system turn.

    The tail is deleted before the inference call.  If the call fails the
    truncated sequence stays as it is; the state is reloaded and the error
    raised.
    """

    def __init__(
        self,
        inference: InferenceBackend,
        context_builder: ContextBuilder,
        event_bus: EventBus,
    ) -> None:
        self._inference = inference
        self._context_builder = context_builder
        self._event_bus = event_bus
        self._logger = structlog.get_logger("convokeep.regeneration")

    @staticmethod
    def cut_point(role: str, index: int) -> int:
        """Index of the last turn kept when regenerating from a turn with *role* at *index*."""
        return index - 1 if role == "assistant" else index

    async def regenerate(self, state: ConversationState, index: int) -> RegenerationResult:
        """
        Raises:
            NoActiveConversationError: If the state has no conversation loaded.
            TurnNotFoundError: If no turn exists at *index*.
            InvalidRangeError: If nothing but the system turn would be kept.
            UpstreamError: If the inference call fails.
        """
        conversation = state.require_conversation()
        await state.sequence.reconcile()

        turns = state.sequence.turns
        if not 0 <= index < len(turns):
            raise TurnNotFoundError(index)
        cut_at = self.cut_point(turns[index].role, index)
        if cut_at < 1:
            raise InvalidRangeError(index, cut_at)

        removed = await state.sequence.truncate_after(cut_at)
        context = self._context_builder.build(
            state.sequence.turns, conversation.running_summary, upto=cut_at
        )

        try:
            reply = await self._inference.complete(context.to_dicts(), state.config.generation)
        except UpstreamError as exc:
            self._logger.error(
                "regeneration_failed",
                conversation_id=conversation.id,
                cut_at=cut_at,
                error=str(exc),
            )
            self._event_bus.publish(
                ChatEvent.DISPATCH_FAILED,
                {
                    "conversation_id": conversation.id,
                    "operation": "regenerate",
                    "error": str(exc),
                    "status_code": exc.status_code,
                },
            )
            await state.resync()
            raise

        assistant_turn = await state.sequence.append(
            "assistant", reply or state.config.empty_reply_placeholder
        )
        self._logger.info(
            "turn_regenerated",
            conversation_id=conversation.id,
            cut_at=cut_at,
            removed=removed,
            idx=assistant_turn.idx,
        )
        return RegenerationResult(cut_at=cut_at, removed_count=removed, assistant_turn=assistant_turn)
