"""Turn dispatch: record the user's turn, ask the model, record its reply."""

from __future__ import annotations

import structlog

from convokeep.compaction.engine import SummarizationCompactor
from convokeep.context.builder import ContextBuilder
from convokeep.errors import StoreError, UpstreamError
from convokeep.events.bus import ChatEvent, EventBus
from convokeep.llm.client import InferenceBackend
from convokeep.models.message import Turn, TurnResult
from convokeep.state import ConversationState


def make_title(text: str, max_length: int) -> str:
    """Collapse whitespace in *text* and cut it to *max_length* characters."""
    return " ".join(text.split())[:max_length]


def _current(state: ConversationState, turn: Turn) -> Turn:
    """The reloaded copy of *turn*, carrying its re-packed idx; *turn* itself if it is gone."""
    return next((t for t in state.sequence.turns if t.id == turn.id), turn)


class TurnDispatcher:
    """
    Sends one user message and records the model's reply.

    Procedure:
    1. Append the user turn (optimistic, then persisted).
    2. Build the payload: every turn including the new one, with the running
       summary prepended as a synthetic system message.
    3. Call the inference backend with the session's generation settings.
    4. Append the reply (or the configured placeholder when it is empty);
       on the first reply of the conversation, derive its title.
    5. Hand the state to the compactor.  When it compacted, the returned
       turns are the reloaded ones, so their ``idx`` is the re-packed one.

    An inference failure is reported, the state is reloaded from the store,
    and the error is raised.  The user turn stays persisted; no assistant
    turn is added.
    """

    def __init__(
        self,
        inference: InferenceBackend,
        compactor: SummarizationCompactor,
        context_builder: ContextBuilder,
        event_bus: EventBus,
    ) -> None:
        self._inference = inference
        self._compactor = compactor
        self._context_builder = context_builder
        self._event_bus = event_bus
        self._logger = structlog.get_logger("convokeep.dispatcher")

    async def dispatch(self, state: ConversationState, text: str) -> TurnResult | None:
        """
        Dispatch *text* as a new user turn.

        Returns:
            TurnResult, or ``None`` when *text* is blank (nothing is sent).

        Raises:
            NoActiveConversationError: If the state has no conversation loaded.
            UpstreamError: If the inference call fails.
            StoreError: If the user or assistant turn cannot be persisted.
        """
        conversation = state.require_conversation()
        text = text.strip()
        if not text:
            return None

        await state.sequence.reconcile()
        first_reply = not conversation.running_summary and not any(
            t.role == "assistant" for t in state.sequence.turns
        )

        user_turn = await state.sequence.append("user", text)
        context = self._context_builder.build(state.sequence.turns, conversation.running_summary)

        try:
            reply = await self._inference.complete(context.to_dicts(), state.config.generation)
        except UpstreamError as exc:
            self._logger.error(
                "dispatch_failed",
                conversation_id=conversation.id,
                status_code=exc.status_code,
                error=str(exc),
            )
            self._event_bus.publish(
                ChatEvent.DISPATCH_FAILED,
                {
                    "conversation_id": conversation.id,
                    "operation": "send",
                    "error": str(exc),
                    "status_code": exc.status_code,
                },
            )
            await state.resync()
            raise

        assistant_turn = await state.sequence.append(
            "assistant", reply or state.config.empty_reply_placeholder
        )

        title_updated = False
        if first_reply:
            title_updated = await self._set_title(state, text)

        compaction_result = await self._compactor.maybe_compact(state)
        if compaction_result is not None and compaction_result.succeeded:
            user_turn = _current(state, user_turn)
            assistant_turn = _current(state, assistant_turn)

        self._logger.info(
            "turn_dispatched",
            conversation_id=conversation.id,
            user_idx=user_turn.idx,
            assistant_idx=assistant_turn.idx,
            payload_messages=len(context.messages),
            payload_turns=context.turn_count,
        )
        return TurnResult(
            user_turn=user_turn,
            assistant_turn=assistant_turn,
            title_updated=title_updated,
            compaction_result=compaction_result,
        )

    async def _set_title(self, state: ConversationState, text: str) -> bool:
        conversation = state.require_conversation()
        title = make_title(text, state.config.title_max_length)
        try:
            await state.store.update_conversation(conversation.id, title=title)
        except StoreError as exc:
            self._logger.warning("title_update_failed", conversation_id=conversation.id, error=str(exc))
            return False
        conversation.title = title
        self._event_bus.publish(
            ChatEvent.CONVERSATION_UPDATED,
            {"conversation_id": conversation.id, "fields": ["title"]},
        )
        return True
