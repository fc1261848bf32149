"""Summarization compactor.

After every successful dispatch the compactor checks the sequence length.
Once it exceeds ``summarize_after`` turns, the middle window (everything
between the system turn and the ``keep_recent`` newest turns) is sent to
the summarizer as one transcript.  The returned summary is appended to the
conversation's running summary, the window's turns are deleted, the
remaining indices are re-packed, and the state is reloaded.

A failed attempt is logged, published as ``compaction.failed`` and returned
as an unsuccessful :class:`~convokeep.models.message.CompactionResult`; it is
never raised into the conversation flow.
"""

from __future__ import annotations

import time

import structlog

from convokeep.compaction.transcript import build_transcript, merge_summary, select_window
from convokeep.errors import UpstreamError
from convokeep.events.bus import ChatEvent, EventBus
from convokeep.llm.client import SummarizerBackend
from convokeep.models.config import CompactionConfig
from convokeep.models.message import CompactionResult
from convokeep.state import ConversationState


class SummarizationCompactor:
    """
    Compacts old turns of a conversation into its running summary.

    Guarantees:
    - ``run_compaction()`` never raises.
    - The system turn and the ``keep_recent`` newest turns are never compacted.
    - On summarizer failure neither the sequence nor the running summary changes.
    - The running summary only grows; earlier summaries are never replaced.
    - Once the sequence has at most ``summarize_after`` turns, further calls
      are no-ops that make no summarizer call.

    Example::

        compactor = SummarizationCompactor(summarizer, event_bus, CompactionConfig())
        result = await compactor.maybe_compact(state)  # None when nothing to do
    """

    def __init__(
        self,
        summarizer: SummarizerBackend,
        event_bus: EventBus,
        config: CompactionConfig,
    ) -> None:
        self._summarizer = summarizer
        self._event_bus = event_bus
        self._config = config
        self._logger = structlog.get_logger("convokeep.compaction")

    @property
    def config(self) -> CompactionConfig:
        return self._config

    def should_compact(self, turn_count: int) -> bool:
        """Return True if a sequence of *turn_count* turns is over the threshold."""
        return turn_count > self._config.summarize_after

    async def maybe_compact(self, state: ConversationState) -> CompactionResult | None:
        """Post-dispatch hook: run compaction unless automatic compaction is disabled."""
        if not self._config.auto:
            return None
        return await self.run_compaction(state)

    async def run_compaction(self, state: ConversationState) -> CompactionResult | None:
        """
        Compact the middle window of the conversation if the policy allows.

        Args:
            state: The session state to compact. Reloaded on completion.

        Returns:
            ``None`` when there was nothing to do, otherwise a CompactionResult
            (``succeeded=False`` when the attempt failed).
        """
        start_ms = time.time() * 1000
        conversation = state.conversation
        if conversation is None:
            return None

        try:
            return await self._run_compaction_inner(state, start_ms)
        except Exception as exc:
            self._logger.error(
                "compaction_unexpected_error",
                conversation_id=conversation.id,
                error=str(exc),
            )
            await state.resync()
            return self._failed(conversation.id, len(state.sequence), start_ms, exc)

    # ── Internal implementation ─────────────────────────────────────────────────

    async def _run_compaction_inner(
        self, state: ConversationState, start_ms: float
    ) -> CompactionResult | None:
        conversation = state.require_conversation()
        turns = await state.sequence.load()
        turns_before = len(turns)

        if not self.should_compact(turns_before):
            return None

        window = select_window(turns, self._config.keep_recent)
        if not window:
            return None

        self._logger.info(
            "compaction_triggered",
            conversation_id=conversation.id,
            turn_count=turns_before,
            window_size=len(window),
        )
        self._event_bus.publish(
            ChatEvent.COMPACTION_TRIGGERED,
            {
                "conversation_id": conversation.id,
                "turn_count": turns_before,
                "window_size": len(window),
            },
        )

        transcript = build_transcript(window)
        try:
            summary = await self._summarizer.summarize(
                transcript,
                model=self._config.summarizer_model,
                prompt=self._config.summarizer_prompt,
            )
        except UpstreamError as exc:
            self._logger.warning(
                "compaction_failed", conversation_id=conversation.id, error=str(exc)
            )
            return self._failed(conversation.id, turns_before, start_ms, exc)
        merged = merge_summary(conversation.running_summary, summary)

        await state.store.update_conversation(conversation.id, running_summary=merged)
        conversation.running_summary = merged

        await state.sequence.remove(window)
        await state.reload()

        elapsed_ms = time.time() * 1000 - start_ms
        result = CompactionResult(
            conversation_id=conversation.id,
            compacted_turn_count=len(window),
            turns_before=turns_before,
            turns_after=len(state.sequence),
            summary_length=len(merged),
            elapsed_ms=elapsed_ms,
        )
        self._logger.info(
            "compaction_completed",
            conversation_id=conversation.id,
            turns_compacted=len(window),
            turns_before=turns_before,
            turns_after=result.turns_after,
            elapsed_ms=elapsed_ms,
        )
        self._event_bus.publish(ChatEvent.COMPACTION_COMPLETED, result.model_dump())
        return result

    def _failed(
        self, conversation_id: str, turn_count: int, start_ms: float, exc: Exception
    ) -> CompactionResult:
        self._event_bus.publish(
            ChatEvent.COMPACTION_FAILED,
            {"conversation_id": conversation_id, "error": str(exc)},
        )
        return CompactionResult(
            conversation_id=conversation_id,
            turns_before=turn_count,
            turns_after=turn_count,
            elapsed_ms=time.time() * 1000 - start_ms,
            succeeded=False,
            error=str(exc),
        )
