"""ChatSession — the primary public API entry point."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from convokeep.compaction.engine import SummarizationCompactor
from convokeep.context.builder import ContextBuilder
from convokeep.dispatcher import TurnDispatcher
from convokeep.errors import NoActiveConversationError
from convokeep.events.bus import ChatEvent, EventBus
from convokeep.llm.client import (
    InferenceBackend,
    LiteLLMInference,
    LiteLLMSummarizer,
    SummarizerBackend,
)
from convokeep.models.config import ChatConfig, GenerationConfig, StoreConfig
from convokeep.models.message import (
    CompactionResult,
    Conversation,
    RegenerationResult,
    Turn,
    TurnResult,
)
from convokeep.regeneration import RegenerationController
from convokeep.sequence import MessageSequence
from convokeep.state import ConversationState
from convokeep.store.pool import StorePool
from convokeep.store.sqlite import ConversationStore


def _with_db_path(config: ChatConfig | None, db_path: str | None) -> ChatConfig:
    cfg = config or ChatConfig()
    if db_path is None:
        return cfg
    if config is not None and cfg.store.db_path != StoreConfig().db_path:
        raise ValueError("Specify db_path either via db_path= or config.store.db_path, not both.")
    return cfg.model_copy(update={"store": cfg.store.model_copy(update={"db_path": db_path})})


class ChatSession:
    """
    One conversation with a language model, persisted in SQLite.

    Owns the conversation's state and wires the dispatcher, the regeneration
    controller and the compactor to it.  Every mutating method holds the
    conversation's lock for its whole duration, so concurrent calls on one
    conversation run one after another and the sequence stays densely
    indexed between them.

    Usage::

        async with ChatSession.open(db_path="chat.db") as session:
            result = await session.send("Hello!")
            print(result.text)

        # Reopen later
        session = await ChatSession.load(conversation_id, db_path="chat.db")
        await session.regenerate(2)
        await session.close()

    Inference and summarisation go through litellm unless other backends are
    passed in; set ``CONVOKEEP_MOCK_LLM=1`` to answer locally without an API key.
    """

    def __init__(
        self,
        state: ConversationState,
        dispatcher: TurnDispatcher,
        regenerator: RegenerationController,
        compactor: SummarizationCompactor,
        event_bus: EventBus,
        lock: asyncio.Lock,
        pool: StorePool | None = None,
    ) -> None:
        self._state = state
        self._dispatcher = dispatcher
        self._regenerator = regenerator
        self._compactor = compactor
        self._event_bus = event_bus
        self._lock = lock
        self._pool = pool
        self._conversation_id = state.sequence.conversation_id
        self._closed = False
        self._logger = structlog.get_logger("convokeep.session").bind(
            conversation_id=self._conversation_id
        )

    @classmethod
    async def create(
        cls,
        *,
        config: ChatConfig | None = None,
        title: str | None = None,
        system_prompt: str | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        inference: InferenceBackend | None = None,
        summarizer: SummarizerBackend | None = None,
        event_bus: EventBus | None = None,
    ) -> ChatSession:
        """
        Create a new conversation, seeded with its system turn.

        Args:
            config: Session configuration. Defaults to ``ChatConfig()``.
            title: Initial title. Defaults to ``config.default_title``.
            system_prompt: Content of the system turn. Defaults to
                ``config.system_prompt``.
            db_path: Override database path (useful for testing). Raises
                ``ValueError`` if both ``db_path`` and ``config.store.db_path``
                are supplied.
            pool: Optional shared connection pool.  Sessions on the same
                conversation through one pool also share its lock.  The caller
                is responsible for calling ``pool.close_all()`` at shutdown.
            inference: Reply backend. Defaults to :class:`LiteLLMInference`.
            summarizer: Summary backend. Defaults to :class:`LiteLLMSummarizer`.
            event_bus: Bus to publish on. Defaults to a new one per session.

        Raises:
            ValueError: If both ``db_path`` and ``config.store.db_path`` are supplied.
            StoreError: If the database cannot be initialized or written.
        """
        cfg = _with_db_path(config, db_path)
        store = ConversationStore(cfg.store, pool=pool)
        await store.initialize()

        conversation = await store.create_conversation(title=title or cfg.default_title)
        session = cls._assemble(cfg, store, conversation, pool, inference, summarizer, event_bus)
        await session._state.sequence.seed(
            cfg.system_prompt if system_prompt is None else system_prompt
        )

        session._event_bus.publish(
            ChatEvent.CONVERSATION_CREATED,
            {"conversation_id": conversation.id, "turn_count": len(session._state.sequence)},
        )
        session._logger.info("conversation_created", model=cfg.generation.model)
        return session

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        *,
        config: ChatConfig | None = None,
        title: str | None = None,
        system_prompt: str | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        inference: InferenceBackend | None = None,
        summarizer: SummarizerBackend | None = None,
        event_bus: EventBus | None = None,
    ) -> AsyncGenerator[ChatSession, None]:
        """
        Create a new conversation and use the session as an async context manager.

        All parameters are identical to :meth:`create`.  The session is closed
        when the ``async with`` block exits, even on exception.
        """
        session = await cls.create(
            config=config,
            title=title,
            system_prompt=system_prompt,
            db_path=db_path,
            pool=pool,
            inference=inference,
            summarizer=summarizer,
            event_bus=event_bus,
        )
        try:
            yield session
        finally:
            await session.close()

    @classmethod
    async def load(
        cls,
        conversation_id: str,
        *,
        config: ChatConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        inference: InferenceBackend | None = None,
        summarizer: SummarizerBackend | None = None,
        event_bus: EventBus | None = None,
    ) -> ChatSession:
        """
        Open an existing conversation and read its full sequence.

        Generation settings saved with :meth:`update_settings` replace
        ``config.generation``.  A conversation without any turns is seeded
        with the configured system prompt.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
        """
        cfg = _with_db_path(config, db_path)
        store = ConversationStore(cfg.store, pool=pool)
        await store.initialize()

        try:
            conversation = await store.get_conversation(conversation_id)
            saved = await store.get_settings(conversation_id)
        except Exception:
            await store.close()
            raise
        if saved is not None:
            cfg = cfg.model_copy(update={"generation": saved})

        session = cls._assemble(cfg, store, conversation, pool, inference, summarizer, event_bus)
        await session._state.sequence.load()
        await session._state.sequence.seed(cfg.system_prompt)

        session._event_bus.publish(
            ChatEvent.CONVERSATION_LOADED,
            {"conversation_id": conversation.id, "turn_count": len(session._state.sequence)},
        )
        session._logger.info("conversation_loaded", turn_count=len(session._state.sequence))
        return session

    @classmethod
    def _assemble(
        cls,
        cfg: ChatConfig,
        store: ConversationStore,
        conversation: Conversation,
        pool: StorePool | None,
        inference: InferenceBackend | None,
        summarizer: SummarizerBackend | None,
        event_bus: EventBus | None,
    ) -> ChatSession:
        bus = event_bus or EventBus()
        sequence = MessageSequence(store, conversation.id, bus)
        state = ConversationState(store, conversation, sequence, cfg)

        inference = inference or LiteLLMInference(requests=cfg.requests)
        summarizer = summarizer or LiteLLMSummarizer(cfg.compaction, cfg.requests)
        context_builder = ContextBuilder()
        compactor = SummarizationCompactor(summarizer, bus, cfg.compaction)
        dispatcher = TurnDispatcher(inference, compactor, context_builder, bus)
        regenerator = RegenerationController(inference, context_builder, bus)

        if pool is not None:
            return cls(
                state,
                dispatcher,
                regenerator,
                compactor,
                bus,
                pool.conversation_lock(store.db_path, conversation.id),
                pool=pool,
            )
        return cls(state, dispatcher, regenerator, compactor, bus, asyncio.Lock())

    # ── Conversation operations ────────────────────────────────────────────────

    async def send(self, text: str) -> TurnResult | None:
        """
        Send a user message and record the model's reply.

        Post-dispatch compaction runs before this returns; its outcome is on
        :attr:`TurnResult.compaction_result`.

        Returns:
            TurnResult, or ``None`` if *text* is blank.

        Raises:
            NoActiveConversationError: If the session is closed.
            UpstreamError: If the inference call fails. The user turn stays.
            StoreError: If a turn cannot be persisted.
        """
        async with self._lock:
            await self._prepare()
            return await self._dispatcher.dispatch(self._state, text)

    async def regenerate(self, index: int) -> RegenerationResult:
        """
        Drop the turns after *index* (or from *index*, for an assistant turn)
        and ask for a new reply.

        Raises:
            NoActiveConversationError: If the session is closed.
            TurnNotFoundError: If *index* is out of range.
            InvalidRangeError: If only the system turn would remain.
            UpstreamError: If the inference call fails; the truncation stays.
        """
        async with self._lock:
            await self._prepare()
            return await self._regenerator.regenerate(self._state, index)

    async def edit(self, index: int, text: str) -> Turn:
        """
        Replace the content of the turn at *index*.

        Raises:
            NoActiveConversationError: If the session is closed.
            TurnNotFoundError: If *index* is out of range.
            NotPersistedYetError: If the turn is still not stored after a reload.
        """
        async with self._lock:
            await self._prepare()
            return await self._state.sequence.edit_content(index, text)

    async def delete(self, index: int) -> None:
        """
        Delete the turn at *index* and close the gap it leaves.

        Raises:
            NoActiveConversationError: If the session is closed.
            ForbiddenError: If *index* is 0.
            TurnNotFoundError: If *index* is out of range.
            NotPersistedYetError: If the turn is still not stored after a reload.
        """
        async with self._lock:
            await self._prepare()
            await self._state.sequence.delete(index)

    async def set_system_prompt(self, text: str) -> Turn:
        """Edit the system turn at idx 0. Its role and position are unchanged."""
        return await self.edit(0, text)

    async def compact(self) -> CompactionResult | None:
        """
        Run compaction now, regardless of ``compaction.auto``.

        Returns:
            ``None`` when the conversation is at or under the threshold.
        """
        async with self._lock:
            await self._prepare()
            self._logger.info("manual_compaction_triggered")
            return await self._compactor.run_compaction(self._state)

    async def reload(self) -> None:
        """Re-read the conversation and its full sequence from the store."""
        async with self._lock:
            self._state.require_conversation()
            await self._state.reload()

    async def _prepare(self) -> None:
        """Check the session is open; a session on a pooled lock re-reads what others wrote."""
        self._state.require_conversation()
        if self._pool is not None:
            await self._state.reload()

    async def update_settings(self, **changes: Any) -> GenerationConfig:
        """
        Change the generation settings used by later calls and save them with
        the conversation, so :meth:`load` restores them.

        Accepts any :class:`GenerationConfig` field (``model``,
        ``temperature``, ``max_tokens``, ``safe_prompt``).

        Raises:
            ValueError: If a field is unknown.
            pydantic.ValidationError: If a value is out of bounds.
            NoActiveConversationError: If the session is closed.
        """
        unknown = set(changes) - set(GenerationConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown generation setting(s): {', '.join(sorted(unknown))}")
        generation = GenerationConfig.model_validate(
            {**self._state.config.generation.model_dump(), **changes}
        )
        async with self._lock:
            conversation = self._state.require_conversation()
            await self._state.store.save_settings(conversation.id, generation)
            self._state.config = self._state.config.model_copy(update={"generation": generation})
        self._logger.info("settings_updated", fields=sorted(changes))
        return generation

    async def close(self) -> None:
        """
        Release the session.

        Waits for any operation holding the conversation lock, then
        publishes :attr:`~convokeep.events.bus.ChatEvent.SESSION_CLOSED`, waits
        for async event handlers and releases the store.  Later operations raise
        :class:`NoActiveConversationError`.  Calling it twice is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            self._state.conversation = None
        self._event_bus.publish(
            ChatEvent.SESSION_CLOSED, {"conversation_id": self._conversation_id}
        )
        await self._event_bus.drain()
        await self._state.store.close()
        if self._pool is not None:
            self._pool.release_conversation_lock(self._state.store.db_path, self._conversation_id)
        self._logger.info("session_closed")

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Accessors ──────────────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        """The conversation ID."""
        return self._conversation_id

    @property
    def conversation(self) -> Conversation:
        """The loaded conversation row."""
        conversation = self._state.conversation
        if conversation is None:
            raise NoActiveConversationError()
        return conversation

    @property
    def title(self) -> str:
        return self.conversation.title

    @property
    def running_summary(self) -> str:
        return self.conversation.running_summary

    @property
    def turns(self) -> list[Turn]:
        """The current turns ordered by ``idx``."""
        return self._state.sequence.turns

    @property
    def settings(self) -> GenerationConfig:
        return self._state.config.generation

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def event_bus(self) -> EventBus:
        """The event bus for this session. Subscribe to monitor events."""
        return self._event_bus

    def subscribe(self, event: ChatEvent, handler: Any) -> None:
        """
        Register an event handler on this session's event bus.

        Convenience wrapper for ``session.event_bus.subscribe()``.
        """
        self._event_bus.subscribe(event, handler)
