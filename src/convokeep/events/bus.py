"""In-process pub/sub event bus for conversation lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["ChatEvent", dict[str, Any]], None | Awaitable[None]]


class ChatEvent(StrEnum):
    """All event types published by convokeep components.

    Typed payload definitions for each event live in
    :mod:`convokeep.events.payloads`.

    Failures that the core reports rather than raises (compaction) and
    failures it raises *and* reports (persistence, dispatch) are both
    published here, so a UI can surface them without wrapping every call.
    """

    # Conversation lifecycle
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_LOADED = "conversation.loaded"
    CONVERSATION_UPDATED = "conversation.updated"

    # Turn lifecycle
    TURN_APPENDED = "turn.appended"
    TURN_EDITED = "turn.edited"
    TURN_DELETED = "turn.deleted"
    TURN_PERSIST_FAILED = "turn.persist_failed"

    # Sequence maintenance
    SEQUENCE_REPACKED = "sequence.repacked"
    SEQUENCE_TRUNCATED = "sequence.truncated"

    # Dispatch
    DISPATCH_FAILED = "dispatch.failed"

    # Compaction lifecycle
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"

    SESSION_CLOSED = "session.closed"


class EventBus:
    """
    In-process pub/sub for :class:`ChatEvent`.

    Sync handlers run inline within ``publish()``, in registration order,
    specific handlers before catch-all ones.  Async handlers are scheduled on
    the running loop; the bus keeps a reference to each task until it ends,
    and :meth:`drain` waits for the outstanding ones.  A handler that raises
    is logged and never affects the publisher or the other handlers.

    Each ``ChatSession`` creates its own bus unless one is passed in; pass a
    shared one to watch several conversations.

    Example::

        bus = EventBus()

        def on_compaction(event, payload):
            print(f"Compacted {payload['compacted_turn_count']} turns")

        stop = bus.subscribe(ChatEvent.COMPACTION_COMPLETED, on_compaction)
        ...
        stop()
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[ChatEvent | None, list[Handler]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("convokeep.events")

    def subscribe(self, event: ChatEvent, handler: Handler) -> Callable[[], None]:
        """
        Register *handler* for one event type.

        Returns:
            A callable that removes the registration again.
        """
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.unsubscribe(event, handler)

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        """Register *handler* for every event type."""
        self._handlers.setdefault(None, []).append(handler)
        return lambda: self._remove(None, handler)

    def unsubscribe(self, event: ChatEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        self._remove(event, handler)

    def publish(self, event: ChatEvent, payload: dict[str, Any]) -> None:
        """Deliver *payload* to the handlers of *event*, then to the catch-all handlers."""
        for handler in [*self._handlers.get(event, ()), *self._handlers.get(None, ())]:
            try:
                result = handler(event, payload)
            except Exception as exc:
                self._log_handler_error(event, handler, exc)
                continue
            if asyncio.iscoroutine(result):
                self._schedule(event, handler, result)

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _remove(self, event: ChatEvent | None, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _schedule(self, event: ChatEvent, handler: Handler, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop; drop the coroutine unawaited
            coro.close()
            return

        async def _run() -> None:
            try:
                await coro
            except Exception as exc:
                self._log_handler_error(event, handler, exc)

        task = loop.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _log_handler_error(self, event: ChatEvent, handler: Handler, exc: Exception) -> None:
        self._logger.error(
            "event_handler_error",
            event_type=str(event),
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
