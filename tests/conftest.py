"""Shared fixtures for convokeep tests."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from convokeep.compaction.engine import SummarizationCompactor
from convokeep.context.builder import ContextBuilder
from convokeep.dispatcher import TurnDispatcher
from convokeep.errors import UpstreamError
from convokeep.events.bus import ChatEvent, EventBus
from convokeep.models.config import ChatConfig, GenerationConfig, StoreConfig
from convokeep.regeneration import RegenerationController
from convokeep.sequence import MessageSequence
from convokeep.state import ConversationState
from convokeep.store.pool import StorePool
from convokeep.store.sqlite import ConversationStore


class FakeInference:
    """Inference backend returning scripted replies; an Exception in the script is raised."""

    def __init__(self, replies: list[Any] | None = None) -> None:
        self.replies = list(replies or [])
        self.calls: list[tuple[list[dict[str, str]], GenerationConfig]] = []

    async def complete(
        self, messages: list[dict[str, str]], generation: GenerationConfig
    ) -> str:
        self.calls.append((messages, generation))
        reply = self.replies.pop(0) if self.replies else f"reply {len(self.calls)}"
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeSummarizer:
    """Summarizer backend returning scripted summaries; an Exception in the script is raised."""

    def __init__(self, summaries: list[Any] | None = None) -> None:
        self.summaries = list(summaries or [])
        self.calls: list[dict[str, Any]] = []

    async def summarize(
        self, transcript: str, *, model: str | None = None, prompt: str | None = None
    ) -> str:
        self.calls.append({"transcript": transcript, "model": model, "prompt": prompt})
        summary = self.summaries.pop(0) if self.summaries else f"summary {len(self.calls)}"
        if isinstance(summary, Exception):
            raise summary
        return summary


def upstream_failure(operation: str = "inference") -> UpstreamError:
    return UpstreamError(operation, "service unavailable", status_code=503)


@pytest.fixture
def config(tmp_path):
    """ChatConfig with a temp database path."""
    return ChatConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool):
    """Initialized ConversationStore backed by a temp SQLite database (pool-managed)."""
    s = ConversationStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()  # no-op for pool-managed conn; pool fixture closes the connection


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[ChatEvent, dict[str, Any]]] = []

    def _collect(event: ChatEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def conversation(store):
    """A pre-created, empty conversation in the store."""
    return await store.create_conversation()


@pytest_asyncio.fixture
async def sequence(store, conversation, event_bus):
    """MessageSequence for the test conversation, seeded with its system turn."""
    seq = MessageSequence(store, conversation.id, event_bus)
    await seq.seed("You are a helpful assistant.")
    return seq


@pytest.fixture
def state(store, conversation, sequence, config):
    """ConversationState over the seeded test conversation."""
    return ConversationState(store, conversation, sequence, config)


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def summarizer():
    return FakeSummarizer()


@pytest.fixture
def compactor(summarizer, event_bus, config):
    return SummarizationCompactor(summarizer, event_bus, config.compaction)


@pytest.fixture
def dispatcher(inference, compactor, event_bus):
    return TurnDispatcher(inference, compactor, ContextBuilder(), event_bus)


@pytest.fixture
def regenerator(inference, event_bus):
    return RegenerationController(inference, ContextBuilder(), event_bus)


async def fill(sequence: MessageSequence, count: int) -> None:
    """Append *count* alternating user/assistant turns after whatever is there."""
    for _ in range(count):
        n = len(sequence)
        role = "user" if n % 2 == 1 else "assistant"
        await sequence.append(role, f"turn {n}")


def events_of(bus: EventBus, event: ChatEvent) -> list[dict[str, Any]]:
    return [payload for ev, payload in bus.collected if ev == event]  # type: ignore[attr-defined]
