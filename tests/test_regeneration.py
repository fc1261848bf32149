"""Tests for RegenerationController."""

from __future__ import annotations

import pytest

from convokeep.context.builder import ContextBuilder
from convokeep.errors import (
    InvalidRangeError,
    NoActiveConversationError,
    TurnNotFoundError,
    UpstreamError,
)
from convokeep.events.bus import ChatEvent
from convokeep.regeneration import RegenerationController
from tests.conftest import FakeInference, events_of, fill, upstream_failure


class TestRegenerationController:
    async def test_regenerate_assistant_turn_replaces_it(self, state, regenerator, inference):
        await fill(state.sequence, 4)  # system, u1, a2, u3, a4

        result = await regenerator.regenerate(state, 2)

        assert result.cut_at == 1
        assert result.removed_count == 3
        assert result.assistant_turn.idx == 2
        assert result.assistant_turn.role == "assistant"
        turns = await state.store.list_messages(state.conversation.id)
        assert [t.idx for t in turns] == [0, 1, 2]
        assert turns[2].content == result.assistant_turn.content

        messages, _ = inference.calls[-1]
        assert [m["content"] for m in messages] == ["You are a helpful assistant.", "turn 1"]

    async def test_regenerate_from_user_turn_keeps_it(self, state, regenerator, inference):
        await fill(state.sequence, 4)

        result = await regenerator.regenerate(state, 3)

        assert result.cut_at == 3
        assert result.removed_count == 1
        assert result.assistant_turn.idx == 4
        messages, _ = inference.calls[-1]
        assert messages[-1] == {"role": "user", "content": "turn 3"}

    async def test_last_turn_regeneration(self, state, regenerator):
        await fill(state.sequence, 2)
        result = await regenerator.regenerate(state, 2)
        assert result.removed_count == 1
        assert [t.idx for t in state.sequence.turns] == [0, 1, 2]

    async def test_regenerate_first_assistant_turn(self, state, regenerator):
        """The eliciting user turn at idx 1 keeps the range valid."""
        await fill(state.sequence, 2)
        result = await regenerator.regenerate(state, 2)
        assert result.cut_at == 1

    async def test_system_only_prefix_is_invalid(self, state, regenerator, inference):
        with pytest.raises(InvalidRangeError):
            await regenerator.regenerate(state, 0)
        assert inference.calls == []

    async def test_out_of_range(self, state, regenerator):
        await fill(state.sequence, 2)
        with pytest.raises(TurnNotFoundError):
            await regenerator.regenerate(state, 3)
        with pytest.raises(TurnNotFoundError):
            await regenerator.regenerate(state, -1)

    async def test_summary_is_prepended(self, state, regenerator, inference):
        await fill(state.sequence, 2)
        state.conversation.running_summary = "Earlier we talked about cats."
        await regenerator.regenerate(state, 2)
        messages, _ = inference.calls[-1]
        assert messages[0]["role"] == "system"
        assert "Earlier we talked about cats." in messages[0]["content"]
        assert messages[1]["content"] == "You are a helpful assistant."

    async def test_upstream_failure_keeps_truncation(self, state, event_bus):
        regenerator = RegenerationController(
            FakeInference([upstream_failure()]), ContextBuilder(), event_bus
        )
        await fill(state.sequence, 4)

        with pytest.raises(UpstreamError):
            await regenerator.regenerate(state, 2)

        turns = await state.store.list_messages(state.conversation.id)
        assert [t.idx for t in turns] == [0, 1]
        assert [t.idx for t in state.sequence.turns] == [0, 1]
        (payload,) = events_of(event_bus, ChatEvent.DISPATCH_FAILED)
        assert payload["operation"] == "regenerate"
        assert payload["status_code"] == 503

    async def test_empty_reply_gets_placeholder(self, state, event_bus):
        regenerator = RegenerationController(FakeInference([""]), ContextBuilder(), event_bus)
        await fill(state.sequence, 2)
        result = await regenerator.regenerate(state, 2)
        assert result.assistant_turn.content == state.config.empty_reply_placeholder

    async def test_no_conversation(self, state, regenerator):
        state.conversation = None
        with pytest.raises(NoActiveConversationError):
            await regenerator.regenerate(state, 1)

    def test_cut_point(self):
        assert RegenerationController.cut_point("assistant", 4) == 3
        assert RegenerationController.cut_point("user", 4) == 4
