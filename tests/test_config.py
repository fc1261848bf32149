"""Tests for configuration models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from convokeep.models.config import (
    ChatConfig,
    CompactionConfig,
    GenerationConfig,
    RequestConfig,
)


class TestChatConfig:
    def test_defaults(self):
        cfg = ChatConfig.default()
        assert cfg.compaction.summarize_after == 20
        assert cfg.compaction.keep_recent == 10
        assert cfg.compaction.auto is True
        assert cfg.generation.model == "mistral/mistral-large-latest"
        assert cfg.generation.safe_prompt is False
        assert cfg.system_prompt == "You are a helpful assistant."
        assert cfg.default_title == "New chat"
        assert cfg.title_max_length == 60
        assert cfg.requests.timeout == 60.0

    def test_sub_configs_override_independently(self):
        cfg = ChatConfig(compaction=CompactionConfig(keep_recent=4))
        assert cfg.compaction.keep_recent == 4
        assert cfg.compaction.summarize_after == 20
        assert cfg.generation == GenerationConfig()


class TestBounds:
    @pytest.mark.parametrize("temperature", [-0.1, 2.5])
    def test_temperature_bounds(self, temperature):
        with pytest.raises(ValidationError):
            GenerationConfig(temperature=temperature)

    def test_max_tokens_bounds(self):
        with pytest.raises(ValidationError):
            GenerationConfig(max_tokens=0)
        with pytest.raises(ValidationError):
            GenerationConfig(max_tokens=9000)

    def test_summarize_after_must_be_positive(self):
        with pytest.raises(ValidationError):
            CompactionConfig(summarize_after=0)

    def test_keep_recent_may_be_zero(self):
        assert CompactionConfig(keep_recent=0).keep_recent == 0

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            RequestConfig(timeout=0)
