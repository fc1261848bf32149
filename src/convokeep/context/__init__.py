"""Dispatch payload assembly."""

from convokeep.context.builder import BuiltContext, ContextBuilder, LLMMessage

__all__ = ["BuiltContext", "ContextBuilder", "LLMMessage"]
