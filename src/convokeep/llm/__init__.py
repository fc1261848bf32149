"""Inference and summarizer clients."""

from convokeep.llm.client import (
    DEFAULT_SUMMARIZER_MODEL,
    DEFAULT_SUMMARY_PROMPT,
    InferenceBackend,
    LiteLLMInference,
    LiteLLMSummarizer,
    SummarizerBackend,
)

__all__ = [
    "DEFAULT_SUMMARIZER_MODEL",
    "DEFAULT_SUMMARY_PROMPT",
    "InferenceBackend",
    "LiteLLMInference",
    "LiteLLMSummarizer",
    "SummarizerBackend",
]
