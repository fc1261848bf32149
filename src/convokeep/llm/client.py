"""Inference and summarizer calls over litellm.

Both calls are plain request/response: a provider error, a timeout, or a
response without usable content becomes an :class:`~convokeep.errors.UpstreamError`
whose ``detail`` is the provider's error text, truncated.

Set ``CONVOKEEP_MOCK_LLM=1`` to answer locally without an API key.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from convokeep.errors import UpstreamError
from convokeep.models.config import CompactionConfig, GenerationConfig, RequestConfig

MOCK_ENV_VAR = "CONVOKEEP_MOCK_LLM"

DEFAULT_SUMMARIZER_MODEL = "mistral/mistral-small-latest"

DEFAULT_SUMMARY_PROMPT = """\
You are a concise conversation summarizer.
Summarize the prior turns faithfully. Keep facts and decisions. Omit fluff.
Return a single paragraph (5-10 sentences).
"""

Completion = Callable[..., Awaitable[Any]]

logger = structlog.get_logger("convokeep.llm")


class InferenceBackend(Protocol):
    """Anything that turns an ordered role/content list into a reply text."""

    async def complete(
        self, messages: list[dict[str, str]], generation: GenerationConfig
    ) -> str: ...


class SummarizerBackend(Protocol):
    """Anything that condenses a transcript into a summary text."""

    async def summarize(
        self, transcript: str, *, model: str | None = None, prompt: str | None = None
    ) -> str: ...


def _mock_enabled() -> bool:
    return os.environ.get(MOCK_ENV_VAR) == "1"


def _default_completion() -> Completion:
    import litellm

    return litellm.acompletion


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


async def _request(
    operation: str,
    completion: Completion,
    requests: RequestConfig,
    **kwargs: Any,
) -> str:
    """Run one completion call and return the first choice's text ('' if none)."""
    try:
        response = await asyncio.wait_for(completion(**kwargs), timeout=requests.timeout)
    except TimeoutError as exc:
        logger.warning("upstream_timeout", operation=operation, timeout=requests.timeout)
        raise UpstreamError(operation, f"timed out after {requests.timeout:g}s") from exc
    except Exception as exc:
        status_code = getattr(exc, "status_code", None)
        detail = _truncate(str(exc) or type(exc).__name__, requests.error_detail_limit)
        logger.warning("upstream_error", operation=operation, status_code=status_code)
        raise UpstreamError(operation, detail, status_code=status_code) from exc

    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, KeyError, TypeError) as exc:
        raise UpstreamError(
            operation,
            _truncate(f"malformed response: {response!r}", requests.error_detail_limit),
        ) from exc
    if content is not None and not isinstance(content, str):
        raise UpstreamError(operation, f"malformed content of type {type(content).__name__}")
    return content or ""


class LiteLLMInference:
    """
    Chat completion through ``litellm.acompletion``.

    The request carries the session's model, temperature and max_tokens;
    ``safe_prompt`` is forwarded in the provider request body when enabled.

    Args:
        requests: Timeout and error truncation limits.
        completion: Override for ``litellm.acompletion`` (tests, custom routing).
    """

    def __init__(
        self,
        requests: RequestConfig | None = None,
        completion: Completion | None = None,
    ) -> None:
        self._requests = requests or RequestConfig()
        self._completion = completion

    async def complete(
        self, messages: list[dict[str, str]], generation: GenerationConfig
    ) -> str:
        if _mock_enabled():
            return _mock_reply(messages)

        call_kwargs: dict[str, Any] = {
            "model": generation.model,
            "messages": messages,
            "temperature": generation.temperature,
            "max_tokens": generation.max_tokens,
        }
        if generation.safe_prompt:
            call_kwargs["extra_body"] = {"safe_prompt": True}

        completion = self._completion or _default_completion()
        return await _request("inference", completion, self._requests, **call_kwargs)


class LiteLLMSummarizer:
    """
    Transcript summarisation through ``litellm.acompletion``.

    The prompt goes out as the system message and the transcript as the
    single user message.  An empty summary is treated as a failed call.

    Args:
        config: Supplies the default model, temperature and max_tokens.
        requests: Timeout and error truncation limits.
        completion: Override for ``litellm.acompletion``.
    """

    def __init__(
        self,
        config: CompactionConfig | None = None,
        requests: RequestConfig | None = None,
        completion: Completion | None = None,
    ) -> None:
        self._config = config or CompactionConfig()
        self._requests = requests or RequestConfig()
        self._completion = completion

    async def summarize(
        self, transcript: str, *, model: str | None = None, prompt: str | None = None
    ) -> str:
        """
        Summarise *transcript*.

        Args:
            transcript: Non-empty text to condense.
            model: Override model. Falls back to the config, then the default.
            prompt: Override system prompt. Blank means the built-in prompt.

        Raises:
            ValueError: If *transcript* is empty.
            UpstreamError: If the call fails or returns no text.
        """
        if not transcript.strip():
            raise ValueError("transcript must be a non-empty string")

        if _mock_enabled():
            return _mock_summary(transcript)

        system_prompt = prompt if prompt and prompt.strip() else DEFAULT_SUMMARY_PROMPT
        completion = self._completion or _default_completion()
        summary = await _request(
            "summarize",
            completion,
            self._requests,
            model=model or self._config.summarizer_model or DEFAULT_SUMMARIZER_MODEL,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": transcript},
            ],
            temperature=self._config.summarizer_temperature,
            max_tokens=self._config.summarizer_max_tokens,
        )
        if not summary.strip():
            raise UpstreamError("summarize", "summarizer returned an empty summary")
        return summary.strip()


def _mock_reply(messages: list[dict[str, str]]) -> str:
    last_user = next(
        (m["content"] for m in reversed(messages) if m["role"] == "user"),
        "Hello",
    )
    return (
        f"[Mock reply to: {last_user[:100]}]\n"
        f"Set {MOCK_ENV_VAR}=0 and provide an API key to use a real model."
    )


def _mock_summary(transcript: str) -> str:
    lines = [ln.strip() for ln in transcript.splitlines() if ln.strip()]
    return " ".join(ln[:80] for ln in lines[:6])
