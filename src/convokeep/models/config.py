"""Configuration models for convokeep sessions and components."""

from __future__ import annotations

from pydantic import BaseModel, Field


class GenerationConfig(BaseModel):
    """Parameters sent with every inference call."""

    model: str = Field(
        default="mistral/mistral-large-latest",
        description="Model string in litellm format.",
    )

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    max_tokens: int = Field(
        default=2048,
        ge=1,
        le=8192,
        description="Maximum tokens the model may generate for one reply.",
    )

    safe_prompt: bool = False
    """Ask the provider to prepend its safety prompt (Mistral ``safe_prompt``)."""


class CompactionConfig(BaseModel):
    """Configuration for the summarization compactor."""

    auto: bool = True
    """Whether to run compaction after every successful dispatch."""

    summarize_after: int = Field(
        default=20,
        ge=1,
        description="Compaction is a no-op while the sequence has at most this many turns.",
    )

    keep_recent: int = Field(
        default=10,
        ge=0,
        description="Number of most recent turns that are always kept verbatim.",
    )

    summarizer_model: str | None = Field(
        default=None,
        description="Model used for summarisation. None = the summarizer default.",
    )

    summarizer_prompt: str | None = Field(
        default=None,
        description="Custom system prompt for the summarizer. None = the built-in prompt.",
    )

    summarizer_temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    summarizer_max_tokens: int = Field(default=600, ge=1, le=8192)


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.convokeep/conversations.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class RequestConfig(BaseModel):
    """Limits applied to inference and summarizer calls."""

    timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds before an upstream call is abandoned and reported as failed.",
    )

    error_detail_limit: int = Field(
        default=500,
        ge=20,
        description="Upstream error bodies are truncated to this many characters.",
    )


class ChatConfig(BaseModel):
    """
    Top-level configuration for a chat session.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = ChatConfig(
            generation=GenerationConfig(model="mistral/mistral-small-latest", temperature=0.3),
            compaction=CompactionConfig(summarize_after=30, keep_recent=12),
        )
    """

    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    requests: RequestConfig = Field(default_factory=RequestConfig)

    system_prompt: str = "You are a helpful assistant."
    """Content of the system turn seeded at idx 0 of every new conversation."""

    default_title: str = "New chat"

    title_max_length: int = Field(
        default=60,
        ge=1,
        description="The title derived from the first user message is cut to this length.",
    )

    empty_reply_placeholder: str = "(no content)"
    """Stored in place of an empty assistant reply."""

    @classmethod
    def default(cls) -> ChatConfig:
        """Return a config instance with all defaults."""
        return cls()
