"""
convokeep — persistent chat history with rolling summarization.

Primary entry point::

    from convokeep import ChatSession, ChatConfig

    async with ChatSession.open(db_path="chat.db") as session:
        result = await session.send("Hello!")
        print(result.text)
"""

from convokeep.session import ChatSession
from convokeep.models import (
    ChatConfig,
    CompactionConfig,
    GenerationConfig,
    RequestConfig,
    StoreConfig,
    Conversation,
    Turn,
    TurnResult,
    RegenerationResult,
    CompactionResult,
)
from convokeep.errors import (
    ConvokeepError,
    NoActiveConversationError,
    TurnNotFoundError,
    ForbiddenError,
    InvalidRangeError,
    NotPersistedYetError,
    UpstreamError,
    StoreError,
    ConversationNotFoundError,
    MessageNotFoundError,
)
from convokeep.events.bus import ChatEvent, EventBus
from convokeep.llm.client import LiteLLMInference, LiteLLMSummarizer
from convokeep.store import ConversationStore, StorePool, make_id

__version__ = "0.1.0"

__all__ = [
    # Core
    "ChatSession",
    "make_id",
    # Config
    "ChatConfig",
    "CompactionConfig",
    "GenerationConfig",
    "RequestConfig",
    "StoreConfig",
    # Models
    "Conversation",
    "Turn",
    "TurnResult",
    "RegenerationResult",
    "CompactionResult",
    # Errors
    "ConvokeepError",
    "NoActiveConversationError",
    "TurnNotFoundError",
    "ForbiddenError",
    "InvalidRangeError",
    "NotPersistedYetError",
    "UpstreamError",
    "StoreError",
    "ConversationNotFoundError",
    "MessageNotFoundError",
    # Events
    "ChatEvent",
    "EventBus",
    # Backends
    "LiteLLMInference",
    "LiteLLMSummarizer",
    # Store
    "ConversationStore",
    "StorePool",
]
