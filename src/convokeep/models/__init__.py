"""convokeep data models."""

from convokeep.models.config import (
    ChatConfig,
    CompactionConfig,
    GenerationConfig,
    RequestConfig,
    StoreConfig,
)
from convokeep.models.message import (
    CompactionResult,
    Conversation,
    RegenerationResult,
    Role,
    Turn,
    TurnResult,
    TurnStatus,
)

__all__ = [
    # Config
    "ChatConfig",
    "CompactionConfig",
    "GenerationConfig",
    "RequestConfig",
    "StoreConfig",
    # Conversation
    "Conversation",
    "Role",
    "Turn",
    "TurnStatus",
    # Results
    "CompactionResult",
    "RegenerationResult",
    "TurnResult",
]
