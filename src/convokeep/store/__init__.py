"""convokeep persistence layer."""

from convokeep.errors import ConversationNotFoundError, MessageNotFoundError, StoreError
from convokeep.store.pool import StorePool
from convokeep.store.sqlite import ConversationStore, make_id

__all__ = [
    "ConversationStore",
    "StorePool",
    "make_id",
    "StoreError",
    "ConversationNotFoundError",
    "MessageNotFoundError",
]
