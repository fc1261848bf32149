"""convokeep event bus."""

from convokeep.events.bus import ChatEvent, EventBus, Handler
from convokeep.events.payloads import (
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionTriggeredPayload,
    ConversationCreatedPayload,
    ConversationUpdatedPayload,
    DispatchFailedPayload,
    SequenceRepackedPayload,
    SequenceTruncatedPayload,
    SessionClosedPayload,
    TurnPayload,
    TurnPersistFailedPayload,
)

__all__ = [
    "ChatEvent",
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "CompactionTriggeredPayload",
    "ConversationCreatedPayload",
    "ConversationUpdatedPayload",
    "DispatchFailedPayload",
    "EventBus",
    "Handler",
    "SequenceRepackedPayload",
    "SequenceTruncatedPayload",
    "SessionClosedPayload",
    "TurnPayload",
    "TurnPersistFailedPayload",
]
