"""retrace event bus."""

from retrace.events.bus import EventBus, Handler, RetraceEvent
from retrace.events.payloads import (
    CheckpointRestoredPayload,
    ConversationRewoundPayload,
    SubtreePrunedPayload,
    UndoAppliedPayload,
    UndoFailedPayload,
)

__all__ = [
    "CheckpointRestoredPayload",
    "ConversationRewoundPayload",
    "EventBus",
    "Handler",
    "RetraceEvent",
    "SubtreePrunedPayload",
    "UndoAppliedPayload",
    "UndoFailedPayload",
]
