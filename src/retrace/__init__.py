"""
Retrace — rewind, checkpoint restore and per-message undo for agent conversations.

Primary entry point::

    from retrace import ControlOrchestrator, ConversationStore, RetraceConfig

    config = RetraceConfig.default()
    store = ConversationStore(config.store)
    await store.initialize()
    orchestrator = ControlOrchestrator(store, engine, config)
    result = await orchestrator.handle(
        {"action": "undo_message", "sessionId": session_id, "messageId": 42}
    )
"""

from retrace.control import (
    ControlError,
    ControlNotFoundError,
    ControlOrchestrator,
    ControlPreconditionError,
    ExternalCapabilityError,
    FallbackRestoreError,
    InvalidControlRequestError,
    parse_message_id,
)
from retrace.engine import CoreSessionEngine
from retrace.events.bus import EventBus, RetraceEvent
from retrace.ids import make_id
from retrace.models import (
    ControlAction,
    ControlRequest,
    EngineResult,
    FallbackApplyResult,
    FileRestoreOutcome,
    FileUndoFallbackEntry,
    LineChangeCounts,
    Message,
    PruneResult,
    RetraceConfig,
    StoreConfig,
    UndoConfig,
    UndoPreviewFileChange,
    UndoSnapshot,
)
from retrace.store import ConversationStore, StorePool

__version__ = "0.1.0"

__all__ = [
    # Core
    "ControlOrchestrator",
    "ConversationStore",
    "StorePool",
    "CoreSessionEngine",
    "make_id",
    "parse_message_id",
    # Config
    "RetraceConfig",
    "StoreConfig",
    "UndoConfig",
    # Models
    "ControlAction",
    "ControlRequest",
    "EngineResult",
    "Message",
    "PruneResult",
    "UndoSnapshot",
    "FileUndoFallbackEntry",
    "UndoPreviewFileChange",
    "LineChangeCounts",
    "FileRestoreOutcome",
    "FallbackApplyResult",
    # Errors
    "ControlError",
    "InvalidControlRequestError",
    "ControlNotFoundError",
    "ControlPreconditionError",
    "ExternalCapabilityError",
    "FallbackRestoreError",
    # Events
    "EventBus",
    "RetraceEvent",
]
