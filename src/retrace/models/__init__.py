"""retrace data models."""

from retrace.models.config import RetraceConfig, StoreConfig, UndoConfig
from retrace.models.control import ControlAction, ControlRequest, EngineResult
from retrace.models.message import Message, MessageRole, PruneResult
from retrace.models.undo import (
    FallbackApplyResult,
    FileRestoreOutcome,
    FileUndoFallbackEntry,
    LineChangeCounts,
    UndoPreviewFileChange,
    UndoSnapshot,
)

__all__ = [
    # Config
    "RetraceConfig",
    "StoreConfig",
    "UndoConfig",
    # Conversation
    "Message",
    "MessageRole",
    "PruneResult",
    # Undo
    "FileUndoFallbackEntry",
    "UndoSnapshot",
    "LineChangeCounts",
    "UndoPreviewFileChange",
    "FileRestoreOutcome",
    "FallbackApplyResult",
    # Control
    "ControlAction",
    "ControlRequest",
    "EngineResult",
]
