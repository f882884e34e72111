"""Typed payload definitions for each RetraceEvent.

Usage example::

    from retrace.events.bus import EventBus, RetraceEvent
    from retrace.events.payloads import SubtreePrunedPayload

    def on_prune(event: RetraceEvent, payload: SubtreePrunedPayload) -> None:
        print(f"{payload['deleted_messages']} messages removed from {payload['session_id']}")

    bus.subscribe(RetraceEvent.SUBTREE_PRUNED, on_prune)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import Any, TypedDict


class SubtreePrunedPayload(TypedDict):
    """Payload for :attr:`RetraceEvent.SUBTREE_PRUNED`."""

    session_id: str
    root_message_id: int
    deleted_messages: int
    deleted_snapshots: int


class CheckpointRestoredPayload(TypedDict):
    """Payload for :attr:`RetraceEvent.CHECKPOINT_RESTORED`."""

    session_id: str
    restore_id: str


class ConversationRewoundPayload(TypedDict):
    """Payload for :attr:`RetraceEvent.CONVERSATION_REWOUND`."""

    session_id: str
    rewind_result: dict[str, Any]
    """The engine's result, extra fields included."""


class UndoAppliedPayload(TypedDict):
    """Payload for :attr:`RetraceEvent.UNDO_APPLIED`."""

    session_id: str
    message_id: int
    checkpoint_restored: bool
    restored_files: int


class UndoFailedPayload(TypedDict):
    """Payload for :attr:`RetraceEvent.UNDO_FAILED`."""

    session_id: str
    message_id: int
    failed_paths: list[str]
