"""In-process pub/sub event bus for rewind and undo lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["RetraceEvent", dict[str, Any]], None | Awaitable[None]]


class RetraceEvent(StrEnum):
    """Events published by :class:`~retrace.control.ControlOrchestrator`.

    Payload ``TypedDict``s live in :mod:`retrace.events.payloads`.

    ``SUBTREE_PRUNED``
        :class:`~retrace.events.payloads.SubtreePrunedPayload` — fired after
        any action removed messages.

    ``CHECKPOINT_RESTORED``
        :class:`~retrace.events.payloads.CheckpointRestoredPayload`

    ``CONVERSATION_REWOUND``
        :class:`~retrace.events.payloads.ConversationRewoundPayload`

    ``UNDO_APPLIED``
        :class:`~retrace.events.payloads.UndoAppliedPayload`

    ``UNDO_FAILED``
        :class:`~retrace.events.payloads.UndoFailedPayload` — some fallback
        files could not be restored; history was left in place.
    """

    SUBTREE_PRUNED = "subtree.pruned"
    CHECKPOINT_RESTORED = "checkpoint.restored"
    CONVERSATION_REWOUND = "conversation.rewound"
    UNDO_APPLIED = "undo.applied"
    UNDO_FAILED = "undo.failed"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    - Sync handlers run inline within ``publish()``.
    - Async handlers are scheduled with ``create_task()`` on the running loop.
    - Handler exceptions are logged and never reach the publisher.

    Example::

        bus = EventBus()
        bus.subscribe(RetraceEvent.UNDO_APPLIED, lambda e, p: print(p["restored_files"]))
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[RetraceEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._logger = logger or structlog.get_logger("retrace.events")

    def subscribe(self, event: RetraceEvent, handler: Handler) -> None:
        """Register a handler for one event type."""
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for every event type."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: RetraceEvent, handler: Handler) -> None:
        """Remove a handler. No-op if it was never registered."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: RetraceEvent, payload: dict[str, Any]) -> None:
        """
        Deliver ``payload`` to every handler of ``event`` and to global handlers.

        Args:
            event: The event type to publish.
            payload: Event-specific data dictionary.
        """
        for handler in [*self._handlers.get(event, []), *self._global_handlers]:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        result.close()
                        continue
                    _task = loop.create_task(result)  # noqa: RUF006
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
