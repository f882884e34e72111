"""Control action request and session-engine result models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ControlAction(StrEnum):
    """Actions accepted by :class:`~retrace.control.ControlOrchestrator`."""

    REWIND = "rewind"
    RESTORE = "restore"
    UNDO_MESSAGE = "undo_message"
    UNDO_MESSAGE_PREVIEW = "undo_message_preview"


class ControlRequest(BaseModel):
    """
    Raw control request as received from the request-handling layer.

    Identifier fields stay loosely typed here; each action validates the ones
    it needs so that a bad ``messageId`` is reported against that action.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    action: str | None = None
    session_id: str | None = None
    checkpoint_id: Any = None
    tool_id: Any = None
    """Legacy name for ``checkpoint_id``."""
    message_id: Any = None
    workspace: str | None = None
    model: str | None = None


class EngineResult(BaseModel):
    """
    Result returned by the external session engine.

    Only ``success`` and ``error`` are interpreted; any other fields the engine
    reports (``rewoundMessageId``, ``remainingMessages``...) are kept and passed
    through to the caller untouched.
    """

    model_config = ConfigDict(extra="allow")

    success: bool
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
