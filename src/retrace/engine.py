"""Boundary to the external session engine that runs agent turns."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from retrace.models.control import EngineResult


@runtime_checkable
class CoreSessionEngine(Protocol):
    """
    The agent runtime that owns checkpoints and the live conversation.

    retrace never inspects checkpoints itself; it asks the engine to restore
    one or to drop the last user turn and reads back ``success``/``error``.
    Implementations report failure through :class:`EngineResult` rather than
    by raising.
    """

    async def initialize(self, *, session_id: str, model: str, cwd: str) -> None:
        """Bind the engine to a session, model and working directory."""
        ...

    async def restore_checkpoint(self, checkpoint_id: str) -> EngineResult:
        """Restore the workspace (and engine history) to a checkpoint."""
        ...

    async def rewind_last_user_message(self) -> EngineResult:
        """Drop the most recent user turn from the engine's own history."""
        ...
