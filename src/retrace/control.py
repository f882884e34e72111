"""Control actions: rewind, checkpoint restore and per-message undo."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import structlog
from pydantic import ValidationError

from retrace.engine import CoreSessionEngine
from retrace.events.bus import EventBus, RetraceEvent
from retrace.models.config import RetraceConfig
from retrace.models.control import ControlAction, ControlRequest
from retrace.models.message import PruneResult
from retrace.models.undo import FallbackApplyResult, UndoSnapshot
from retrace.store.conversation import ConversationStore, MessageNotFoundError
from retrace.undo.files import apply_fallback_undo_files, build_undo_preview

_GENERIC_FAILURE = "Failed to process chat control action"
_DEFAULT_WORKSPACE_LABEL = "Default"
# Largest value SQLite stores in an INTEGER column.
_MAX_MESSAGE_ID = 2**63 - 1

# ── Exceptions ─────────────────────────────────────────────────────────────────


class ControlError(Exception):
    """Base class for failures reported back to the caller of a control action."""

    status: int = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class InvalidControlRequestError(ControlError):
    """Missing or malformed request fields, or an unsupported action."""

    status = 400


class ControlNotFoundError(ControlError):
    """The referenced message does not exist in the session."""

    status = 404


class ControlPreconditionError(ControlError):
    """The message exists but cannot be undone (wrong role, no snapshot)."""

    status = 409


class ExternalCapabilityError(ControlError):
    """The session engine reported a failure; its error text is passed through."""

    status = 400


class FallbackRestoreError(ControlError):
    """Some fallback files could not be written back; history was not pruned."""

    status = 500


# ── Helpers ────────────────────────────────────────────────────────────────────


def parse_message_id(raw: object) -> int | None:
    """
    Interpret a request's ``messageId``.

    Accepts positive integers and strings or integral floats that denote one.
    Returns None for anything else (including booleans, zero, negatives and
    values too large to be a stored message id).
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            return None
        value = int(raw)
    elif isinstance(raw, str):
        try:
            value = int(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return value if 0 < value <= _MAX_MESSAGE_ID else None


def _restore_id(checkpoint_id: object, tool_id: object) -> str:
    if isinstance(checkpoint_id, str) and checkpoint_id.strip():
        return checkpoint_id.strip()
    if isinstance(tool_id, str):
        return tool_id.strip()
    return ""


# ── ControlOrchestrator ────────────────────────────────────────────────────────


class ControlOrchestrator:
    """
    Dispatches control actions against a conversation store and session engine.

    Actions:

    - ``rewind`` — the engine drops its last user turn, then the most recent
      user message and everything after it is pruned from the store.
    - ``restore`` — the engine restores a checkpoint; an optional ``messageId``
      subtree is pruned afterwards.
    - ``undo_message`` — files touched while answering a user message are put
      back (checkpoint restore or fallback files), then that message's subtree
      is pruned.
    - ``undo_message_preview`` — reports what ``undo_message`` would change.

    Mutating actions on one session are serialised by a per-session lock.
    Fallback files are restored before any rows are deleted, so a failed file
    leaves the conversation intact for a retry.

    Example::

        orchestrator = ControlOrchestrator(store, engine)
        result = await orchestrator.handle(
            {"action": "undo_message", "sessionId": sid, "messageId": 42, "workspace": "/repo"}
        )
        if "error" in result:
            ...
    """

    def __init__(
        self,
        store: ConversationStore,
        engine: CoreSessionEngine,
        config: RetraceConfig | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._config = config or RetraceConfig()
        self._event_bus = event_bus or EventBus()
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._session_lock_users: dict[str, int] = {}
        self._logger = structlog.get_logger("retrace.control")

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    # ── Entry point ────────────────────────────────────────────────────────────

    async def handle(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """
        Run one control action described by a JSON-shaped request.

        Args:
            payload: ``{"action", "sessionId", ...}`` with the action-specific
                fields ``checkpointId``/``toolId``, ``messageId``, ``workspace``
                and ``model``.

        Returns:
            ``{"success": True, ...}`` on success, otherwise
            ``{"error": str, "status": int, ...}``.  Never raises.
        """
        try:
            request = ControlRequest.model_validate(payload)
        except ValidationError as exc:
            return self._error_response(
                InvalidControlRequestError(f"Invalid control request: {exc.error_count()} bad field(s)")
            )

        log = self._logger.bind(action=request.action, session_id=request.session_id)
        try:
            return await self.dispatch(request)
        except ControlError as exc:
            log.info("control_action_rejected", status=exc.status, error=str(exc))
            return self._error_response(exc)
        except Exception:
            log.exception("control_action_failed")
            return {"error": _GENERIC_FAILURE, "status": 500}

    async def dispatch(self, request: ControlRequest) -> dict[str, Any]:
        """
        Route a parsed request to its action.

        Raises:
            ControlError: Subclass matching the failure category.
        """
        if not request.action or not request.session_id:
            raise InvalidControlRequestError("action and sessionId are required")
        try:
            action = ControlAction(request.action)
        except ValueError:
            raise InvalidControlRequestError(f"Unsupported action: {request.action}") from None

        session_id = request.session_id
        if action is ControlAction.REWIND:
            return await self.rewind(session_id, model=request.model, workspace=request.workspace)
        if action is ControlAction.RESTORE:
            return await self.restore(
                session_id,
                request.checkpoint_id,
                tool_id=request.tool_id,
                message_id=request.message_id,
                model=request.model,
                workspace=request.workspace,
            )
        if action is ControlAction.UNDO_MESSAGE:
            return await self.undo_message(
                session_id, request.message_id, workspace=request.workspace, model=request.model
            )
        return await self.preview_undo_message(
            session_id, request.message_id, workspace=request.workspace
        )

    # ── Actions ────────────────────────────────────────────────────────────────

    async def rewind(
        self, session_id: str, *, model: str | None = None, workspace: str | None = None
    ) -> dict[str, Any]:
        """
        Rewind the last user turn in the engine and in the stored conversation.

        The engine's rewind runs first; when it succeeds, the most recent user
        message (and everything descended from it) is pruned.  A session with no
        user message only has its ``updated_at`` bumped.
        """
        async with self._session_lock(session_id):
            await self._initialize_engine(session_id, model, workspace)
            result = await self._engine.rewind_last_user_message()
            if not result.success:
                raise ExternalCapabilityError(result.error or "Failed to rewind conversation")

            latest = await self._store.get_latest_user_message(session_id)
            if latest is not None and latest.id is not None:
                pruned = await self._prune(session_id, latest.id)
            else:
                await self._store.touch_session(session_id)
                pruned = PruneResult()

        rewind_payload = result.to_payload()
        self._event_bus.publish(
            RetraceEvent.CONVERSATION_REWOUND,
            {"session_id": session_id, "rewind_result": rewind_payload},
        )
        return {
            "success": True,
            "rewindResult": rewind_payload,
            "deletedCount": pruned.deleted_messages,
            "deletedSnapshots": pruned.deleted_snapshots,
        }

    async def restore(
        self,
        session_id: str,
        checkpoint_id: object = None,
        *,
        tool_id: object = None,
        message_id: object = None,
        model: str | None = None,
        workspace: str | None = None,
    ) -> dict[str, Any]:
        """
        Restore an engine checkpoint, then prune ``message_id``'s subtree if given.

        ``tool_id`` is the legacy name for the checkpoint and is only used when
        ``checkpoint_id`` is blank.

        Raises:
            InvalidControlRequestError: No checkpoint identifier was supplied.
            ExternalCapabilityError: The engine rejected the checkpoint.
        """
        restore_id = _restore_id(checkpoint_id, tool_id)
        if not restore_id:
            raise InvalidControlRequestError("checkpointId is required for restore")

        async with self._session_lock(session_id):
            await self._initialize_engine(session_id, model, workspace)
            result = await self._engine.restore_checkpoint(restore_id)
            if not result.success:
                raise ExternalCapabilityError(result.error or f"Failed to restore {restore_id}")
            self._event_bus.publish(
                RetraceEvent.CHECKPOINT_RESTORED,
                {"session_id": session_id, "restore_id": restore_id},
            )

            root_id = parse_message_id(message_id)
            pruned = PruneResult()
            if root_id is not None:
                pruned = await self._prune(session_id, root_id)

        return {
            "success": True,
            "restoreId": restore_id,
            "restoreResult": result.to_payload(),
            "pruned": pruned.pruned,
            "deletedCount": pruned.deleted_messages,
            "deletedSnapshots": pruned.deleted_snapshots,
        }

    async def undo_message(
        self,
        session_id: str,
        message_id: object,
        *,
        workspace: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        """
        Undo a user message: restore the files its turn touched, then prune it.

        The snapshot's checkpoint is used only when it has no fallback files;
        otherwise the fallback files are written back and the engine is not
        called.  If any fallback file fails, nothing is pruned.

        Raises:
            InvalidControlRequestError: ``message_id`` is missing or malformed.
            ControlNotFoundError: The message is not in the session.
            ControlPreconditionError: Not a user message, or no usable snapshot.
            ExternalCapabilityError: The checkpoint restore failed.
            FallbackRestoreError: One or more files could not be restored.
        """
        async with self._session_lock(session_id):
            root_id, snapshot = await self._load_undo_target(
                session_id, message_id, ControlAction.UNDO_MESSAGE
            )

            applied = FallbackApplyResult()
            checkpoint_restored = False
            restore_id = snapshot.restore_id if snapshot.uses_checkpoint else None
            if restore_id is not None:
                await self._initialize_engine(session_id, model, workspace)
                result = await self._engine.restore_checkpoint(restore_id)
                if not result.success:
                    raise ExternalCapabilityError(result.error or f"Failed to restore {restore_id}")
                checkpoint_restored = True
                self._event_bus.publish(
                    RetraceEvent.CHECKPOINT_RESTORED,
                    {"session_id": session_id, "restore_id": restore_id},
                )
            else:
                applied = apply_fallback_undo_files(
                    snapshot.fallback_files, self._workspace_root(workspace)
                )
                if not applied.ok:
                    failed_paths = [o.path for o in applied.failed]
                    self._event_bus.publish(
                        RetraceEvent.UNDO_FAILED,
                        {
                            "session_id": session_id,
                            "message_id": root_id,
                            "failed_paths": failed_paths,
                        },
                    )
                    raise FallbackRestoreError(
                        f"Failed to restore {len(failed_paths)} file(s); "
                        "conversation history was left unchanged",
                        details={
                            "fallbackRestoredCount": applied.restored_count,
                            "files": [o.model_dump(by_alias=True) for o in applied.outcomes],
                        },
                    )

            pruned = await self._prune(session_id, root_id)

        self._event_bus.publish(
            RetraceEvent.UNDO_APPLIED,
            {
                "session_id": session_id,
                "message_id": root_id,
                "checkpoint_restored": checkpoint_restored,
                "restored_files": applied.restored_count,
            },
        )
        return {
            "success": True,
            "messageId": root_id,
            "checkpointRestored": checkpoint_restored,
            "fallbackRestoredCount": applied.restored_count,
            "deletedCount": pruned.deleted_messages,
            "deletedSnapshots": pruned.deleted_snapshots,
            "files": [o.model_dump(by_alias=True) for o in applied.outcomes],
        }

    async def preview_undo_message(
        self, session_id: str, message_id: object, *, workspace: str | None = None
    ) -> dict[str, Any]:
        """
        Describe what :meth:`undo_message` would change, without changing anything.

        Raises the same request and precondition errors as :meth:`undo_message`.
        """
        root_id, snapshot = await self._load_undo_target(
            session_id, message_id, ControlAction.UNDO_MESSAGE_PREVIEW
        )
        changes = build_undo_preview(
            snapshot.fallback_files,
            self._workspace_root(workspace),
            cell_limit=self._config.undo.diff_cell_limit,
        )
        return {
            "success": True,
            "messageId": root_id,
            "files": [c.model_dump(by_alias=True) for c in changes],
            "hasCheckpoint": snapshot.restore_id is not None,
        }

    # ── Private Helpers ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's lock; the entry is dropped once no action holds or awaits it."""
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        self._session_lock_users[session_id] = self._session_lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._session_lock_users[session_id] - 1
            if remaining:
                self._session_lock_users[session_id] = remaining
            else:
                del self._session_lock_users[session_id]
                del self._session_locks[session_id]

    def _workspace_root(self, workspace: str | None) -> str:
        if workspace and workspace != _DEFAULT_WORKSPACE_LABEL:
            return workspace
        return self._config.undo.default_workspace or os.getcwd()

    async def _initialize_engine(
        self, session_id: str, model: str | None, workspace: str | None
    ) -> None:
        await self._engine.initialize(
            session_id=session_id,
            model=model or self._config.undo.default_model,
            cwd=self._workspace_root(workspace),
        )

    async def _load_undo_target(
        self, session_id: str, raw_message_id: object, action: ControlAction
    ) -> tuple[int, UndoSnapshot]:
        message_id = parse_message_id(raw_message_id)
        if message_id is None:
            raise InvalidControlRequestError(f"messageId is required for {action.value}")

        try:
            message = await self._store.get_message(message_id, session_id=session_id)
        except MessageNotFoundError:
            raise ControlNotFoundError(f"Message {message_id} not found") from None
        if message.role != "user":
            raise ControlPreconditionError("Only user messages can be undone")

        snapshot = await self._store.get_undo_snapshot(session_id, message_id)
        if snapshot is None:
            raise ControlPreconditionError("No undo snapshot is available for this message")
        if snapshot.is_empty:
            raise ControlPreconditionError("Undo snapshot has nothing to restore")
        return message_id, snapshot

    async def _prune(self, session_id: str, root_message_id: int) -> PruneResult:
        result = await self._store.prune_subtree(session_id, root_message_id)
        if result.pruned:
            self._event_bus.publish(
                RetraceEvent.SUBTREE_PRUNED,
                {
                    "session_id": session_id,
                    "root_message_id": root_message_id,
                    "deleted_messages": result.deleted_messages,
                    "deleted_snapshots": result.deleted_snapshots,
                },
            )
        return result

    @staticmethod
    def _error_response(exc: ControlError) -> dict[str, Any]:
        return {"error": str(exc), "status": exc.status, **exc.details}
