"""Fallback file captures: parsing, preview and best-effort restore."""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from retrace.models.undo import (
    FallbackApplyResult,
    FileRestoreOutcome,
    FileUndoFallbackEntry,
    UndoPreviewFileChange,
)
from retrace.undo.diff import DEFAULT_CELL_LIMIT, diff_line_counts, split_lines

_logger = structlog.get_logger("retrace.undo")

EntryLike = FileUndoFallbackEntry | Mapping[str, Any]


# ── Persistence boundary ───────────────────────────────────────────────────────


def _coerce_entry(raw: object) -> FileUndoFallbackEntry | None:
    if isinstance(raw, FileUndoFallbackEntry):
        return raw
    if not isinstance(raw, Mapping):
        return None
    try:
        return FileUndoFallbackEntry.model_validate(raw)
    except ValidationError:
        return None


def parse_fallback_files(raw: str | bytes | list[Any] | None) -> list[FileUndoFallbackEntry]:
    """
    Turn a persisted ``fallback_files`` value into typed entries.

    Unparseable JSON and non-list values yield an empty list; individual
    malformed elements are dropped.  Never raises on bad data.
    """
    if raw is None or raw == "" or raw == b"":
        return []

    data: Any = raw
    if isinstance(raw, str | bytes | bytearray):
        try:
            data = json.loads(raw)
        except ValueError as exc:
            _logger.debug("fallback_files_unparseable", error=str(exc))
            return []

    if not isinstance(data, list):
        _logger.debug("fallback_files_not_a_list", type=type(data).__name__)
        return []

    entries = [entry for entry in map(_coerce_entry, data) if entry is not None]
    if len(entries) != len(data):
        _logger.debug("fallback_entries_skipped", skipped=len(data) - len(entries))
    return entries


def serialize_fallback_files(entries: Iterable[FileUndoFallbackEntry]) -> str:
    """Serialize entries to the persisted JSON list shape."""
    return json.dumps([entry.to_json_dict() for entry in entries])


# ── Path handling ──────────────────────────────────────────────────────────────


def resolve_workspace_path(path: str, workspace_root: str | os.PathLike[str]) -> str | None:
    """
    Resolve ``path`` against ``workspace_root`` and enforce containment.

    Relative paths are joined to the root; both are normalised lexically (``..``
    collapsed, symlinks not followed).  Returns None when the result is neither
    the root itself nor inside it.
    """
    root = os.path.abspath(workspace_root)
    target = os.path.abspath(path if os.path.isabs(path) else os.path.join(root, path))
    prefix = root if root.endswith(os.sep) else root + os.sep
    if target == root or target.startswith(prefix):
        return target
    return None


def display_path(target: str, workspace_root: str | os.PathLike[str]) -> str:
    """Workspace-relative, ``/``-separated form of an already-contained path."""
    relative = os.path.relpath(target, os.path.abspath(workspace_root))
    if relative == os.curdir:
        relative = os.path.basename(target)
    return relative.replace(os.sep, "/")


def _read_text(target: str) -> str | None:
    try:
        return Path(target).read_bytes().decode("utf-8", errors="replace")
    except OSError:
        return None


# ── Capture ────────────────────────────────────────────────────────────────────


def capture_file_entry(
    path: str, workspace_root: str | os.PathLike[str]
) -> FileUndoFallbackEntry | None:
    """
    Capture a file's current state ahead of an agent write.

    Returns None when ``path`` escapes the workspace.  A missing file is
    recorded as ``existed_before=False``.
    """
    target = resolve_workspace_path(path, workspace_root)
    if target is None:
        return None
    try:
        content: bytes | None = Path(target).read_bytes()
    except FileNotFoundError:
        content = None
    return FileUndoFallbackEntry.from_content(path, content)


# ── Preview ────────────────────────────────────────────────────────────────────


def build_undo_preview(
    entries: Iterable[EntryLike],
    workspace_root: str | os.PathLike[str],
    *,
    cell_limit: int = DEFAULT_CELL_LIMIT,
) -> list[UndoPreviewFileChange]:
    """
    Describe what applying ``entries`` would do, without touching the filesystem.

    - Files the agent created preview as ``deleted`` with every live line removed.
    - Files that existed preview as ``modified`` (or ``created`` when the live
      file is gone), with line counts from the live text to the original.
    - Entries outside the workspace or with a malformed shape are left out.

    Args:
        entries: Typed entries or raw persisted mappings.
        workspace_root: Root that relative paths resolve against and that every
            path must stay inside.
        cell_limit: Forwarded to :func:`~retrace.undo.diff.diff_line_counts`.

    Returns:
        One change per usable entry, in input order.
    """
    changes: list[UndoPreviewFileChange] = []
    for raw in entries:
        entry = _coerce_entry(raw)
        if entry is None:
            continue
        target = resolve_workspace_path(entry.path, workspace_root)
        if target is None:
            _logger.warning("undo_path_outside_workspace", path=entry.path)
            continue
        shown = display_path(target, workspace_root)
        live = _read_text(target)

        if not entry.existed_before:
            changes.append(
                UndoPreviewFileChange(
                    path=target,
                    display_path=shown,
                    status="deleted",
                    added_lines=0,
                    removed_lines=len(split_lines(live or "")),
                )
            )
            continue

        original = (entry.original_content or b"").decode("utf-8", errors="replace")
        counts = diff_line_counts(live or "", original, cell_limit=cell_limit)
        changes.append(
            UndoPreviewFileChange(
                path=target,
                display_path=shown,
                status="created" if live is None else "modified",
                added_lines=counts.added,
                removed_lines=counts.removed,
            )
        )
    return changes


# ── Apply ──────────────────────────────────────────────────────────────────────


def _default_file_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def _write_atomic(target: str, content: bytes) -> None:
    """
    Replace ``target`` with ``content`` via a temp file and ``os.replace``.

    Symlinks are written through (the link's destination is replaced, the link
    stays).  An existing file keeps its permission bits; a new one gets the
    umask default rather than ``mkstemp``'s 0600.
    """
    path = Path(os.path.realpath(target))
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = path.stat().st_mode & 0o7777
    except FileNotFoundError:
        mode = _default_file_mode()
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _raw_path(raw: object) -> str:
    if isinstance(raw, Mapping) and isinstance(raw.get("path"), str):
        return raw["path"]
    return ""


def apply_fallback_undo_files(
    entries: Iterable[EntryLike],
    workspace_root: str | os.PathLike[str],
) -> FallbackApplyResult:
    """
    Put every captured file back the way it was before the agent acted.

    Files that existed are rewritten with their original bytes (atomically,
    creating parent directories); files the agent created are removed.  Each
    entry is attempted independently: a failure is recorded and the remaining
    entries still run, so the result may be partial.  Re-running is safe.

    Args:
        entries: Typed entries or raw persisted mappings.
        workspace_root: Containment root, as for :func:`build_undo_preview`.

    Returns:
        FallbackApplyResult with one outcome per input entry.
    """
    outcomes: list[FileRestoreOutcome] = []
    for raw in entries:
        entry = _coerce_entry(raw)
        if entry is None:
            outcomes.append(
                FileRestoreOutcome(
                    path=_raw_path(raw), display_path="", status="skipped", reason="malformed entry"
                )
            )
            continue

        target = resolve_workspace_path(entry.path, workspace_root)
        if target is None:
            _logger.warning("undo_path_outside_workspace", path=entry.path)
            outcomes.append(
                FileRestoreOutcome(
                    path=entry.path,
                    display_path="",
                    status="skipped",
                    reason="outside workspace",
                )
            )
            continue

        shown = display_path(target, workspace_root)
        content = entry.original_content
        try:
            if content is not None:
                _write_atomic(target, content)
                status = "restored"
            else:
                Path(target).unlink(missing_ok=True)
                status = "removed"
        except OSError as exc:
            _logger.warning("undo_file_failed", path=target, error=str(exc))
            outcomes.append(
                FileRestoreOutcome(path=target, display_path=shown, status="failed", reason=str(exc))
            )
            continue
        outcomes.append(FileRestoreOutcome(path=target, display_path=shown, status=status))

    restored = sum(1 for o in outcomes if o.status in ("restored", "removed"))
    _logger.info("undo_files_applied", restored=restored, total=len(outcomes))
    return FallbackApplyResult(restored_count=restored, outcomes=outcomes)
