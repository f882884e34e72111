"""Undo previews, line diffs and fallback file restore."""

from retrace.undo.diff import DEFAULT_CELL_LIMIT, diff_line_counts, lcs_length, split_lines
from retrace.undo.files import (
    apply_fallback_undo_files,
    build_undo_preview,
    capture_file_entry,
    display_path,
    parse_fallback_files,
    resolve_workspace_path,
    serialize_fallback_files,
)

__all__ = [
    "DEFAULT_CELL_LIMIT",
    "apply_fallback_undo_files",
    "build_undo_preview",
    "capture_file_entry",
    "diff_line_counts",
    "display_path",
    "lcs_length",
    "parse_fallback_files",
    "resolve_workspace_path",
    "serialize_fallback_files",
    "split_lines",
]
