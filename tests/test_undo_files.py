"""Tests for fallback file parsing, containment, preview and restore."""

from __future__ import annotations

import base64
import json
import os
import stat

import pytest
from pydantic import ValidationError

from retrace.models.undo import FileUndoFallbackEntry
from retrace.undo.files import (
    apply_fallback_undo_files,
    build_undo_preview,
    capture_file_entry,
    display_path,
    parse_fallback_files,
    resolve_workspace_path,
    serialize_fallback_files,
)
from tests.conftest import fallback_entry, raw_entry


class TestFileUndoFallbackEntry:
    def test_binary_content_survives_encoding(self):
        entry = FileUndoFallbackEntry.from_content("bin.dat", b"\x00\xff\x10")
        assert entry.existed_before is True
        assert entry.original_content == b"\x00\xff\x10"

    def test_created_file_has_no_content(self):
        entry = FileUndoFallbackEntry.from_content("new.txt", None)
        assert entry.existed_before is False
        assert entry.original_content is None

    def test_wrapped_base64_accepted(self):
        """Line-wrapped base64 from older rows still decodes."""
        original = b"x" * 200
        wrapped = base64.encodebytes(original).decode("ascii")
        assert "\n" in wrapped
        entry = FileUndoFallbackEntry.model_validate(
            {"path": "a.txt", "existedBefore": True, "originalContentBase64": wrapped}
        )
        assert entry.original_content == original
        assert "\n" not in entry.to_json_dict()["originalContentBase64"]

    def test_invalid_base64_rejected(self):
        with pytest.raises(ValidationError):
            FileUndoFallbackEntry(path="a.txt", existed_before=True, original_content_base64="!!")

    def test_existing_file_requires_content(self):
        with pytest.raises(ValidationError):
            FileUndoFallbackEntry(path="a.txt", existed_before=True)

    def test_created_file_rejects_content(self):
        with pytest.raises(ValidationError):
            FileUndoFallbackEntry.model_validate(
                {"path": "a.txt", "existedBefore": False, "originalContentBase64": "aGk="}
            )

    def test_strict_field_types(self):
        """existedBefore must be a real boolean, not a truthy string."""
        with pytest.raises(ValidationError):
            FileUndoFallbackEntry.model_validate({"path": "a.txt", "existedBefore": "yes"})


class TestParseFallbackFiles:
    @pytest.mark.parametrize("raw", [None, "", b"", "{not json", '{"path": "a.txt"}', "42"])
    def test_unusable_values_become_empty(self, raw):
        """Bad JSON and non-list values read back as no entries."""
        assert parse_fallback_files(raw) == []

    def test_malformed_elements_dropped(self):
        raw = json.dumps([
            raw_entry("a.txt", "old"),
            {"path": 3, "existedBefore": True},
            "not an object",
            {"path": "b.txt", "existedBefore": False, "originalContentBase64": "aGk="},
            raw_entry("c.txt", None),
        ])
        entries = parse_fallback_files(raw)
        assert [e.path for e in entries] == ["a.txt", "c.txt"]
        assert entries[0].original_content == b"old"

    def test_accepts_bytes_and_lists(self):
        data = [raw_entry("a.txt", "x")]
        assert parse_fallback_files(json.dumps(data).encode()) == parse_fallback_files(data)

    def test_serialized_shape_is_camel_case(self):
        """Created files are persisted without a content key."""
        raw = serialize_fallback_files([fallback_entry("new.txt", None), fallback_entry("a.txt", "hi")])
        assert json.loads(raw) == [
            {"path": "new.txt", "existedBefore": False},
            {"path": "a.txt", "existedBefore": True, "originalContentBase64": "aGk="},
        ]


class TestResolveWorkspacePath:
    def test_relative_path_inside(self, workspace):
        assert resolve_workspace_path("src/a.txt", workspace) == str(workspace / "src" / "a.txt")

    def test_dot_segments_collapsed(self, workspace):
        assert resolve_workspace_path("src/../a.txt", workspace) == str(workspace / "a.txt")

    def test_traversal_rejected(self, workspace):
        assert resolve_workspace_path("../../etc/passwd", workspace) is None

    def test_absolute_outside_rejected(self, workspace, tmp_path):
        assert resolve_workspace_path(str(tmp_path / "other.txt"), workspace) is None

    def test_absolute_inside_accepted(self, workspace):
        target = str(workspace / "a.txt")
        assert resolve_workspace_path(target, workspace) == target

    def test_sibling_with_shared_prefix_rejected(self, workspace):
        """``/x/workspace-other`` is not inside ``/x/workspace``."""
        sibling = workspace.parent / f"{workspace.name}-other" / "a.txt"
        assert resolve_workspace_path(str(sibling), workspace) is None

    def test_root_itself_is_contained(self, workspace):
        assert resolve_workspace_path(str(workspace), workspace) == str(workspace)


class TestDisplayPath:
    def test_nested_path_uses_forward_slashes(self, workspace):
        assert display_path(str(workspace / "dir" / "a.txt"), workspace) == "dir/a.txt"

    def test_root_shows_basename(self, workspace):
        assert display_path(str(workspace), workspace) == workspace.name


class TestCaptureFileEntry:
    def test_existing_file(self, workspace):
        (workspace / "a.txt").write_bytes(b"before")
        entry = capture_file_entry("a.txt", workspace)
        assert entry is not None
        assert entry.existed_before is True
        assert entry.original_content == b"before"

    def test_missing_file_recorded_as_created(self, workspace):
        entry = capture_file_entry("new.txt", workspace)
        assert entry is not None
        assert entry.existed_before is False

    def test_outside_workspace_not_captured(self, workspace):
        assert capture_file_entry("../secret.txt", workspace) is None


class TestBuildUndoPreview:
    def test_modified_file(self, workspace):
        """Counts run from the live text to the original."""
        (workspace / "a.txt").write_text("keep\nnew\n")
        [change] = build_undo_preview([fallback_entry("a.txt", "keep\nold\nolder\n")], workspace)
        assert change.status == "modified"
        assert change.display_path == "a.txt"
        assert change.path == str(workspace / "a.txt")
        assert (change.added_lines, change.removed_lines) == (2, 1)

    def test_agent_created_file_previews_as_deleted(self, workspace):
        (workspace / "made.txt").write_text("x\ny\n")
        [change] = build_undo_preview([fallback_entry("made.txt", None)], workspace)
        assert change.status == "deleted"
        assert (change.added_lines, change.removed_lines) == (0, 2)

    def test_missing_live_file_previews_as_created(self, workspace):
        [change] = build_undo_preview([fallback_entry("gone.txt", "a\nb\n")], workspace)
        assert change.status == "created"
        assert (change.added_lines, change.removed_lines) == (2, 0)

    def test_created_and_already_missing(self, workspace):
        [change] = build_undo_preview([fallback_entry("never.txt", None)], workspace)
        assert change.status == "deleted"
        assert change.removed_lines == 0

    def test_unusable_entries_left_out(self, workspace):
        (workspace / "a.txt").write_text("new\n")
        entries = [
            raw_entry("../../etc/passwd", "root:x:0:0"),
            {"path": "b.txt"},
            raw_entry("a.txt", "old\n"),
        ]
        changes = build_undo_preview(entries, workspace)
        assert [c.display_path for c in changes] == ["a.txt"]

    def test_does_not_touch_filesystem(self, workspace):
        (workspace / "a.txt").write_text("new\n")
        (workspace / "made.txt").write_text("made\n")
        build_undo_preview(
            [fallback_entry("a.txt", "old\n"), fallback_entry("made.txt", None)], workspace
        )
        assert (workspace / "a.txt").read_text() == "new\n"
        assert (workspace / "made.txt").exists()

    def test_wire_shape_uses_camel_case(self, workspace):
        [change] = build_undo_preview([fallback_entry("a.txt", "x\n")], workspace)
        assert change.model_dump(by_alias=True) == {
            "path": str(workspace / "a.txt"),
            "displayPath": "a.txt",
            "status": "created",
            "addedLines": 1,
            "removedLines": 0,
        }


class TestApplyFallbackUndoFiles:
    def test_restores_and_removes(self, workspace):
        (workspace / "a.txt").write_text("new")
        (workspace / "made.txt").write_text("made by agent")
        result = apply_fallback_undo_files(
            [fallback_entry("a.txt", "old"), fallback_entry("made.txt", None)], workspace
        )
        assert result.ok
        assert result.restored_count == 2
        assert [o.status for o in result.outcomes] == ["restored", "removed"]
        assert (workspace / "a.txt").read_text() == "old"
        assert not (workspace / "made.txt").exists()

    def test_recreates_missing_parent_directories(self, workspace):
        result = apply_fallback_undo_files([fallback_entry("deep/dir/a.txt", "x")], workspace)
        assert result.restored_count == 1
        assert (workspace / "deep" / "dir" / "a.txt").read_text() == "x"

    def test_removing_already_missing_file_succeeds(self, workspace):
        result = apply_fallback_undo_files([fallback_entry("never.txt", None)], workspace)
        assert result.ok
        assert result.outcomes[0].status == "removed"

    def test_traversal_never_mutates_outside(self, workspace, tmp_path):
        """Paths escaping the workspace are skipped, whatever the entry says."""
        outside = tmp_path / "outside.txt"
        outside.write_text("keep")
        result = apply_fallback_undo_files(
            [
                fallback_entry("../outside.txt", "overwritten"),
                fallback_entry(str(outside), None),
                fallback_entry("../../etc/passwd", "root::0:0"),
            ],
            workspace,
        )
        assert result.restored_count == 0
        assert [o.status for o in result.outcomes] == ["skipped", "skipped", "skipped"]
        assert all(o.reason == "outside workspace" for o in result.outcomes)
        assert outside.read_text() == "keep"

    def test_malformed_entry_skipped(self, workspace):
        result = apply_fallback_undo_files(
            [{"path": "a.txt", "existedBefore": True}, fallback_entry("b.txt", "b")], workspace
        )
        assert [o.status for o in result.outcomes] == ["skipped", "restored"]
        assert result.outcomes[0].path == "a.txt"
        assert result.outcomes[0].reason == "malformed entry"
        assert not (workspace / "a.txt").exists()

    def test_failure_does_not_stop_later_entries(self, workspace):
        """A directory in the way fails that entry only; no temp files are left."""
        (workspace / "blocker").mkdir()
        (workspace / "b.txt").write_text("new")
        result = apply_fallback_undo_files(
            [fallback_entry("blocker", "content"), fallback_entry("b.txt", "old")], workspace
        )
        assert not result.ok
        assert result.restored_count == 1
        assert [o.status for o in result.failed] == ["failed"]
        assert result.failed[0].display_path == "blocker"
        assert result.failed[0].reason
        assert (workspace / "b.txt").read_text() == "old"
        assert sorted(p.name for p in workspace.iterdir()) == ["b.txt", "blocker"]

    def test_reapplying_is_harmless(self, workspace):
        entries = [fallback_entry("a.txt", "old"), fallback_entry("made.txt", None)]
        (workspace / "made.txt").write_text("x")
        first = apply_fallback_undo_files(entries, workspace)
        second = apply_fallback_undo_files(entries, workspace)
        assert first.ok and second.ok
        assert (workspace / "a.txt").read_text() == "old"
        assert not (workspace / "made.txt").exists()

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_restore_keeps_file_mode(self, workspace):
        script = workspace / "run.sh"
        script.write_text("echo new\n")
        script.chmod(0o755)
        result = apply_fallback_undo_files([fallback_entry("run.sh", "echo old\n")], workspace)
        assert result.ok
        assert script.read_text() == "echo old\n"
        assert stat.S_IMODE(script.stat().st_mode) == 0o755

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_recreated_file_uses_umask_default(self, workspace):
        umask = os.umask(0o022)
        try:
            apply_fallback_undo_files([fallback_entry("gone.txt", "back")], workspace)
        finally:
            os.umask(umask)
        assert stat.S_IMODE((workspace / "gone.txt").stat().st_mode) == 0o644

    @pytest.mark.skipif(os.name != "posix", reason="symlinks")
    def test_restore_writes_through_symlink(self, workspace):
        real = workspace / "real.txt"
        real.write_text("new")
        link = workspace / "link.txt"
        link.symlink_to(real)
        result = apply_fallback_undo_files([fallback_entry("link.txt", "old")], workspace)
        assert result.ok
        assert link.is_symlink()
        assert real.read_text() == "old"
