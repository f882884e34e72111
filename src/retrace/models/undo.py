"""Undo snapshot, fallback file capture and preview models."""

from __future__ import annotations

import base64
import binascii
import time
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

# Persisted and wire shapes use camelCase keys (``existedBefore``,
# ``originalContentBase64``, ``displayPath``...); Python code uses snake_case.
_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileUndoFallbackEntry(BaseModel):
    """
    Point-in-time capture of one file, taken before the agent touched it.

    ``existed_before=False`` means the agent created the file, so undoing it is
    a deletion and no content is stored.  ``existed_before=True`` requires the
    original bytes (base64 encoded, binary-safe).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    path: StrictStr
    """Absolute path, or a path relative to the session workspace."""
    existed_before: StrictBool
    original_content_base64: StrictStr | None = None

    @field_validator("original_content_base64")
    @classmethod
    def _must_be_base64(cls, value: str | None) -> str | None:
        if value is not None:
            # Older rows may hold MIME-style base64 wrapped at 76 columns.
            value = "".join(value.split())
            try:
                base64.b64decode(value, validate=True)
            except binascii.Error as exc:
                raise ValueError(f"originalContentBase64 is not valid base64: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _content_matches_existence(self) -> FileUndoFallbackEntry:
        if not self.existed_before and self.original_content_base64 is not None:
            raise ValueError("original content must be absent when the file did not exist")
        if self.existed_before and self.original_content_base64 is None:
            raise ValueError("original content is required when the file existed")
        return self

    @classmethod
    def from_content(cls, path: str, content: bytes | None) -> FileUndoFallbackEntry:
        """Build an entry from raw bytes; ``None`` records a file that did not exist."""
        if content is None:
            return cls(path=path, existed_before=False)
        return cls(
            path=path,
            existed_before=True,
            original_content_base64=base64.b64encode(content).decode("ascii"),
        )

    @property
    def original_content(self) -> bytes | None:
        """Decoded original bytes, or None for a file the agent created."""
        if self.original_content_base64 is None:
            return None
        return base64.b64decode(self.original_content_base64)

    def to_json_dict(self) -> dict[str, object]:
        """Serialize to the persisted camelCase shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


class UndoSnapshot(BaseModel):
    """
    Restore information captured for one user message before the agent acts on it.

    Identity is ``(session_id, user_message_id)``.  A snapshot is only worth
    storing when it carries a checkpoint handle, fallback files, or both.
    """

    session_id: str
    user_message_id: int
    restore_id: str | None = None
    """Opaque handle into the session engine's checkpoint system."""
    fallback_files: list[FileUndoFallbackEntry] = Field(default_factory=list)
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))

    @field_validator("restore_id")
    @classmethod
    def _blank_restore_id_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def is_empty(self) -> bool:
        return self.restore_id is None and not self.fallback_files

    @property
    def uses_checkpoint(self) -> bool:
        """
        True when undo must go through the engine's checkpoint restore.

        Any fallback file makes the file-level path authoritative, so a
        checkpoint is only used when it is the sole source of restore data.
        """
        return self.restore_id is not None and not self.fallback_files


class LineChangeCounts(BaseModel):
    """Added/removed line counts between two texts."""

    added: int = 0
    removed: int = 0
    approximate: bool = False
    """True when the inputs were too large for an exact LCS and counts are estimates."""


class UndoPreviewFileChange(BaseModel):
    """What undoing a message would do to one file, relative to its live state."""

    model_config = _CAMEL

    path: str
    """Resolved absolute path."""
    display_path: str
    """Workspace-relative path with ``/`` separators."""
    status: Literal["modified", "created", "deleted"]
    added_lines: int
    removed_lines: int


class FileRestoreOutcome(BaseModel):
    """Per-entry result of applying fallback files."""

    model_config = _CAMEL

    path: str
    display_path: str
    status: Literal["restored", "removed", "skipped", "failed"]
    reason: str | None = None


class FallbackApplyResult(BaseModel):
    """Aggregate result of applying fallback files; not transactional across entries."""

    model_config = _CAMEL

    restored_count: int = 0
    """Entries actually acted on (written back or removed)."""
    outcomes: list[FileRestoreOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> list[FileRestoreOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def ok(self) -> bool:
        return not self.failed
