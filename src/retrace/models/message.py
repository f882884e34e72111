"""Conversation message models."""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, Field

MessageRole = Literal["user", "model"]


class Message(BaseModel):
    """
    A single node of a conversation tree.

    Messages form a forest through ``parent_id``: a message with no parent is a
    root, and a parent always belongs to the same session.  Messages are only
    ever removed as part of a subtree prune.
    """

    id: int | None = None
    """Integer ID assigned by the store on insert; monotonically increasing."""
    session_id: str
    role: MessageRole
    parent_id: int | None = None
    content: str = ""
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    """Unix millisecond timestamp."""

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class PruneResult(BaseModel):
    """The result of removing a message subtree."""

    deleted_messages: int = 0
    deleted_snapshots: int = 0

    @property
    def pruned(self) -> bool:
        return self.deleted_messages > 0
