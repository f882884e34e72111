"""Configuration models for retrace stores and the undo engine."""

from __future__ import annotations

from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.retrace/conversations.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class UndoConfig(BaseModel):
    """Configuration for undo previews and control actions."""

    diff_cell_limit: int = Field(
        default=250_000,
        ge=1,
        description=(
            "Upper bound on before_lines * after_lines (after trimming the common "
            "prefix and suffix) for an exact LCS diff. Larger inputs get an "
            "approximate line count instead."
        ),
    )

    default_model: str = Field(
        default="gemini-2.5-pro",
        description="Model passed to the session engine when a request does not name one.",
    )

    default_workspace: str | None = Field(
        default=None,
        description="Workspace root used when a request omits one. None = process cwd.",
    )


class RetraceConfig(BaseModel):
    """
    Top-level configuration for retrace.

    Example::

        config = RetraceConfig(
            store=StoreConfig(db_path="/var/lib/chat/conversations.db"),
            undo=UndoConfig(diff_cell_limit=100_000),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    undo: UndoConfig = Field(default_factory=UndoConfig)

    @classmethod
    def default(cls) -> RetraceConfig:
        """Return a config instance with all defaults."""
        return cls()
