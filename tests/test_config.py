"""Tests for retrace configuration models."""

from __future__ import annotations

import re
from importlib.metadata import version

import pytest

import retrace
from retrace.control import ControlOrchestrator
from retrace.models.config import RetraceConfig, StoreConfig, UndoConfig
from retrace.store.conversation import ConversationStore
from tests.conftest import FakeEngine


class TestStoreConfig:
    def test_defaults(self) -> None:
        cfg = StoreConfig()
        assert cfg.db_path == "~/.retrace/conversations.db"
        assert cfg.wal_mode is True
        assert cfg.connection_timeout == 30.0

    def test_tilde_expanded_by_store(self) -> None:
        """The store expands ~ when it is constructed, not the config."""
        store = ConversationStore(StoreConfig(db_path="~/retrace-test.db"))
        assert "~" not in store._db_path


class TestUndoConfig:
    def test_defaults(self) -> None:
        cfg = UndoConfig()
        assert cfg.diff_cell_limit == 250_000
        assert cfg.default_model == "gemini-2.5-pro"
        assert cfg.default_workspace is None

    def test_cell_limit_bounds(self) -> None:
        with pytest.raises(ValueError):
            UndoConfig(diff_cell_limit=0)  # below ge=1

    def test_cell_limit_has_description(self) -> None:
        info = UndoConfig.model_fields["diff_cell_limit"]
        assert info.description is not None
        assert "LCS" in info.description


class TestRetraceConfig:
    def test_default_classmethod(self) -> None:
        cfg = RetraceConfig.default()
        assert cfg == RetraceConfig()
        assert isinstance(cfg.store, StoreConfig)
        assert isinstance(cfg.undo, UndoConfig)

    def test_nested_from_dict(self) -> None:
        cfg = RetraceConfig.model_validate(
            {"store": {"db_path": "/tmp/x.db"}, "undo": {"default_model": "gemini-2.5-flash"}}
        )
        assert cfg.store.db_path == "/tmp/x.db"
        assert cfg.undo.default_model == "gemini-2.5-flash"

    async def test_default_workspace_falls_back_to_cwd(
        self, store, session_id, tmp_path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Without a configured workspace, the engine is initialised in the process cwd."""
        monkeypatch.chdir(tmp_path)
        engine = FakeEngine()
        orchestrator = ControlOrchestrator(store, engine, RetraceConfig())
        await orchestrator.rewind(session_id, workspace="Default")
        assert engine.called("initialize")[0]["cwd"] == str(tmp_path)


class TestVersion:
    """__version__ matches installed package metadata."""

    def test_version_matches_package_metadata(self) -> None:
        assert retrace.__version__ == version("retrace")

    def test_version_has_semver_shape(self) -> None:
        parts = retrace.__version__.split(".")
        assert len(parts) >= 2, "Expected at least MAJOR.MINOR"
        assert all(re.match(r"^\d", p) for p in parts), "Each segment must start with a digit"
