"""Shared fixtures for retrace tests."""

from __future__ import annotations

import base64
from typing import Any

import pytest
import pytest_asyncio

from retrace.control import ControlOrchestrator
from retrace.events.bus import EventBus, RetraceEvent
from retrace.models.config import RetraceConfig, StoreConfig, UndoConfig
from retrace.models.control import EngineResult
from retrace.models.message import Message
from retrace.models.undo import FileUndoFallbackEntry, UndoSnapshot
from retrace.store.conversation import ConversationStore
from retrace.store.pool import StorePool


class FakeEngine:
    """Session engine double that records every call and returns canned results."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.restore_result = EngineResult(success=True)
        self.rewind_result = EngineResult(success=True)

    async def initialize(self, *, session_id: str, model: str, cwd: str) -> None:
        self.calls.append(("initialize", {"session_id": session_id, "model": model, "cwd": cwd}))

    async def restore_checkpoint(self, checkpoint_id: str) -> EngineResult:
        self.calls.append(("restore_checkpoint", checkpoint_id))
        return self.restore_result

    async def rewind_last_user_message(self) -> EngineResult:
        self.calls.append(("rewind_last_user_message", None))
        return self.rewind_result

    def called(self, name: str) -> list[Any]:
        """Arguments of every call to ``name``, in order."""
        return [args for call, args in self.calls if call == name]


@pytest.fixture
def workspace(tmp_path):
    """An empty workspace directory for file undo tests."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path, workspace):
    """RetraceConfig with a temp database path and the test workspace as default."""
    return RetraceConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        undo=UndoConfig(default_workspace=str(workspace)),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool):
    """Initialized ConversationStore backed by a temp SQLite database (pool-managed)."""
    s = ConversationStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()  # no-op for pool-managed conn; pool fixture closes the connection


@pytest_asyncio.fixture
async def session_id(store):
    """A pre-created session ID in the store."""
    sid = "sess_TEST01"
    await store.create_session(sid, title="test")
    return sid


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[RetraceEvent, dict[str, Any]]] = []

    def _collect(event: RetraceEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def orchestrator(store, engine, config, event_bus):
    """ControlOrchestrator wired to the test store, fake engine and event bus."""
    return ControlOrchestrator(store, engine, config, event_bus)


def make_message(
    session_id: str,
    role: str = "user",
    parent_id: int | None = None,
    content: str = "",
) -> Message:
    """Helper to create a test Message."""
    return Message(session_id=session_id, role=role, parent_id=parent_id, content=content)


def fallback_entry(path: str, original: str | None) -> FileUndoFallbackEntry:
    """Entry for ``path``; ``original=None`` marks a file the agent created."""
    return FileUndoFallbackEntry.from_content(
        path, original.encode("utf-8") if original is not None else None
    )


def raw_entry(path: str, original: str | None) -> dict[str, Any]:
    """The persisted camelCase mapping for an entry."""
    entry: dict[str, Any] = {"path": path, "existedBefore": original is not None}
    if original is not None:
        entry["originalContentBase64"] = base64.b64encode(original.encode("utf-8")).decode()
    return entry


async def build_chain(store: ConversationStore, session_id: str, roles: str) -> list[Message]:
    """
    Append a linear chain of messages, one per character of ``roles``.

    ``"umu"`` appends user → model → user, each the child of the previous one.
    """
    messages: list[Message] = []
    parent_id: int | None = None
    for i, code in enumerate(roles):
        role = "user" if code == "u" else "model"
        stored = await store.append_message(
            make_message(session_id, role=role, parent_id=parent_id, content=f"{role} {i}")
        )
        messages.append(stored)
        parent_id = stored.id
    return messages


def snapshot_for(
    session_id: str,
    message: Message,
    *,
    restore_id: str | None = None,
    files: list[FileUndoFallbackEntry] | None = None,
) -> UndoSnapshot:
    assert message.id is not None
    return UndoSnapshot(
        session_id=session_id,
        user_message_id=message.id,
        restore_id=restore_id,
        fallback_files=files or [],
    )
