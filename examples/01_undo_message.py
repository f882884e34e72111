"""
Example 01: Undo a Message
==========================

Demonstrates the per-message undo flow end to end:
- Recording a conversation in a ConversationStore
- Capturing a file before the "agent" edits it
- Previewing what an undo would change
- Undoing the user message (file restored, turn pruned)

The session engine is a stand-in that never holds checkpoints, so the
fallback file path is used.

Run:
    uv run python examples/01_undo_message.py
"""

import asyncio
import sys
import tempfile
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class NoCheckpointEngine:
    """Engine stand-in for a runtime without checkpoint support."""

    async def initialize(self, *, session_id: str, model: str, cwd: str) -> None:
        print(f"  [engine] initialize session={session_id} model={model}")

    async def restore_checkpoint(self, checkpoint_id: str):
        from retrace import EngineResult

        return EngineResult(success=False, error="checkpoints are not supported")

    async def rewind_last_user_message(self):
        from retrace import EngineResult

        return EngineResult(success=True)


async def main() -> None:
    from retrace import (
        ControlOrchestrator,
        ConversationStore,
        Message,
        RetraceConfig,
        StoreConfig,
        UndoConfig,
        UndoSnapshot,
    )
    from retrace.undo import capture_file_entry

    print("=== Retrace Undo Example ===\n")

    workspace = Path(tempfile.mkdtemp(prefix="retrace_example_"))
    config = RetraceConfig(
        store=StoreConfig(db_path=str(workspace / ".retrace.db")),
        undo=UndoConfig(default_workspace=str(workspace)),
    )
    store = ConversationStore(config.store)
    await store.initialize()

    try:
        session = await store.create_session(title="Undo demo")
        notes = workspace / "notes.md"
        notes.write_text("# Notes\n\n- buy milk\n")

        # A user turn asks the agent to edit notes.md; capture it first.
        user = await store.append_message(
            Message(session_id=session.id, role="user", content="Rewrite my notes")
        )
        entry = capture_file_entry("notes.md", workspace)
        assert entry is not None
        await store.save_undo_snapshot(
            UndoSnapshot(session_id=session.id, user_message_id=user.id, fallback_files=[entry])
        )

        # The agent edits the file and replies.
        notes.write_text("# Notes\n\n- buy oat milk\n- call the plumber\n")
        await store.append_message(
            Message(session_id=session.id, role="model", parent_id=user.id, content="Done.")
        )
        print(f"Messages before undo: {len(await store.get_messages(session.id))}")

        orchestrator = ControlOrchestrator(store, NoCheckpointEngine(), config)

        preview = await orchestrator.handle(
            {"action": "undo_message_preview", "sessionId": session.id, "messageId": user.id}
        )
        print("\nPreview:")
        for change in preview["files"]:
            print(
                f"  {change['displayPath']}: {change['status']} "
                f"(+{change['addedLines']} -{change['removedLines']})"
            )

        result = await orchestrator.handle(
            {"action": "undo_message", "sessionId": session.id, "messageId": user.id}
        )
        print(f"\nUndo result: restored={result['fallbackRestoredCount']} deleted={result['deletedCount']}")
        print(f"notes.md is back to:\n{notes.read_text()}")
        print(f"Messages after undo: {len(await store.get_messages(session.id))}")
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
