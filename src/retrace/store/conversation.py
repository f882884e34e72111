"""SQLite-backed conversation tree and undo snapshot store."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from retrace.ids import make_id
from retrace.models.config import StoreConfig
from retrace.models.message import Message, PruneResult
from retrace.models.undo import UndoSnapshot
from retrace.store.pool import open_connection
from retrace.undo.files import parse_fallback_files, serialize_fallback_files

if TYPE_CHECKING:
    from retrace.store.pool import StorePool

# SQLite caps bound parameters per statement; stay well below every build's limit.
_MAX_PARAMS = 500

# ── Exceptions ─────────────────────────────────────────────────────────────────


class RetraceStoreError(Exception):
    """Base class for store errors."""


class SessionNotFoundError(RetraceStoreError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class MessageNotFoundError(RetraceStoreError):
    """Raised when a message id does not exist (in the given session)."""

    def __init__(self, message_id: int, session_id: str | None = None) -> None:
        where = f" in session {session_id!r}" if session_id else ""
        super().__init__(f"Message not found: {message_id!r}{where}")
        self.message_id = message_id
        self.session_id = session_id


class InvalidParentError(RetraceStoreError):
    """Raised when a message's parent belongs to a different session."""

    def __init__(self, parent_id: int, session_id: str) -> None:
        super().__init__(f"Parent message {parent_id!r} is not part of session {session_id!r}")
        self.parent_id = parent_id
        self.session_id = session_id


class InvalidMessageRoleError(RetraceStoreError):
    """Raised when an undo snapshot is attached to a non-user message."""

    def __init__(self, message_id: int, role: str) -> None:
        super().__init__(f"Message {message_id!r} has role {role!r}; expected 'user'")
        self.message_id = message_id
        self.role = role


class DuplicateIDError(RetraceStoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: object) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


# ── Row models ─────────────────────────────────────────────────────────────────


class Session:
    """Thin data class for session rows."""

    __slots__ = ("created_at", "id", "title", "updated_at")

    def __init__(self, id: str, title: str | None, created_at: int, updated_at: int) -> None:
        self.id = id
        self.title = title
        self.created_at = created_at
        self.updated_at = updated_at


def _chunks(ids: Sequence[int]) -> list[Sequence[int]]:
    return [ids[i : i + _MAX_PARAMS] for i in range(0, len(ids), _MAX_PARAMS)]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── ConversationStore ──────────────────────────────────────────────────────────


class ConversationStore:
    """
    Conversation forest plus per-user-message undo snapshots, in SQLite.

    Messages are linked by ``parent_id`` and removed only through
    :meth:`prune_subtree`, which deletes a message, every descendant and the
    snapshots they own in one transaction.

    Every write runs under a write lock: the pool's per-database lock when a
    ``StorePool`` is supplied, otherwise a lock private to this store.  Holding
    it keeps one writer's statements from being committed by another writer
    sharing the connection.

    Usage::

        store = ConversationStore(StoreConfig(db_path="/tmp/chat.db"))
        await store.initialize()
        try:
            session = await store.create_session()
            user = await store.append_message(
                Message(session_id=session.id, role="user", content="hi")
            )
            ...
            await store.prune_subtree(session.id, user.id)
        finally:
            await store.close()
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._private_write_lock = asyncio.Lock()
        self._logger = structlog.get_logger("retrace.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._pool is not None:
            conn = await self._pool.acquire(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
        else:
            conn = await open_connection(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )

        schema = (Path(__file__).parent / "schema.sql").read_text()
        await conn.executescript(schema)
        await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the connection. Pool-owned connections stay open."""
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RetraceStoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    @property
    def write_lock(self) -> asyncio.Lock:
        if self._pool is not None:
            return self._pool.write_lock(self._db_path)
        return self._private_write_lock

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block as one ``BEGIN IMMEDIATE`` transaction; roll back on any error."""
        conn = self._conn_or_raise()
        async with self.write_lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(self, id: str | None = None, *, title: str | None = None) -> Session:
        """
        Insert a new session row.

        Args:
            id: Session ID. Generated as ``sess_<ULID>`` when omitted.
            title: Optional human-readable title.

        Raises:
            DuplicateIDError: If a session with this ID already exists.
        """
        conn = self._conn_or_raise()
        session_id = id or make_id("sess")
        now = _now_ms()
        async with self.write_lock:
            try:
                await conn.execute(
                    "INSERT INTO sessions (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (session_id, title, now, now),
                )
                await conn.commit()
            except aiosqlite.IntegrityError as exc:
                await conn.rollback()
                raise DuplicateIDError(session_id) from exc
        return Session(id=session_id, title=title, created_at=now, updated_at=now)

    async def get_session(self, session_id: str) -> Session:
        """
        Fetch a session by ID.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return Session(
            id=row["id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def touch_session(self, session_id: str) -> None:
        """Bump the session's ``updated_at`` marker. No-op for unknown sessions."""
        conn = self._conn_or_raise()
        async with self.write_lock:
            await conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?", (_now_ms(), session_id)
            )
            await conn.commit()

    # ── Message Methods ────────────────────────────────────────────────────────

    async def append_message(self, message: Message) -> Message:
        """
        Insert a message and return it with its assigned ID.

        Raises:
            SessionNotFoundError: If ``session_id`` does not exist.
            MessageNotFoundError: If ``parent_id`` does not exist.
            InvalidParentError: If the parent belongs to another session.
            DuplicateIDError: If an explicit ``id`` is already taken.
        """
        conn = self._conn_or_raise()
        async with self.write_lock:
            if message.parent_id is not None:
                async with conn.execute(
                    "SELECT session_id FROM messages WHERE id = ?", (message.parent_id,)
                ) as cursor:
                    parent = await cursor.fetchone()
                if parent is None:
                    raise MessageNotFoundError(message.parent_id)
                if parent["session_id"] != message.session_id:
                    raise InvalidParentError(message.parent_id, message.session_id)

            try:
                cursor = await conn.execute(
                    """
                    INSERT INTO messages (id, session_id, parent_id, role, content, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.session_id,
                        message.parent_id,
                        message.role,
                        message.content,
                        message.created_at,
                    ),
                )
                await conn.commit()
            except aiosqlite.IntegrityError as exc:
                await conn.rollback()
                if "FOREIGN KEY" in str(exc):
                    raise SessionNotFoundError(message.session_id) from exc
                raise DuplicateIDError(message.id) from exc

        return message.model_copy(update={"id": cursor.lastrowid})

    async def get_message(self, message_id: int, *, session_id: str | None = None) -> Message:
        """
        Fetch a single message, optionally scoped to a session.

        Raises:
            MessageNotFoundError: If the message does not exist (in that session).
        """
        conn = self._conn_or_raise()
        if session_id is None:
            query, params = "SELECT * FROM messages WHERE id = ?", (message_id,)
        else:
            query = "SELECT * FROM messages WHERE id = ? AND session_id = ?"
            params = (message_id, session_id)
        async with conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise MessageNotFoundError(message_id, session_id)
        return self._row_to_message(row)

    async def get_messages(self, session_id: str) -> list[Message]:
        """All messages of a session, oldest first."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY id ASC", (session_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def get_latest_user_message(self, session_id: str) -> Message | None:
        """The most recently inserted ``user`` message of a session, if any."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? AND role = 'user' ORDER BY id DESC LIMIT 1",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_message(row) if row is not None else None

    # ── Undo Snapshot Methods ──────────────────────────────────────────────────

    async def save_undo_snapshot(self, snapshot: UndoSnapshot) -> UndoSnapshot | None:
        """
        Persist the undo snapshot for a user message, replacing any previous one.

        Snapshots with neither a ``restore_id`` nor fallback files are not
        stored; None is returned for them.

        Raises:
            MessageNotFoundError: If the owning message is not in the session.
            InvalidMessageRoleError: If the owning message is not a user message.
        """
        if snapshot.is_empty:
            self._logger.debug(
                "undo_snapshot_empty",
                session_id=snapshot.session_id,
                user_message_id=snapshot.user_message_id,
            )
            return None

        owner = await self.get_message(snapshot.user_message_id, session_id=snapshot.session_id)
        if owner.role != "user":
            raise InvalidMessageRoleError(snapshot.user_message_id, owner.role)

        conn = self._conn_or_raise()
        async with self.write_lock:
            await conn.execute(
                """
                INSERT OR REPLACE INTO undo_snapshots
                    (session_id, user_message_id, restore_id, fallback_files, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    snapshot.session_id,
                    snapshot.user_message_id,
                    snapshot.restore_id,
                    serialize_fallback_files(snapshot.fallback_files),
                    snapshot.created_at,
                ),
            )
            await conn.commit()
        self._logger.debug(
            "undo_snapshot_saved",
            session_id=snapshot.session_id,
            user_message_id=snapshot.user_message_id,
            has_restore_id=snapshot.restore_id is not None,
            fallback_files=len(snapshot.fallback_files),
        )
        return snapshot

    async def get_undo_snapshot(self, session_id: str, user_message_id: int) -> UndoSnapshot | None:
        """
        Fetch the snapshot for a user message, or None.

        Malformed ``fallback_files`` data reads back as an empty list.
        """
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM undo_snapshots WHERE session_id = ? AND user_message_id = ?",
            (session_id, user_message_id),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_snapshot(row) if row is not None else None

    async def list_undo_snapshots(self, session_id: str) -> list[UndoSnapshot]:
        """All snapshots of a session, ordered by owning message ID."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM undo_snapshots WHERE session_id = ? ORDER BY user_message_id ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    # ── Subtree Pruning ────────────────────────────────────────────────────────

    async def collect_subtree_ids(self, session_id: str, root_message_id: int) -> list[int]:
        """
        Return the root and every descendant of it within the session.

        The root comes first, followed by descendants in breadth-first order.
        Empty when the root is not part of the session.
        """
        return await self._subtree_ids(self._conn_or_raise(), session_id, root_message_id)

    async def _subtree_ids(
        self, conn: aiosqlite.Connection, session_id: str, root_message_id: int
    ) -> list[int]:
        async with conn.execute(
            "SELECT id, parent_id FROM messages WHERE session_id = ? ORDER BY id", (session_id,)
        ) as cursor:
            rows = await cursor.fetchall()

        known: set[int] = set()
        children: dict[int, list[int]] = {}
        for row in rows:
            known.add(row["id"])
            if row["parent_id"] is not None:
                children.setdefault(row["parent_id"], []).append(row["id"])

        if root_message_id not in known:
            return []

        closure = [root_message_id]
        seen = {root_message_id}
        queue = deque([root_message_id])
        while queue:
            node = queue.popleft()
            for child in children.get(node, ()):
                if child not in seen:
                    seen.add(child)
                    closure.append(child)
                    queue.append(child)
        return closure

    async def prune_subtree(self, session_id: str, root_message_id: int) -> PruneResult:
        """
        Delete a message, all of its descendants, and their undo snapshots.

        Algorithm (one ``BEGIN IMMEDIATE`` transaction):
        1. Load ``(id, parent_id)`` for the session and walk children from the root.
        2. If the root is not in the session, stop with zero counts.
        3. Delete the collected messages.
        4. Delete snapshots whose ``user_message_id`` was collected.
        5. Bump the session's ``updated_at``.

        Either every step commits or none does.  Pruning a root that is already
        gone is not an error, so repeating a prune is harmless.

        Args:
            session_id: Session that owns the subtree.
            root_message_id: Root of the subtree to remove.

        Returns:
            PruneResult with the number of deleted messages and snapshots.
        """
        async with self._transaction() as conn:
            ids = await self._subtree_ids(conn, session_id, root_message_id)
            if not ids:
                return PruneResult()

            deleted_messages = 0
            deleted_snapshots = 0
            for chunk in _chunks(ids):
                placeholders = ",".join("?" * len(chunk))
                result = await conn.execute(
                    f"DELETE FROM messages WHERE session_id = ? AND id IN ({placeholders})",
                    (session_id, *chunk),
                )
                deleted_messages += result.rowcount
                result = await conn.execute(
                    f"DELETE FROM undo_snapshots"
                    f" WHERE session_id = ? AND user_message_id IN ({placeholders})",
                    (session_id, *chunk),
                )
                deleted_snapshots += result.rowcount
            await conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?", (_now_ms(), session_id)
            )

        self._logger.info(
            "subtree_pruned",
            session_id=session_id,
            root_message_id=root_message_id,
            deleted_messages=deleted_messages,
            deleted_snapshots=deleted_snapshots,
        )
        return PruneResult(deleted_messages=deleted_messages, deleted_snapshots=deleted_snapshots)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            parent_id=row["parent_id"],
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
        )

    def _row_to_snapshot(self, row: aiosqlite.Row) -> UndoSnapshot:
        return UndoSnapshot(
            session_id=row["session_id"],
            user_message_id=row["user_message_id"],
            restore_id=row["restore_id"],
            fallback_files=parse_fallback_files(row["fallback_files"]),
            created_at=row["created_at"],
        )
