"""
Shared connection pool for ConversationStore.

One ``StorePool`` keeps a single ``aiosqlite.Connection`` per database file.
Every ``ConversationStore`` pointed at the same file borrows that connection,
and every write transaction on it is serialised through one ``asyncio.Lock``
so a subtree prune never interleaves with another writer's statements.

Usage::

    pool = StorePool()

    store_a = ConversationStore(config, pool=pool)
    store_b = ConversationStore(config, pool=pool)   # same file → same connection

    await store_a.initialize()   # opens the connection
    await store_b.initialize()   # reuses it

    await pool.close_all()       # once, at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("retrace.pool")


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """Open and configure a connection (row factory, WAL, foreign keys)."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


def _resolve(db_path: str) -> str:
    return str(Path(db_path).expanduser().resolve())


class StorePool:
    """
    Process-scoped registry of open ``aiosqlite.Connection`` objects.

    Only safe to use from a single asyncio event loop.

    ``acquire()`` may be called concurrently; the first caller for a path opens
    the connection and later callers get the same object.  ``write_lock()``
    hands out the per-path lock that stores hold around multi-statement write
    transactions.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Return the shared connection for *db_path*, opening it on first use.

        Args:
            db_path: Database file path (``~`` is expanded).
            wal_mode: Enable WAL journal mode when opening.
            connection_timeout: SQLite busy timeout in seconds.
        """
        resolved = _resolve(db_path)
        if resolved in self._connections:
            return self._connections[resolved]

        open_lock = self._open_locks.setdefault(resolved, asyncio.Lock())
        async with open_lock:
            if resolved in self._connections:
                return self._connections[resolved]
            conn = await open_connection(
                resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
            )
            self._connections[resolved] = conn
            self._write_locks[resolved] = asyncio.Lock()
            _logger.debug("pool_connection_opened", db_path=resolved)
            return conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Return the write lock for *db_path*.

        Raises ``KeyError`` if ``acquire()`` has not been called for the path.
        """
        return self._write_locks[_resolve(db_path)]

    async def close_path(self, db_path: str) -> None:
        """Close and forget the connection for one path."""
        resolved = _resolve(db_path)
        conn = self._connections.pop(resolved, None)
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        for path in list(self._connections):
            await self.close_path(path)

    @staticmethod
    def default() -> StorePool:
        """
        Return the lazily created process-level pool.

        Tests should build their own ``StorePool()`` for isolation.
        """
        global _default_pool
        if _default_pool is None:
            _default_pool = StorePool()
        return _default_pool


_default_pool: StorePool | None = None
