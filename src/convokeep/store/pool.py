"""
Shared connection pool for ConversationStore.

A single ``StorePool`` instance manages one ``aiosqlite.Connection`` per
database path.  All ``ConversationStore`` objects pointing at the same path
share that connection, and every ``ChatSession`` opened on the same
conversation through the pool shares one ``asyncio.Lock`` for it.

Usage::

    pool = StorePool()

    store_a = ConversationStore(config, pool=pool)
    store_b = ConversationStore(config, pool=pool)   # same DB path → same connection

    await store_a.initialize()   # opens the connection (idempotent on 2nd call)
    await store_b.initialize()   # reuses existing connection

    # … use stores …

    await pool.close_all()       # close all managed connections once at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("convokeep.store.pool")


class StorePool:
    """
    Process-scoped registry of open ``aiosqlite.Connection`` objects.

    Thread-safety: only safe to use from a single asyncio event loop; do not
    share a ``StorePool`` across threads.

    For each unique *resolved* database path the pool holds exactly one
    connection.  Callers may call ``acquire()`` concurrently; only the first
    caller opens the connection, subsequent callers receive the same object.

    The pool also hands out one ``asyncio.Lock`` per ``(path, conversation)``
    pair.  Sessions hold it for the whole of every mutating operation so that
    two dispatches against one conversation never interleave their
    append / persist / re-pack steps.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}  # per-path open guards
        self._conversation_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_holders: dict[tuple[str, str], int] = {}

    # ── Public API ─────────────────────────────────────────────────────────────

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Return the shared connection for *db_path*, opening it if needed.

        Args:
            db_path: Database file path (``~`` is expanded).
            wal_mode: Enable WAL journal mode on first open.
            connection_timeout: SQLite busy timeout in seconds.

        Returns:
            The shared ``aiosqlite.Connection`` for this path.
        """
        resolved = _resolve(db_path)

        # Already open
        if resolved in self._connections:
            return self._connections[resolved]

        if resolved not in self._open_locks:
            self._open_locks[resolved] = asyncio.Lock()

        async with self._open_locks[resolved]:
            # Double-check after acquiring the lock
            if resolved in self._connections:
                return self._connections[resolved]

            conn = await open_connection(
                resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
            )
            self._connections[resolved] = conn
            _logger.debug("pool_connection_opened", db_path=resolved)
            return conn

    def conversation_lock(self, db_path: str, conversation_id: str) -> asyncio.Lock:
        """
        Return the serialisation lock for one conversation, creating it on first use.

        Every call counts as one holder; pair it with
        :meth:`release_conversation_lock`.  The lock is dropped once its last
        holder releases it, so the registry only holds open conversations.
        """
        key = (_resolve(db_path), conversation_id)
        lock = self._conversation_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._conversation_locks[key] = lock
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        return lock

    def release_conversation_lock(self, db_path: str, conversation_id: str) -> None:
        """Give up one hold on a conversation lock. No-op if it is not registered."""
        key = (_resolve(db_path), conversation_id)
        holders = self._lock_holders.get(key, 0) - 1
        if holders > 0:
            self._lock_holders[key] = holders
            return
        self._lock_holders.pop(key, None)
        self._conversation_locks.pop(key, None)

    async def close_path(self, db_path: str) -> None:
        """Close and remove the connection for a single path."""
        resolved = _resolve(db_path)
        conn = self._connections.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        for key in [k for k in self._conversation_locks if k[0] == resolved]:
            del self._conversation_locks[key]
            self._lock_holders.pop(key, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        paths = list(self._connections.keys())
        for path in paths:
            await self.close_path(path)

    # ── Convenience: process-level default pool ─────────────────────────────────

    @staticmethod
    def default() -> StorePool:
        """
        Return the process-level default pool.

        The default pool is created lazily on first access and lives for the
        lifetime of the process.  Tests should create their own ``StorePool()``
        instances to get full isolation.
        """
        global _default_pool
        if _default_pool is None:
            _default_pool = StorePool()
        return _default_pool


_default_pool: StorePool | None = None


def _resolve(db_path: str) -> str:
    return str(Path(db_path).expanduser().resolve())


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """Open a configured connection (row factory, pragmas) to *db_path*."""
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
