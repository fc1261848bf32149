"""SQLite-backed conversation and message store."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from ulid import ULID

from convokeep.errors import ConversationNotFoundError, MessageNotFoundError, StoreError
from convokeep.models.config import GenerationConfig, StoreConfig
from convokeep.models.message import Conversation, Turn, now_ms
from convokeep.store.pool import StorePool, open_connection


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"conv"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Re-raise driver errors from *operation* as ``StoreError``."""
    try:
        yield
    except aiosqlite.Error as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc


class ConversationStore:
    """
    Ordered conversation/message store on SQLite.

    Implements the store contract the core relies on: conversations are
    fetched and updated by id; messages are listed per conversation ordered
    by ``idx``, inserted (the store assigns the id), updated and deleted by
    id.  There are no multi-statement transactions; callers reconcile by
    re-reading.

    Usage (standalone)::

        store = ConversationStore(StoreConfig())
        await store.initialize()
        try:
            conv = await store.create_conversation()
            turns = await store.list_messages(conv.id)
        finally:
            await store.close()   # closes the private connection

    Usage (with pool)::

        pool = StorePool()
        store = ConversationStore(config, pool=pool)
        await store.initialize()     # opens the shared connection once
        await store.close()          # no-op; the pool owns the connection
        await pool.close_all()       # actually closes the connection
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._logger = structlog.get_logger("convokeep.store")

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            StoreError: If the database cannot be opened or the schema fails.
        """
        with _store_errors("initialize"):
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
        """
        Release the database connection.

        Pool-managed connections are left open; the pool owns their lifetime.
        """
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    # ── Conversation Methods ───────────────────────────────────────────────────

    async def create_conversation(self, *, title: str = "New chat") -> Conversation:
        """Insert a new, empty conversation and return it."""
        conn = self._conn_or_raise()
        conversation = Conversation(id=make_id("conv"), title=title)
        with _store_errors("create_conversation"):
            await conn.execute(
                """
                INSERT INTO conversations (id, title, created_at, updated_at, running_summary)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.title,
                    conversation.created_at,
                    conversation.updated_at,
                    conversation.running_summary,
                ),
            )
            await conn.commit()
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        """
        Fetch a conversation by ID.

        Raises:
            ConversationNotFoundError: If no conversation with this ID exists.
        """
        conn = self._conn_or_raise()
        with _store_errors("get_conversation"):
            async with conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return self._row_to_conversation(row)

    async def list_conversations(self, *, limit: int = 100, offset: int = 0) -> list[Conversation]:
        """List conversations, newest first."""
        conn = self._conn_or_raise()
        with _store_errors("list_conversations"):
            async with conn.execute(
                "SELECT * FROM conversations ORDER BY created_at DESC, rowid DESC"
                " LIMIT ? OFFSET ?",
                (limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_conversation(r) for r in rows]

    async def update_conversation(
        self,
        conversation_id: str,
        *,
        title: str | None = None,
        running_summary: str | None = None,
    ) -> None:
        """
        Update mutable conversation fields; ``updated_at`` is always refreshed.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
        """
        conn = self._conn_or_raise()
        set_clauses = ["updated_at = ?"]
        params: list[Any] = [now_ms()]
        if title is not None:
            set_clauses.append("title = ?")
            params.append(title)
        if running_summary is not None:
            set_clauses.append("running_summary = ?")
            params.append(running_summary)
        params.append(conversation_id)

        with _store_errors("update_conversation"):
            result = await conn.execute(
                f"UPDATE conversations SET {', '.join(set_clauses)} WHERE id = ?",
                params,
            )
            await conn.commit()
        if result.rowcount == 0:
            raise ConversationNotFoundError(conversation_id)

    # ── Settings Methods ───────────────────────────────────────────────────────

    async def get_settings(self, conversation_id: str) -> GenerationConfig | None:
        """Return the generation settings saved for a conversation, or ``None``."""
        conn = self._conn_or_raise()
        with _store_errors("get_settings"):
            async with conn.execute(
                "SELECT * FROM settings WHERE conversation_id = ?", (conversation_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return GenerationConfig(
            model=row["model"],
            temperature=row["temperature"],
            max_tokens=row["max_tokens"],
            safe_prompt=bool(row["safe_prompt"]),
        )

    async def save_settings(self, conversation_id: str, settings: GenerationConfig) -> None:
        """
        Insert or replace the generation settings of a conversation.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
        """
        conn = self._conn_or_raise()
        try:
            await conn.execute(
                """
                INSERT INTO settings
                    (conversation_id, model, temperature, max_tokens, safe_prompt, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    model = excluded.model,
                    temperature = excluded.temperature,
                    max_tokens = excluded.max_tokens,
                    safe_prompt = excluded.safe_prompt,
                    updated_at = excluded.updated_at
                """,
                (
                    conversation_id,
                    settings.model,
                    settings.temperature,
                    settings.max_tokens,
                    int(settings.safe_prompt),
                    now_ms(),
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise ConversationNotFoundError(conversation_id) from exc
            raise StoreError(f"save_settings failed: {exc}") from exc
        except aiosqlite.Error as exc:
            raise StoreError(f"save_settings failed: {exc}") from exc

    # ── Message Methods ────────────────────────────────────────────────────────

    async def list_messages(self, conversation_id: str) -> list[Turn]:
        """
        Fetch every turn of a conversation ordered by ``idx``.

        Rows sharing an ``idx`` (possible only after an interrupted re-pack)
        keep their insertion order.
        """
        conn = self._conn_or_raise()
        with _store_errors("list_messages"):
            async with conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY idx ASC, rowid ASC",
                (conversation_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_turn(r) for r in rows]

    async def insert_message(self, turn: Turn) -> str:
        """
        Persist a turn and return the id assigned to it.

        The turn object itself is not modified.

        Raises:
            ConversationNotFoundError: If ``turn.conversation_id`` does not exist.
        """
        conn = self._conn_or_raise()
        message_id = make_id("msg")
        try:
            await conn.execute(
                """
                INSERT INTO messages
                    (id, conversation_id, role, content, idx, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    turn.conversation_id,
                    turn.role,
                    turn.content,
                    turn.idx,
                    turn.created_at,
                    turn.updated_at,
                ),
            )
            await conn.commit()
        except aiosqlite.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise ConversationNotFoundError(turn.conversation_id) from exc
            raise StoreError(f"insert_message failed: {exc}") from exc
        except aiosqlite.Error as exc:
            raise StoreError(f"insert_message failed: {exc}") from exc
        return message_id

    async def update_message(
        self,
        message_id: str,
        *,
        content: str | None = None,
        idx: int | None = None,
    ) -> None:
        """
        Update the content and/or position of a message.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """
        conn = self._conn_or_raise()
        set_clauses = ["updated_at = ?"]
        params: list[Any] = [now_ms()]
        if content is not None:
            set_clauses.append("content = ?")
            params.append(content)
        if idx is not None:
            set_clauses.append("idx = ?")
            params.append(idx)
        params.append(message_id)

        with _store_errors("update_message"):
            result = await conn.execute(
                f"UPDATE messages SET {', '.join(set_clauses)} WHERE id = ?",
                params,
            )
            await conn.commit()
        if result.rowcount == 0:
            raise MessageNotFoundError(message_id)

    async def delete_message(self, message_id: str) -> None:
        """
        Delete one message by id.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """
        conn = self._conn_or_raise()
        with _store_errors("delete_message"):
            result = await conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            await conn.commit()
        if result.rowcount == 0:
            raise MessageNotFoundError(message_id)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _row_to_conversation(self, row: aiosqlite.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            running_summary=row["running_summary"] or "",
        )

    def _row_to_turn(self, row: aiosqlite.Row) -> Turn:
        return Turn(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            idx=row["idx"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            status="confirmed",
        )
