"""Ordered, densely indexed turn sequence of one conversation, and its mutations."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from convokeep.errors import (
    ForbiddenError,
    MessageNotFoundError,
    NotPersistedYetError,
    StoreError,
    TurnNotFoundError,
)
from convokeep.events.bus import ChatEvent, EventBus
from convokeep.models.message import Role, Turn, now_ms
from convokeep.store.sqlite import ConversationStore


def is_dense(turns: Iterable[Turn]) -> bool:
    """Return True if the turns carry exactly the indices ``0..N-1`` in order."""
    return all(turn.idx == position for position, turn in enumerate(turns))


class MessageSequence:
    """
    The in-memory view of one conversation's turns plus every operation that
    changes them.

    Invariants after each completed operation:
    1. ``idx`` values are exactly ``0..N-1``, no gaps, no duplicates.
    2. idx 0 holds the system turn; it can be edited but never deleted.
    3. Ordering by ``idx`` reproduces insertion order.
    4. ``role`` and ``idx`` of an existing turn are never edited directly;
       only a re-pack rewrites ``idx``.

    Appends are optimistic: the turn is visible in :attr:`turns` as
    ``pending`` before the insert resolves.  A failed insert leaves the
    turn in place marked ``failed``; nothing is rolled back.  :meth:`load`
    reconciles by replacing the view with what the store holds.

    Every positional fix-up (delete, bulk removal) re-derives indices from a
    fresh read of the store, never from the cached positions.

    Store writes are shielded from cancellation: a caller that abandons an
    operation does not abort a write already issued.
    """

    def __init__(
        self,
        store: ConversationStore,
        conversation_id: str,
        event_bus: EventBus,
    ) -> None:
        self._store = store
        self._conversation_id = conversation_id
        self._event_bus = event_bus
        self._turns: list[Turn] = []
        self._logger = structlog.get_logger("convokeep.sequence").bind(
            conversation_id=conversation_id
        )

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def turns(self) -> list[Turn]:
        """The current view, ordered by position. A copy; mutate through the methods."""
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def has_unconfirmed(self) -> bool:
        """True while any turn in the view is pending or failed."""
        return any(turn.status != "confirmed" for turn in self._turns)

    # ── Loading ────────────────────────────────────────────────────────────────

    async def load(self) -> list[Turn]:
        """
        Replace the view with the stored turns, sorted ascending by ``idx``.

        Returns:
            The freshly loaded turns.

        Raises:
            StoreError: If the store cannot be read.
        """
        turns = await self._store.list_messages(self._conversation_id)
        if not is_dense(turns):
            self._logger.warning(
                "sequence_not_dense",
                indices=[t.idx for t in turns],
            )
        self._turns = turns
        return list(turns)

    async def reconcile(self) -> None:
        """Reload if the view still holds pending or failed turns."""
        if self.has_unconfirmed:
            self._logger.info("sequence_reconciling")
            await self.load()

    async def seed(self, system_prompt: str) -> Turn | None:
        """Append the system turn if the conversation has no turns at all."""
        if self._turns:
            return None
        return await self.append("system", system_prompt)

    # ── Mutations ──────────────────────────────────────────────────────────────

    async def append(self, role: Role, content: str) -> Turn:
        """
        Append a turn at ``idx = len(sequence)`` and persist it.

        The turn is added to :attr:`turns` before the insert is awaited.

        Returns:
            The appended turn, ``confirmed`` and carrying its store id.

        Raises:
            StoreError: If the insert fails.  The turn stays in the view
                with ``status="failed"`` until the next :meth:`load`.
        """
        turn = Turn(
            conversation_id=self._conversation_id,
            role=role,
            content=content,
            idx=len(self._turns),
        )
        self._turns.append(turn)

        try:
            message_id = await asyncio.shield(self._store.insert_message(turn))
        except StoreError as exc:
            turn.status = "failed"
            self._report_failure("append", turn.idx, exc)
            raise

        turn.id = message_id
        turn.status = "confirmed"
        self._logger.debug("turn_appended", idx=turn.idx, role=role, message_id=message_id)
        self._publish_turn(ChatEvent.TURN_APPENDED, turn)
        return turn

    async def edit_content(self, index: int, new_text: str) -> Turn:
        """
        Replace the content of the turn at *index*. ``role`` and ``idx`` are kept.

        Raises:
            TurnNotFoundError: If no turn exists at *index*.
            NotPersistedYetError: If the turn has no store id even after one reload.
            StoreError: If the update fails.
        """
        turn = await self._persisted_turn(index)
        try:
            await asyncio.shield(self._store.update_message(turn.id, content=new_text))
        except MessageNotFoundError as exc:
            raise TurnNotFoundError(index) from exc
        except StoreError as exc:
            self._report_failure("edit", index, exc)
            raise

        turn.content = new_text
        turn.updated_at = now_ms()
        self._logger.debug("turn_edited", idx=index, message_id=turn.id)
        self._publish_turn(ChatEvent.TURN_EDITED, turn)
        return turn

    async def delete(self, index: int) -> int:
        """
        Delete the turn at *index* and re-pack the remaining indices.

        Returns:
            The number of index updates the re-pack issued.

        Raises:
            ForbiddenError: If *index* is 0 (the system turn).
            TurnNotFoundError: If no turn exists at *index*.
            NotPersistedYetError: If the turn has no store id even after one reload.
            StoreError: If the delete or the re-pack fails.
        """
        if index == 0:
            raise ForbiddenError("The system turn at idx 0 cannot be deleted")

        turn = await self._persisted_turn(index)
        try:
            await asyncio.shield(self._store.delete_message(turn.id))
        except MessageNotFoundError as exc:
            raise TurnNotFoundError(index) from exc
        except StoreError as exc:
            self._report_failure("delete", index, exc)
            raise

        self._logger.debug("turn_deleted", idx=index, message_id=turn.id)
        self._publish_turn(ChatEvent.TURN_DELETED, turn)
        return await self.repack()

    async def repack(self) -> int:
        """
        Rewrite stored indices so they are contiguous from 0 again.

        Reloads the sequence, then issues one index update for every turn
        whose position in the sorted list differs from its stored ``idx``.
        Running it again without an intervening mutation issues no writes.

        Returns:
            The number of index updates issued.
        """
        turns = await self._store.list_messages(self._conversation_id)
        writes = 0
        for position, turn in enumerate(turns):
            if turn.idx == position:
                continue
            try:
                await asyncio.shield(self._store.update_message(turn.id, idx=position))
            except StoreError as exc:
                self._report_failure("repack", position, exc)
                raise
            turn.idx = position
            writes += 1
        self._turns = turns

        self._logger.debug("repack_completed", writes=writes, turn_count=len(turns))
        self._event_bus.publish(
            ChatEvent.SEQUENCE_REPACKED,
            {
                "conversation_id": self._conversation_id,
                "writes": writes,
                "turn_count": len(turns),
            },
        )
        return writes

    async def truncate_after(self, cut_at: int) -> int:
        """
        Delete every turn with ``idx > cut_at``.

        Only a tail is removed, so no re-pack is needed.  Turns are deleted
        newest first; an interrupted truncation still leaves a dense prefix.

        Returns:
            The number of turns removed.
        """
        turns = await self.load()
        tail = [t for t in turns if t.idx > cut_at]
        for turn in reversed(tail):
            await self._delete_quietly(turn)
        self._turns = [t for t in turns if t.idx <= cut_at]

        self._logger.info("sequence_truncated", cut_at=cut_at, removed=len(tail))
        self._event_bus.publish(
            ChatEvent.SEQUENCE_TRUNCATED,
            {"conversation_id": self._conversation_id, "cut_at": cut_at, "removed": len(tail)},
        )
        return len(tail)

    async def remove(self, turns: Iterable[Turn]) -> int:
        """
        Bulk-delete *turns* (by id) and re-pack.

        Returns:
            The number of index updates the re-pack issued.

        Raises:
            ForbiddenError: If the system turn is among *turns*.
            NotPersistedYetError: If any turn has no store id.
        """
        doomed = list(turns)
        for turn in doomed:
            if turn.idx == 0 or turn.role == "system":
                raise ForbiddenError("The system turn cannot be removed")
            if turn.id is None:
                raise NotPersistedYetError(turn.idx)
        for turn in doomed:
            await self._delete_quietly(turn)
        return await self.repack()

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _at(self, index: int) -> Turn | None:
        if 0 <= index < len(self._turns):
            return self._turns[index]
        return None

    async def _persisted_turn(self, index: int) -> Turn:
        """Return the turn at *index*, reloading once if it has no store id yet."""
        turn = self._at(index)
        if turn is None:
            raise TurnNotFoundError(index)
        if turn.is_persisted:
            return turn

        self._logger.info("turn_not_persisted_reloading", idx=index, status=turn.status)
        await self.load()
        turn = self._at(index)
        if turn is None or not turn.is_persisted:
            raise NotPersistedYetError(index)
        return turn

    async def _delete_quietly(self, turn: Turn) -> None:
        """Delete *turn*; a row that is already gone counts as deleted."""
        if turn.id is None:
            raise NotPersistedYetError(turn.idx)
        try:
            await asyncio.shield(self._store.delete_message(turn.id))
        except MessageNotFoundError:
            self._logger.debug("turn_already_deleted", idx=turn.idx, message_id=turn.id)

    def _publish_turn(self, event: ChatEvent, turn: Turn) -> None:
        self._event_bus.publish(
            event,
            {
                "conversation_id": self._conversation_id,
                "idx": turn.idx,
                "role": turn.role,
                "message_id": turn.id,
            },
        )

    def _report_failure(self, operation: str, index: int, exc: StoreError) -> None:
        self._logger.error("turn_persist_failed", operation=operation, idx=index, error=str(exc))
        self._event_bus.publish(
            ChatEvent.TURN_PERSIST_FAILED,
            {
                "conversation_id": self._conversation_id,
                "idx": index,
                "operation": operation,
                "error": str(exc),
            },
        )
