"""Tests for MessageSequence: dense indexing, edit, delete and re-pack."""

from __future__ import annotations

import asyncio

import pytest

from convokeep.errors import (
    ForbiddenError,
    NotPersistedYetError,
    StoreError,
    TurnNotFoundError,
)
from convokeep.events.bus import ChatEvent
from convokeep.models.message import Turn
from convokeep.sequence import MessageSequence, is_dense
from tests.conftest import events_of, fill


def _indices(turns: list[Turn]) -> list[int]:
    return [t.idx for t in turns]


class TestAppend:
    async def test_seed_creates_system_turn_once(self, sequence):
        assert len(sequence) == 1
        assert sequence.turns[0].role == "system"
        assert await sequence.seed("another prompt") is None
        assert len(sequence) == 1

    async def test_append_assigns_next_idx(self, sequence):
        await fill(sequence, 4)
        assert _indices(sequence.turns) == [0, 1, 2, 3, 4]
        assert [t.role for t in sequence.turns[1:]] == ["user", "assistant", "user", "assistant"]

    async def test_appended_turn_is_confirmed_with_id(self, sequence):
        turn = await sequence.append("user", "hello")
        assert turn.status == "confirmed"
        assert turn.id is not None and turn.id.startswith("msg_")
        assert not sequence.has_unconfirmed

    async def test_append_is_visible_before_insert_resolves(self, sequence, monkeypatch):
        """The optimistic turn is in the view while the insert is still running."""
        store = sequence._store
        original = store.insert_message
        release = asyncio.Event()
        seen: list[list[Turn]] = []

        async def slow_insert(turn):
            seen.append(sequence.turns)
            await release.wait()
            return await original(turn)

        monkeypatch.setattr(store, "insert_message", slow_insert)
        task = asyncio.create_task(sequence.append("user", "pending one"))
        await asyncio.sleep(0)
        assert sequence.turns[-1].status == "pending"
        assert sequence.turns[-1].id is None
        release.set()
        turn = await task
        assert seen[0][-1].content == "pending one"
        assert turn.status == "confirmed"

    async def test_failed_append_marks_turn_and_reports(self, sequence, event_bus, monkeypatch):
        async def broken_insert(turn):
            raise StoreError("insert_message failed: disk full")

        monkeypatch.setattr(sequence._store, "insert_message", broken_insert)
        with pytest.raises(StoreError):
            await sequence.append("user", "lost")

        assert sequence.turns[-1].status == "failed"
        assert sequence.has_unconfirmed
        (payload,) = events_of(event_bus, ChatEvent.TURN_PERSIST_FAILED)
        assert payload["operation"] == "append"
        assert payload["idx"] == 1

    async def test_reconcile_drops_failed_turn(self, sequence, monkeypatch):
        async def broken_insert(turn):
            raise StoreError("insert_message failed")

        with monkeypatch.context() as m:
            m.setattr(sequence._store, "insert_message", broken_insert)
            with pytest.raises(StoreError):
                await sequence.append("user", "lost")

        await sequence.reconcile()
        assert len(sequence) == 1
        turn = await sequence.append("user", "kept")
        assert turn.idx == 1


class TestEdit:
    async def test_edit_changes_content_only(self, sequence):
        await fill(sequence, 2)
        before = sequence.turns[1]
        edited = await sequence.edit_content(1, "rewritten")
        assert edited.content == "rewritten"
        assert edited.role == before.role
        assert edited.idx == 1

        stored = await sequence._store.list_messages(sequence.conversation_id)
        assert stored[1].content == "rewritten"
        assert _indices(stored) == [0, 1, 2]

    async def test_edit_system_turn_allowed(self, sequence):
        await sequence.edit_content(0, "Be brief.")
        assert sequence.turns[0].content == "Be brief."
        assert sequence.turns[0].role == "system"

    async def test_edit_out_of_range(self, sequence):
        with pytest.raises(TurnNotFoundError):
            await sequence.edit_content(5, "x")

    async def test_edit_unpersisted_turn_raises_after_reload(self, sequence, monkeypatch):
        async def broken_insert(turn):
            raise StoreError("insert_message failed")

        await fill(sequence, 2)
        with monkeypatch.context() as m:
            m.setattr(sequence._store, "insert_message", broken_insert)
            with pytest.raises(StoreError):
                await sequence.append("user", "never stored")

        with pytest.raises(NotPersistedYetError):
            await sequence.edit_content(3, "edit")
        # The reload replaced the view with what the store holds.
        assert len(sequence) == 3

    async def test_edit_turn_persisted_behind_our_back_succeeds(self, sequence):
        """A turn without an id is found after the one reload."""
        await fill(sequence, 1)
        sequence._turns[1].id = None
        sequence._turns[1].status = "pending"
        edited = await sequence.edit_content(1, "after reload")
        assert edited.id is not None
        assert edited.content == "after reload"


class TestDelete:
    async def test_delete_system_turn_forbidden(self, sequence):
        with pytest.raises(ForbiddenError):
            await sequence.delete(0)
        assert len(sequence) == 1

    async def test_delete_repacks(self, sequence):
        await fill(sequence, 5)
        contents = [t.content for t in sequence.turns]
        await sequence.delete(2)

        stored = await sequence._store.list_messages(sequence.conversation_id)
        assert _indices(stored) == [0, 1, 2, 3, 4]
        assert [t.content for t in stored] == contents[:2] + contents[3:]
        assert _indices(sequence.turns) == [0, 1, 2, 3, 4]

    async def test_delete_then_append_round_trip(self, sequence):
        """Appending N turns, deleting k of them, reloading yields 0..N-k in order."""
        await fill(sequence, 8)
        survivors = [t.content for t in sequence.turns]
        for index in (7, 3, 1):
            await sequence.delete(index)
            del survivors[index]

        reloaded = await sequence.load()
        assert _indices(reloaded) == list(range(len(survivors)))
        assert [t.content for t in reloaded] == survivors

    async def test_delete_last_turn_needs_no_index_writes(self, sequence, event_bus):
        await fill(sequence, 3)
        writes = await sequence.delete(3)
        assert writes == 0
        repacked = events_of(event_bus, ChatEvent.SEQUENCE_REPACKED)
        assert repacked[-1]["writes"] == 0

    async def test_delete_out_of_range(self, sequence):
        with pytest.raises(TurnNotFoundError):
            await sequence.delete(9)

    async def test_delete_publishes_event(self, sequence, event_bus):
        await fill(sequence, 2)
        await sequence.delete(1)
        (payload,) = events_of(event_bus, ChatEvent.TURN_DELETED)
        assert payload["idx"] == 1
        assert payload["role"] == "user"


class TestRepack:
    async def test_repack_closes_gaps(self, store, sequence):
        await fill(sequence, 4)
        # Simulate a delete whose re-pack was interrupted.
        await store.delete_message(sequence.turns[2].id)
        writes = await sequence.repack()
        assert writes == 2
        assert _indices(await store.list_messages(sequence.conversation_id)) == [0, 1, 2, 3]

    async def test_repack_is_idempotent(self, sequence):
        await fill(sequence, 4)
        await sequence._store.delete_message(sequence.turns[1].id)
        assert await sequence.repack() > 0
        assert await sequence.repack() == 0

    async def test_load_sorts_by_idx(self, store, conversation, event_bus):
        seq = MessageSequence(store, conversation.id, event_bus)
        for idx, role in ((2, "assistant"), (0, "system"), (1, "user")):
            await store.insert_message(
                Turn(conversation_id=conversation.id, role=role, content=role, idx=idx)
            )
        turns = await seq.load()
        assert [t.role for t in turns] == ["system", "user", "assistant"]
        assert is_dense(turns)


class TestBulkRemoval:
    async def test_remove_repacks(self, sequence):
        await fill(sequence, 6)
        doomed = sequence.turns[1:4]
        await sequence.remove(doomed)
        turns = await sequence.load()
        assert _indices(turns) == [0, 1, 2, 3]
        assert [t.content for t in turns[1:]] == ["turn 4", "turn 5", "turn 6"]

    async def test_remove_rejects_system_turn(self, sequence):
        await fill(sequence, 2)
        with pytest.raises(ForbiddenError):
            await sequence.remove(sequence.turns[:2])
        assert len(await sequence.load()) == 3

    async def test_remove_rejects_unpersisted_turn(self, sequence):
        await fill(sequence, 2)
        draft = Turn(conversation_id=sequence.conversation_id, role="user", content="x", idx=3)
        with pytest.raises(NotPersistedYetError):
            await sequence.remove([sequence.turns[1], draft])
        assert len(await sequence.load()) == 3

    async def test_delete_of_idless_turn_raises_not_persisted(self, sequence):
        draft = Turn(conversation_id=sequence.conversation_id, role="user", content="x", idx=1)
        with pytest.raises(NotPersistedYetError) as exc_info:
            await sequence._delete_quietly(draft)
        assert exc_info.value.index == 1

    async def test_truncate_after(self, sequence, event_bus):
        await fill(sequence, 6)
        removed = await sequence.truncate_after(2)
        assert removed == 4
        assert _indices(sequence.turns) == [0, 1, 2]
        assert _indices(await sequence.load()) == [0, 1, 2]
        (payload,) = events_of(event_bus, ChatEvent.SEQUENCE_TRUNCATED)
        assert payload == {
            "conversation_id": sequence.conversation_id,
            "cut_at": 2,
            "removed": 4,
        }


class TestIsDense:
    def test_dense_and_gapped(self):
        def t(idx):
            return Turn(conversation_id="c", role="user", content="", idx=idx)

        assert is_dense([t(0), t(1), t(2)])
        assert not is_dense([t(0), t(2)])
        assert not is_dense([t(0), t(0)])
        assert is_dense([])
